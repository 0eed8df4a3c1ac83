"""Trajectory: recorded abundance snapshots and summary series.

One entry per requested time point. Several time points that map to the
same generation share one snapshot value but are recorded separately so
that entries line up with the time grid.

Usage:
    traj = simulate(pop, demography, K, time_grid=[0, 1, 5, 10],
                    summaries={'totals': genotype_totals})
    traj.summary('totals')        # (n_times, G)
    traj.save("run.npz")
    traj = Trajectory.load("run.npz")
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Tuple

import numpy as np


@dataclass
class Trajectory:
    """Recorded snapshots for the requested time points."""
    genotypes: Tuple[str, ...]
    times: List[float] = field(default_factory=list)
    generations: List[int] = field(default_factory=list)
    snapshots: List[np.ndarray] = field(default_factory=list)
    summaries: Dict[str, List[Any]] = field(default_factory=dict)

    def record(self, time: float, generation: int, abundance: np.ndarray,
               summary_values: Dict[str, Any]) -> None:
        self.times.append(float(time))
        self.generations.append(int(generation))
        self.snapshots.append(np.array(abundance))
        for name, value in summary_values.items():
            self.summaries.setdefault(name, []).append(value)

    def __len__(self) -> int:
        return len(self.snapshots)

    @property
    def final(self) -> np.ndarray:
        if not self.snapshots:
            raise IndexError("trajectory is empty")
        return self.snapshots[-1]

    def summary(self, name: str) -> np.ndarray:
        """Summary series stacked along a leading time axis."""
        if name not in self.summaries:
            raise KeyError(
                f"no summary '{name}'; recorded: {sorted(self.summaries)}"
            )
        return np.asarray(self.summaries[name])

    def abundance(self) -> np.ndarray:
        """(n_times, n_habitable, G) stack of snapshots."""
        return np.stack(self.snapshots) if self.snapshots else np.empty((0, 0, 0))

    def save(self, path: str) -> None:
        """Save to a compressed npz file.

        Format: snapshot i as `snap_{i}`, entry i of summary s as
        `sum_{s}_{i}`; metadata in `meta_times`, `meta_generations`,
        `meta_genotypes` and `meta_summaries`.
        """
        arrays: Dict[str, np.ndarray] = {}
        for i, snap in enumerate(self.snapshots):
            arrays[f"snap_{i}"] = snap
        for name, values in self.summaries.items():
            for i, value in enumerate(values):
                arr = np.asarray(value)
                # npz files are read back without pickle support
                if arr.dtype.kind not in 'biufc':
                    raise TypeError(
                        f"summary '{name}' entry {i} is not numeric "
                        f"({type(value).__name__}); only numeric summaries "
                        f"can be saved"
                    )
                arrays[f"sum_{name}_{i}"] = arr

        arrays['meta_times'] = np.array(self.times, dtype=np.float64)
        arrays['meta_generations'] = np.array(self.generations, dtype=np.int64)
        arrays['meta_genotypes'] = np.array(self.genotypes, dtype=str)
        arrays['meta_summaries'] = np.array(sorted(self.summaries), dtype=str)

        Path(path).parent.mkdir(parents=True, exist_ok=True)
        np.savez_compressed(path, **arrays)

    @classmethod
    def load(cls, path: str) -> 'Trajectory':
        with np.load(path) as data:
            times = [float(t) for t in data['meta_times']]
            generations = [int(g) for g in data['meta_generations']]
            traj = cls(
                genotypes=tuple(str(g) for g in data['meta_genotypes']),
                times=times,
                generations=generations,
                snapshots=[data[f"snap_{i}"] for i in range(len(times))],
            )
            for name in data['meta_summaries']:
                name = str(name)
                traj.summaries[name] = [data[f"sum_{name}_{i}"]
                                        for i in range(len(times))]
        return traj
