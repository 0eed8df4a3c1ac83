"""Stage-level timing for generation runs.

Times each demographic stage (seeders, pollen, seeds, dispersal,
germination, recruitment, survival) and operator realization. When
disabled, every method is a no-op.

Usage:
    from spatial_popgen.perf import PerfMonitor

    perf = PerfMonitor(enabled=True)
    trajectory = simulate(pop, demography, K, times, perf=perf)
    print(perf.report())
"""

import time
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict


@dataclass
class StageStats:
    """Accumulated wall-clock time for one named stage."""
    total_time: float = 0.0
    calls: int = 0
    max_time: float = 0.0

    @property
    def mean_time(self) -> float:
        return self.total_time / self.calls if self.calls else 0.0

    def add(self, elapsed: float) -> None:
        self.total_time += elapsed
        self.calls += 1
        self.max_time = max(self.max_time, elapsed)


class PerfMonitor:
    """Per-stage wall-clock accumulator."""

    def __init__(self, enabled: bool = False):
        self.enabled = enabled
        self.generations = 0
        self._stats: Dict[str, StageStats] = defaultdict(StageStats)

    @contextmanager
    def track(self, stage: str):
        """Time the enclosed block under `stage`."""
        if not self.enabled:
            yield
            return
        t0 = time.perf_counter()
        try:
            yield
        finally:
            self._stats[stage].add(time.perf_counter() - t0)

    def record(self, stage: str, elapsed: float) -> None:
        if self.enabled:
            self._stats[stage].add(elapsed)

    def tick(self) -> None:
        """Count one completed generation."""
        if self.enabled:
            self.generations += 1

    def get_stats(self) -> Dict[str, StageStats]:
        return dict(self._stats)

    def summary(self) -> dict:
        """JSON-friendly summary, slowest stage first."""
        total = sum(s.total_time for s in self._stats.values())
        result = {}
        for name, s in sorted(self._stats.items(), key=lambda kv: -kv[1].total_time):
            result[name] = {
                'total_s': round(s.total_time, 4),
                'calls': s.calls,
                'mean_ms': round(s.mean_time * 1000, 3),
                'pct': round(100 * s.total_time / total, 1) if total > 0 else 0.0,
            }
        result['_total_s'] = round(total, 4)
        result['_generations'] = self.generations
        return result

    def report(self, title: str = "Generation stage timing") -> str:
        total = sum(s.total_time for s in self._stats.values())
        lines = [
            f"\n{'=' * 60}",
            f" {title} ({self.generations} generations)",
            f"{'=' * 60}",
            f"{'Stage':<25} {'Total (s)':>10} {'Calls':>8} {'Mean (ms)':>10} {'%':>6}",
        ]
        for name, s in sorted(self._stats.items(), key=lambda kv: -kv[1].total_time):
            pct = 100 * s.total_time / total if total > 0 else 0.0
            lines.append(
                f"{name:<25} {s.total_time:>10.4f} {s.calls:>8} "
                f"{s.mean_time * 1000:>10.3f} {pct:>5.1f}%"
            )
        lines.append(f"{'TOTAL':<25} {total:>10.4f}")
        return '\n'.join(lines)

    def reset(self) -> None:
        self._stats.clear()
        self.generations = 0
