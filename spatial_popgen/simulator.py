"""Multi-generation simulation with snapshots at requested times.

simulate() steps the generation engine once per generation and records
the abundance matrix (plus registered summaries) at each requested time.

Time grid semantics:
  - time_grid is sorted, real-valued; time_grid[0] is generation 0
    (the initial population).
  - time t maps to generation floor(t − time_grid[0]). Times closer
    together than one generation share the same snapshot.

Built-in summaries (pure functions of N):
  genotype_totals, total_abundance, occupied_cells,
  allele_frequency(genotypes, allele) -> summary function
"""

from __future__ import annotations

import logging
import math
from typing import Callable, Dict, Mapping, Optional, Sequence

import numpy as np

from spatial_popgen.config import (
    SimulationConfig,
    build_carrying_capacity,
    build_demography,
    build_landscape,
    build_population,
    time_grid as config_time_grid,
)
from spatial_popgen.demography import Demography
from spatial_popgen.engine import Engine
from spatial_popgen.errors import ConfigurationError, SummaryError
from spatial_popgen.population import Population
from spatial_popgen.rng import create_rng_streams
from spatial_popgen.snapshots import Trajectory

logger = logging.getLogger(__name__)

SummaryFunction = Callable[[np.ndarray], object]

# Absorbs float noise in t − t₀ (e.g. 0.1 + 0.2 steps)
_TIME_EPS = 1e-9


# ═══════════════════════════════════════════════════════════════════════
# BUILT-IN SUMMARIES
# ═══════════════════════════════════════════════════════════════════════

def genotype_totals(N: np.ndarray) -> np.ndarray:
    """Per-genotype column sums."""
    return np.asarray(N).sum(axis=0)


def total_abundance(N: np.ndarray) -> float:
    return float(np.asarray(N).sum())


def occupied_cells(N: np.ndarray) -> int:
    """Number of habitable cells with any individuals."""
    return int(np.count_nonzero(np.asarray(N).sum(axis=1) > 0))


def allele_frequency(genotypes: Sequence[str], allele: str,
                     ploidy: int = 2) -> SummaryFunction:
    """Summary giving the population-wide frequency of `allele`.

    Allele copies per genotype are counted from the genotype name, so
    names are expected to be concatenated single-character alleles
    ('aa', 'aA', 'AA'). An empty population gives NaN.
    """
    copies = np.array([str(g).count(allele) for g in genotypes], dtype=np.float64)
    if np.any(copies > ploidy):
        raise ConfigurationError(
            f"genotype names {list(genotypes)} carry more than {ploidy} "
            f"copies of allele '{allele}'"
        )

    def frequency(N: np.ndarray) -> float:
        totals = np.asarray(N, dtype=np.float64).sum(axis=0)
        n = totals.sum()
        if n <= 0:
            return float('nan')
        return float(totals @ copies / (ploidy * n))

    frequency.__name__ = f"allele_frequency_{allele}"
    return frequency


# ═══════════════════════════════════════════════════════════════════════
# TIME GRID
# ═══════════════════════════════════════════════════════════════════════

def generation_indices(time_grid: Sequence[float]) -> np.ndarray:
    """Generation index reached at each requested time.

    Raises:
        ConfigurationError: Empty, non-finite, or unsorted grid.
    """
    t = np.asarray(time_grid, dtype=np.float64)
    if t.ndim != 1 or t.size == 0:
        raise ConfigurationError("time_grid must be a non-empty 1-D sequence")
    if not np.all(np.isfinite(t)):
        raise ConfigurationError("time_grid must be finite")
    if np.any(np.diff(t) < 0):
        raise ConfigurationError("time_grid must be sorted ascending")
    return np.array([math.floor(v - t[0] + _TIME_EPS) for v in t], dtype=np.int64)


def _evaluate_summaries(summaries: Mapping[str, SummaryFunction],
                        N: np.ndarray, generation: int) -> Dict[str, object]:
    values = {}
    for name, fn in summaries.items():
        try:
            values[name] = fn(N.copy())
        except Exception as exc:
            raise SummaryError(name, generation, exc) from exc
    return values


# ═══════════════════════════════════════════════════════════════════════
# SIMULATE
# ═══════════════════════════════════════════════════════════════════════

def simulate(
    population: Population,
    demography: Demography,
    carrying_capacity,
    time_grid: Sequence[float],
    summaries: Optional[Mapping[str, SummaryFunction]] = None,
    rng: Optional[np.random.Generator] = None,
    backend: str = 'matrix',
    stochastic: bool = True,
    progress_callback=None,
    perf=None,
) -> Trajectory:
    """Run the model and record snapshots at the requested times.

    Args:
        population: Initial population (generation 0).
        demography: Transition rule.
        carrying_capacity: Per-habitable-cell field, or a callable
            generation -> field.
        time_grid: Sorted requested times.
        summaries: name -> pure function of N, evaluated per snapshot.
        rng: Generator for sampling (threaded through every generation).
        backend: 'matrix' binds operators once before the loop; 'raster'
            runs the lazy convolution backend.
        stochastic: If False, draws are replaced by expectations.
        progress_callback: Optional callable(generation, n_generations).
        perf: Optional PerfMonitor.

    Returns:
        Trajectory with one entry per requested time.

    Raises:
        ConfigurationError: Invalid grid, backend or model configuration.
        GenerationError: A stage failed (stage and generation reported).
        SummaryError: A summary function failed.
    """
    summaries = dict(summaries or {})
    targets = generation_indices(time_grid)
    n_generations = int(targets[-1])

    engine = Engine(demography, carrying_capacity, rng=rng, backend=backend,
                    stochastic=stochastic, perf=perf)
    engine.prepare(population)

    logger.info(
        "simulating %d generations (%d snapshots, backend=%s, stochastic=%s)",
        n_generations, len(targets), backend, stochastic,
    )

    trajectory = Trajectory(genotypes=tuple(population.genotypes))
    times = [float(t) for t in time_grid]
    cursor = 0
    while True:
        while cursor < len(targets) and targets[cursor] == engine.generation:
            N = population.abundance
            trajectory.record(times[cursor], engine.generation, N,
                              _evaluate_summaries(summaries, N, engine.generation))
            cursor += 1
        if cursor == len(targets):
            break
        population = engine.step(population)
        if progress_callback is not None:
            progress_callback(engine.generation, n_generations)

    logger.info(
        "finished at generation %d: total abundance %.6g",
        engine.generation, float(population.abundance.sum()),
    )
    return trajectory


def simulate_config(config: SimulationConfig, summaries=None,
                    progress_callback=None, perf=None) -> Trajectory:
    """Build every model object from a SimulationConfig and run it."""
    landscape = build_landscape(config)
    population = build_population(config, landscape)
    demography = build_demography(config)
    rngs = create_rng_streams(config.simulation.seed, ['simulation'])
    if summaries is None:
        summaries = {'genotype_totals': genotype_totals,
                     'occupied_cells': occupied_cells}
    return simulate(
        population,
        demography,
        build_carrying_capacity(config, landscape),
        config_time_grid(config),
        summaries=summaries,
        rng=rngs['simulation'],
        backend=config.simulation.backend,
        stochastic=config.simulation.stochastic,
        progress_callback=progress_callback,
        perf=perf,
    )
