"""Generation engine: one population-to-population transition.

Seven ordered stages, each producing a new array:

  1. SEEDERS      M  = Binomial(N, prob_seed)
  2. POLLEN       P  = pollen_migration(M), normalised to per-cell
                       pollen composition (cells with no pollen set no seed)
  3. SEEDS        S  = Σᵢⱼ (fecundity·M)[c,i] · Pfrac[c,j] · T[i,j,k]
  4. DISPERSAL    SD = seed_migration(S)
  5. GERMINATION  K  = prob_germination(N, carrying_capacity)
  6. RECRUITMENT  G  = Poisson(SD ⊙ K)
  7. SURVIVAL     N' = Binomial(N, prob_survival) + G

Backend follows the demography: bound operators use the sparse-matrix
backend, unbound ones the raster convolution backend.

Configuration problems (genotype mismatch, capacity shape) raise
ConfigurationError before any stage runs. Anything raised inside a stage
is re-raised as GenerationError carrying the stage name and generation
index, with the original exception chained.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager, nullcontext
from typing import Callable, Optional, Union

import numpy as np

from spatial_popgen.demography import Demography
from spatial_popgen.errors import (
    ConfigurationError,
    GenerationError,
    RateRangeError,
)
from spatial_popgen.population import Population
from spatial_popgen.rng import binomial_draw, make_rng, poisson_draw
from spatial_popgen.types import IndexSpace, RateContext, Stage

logger = logging.getLogger(__name__)

CapacityLike = Union[np.ndarray, Callable[[int], np.ndarray]]

BACKENDS = ('matrix', 'raster')


# ═══════════════════════════════════════════════════════════════════════
# HELPERS
# ═══════════════════════════════════════════════════════════════════════

def check_carrying_capacity(carrying_capacity, n_habitable: int) -> np.ndarray:
    """Validate a per-habitable-cell capacity field.

    Raises:
        ConfigurationError: wrong length, non-finite or negative values.
    """
    K = np.asarray(carrying_capacity, dtype=np.float64)
    if K.ndim == 0:
        K = np.full(n_habitable, float(K))
    if K.ndim != 1 or K.shape[0] != n_habitable:
        raise ConfigurationError(
            f"carrying_capacity must have one value per habitable cell "
            f"({n_habitable}), got shape {K.shape}"
        )
    if not np.all(np.isfinite(K)) or np.any(K < 0):
        raise ConfigurationError(
            "carrying_capacity must be finite and non-negative"
        )
    return K


def broadcast_rate(rate: np.ndarray, n_cells: int, n_genotypes: int,
                   name: str) -> np.ndarray:
    """Expand a rate to (n_cells, G).

    Accepted shapes: scalar, (n,), (G,), (1, G), (n, 1), (n, G). When
    n == G a 1-D rate is taken as per cell.
    """
    r = np.asarray(rate, dtype=np.float64)
    shape = (n_cells, n_genotypes)
    if r.ndim == 0:
        return np.full(shape, float(r))
    if r.ndim == 1:
        if r.shape[0] == n_cells:
            return np.repeat(r[:, None], n_genotypes, axis=1)
        if r.shape[0] == n_genotypes:
            return np.repeat(r[None, :], n_cells, axis=0)
    elif r.ndim == 2:
        try:
            return np.broadcast_to(r, shape).copy()
        except ValueError:
            pass
    raise ConfigurationError(
        f"vital rate '{name}' has shape {r.shape}; expected a scalar or "
        f"a shape broadcastable to (n_habitable, G) = {shape}"
    )


def _check_range(values: np.ndarray, name: str, upper: Optional[float]) -> None:
    if values.size == 0:
        return
    finite = values[np.isfinite(values)]
    low = float(finite.min()) if finite.size else float('nan')
    high = float(finite.max()) if finite.size else float('nan')
    bad = ~np.isfinite(values) | (values < 0.0)
    if upper is not None:
        bad |= values > upper
    if np.any(bad):
        bounds = f"[0, {upper:g}]" if upper is not None else "[0, inf)"
        raise RateRangeError(
            name, low, high,
            f"vital rate '{name}' must lie in {bounds}; "
            f"{int(np.count_nonzero(bad))} value(s) outside (min={low:.6g}, "
            f"max={high:.6g})",
        )


def evaluate_rate(rate, N: np.ndarray, context: RateContext,
                  upper: Optional[float] = 1.0) -> np.ndarray:
    """Evaluate a VitalRate, broadcast to (n, G) and range-check it."""
    values = broadcast_rate(rate.rate(N, context), N.shape[0], N.shape[1],
                            rate.name)
    _check_range(values, rate.name, upper)
    return values


def pollen_composition(P: np.ndarray) -> np.ndarray:
    """Row-normalise pollen flux; rows with no pollen become zero."""
    total = P.sum(axis=1, keepdims=True)
    return np.divide(P, total, out=np.zeros_like(P), where=total > 0)


@contextmanager
def _stage(stage: Stage, generation: int, perf):
    timer = perf.track(stage.value) if perf is not None else nullcontext()
    with timer:
        try:
            yield
        except GenerationError:
            raise
        except Exception as exc:
            raise GenerationError(stage.value, generation, exc) from exc


# ═══════════════════════════════════════════════════════════════════════
# ONE GENERATION
# ═══════════════════════════════════════════════════════════════════════

def generation(
    population: Population,
    demography: Demography,
    carrying_capacity,
    rng: Optional[np.random.Generator] = None,
    stochastic: bool = True,
    generation_index: int = 0,
    perf=None,
) -> np.ndarray:
    """Advance abundance by one generation.

    Args:
        population: Current population (N is n_habitable × G).
        demography: Transition rule; bound → matrix backend, unbound →
            raster backend.
        carrying_capacity: Non-negative value per habitable cell.
        rng: Generator for the sampling stages. A fresh unseeded one is
            used when stochastic and none is given.
        stochastic: If False, every draw is replaced by its expectation.
        generation_index: Reported in errors and passed to vital rates.
        perf: Optional PerfMonitor.

    Returns:
        New abundance matrix with the same shape as N: int64 when
        stochastic, float64 in expectation mode.

    Raises:
        ConfigurationError: Before any stage, for genotype or capacity
            mismatches.
        GeometryMismatchError: Bound demography realized for another
            landscape.
        GenerationError: A stage failed.
    """
    N = population.abundance
    G = N.shape[1]
    if G != demography.mating.n_genotypes:
        raise ConfigurationError(
            f"abundance has {G} genotype columns but the mating tensor "
            f"has {demography.mating.n_genotypes}"
        )
    demography.check_population(population)
    landscape = population.landscape
    K_cap = check_carrying_capacity(carrying_capacity, landscape.n_habitable)
    demography.check_landscape(landscape)

    draw_rng = None
    if stochastic:
        draw_rng = rng if rng is not None else make_rng()

    context = RateContext(population=population, carrying_capacity=K_cap,
                          generation=generation_index)
    n_cells = N.shape[0]

    with _stage(Stage.SEEDERS, generation_index, perf):
        p_seed = evaluate_rate(demography.prob_seed, N, context)
        M = binomial_draw(N, p_seed, draw_rng).astype(np.float64)

    with _stage(Stage.POLLEN, generation_index, perf):
        P = demography.pollen_migration.apply(M, landscape, IndexSpace.HABITABLE)
        P_frac = pollen_composition(np.maximum(P, 0.0))

    with _stage(Stage.SEEDS, generation_index, perf):
        fecundity = evaluate_rate(demography.fecundity, N, context, upper=None)
        S = demography.mating.offspring(M * fecundity, P_frac)

    with _stage(Stage.DISPERSAL, generation_index, perf):
        SD = demography.seed_migration.apply(S, landscape, IndexSpace.HABITABLE)
        SD = np.maximum(SD, 0.0)

    with _stage(Stage.GERMINATION, generation_index, perf):
        p_germ = evaluate_rate(demography.prob_germination, N, context)

    with _stage(Stage.RECRUITMENT, generation_index, perf):
        recruits = poisson_draw(SD * p_germ, draw_rng)

    with _stage(Stage.SURVIVAL, generation_index, perf):
        p_surv = evaluate_rate(demography.prob_survival, N, context)
        survivors = binomial_draw(N, p_surv, draw_rng)
        N_next = survivors + recruits

    if perf is not None:
        perf.tick()
    logger.debug(
        "generation %d: %d cells, seeders=%.6g seeds=%.6g recruits=%.6g "
        "total=%.6g", generation_index, n_cells, M.sum(), S.sum(),
        np.sum(recruits), np.sum(N_next),
    )
    if draw_rng is None:
        return np.asarray(N_next, dtype=np.float64)
    return np.asarray(N_next, dtype=np.int64)


# ═══════════════════════════════════════════════════════════════════════
# ENGINE
# ═══════════════════════════════════════════════════════════════════════

class Engine:
    """Generation stepper holding demography, capacity, rng and backend.

    Usage:
        engine = Engine(demography, K, rng=rngs['simulation'])
        pop = engine.step(pop)
    """

    def __init__(
        self,
        demography: Demography,
        carrying_capacity: CapacityLike,
        rng: Optional[np.random.Generator] = None,
        backend: str = 'matrix',
        stochastic: bool = True,
        perf=None,
    ):
        if backend not in BACKENDS:
            raise ConfigurationError(
                f"backend must be one of {BACKENDS}, got '{backend}'"
            )
        self.demography = demography
        self.carrying_capacity = carrying_capacity
        self.rng = rng
        self.backend = backend
        self.stochastic = stochastic
        self.perf = perf
        self.generation = 0
        self._prepared: Optional[Demography] = None
        self._fingerprint: Optional[str] = None

    def capacity_at(self, generation_index: int):
        if callable(self.carrying_capacity):
            return self.carrying_capacity(generation_index)
        return self.carrying_capacity

    def prepare(self, population: Population) -> Demography:
        """Demography in the backend's form for `population`'s landscape.

        The matrix backend binds once per landscape; later calls with a
        population on the same landscape reuse the bound operators.
        """
        fingerprint = population.landscape.fingerprint
        if self._prepared is not None and self._fingerprint == fingerprint:
            return self._prepared
        self.demography.check_population(population)
        if self.backend == 'matrix':
            prepared = self.demography.bind(population, perf=self.perf)
        else:
            prepared = self.demography.unbind()
        self._prepared = prepared
        self._fingerprint = fingerprint
        return prepared

    def step(self, population: Population) -> Population:
        """One generation; returns the next Population."""
        demography = self.prepare(population)
        N_next = generation(
            population,
            demography,
            self.capacity_at(self.generation),
            rng=self.rng,
            stochastic=self.stochastic,
            generation_index=self.generation,
            perf=self.perf,
        )
        self.generation += 1
        return population.with_abundance(N_next)

    def run(self, population: Population, n_generations: int) -> Population:
        if n_generations < 0:
            raise ValueError(f"n_generations must be >= 0, got {n_generations}")
        for _ in range(n_generations):
            population = self.step(population)
        return population
