"""Vital rates: parameter records with a pure evaluation function.

A VitalRate is a tagged record:
    name:     label used in error messages
    params:   dict of named parameters (plain values or MigrationOperators)
    evaluate: pure f(params, N, context) -> rate

Parameters live in the record, not in a closure: updating
`rate.params['r0']` changes the next evaluation. bind(population)
returns a new record whose migration operators are realized for the
population's landscape (re-derived from the unrealized template, so a
bound rate can be re-bound to another landscape).

Rate shapes accepted by the engine (n = habitable cells, G = genotypes):
  scalar, (n,) per cell, (G,) per genotype, (1, G), (n, G).
If n == G a 1-D rate is read per cell.

Builders:
  constant(value)
  beverton_holt(r0, competition, selection)        rate = r0·s_g / (1 + C/K)
  soft_selection(r0, competition, selection)       per-cell mean multiplier = 1
  density_dependent_survival(s_max, competition)   s_max / (1 + C/K)
where C is the competition-operator smoothing of total abundance and K
the carrying capacity. K = 0 gives rate 0 (NumericDegeneracyWarning).
"""

from __future__ import annotations

import warnings
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Sequence, Union

import numpy as np

from spatial_popgen.errors import ConfigurationError, NumericDegeneracyWarning
from spatial_popgen.migration import (
    MigrationOperator,
    RealizedMigration,
    realize_once,
)
from spatial_popgen.types import IndexSpace, RateContext

RateFunction = Callable[[Dict[str, Any], np.ndarray, RateContext], Any]
Operator = Union[MigrationOperator, RealizedMigration]


@dataclass(eq=False)
class VitalRate:
    """Parameter record + pure evaluation function."""
    name: str
    evaluate: RateFunction
    params: Dict[str, Any] = field(default_factory=dict)

    def rate(self, N: np.ndarray, context: RateContext) -> np.ndarray:
        """Evaluate against abundance N (n_habitable × G)."""
        return np.asarray(self.evaluate(self.params, N, context),
                          dtype=np.float64)

    __call__ = rate

    def with_params(self, **updates: Any) -> 'VitalRate':
        params = dict(self.params)
        params.update(updates)
        return VitalRate(name=self.name, evaluate=self.evaluate, params=params)

    def operators(self) -> Dict[str, Operator]:
        return {k: v for k, v in self.params.items()
                if isinstance(v, (MigrationOperator, RealizedMigration))}

    @property
    def is_bound(self) -> bool:
        return all(op.is_realized for op in self.operators().values())

    def bind(self, population, perf=None,
             cache: Optional[Dict[int, RealizedMigration]] = None) -> 'VitalRate':
        """New record with every embedded operator realized for `population`.

        `cache` (keyed by template id) shares realizations between rates.
        """
        landscape = population.landscape
        params = dict(self.params)
        for key, op in self.operators().items():
            params[key] = realize_once(op, landscape, perf=perf, cache=cache)
        return VitalRate(name=self.name, evaluate=self.evaluate, params=params)

    def unbind(self) -> 'VitalRate':
        """New record with operators back in their unrealized form."""
        params = dict(self.params)
        for key, op in self.operators().items():
            params[key] = op.template
        return VitalRate(name=self.name, evaluate=self.evaluate, params=params)


def as_vital_rate(value: Any, name: str = 'constant') -> VitalRate:
    """Wrap a constant (scalar / array) as a VitalRate; pass rates through."""
    if isinstance(value, VitalRate):
        return value
    if callable(value):
        raise ConfigurationError(
            f"'{name}': wrap rate functions in VitalRate(name, evaluate, params)"
        )
    return constant(value, name=name)


# ═══════════════════════════════════════════════════════════════════════
# EVALUATION FUNCTIONS
# ═══════════════════════════════════════════════════════════════════════

def _constant(params, N, context):
    return params['value']


def competition_pressure(op: Optional[Operator], N: np.ndarray,
                         context: RateContext) -> np.ndarray:
    """Spatially smoothed total abundance at each habitable cell."""
    total = np.asarray(N, dtype=np.float64).sum(axis=1)
    if op is None:
        return total
    return op.apply(total, context.population.landscape, IndexSpace.HABITABLE)


def saturating_rate(r0: Any, pressure: np.ndarray,
                    capacity: Optional[np.ndarray]) -> np.ndarray:
    """Beverton-Holt form r0 / (1 + pressure / K), 0 where K == 0.

    Analogous to settler recruitment R = S·s0 / (1 + S/K).
    """
    if capacity is None:
        raise ConfigurationError(
            "density-dependent rate needs a carrying_capacity field"
        )
    K = np.asarray(capacity, dtype=np.float64)
    zero = K <= 0.0
    n_zero = int(np.count_nonzero(zero))
    if n_zero:
        warnings.warn(
            f"{n_zero} cell(s) with zero carrying capacity; rate set to 0",
            NumericDegeneracyWarning,
            stacklevel=3,
        )
    ratio = np.divide(pressure, K, out=np.zeros_like(K), where=~zero)
    rate = np.asarray(r0, dtype=np.float64) / (1.0 + ratio)
    return np.where(zero, 0.0, rate)


def _beverton_holt(params, N, context):
    base = saturating_rate(
        params['r0'],
        competition_pressure(params.get('competition'), N, context),
        context.carrying_capacity,
    )
    selection = params.get('selection')
    if selection is None:
        return base
    return base[:, None] * np.asarray(selection, dtype=np.float64)[None, :]


def _soft_selection(params, N, context):
    base = saturating_rate(
        params['r0'],
        competition_pressure(params.get('competition'), N, context),
        context.carrying_capacity,
    )
    w = np.asarray(params['selection'], dtype=np.float64)
    N = np.asarray(N, dtype=np.float64)
    n_local = N.sum(axis=1)
    # Empty cells use the unweighted mean multiplier
    w_bar = np.full(N.shape[0], w.mean())
    occupied = n_local > 0
    w_bar[occupied] = (N[occupied] @ w) / n_local[occupied]
    if np.any(w_bar <= 0):
        raise ConfigurationError(
            f"'{params.get('label', 'soft_selection')}': mean selection "
            f"multiplier must be positive in every cell"
        )
    return base[:, None] * w[None, :] / w_bar[:, None]


# ═══════════════════════════════════════════════════════════════════════
# BUILDERS
# ═══════════════════════════════════════════════════════════════════════

def constant(value: Any, name: str = 'constant') -> VitalRate:
    """Constant rate: scalar, per-cell vector, or per-genotype vector.

    Pass per-genotype values as a (1, G) row when the habitable cell
    count may equal G; a 1-D vector is then read per cell.
    """
    arr = np.asarray(value, dtype=np.float64)
    if not np.all(np.isfinite(arr)):
        raise ConfigurationError(f"'{name}': constant rate must be finite")
    return VitalRate(name=name, evaluate=_constant, params={'value': arr})


def _check_selection(selection: Optional[Sequence[float]],
                     name: str) -> Optional[np.ndarray]:
    if selection is None:
        return None
    s = np.asarray(selection, dtype=np.float64)
    if s.ndim != 1 or np.any(~np.isfinite(s)) or np.any(s < 0):
        raise ConfigurationError(
            f"'{name}': selection multipliers must be a 1-D array of "
            f"finite values >= 0"
        )
    return s


def beverton_holt(
    r0: float = 1.0,
    competition: Optional[Operator] = None,
    selection: Optional[Sequence[float]] = None,
    name: str = 'prob_germination',
) -> VitalRate:
    """Density-dependent germination: r0·s_g / (1 + C / K).

    Args:
        r0: Density-independent germination probability.
        competition: Operator smoothing total abundance into competition
            pressure C (None: local abundance only).
        selection: Optional per-genotype multipliers s_g (hard selection).
    """
    return VitalRate(name=name, evaluate=_beverton_holt, params={
        'r0': float(r0),
        'competition': competition,
        'selection': _check_selection(selection, name),
    })


def soft_selection(
    r0: float,
    competition: Optional[Operator],
    selection: Sequence[float],
    name: str = 'prob_germination',
) -> VitalRate:
    """Beverton-Holt germination with soft selection.

    Genotype multipliers are rescaled in each cell by their
    abundance-weighted mean, so selection changes genotype composition
    but not the local number of recruits.
    """
    sel = _check_selection(selection, name)
    if sel is None:
        raise ConfigurationError(f"'{name}': soft selection needs multipliers")
    return VitalRate(name=name, evaluate=_soft_selection, params={
        'r0': float(r0),
        'competition': competition,
        'selection': sel,
        'label': name,
    })


def density_dependent_survival(
    s_max: float = 1.0,
    competition: Optional[Operator] = None,
    name: str = 'prob_survival',
) -> VitalRate:
    """Adult survival s_max / (1 + C / K)."""
    return VitalRate(name=name, evaluate=_beverton_holt, params={
        'r0': float(s_max),
        'competition': competition,
        'selection': None,
    })
