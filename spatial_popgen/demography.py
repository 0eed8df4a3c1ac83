"""Demography: the bundle of rates, operators and mating rule for one model.

Fields:
  prob_seed, fecundity, prob_germination, prob_survival   VitalRate / constant
  pollen_migration, seed_migration                        migration operator
  genotypes                                               ordered names (G)
  mating                                                  G × G × G MatingTensor

A Demography is immutable. bind(population) returns a new, bound
Demography (matrix backend): every operator realized for the
population's landscape and every vital rate bound. Binding is
idempotent for the same landscape; the unbound original stays usable
with the raster backend.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from typing import Any, Dict, Tuple, Union

import numpy as np

from spatial_popgen.errors import ConfigurationError
from spatial_popgen.landscape import Landscape
from spatial_popgen.mating import MatingTensor
from spatial_popgen.migration import (
    MigrationOperator,
    RealizedMigration,
    realize_once,
)
from spatial_popgen.vital_rates import VitalRate, as_vital_rate

Operator = Union[MigrationOperator, RealizedMigration]

RATE_FIELDS = ('prob_seed', 'fecundity', 'prob_germination', 'prob_survival')
OPERATOR_FIELDS = ('pollen_migration', 'seed_migration')


@dataclass(frozen=True, eq=False)
class Demography:
    """Named configuration of one generation's transition rule."""
    genotypes: Tuple[str, ...]
    mating: MatingTensor
    pollen_migration: Operator
    seed_migration: Operator
    prob_seed: Any = 1.0
    fecundity: Any = 1.0
    prob_germination: Any = 1.0
    prob_survival: Any = 0.0
    name: str = 'demography'

    def __post_init__(self):
        genotypes = tuple(str(g) for g in self.genotypes)
        object.__setattr__(self, 'genotypes', genotypes)
        G = len(genotypes)
        if G == 0 or len(set(genotypes)) != G:
            raise ConfigurationError(
                f"demography genotypes must be non-empty and unique, got {genotypes}"
            )

        mating = self.mating
        if not isinstance(mating, MatingTensor):
            mating = MatingTensor(genotypes, mating)
            object.__setattr__(self, 'mating', mating)
        if mating.genotypes != genotypes:
            raise ConfigurationError(
                f"mating tensor genotypes {list(mating.genotypes)} do not "
                f"match demography genotypes {list(genotypes)}"
            )

        for key in OPERATOR_FIELDS:
            op = getattr(self, key)
            if not isinstance(op, (MigrationOperator, RealizedMigration)):
                raise ConfigurationError(
                    f"{key} must be a MigrationOperator, got {type(op).__name__}"
                )

        for key in RATE_FIELDS:
            rate = as_vital_rate(getattr(self, key), name=key)
            selection = rate.params.get('selection')
            if selection is not None and np.size(selection) != G:
                raise ConfigurationError(
                    f"{key}: {np.size(selection)} selection multipliers for "
                    f"{G} genotypes"
                )
            object.__setattr__(self, key, rate)

    # ── Accessors ────────────────────────────────────────────────────

    @property
    def n_genotypes(self) -> int:
        return len(self.genotypes)

    def vital_rates(self) -> Dict[str, VitalRate]:
        return {key: getattr(self, key) for key in RATE_FIELDS}

    def operators(self) -> Dict[str, Operator]:
        ops: Dict[str, Operator] = {key: getattr(self, key) for key in OPERATOR_FIELDS}
        for key, rate in self.vital_rates().items():
            for pname, op in rate.operators().items():
                ops[f"{key}.{pname}"] = op
        return ops

    @property
    def is_bound(self) -> bool:
        return all(op.is_realized for op in self.operators().values())

    # ── Validation ───────────────────────────────────────────────────

    def check_population(self, population) -> None:
        """Raises ConfigurationError unless genotype lists agree."""
        if tuple(population.genotypes) != self.genotypes:
            raise ConfigurationError(
                f"population genotypes {list(population.genotypes)} do not "
                f"match demography '{self.name}' genotypes {list(self.genotypes)}"
            )

    def check_landscape(self, landscape: Landscape) -> None:
        """Raises GeometryMismatchError if a realized operator doesn't fit."""
        for op in self.operators().values():
            if op.is_realized:
                op.check_landscape(landscape)

    # ── Binding ──────────────────────────────────────────────────────

    def bind(self, population, perf=None) -> 'Demography':
        """Bound copy: operators realized, vital rates bound to `population`."""
        self.check_population(population)
        landscape = population.landscape
        cache: Dict[int, RealizedMigration] = {}
        changes: Dict[str, Any] = {
            key: realize_once(getattr(self, key), landscape, perf=perf, cache=cache)
            for key in OPERATOR_FIELDS
        }
        for key, rate in self.vital_rates().items():
            changes[key] = rate.bind(population, perf=perf, cache=cache)
        return dataclasses.replace(self, **changes)

    def unbind(self) -> 'Demography':
        """Unbound copy using the raster backend."""
        changes: Dict[str, Any] = {key: getattr(self, key).template
                                   for key in OPERATOR_FIELDS}
        for key, rate in self.vital_rates().items():
            changes[key] = rate.unbind()
        return dataclasses.replace(self, **changes)

    def with_rates(self, **updates: Any) -> 'Demography':
        """Copy with some rates / operators replaced."""
        unknown = set(updates) - set(RATE_FIELDS) - set(OPERATOR_FIELDS) - {'name'}
        if unknown:
            raise ConfigurationError(f"unknown demography fields {sorted(unknown)}")
        return dataclasses.replace(self, **updates)

    def __repr__(self) -> str:
        return (f"Demography(name='{self.name}', genotypes={list(self.genotypes)}, "
                f"bound={self.is_bound})")
