"""Mating tensor: offspring-genotype distribution for each parental pair.

T[i, j, k] = P(offspring genotype k | seed parent i, pollen parent j)

Invariant: Σ_k T[i, j, k] = 1 for every (i, j). Symmetry in (i, j) is
expected for Mendelian models but not enforced.

Builders:
  - MatingTensor.single(name):   one genotype, T = [[[1]]]
  - MatingTensor.clonal(names):  offspring copy the seed parent
  - MatingTensor.diploid(alleles): one locus, Mendelian segregation,
      genotypes are unordered allele pairs ("aa", "aA", "AA" for 2 alleles)
"""

from __future__ import annotations

from itertools import combinations_with_replacement
from typing import Sequence, Tuple

import numpy as np

from spatial_popgen.errors import ConfigurationError

_ROW_SUM_ATOL = 1e-9


class MatingTensor:
    """Validated G × G × G offspring probability table."""

    def __init__(self, genotypes: Sequence[str], table: np.ndarray,
                 atol: float = _ROW_SUM_ATOL):
        names = tuple(str(g) for g in genotypes)
        if len(names) == 0 or len(set(names)) != len(names):
            raise ConfigurationError(
                f"mating tensor genotypes must be non-empty and unique, got {names}"
            )
        T = np.array(table, dtype=np.float64)
        G = len(names)
        if T.shape != (G, G, G):
            raise ConfigurationError(
                f"mating tensor must have shape ({G}, {G}, {G}) for "
                f"{G} genotypes, got {T.shape}"
            )
        if not np.all(np.isfinite(T)) or np.any(T < 0):
            raise ConfigurationError(
                "mating tensor entries must be finite probabilities >= 0"
            )
        sums = T.sum(axis=2)
        bad = np.argwhere(np.abs(sums - 1.0) > atol)
        if bad.size:
            i, j = bad[0]
            raise ConfigurationError(
                f"mating tensor offspring probabilities must sum to 1; "
                f"parents ({names[i]}, {names[j]}) sum to {sums[i, j]:.12g} "
                f"({len(bad)} bad pair(s))"
            )
        T.flags.writeable = False
        self.genotypes: Tuple[str, ...] = names
        self.table = T

    @property
    def n_genotypes(self) -> int:
        return len(self.genotypes)

    def is_symmetric(self, atol: float = 1e-12) -> bool:
        return bool(np.allclose(self.table, self.table.transpose(1, 0, 2),
                                atol=atol))

    def offspring(self, seeders: np.ndarray, pollen: np.ndarray) -> np.ndarray:
        """Bilinear form S[c, k] = Σ_ij seeders[c, i] · pollen[c, j] · T[i, j, k].

        Args:
            seeders: (n_cells, G) seed-parent weights (e.g. seeds produced).
            pollen: (n_cells, G) pollen-parent composition.

        Returns:
            (n_cells, G) expected offspring per genotype.
        """
        return np.einsum('ci,cj,ijk->ck', seeders, pollen, self.table)

    # ── Builders ─────────────────────────────────────────────────────

    @classmethod
    def single(cls, genotype: str = 'aa') -> 'MatingTensor':
        return cls([genotype], np.ones((1, 1, 1)))

    @classmethod
    def clonal(cls, genotypes: Sequence[str]) -> 'MatingTensor':
        """Offspring inherit the seed parent's genotype."""
        G = len(genotypes)
        T = np.zeros((G, G, G))
        for i in range(G):
            T[i, :, i] = 1.0
        return cls(genotypes, T)

    @classmethod
    def diploid(cls, alleles: Sequence[str] = ('a', 'A')) -> 'MatingTensor':
        """One-locus diploid Mendelian tensor.

        Genotypes are unordered allele pairs in allele order, e.g.
        ('a', 'A') → ('aa', 'aA', 'AA').
        """
        alleles = tuple(str(a) for a in alleles)
        if len(alleles) == 0 or len(set(alleles)) != len(alleles):
            raise ConfigurationError(f"alleles must be unique, got {alleles}")
        pairs = list(combinations_with_replacement(range(len(alleles)), 2))
        names = [alleles[a] + alleles[b] for a, b in pairs]
        index = {p: k for k, p in enumerate(pairs)}
        n_alleles = len(alleles)

        # Gamete distribution of each genotype
        gametes = np.zeros((len(pairs), n_alleles))
        for g, (a, b) in enumerate(pairs):
            gametes[g, a] += 0.5
            gametes[g, b] += 0.5

        G = len(pairs)
        T = np.zeros((G, G, G))
        for i in range(G):
            for j in range(G):
                for x in range(n_alleles):
                    for y in range(n_alleles):
                        p = gametes[i, x] * gametes[j, y]
                        if p > 0:
                            T[i, j, index[(min(x, y), max(x, y))]] += p
        return cls(names, T)

    def __repr__(self) -> str:
        return f"MatingTensor(genotypes={list(self.genotypes)})"
