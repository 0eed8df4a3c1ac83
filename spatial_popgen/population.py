"""Population state: per-cell, per-genotype abundance on a landscape.

  - Domain: capability interface shared by raster-backed and
    matrix-backed per-cell data (domain_size / read_values / write_values)
  - Population: abundance matrix N (n_habitable × G) + ordered genotypes
  - RasterField: one numeric layer over the full raster (NaN outside
    accessible cells), e.g. for exporting a genotype's abundance

Both are immutable: write_values() returns a new object. The landscape
is shared between a Population and everything derived from it.
"""

from __future__ import annotations

from typing import Dict, Mapping, Optional, Protocol, Sequence, Union

import numpy as np

from spatial_popgen.errors import ConfigurationError
from spatial_popgen.landscape import Landscape
from spatial_popgen.types import IndexSpace


# ═══════════════════════════════════════════════════════════════════════
# CAPABILITY INTERFACE
# ═══════════════════════════════════════════════════════════════════════

class Domain(Protocol):
    """Per-cell data whose callers need not know its index space."""

    def domain_size(self) -> int: ...

    def read_values(self) -> np.ndarray: ...

    def write_values(self, values: np.ndarray) -> 'Domain': ...


# ═══════════════════════════════════════════════════════════════════════
# POPULATION (matrix-backed)
# ═══════════════════════════════════════════════════════════════════════

def _check_genotypes(genotypes: Sequence[str]) -> tuple:
    names = tuple(str(g) for g in genotypes)
    if len(names) == 0:
        raise ConfigurationError("genotype list must not be empty")
    if len(set(names)) != len(names):
        raise ConfigurationError(f"duplicate genotype names in {names}")
    return names


class Population:
    """Genotype-structured abundance over the habitable cells.

    Attributes:
        landscape: Spatial domain (immutable).
        genotypes: Ordered genotype names; order fixes column order.
        abundance: (n_habitable, G) non-negative array.
    """

    def __init__(
        self,
        landscape: Landscape,
        genotypes: Sequence[str],
        abundance: Optional[np.ndarray] = None,
    ):
        self.landscape = landscape
        self.genotypes = _check_genotypes(genotypes)
        shape = (landscape.n_habitable, len(self.genotypes))
        if abundance is None:
            N = np.zeros(shape, dtype=np.int64)
        else:
            N = np.array(abundance)
            if N.ndim == 1 and len(self.genotypes) == 1:
                N = N.reshape(-1, 1)
        self._abundance = self._validate(N, shape)

    @staticmethod
    def _validate(N: np.ndarray, shape) -> np.ndarray:
        if N.shape != shape:
            raise ConfigurationError(
                f"abundance must have shape (n_habitable, G) = {shape}, "
                f"got {N.shape}"
            )
        if not np.issubdtype(N.dtype, np.number):
            raise ConfigurationError(f"abundance must be numeric, got {N.dtype}")
        if np.issubdtype(N.dtype, np.floating) and not np.all(np.isfinite(N)):
            raise ConfigurationError("abundance contains non-finite values")
        if np.any(N < 0):
            raise ConfigurationError("abundance must be non-negative")
        N.flags.writeable = False
        return N

    # ── Constructors ─────────────────────────────────────────────────

    @classmethod
    def uniform(
        cls,
        landscape: Landscape,
        genotypes: Sequence[str],
        per_cell: Union[int, float, Sequence[float]] = 0,
    ) -> 'Population':
        """Same abundance in every habitable cell.

        Args:
            per_cell: Scalar (all genotypes) or one value per genotype.
        """
        genotypes = _check_genotypes(genotypes)
        per_cell = np.asarray(per_cell)
        if per_cell.ndim > 1 or per_cell.size not in (1, len(genotypes)):
            raise ConfigurationError(
                f"per_cell must be a scalar or one value per genotype "
                f"({len(genotypes)}), got shape {per_cell.shape}"
            )
        row = np.broadcast_to(per_cell.ravel(), (len(genotypes),))
        N = np.tile(row, (landscape.n_habitable, 1))
        return cls(landscape, genotypes, N)

    @classmethod
    def from_rasters(
        cls,
        landscape: Landscape,
        genotypes: Sequence[str],
        layers: Union[Mapping[str, np.ndarray], Sequence[np.ndarray]],
    ) -> 'Population':
        """Initial abundance from one raster layer per genotype.

        NaN cells read as 0; only habitable cells are kept.
        """
        genotypes = _check_genotypes(genotypes)
        if isinstance(layers, Mapping):
            missing = [g for g in genotypes if g not in layers]
            if missing:
                raise ConfigurationError(f"no raster layer for genotypes {missing}")
            arrays = [layers[g] for g in genotypes]
        else:
            arrays = list(layers)
            if len(arrays) != len(genotypes):
                raise ConfigurationError(
                    f"got {len(arrays)} layers for {len(genotypes)} genotypes"
                )
        cols = []
        for a in arrays:
            a = np.asarray(a)
            if a.shape != landscape.shape:
                raise ConfigurationError(
                    f"layer shape {a.shape} != landscape shape {landscape.shape}"
                )
            cols.append(np.nan_to_num(a.ravel()[landscape.habitable_index], nan=0.0))
        N = np.column_stack(cols)
        if np.all(np.mod(N, 1) == 0):
            N = N.astype(np.int64)
        return cls(landscape, genotypes, N)

    # ── Accessors ────────────────────────────────────────────────────

    @property
    def abundance(self) -> np.ndarray:
        return self._abundance

    @property
    def n_genotypes(self) -> int:
        return len(self.genotypes)

    @property
    def n_cells(self) -> int:
        return self.landscape.n_habitable

    def genotype_index(self, genotype: str) -> int:
        try:
            return self.genotypes.index(genotype)
        except ValueError:
            raise KeyError(
                f"unknown genotype '{genotype}'; have {list(self.genotypes)}"
            ) from None

    def totals(self) -> np.ndarray:
        """Per-genotype total abundance, shape (G,)."""
        return self._abundance.sum(axis=0)

    def total(self) -> float:
        return float(self._abundance.sum())

    def density(self) -> np.ndarray:
        """Total abundance per habitable cell, shape (n_habitable,)."""
        return self._abundance.sum(axis=1)

    # ── Domain interface ─────────────────────────────────────────────

    def domain_size(self) -> int:
        return self.landscape.n_habitable

    def read_values(self) -> np.ndarray:
        return self._abundance.copy()

    def write_values(self, values: np.ndarray) -> 'Population':
        """New Population on the same landscape with N replaced wholesale."""
        return Population(self.landscape, self.genotypes, values)

    with_abundance = write_values

    def to_raster(self, genotype: Optional[str] = None) -> 'RasterField':
        """Abundance of one genotype (or all, if None) as a raster field."""
        if genotype is None:
            col = self.density()
        else:
            col = self._abundance[:, self.genotype_index(genotype)]
        flat = self.landscape.transfer(col.astype(np.float64),
                                       IndexSpace.HABITABLE,
                                       IndexSpace.RASTER)
        flat[~self.landscape.accessible.ravel()] = np.nan
        return RasterField(self.landscape, flat)

    def summary(self) -> Dict[str, float]:
        return {g: float(t) for g, t in zip(self.genotypes, self.totals())}

    def __repr__(self) -> str:
        return (f"Population(genotypes={list(self.genotypes)}, "
                f"cells={self.n_cells}, total={self.total():g})")


# ═══════════════════════════════════════════════════════════════════════
# RASTER FIELD (raster-backed)
# ═══════════════════════════════════════════════════════════════════════

class RasterField:
    """Single numeric layer over every raster cell.

    Inaccessible cells hold NaN (the missing marker), distinct from 0.
    """

    def __init__(self, landscape: Landscape, values: np.ndarray):
        values = np.array(values, dtype=np.float64).ravel()
        if values.size != landscape.n_cells:
            raise ConfigurationError(
                f"raster field needs {landscape.n_cells} values, got {values.size}"
            )
        values[~landscape.accessible.ravel()] = np.nan
        values.flags.writeable = False
        self.landscape = landscape
        self._values = values

    @property
    def grid(self) -> np.ndarray:
        return self._values.reshape(self.landscape.shape)

    def domain_size(self) -> int:
        return self.landscape.n_cells

    def read_values(self) -> np.ndarray:
        return self._values.copy()

    def write_values(self, values: np.ndarray) -> 'RasterField':
        return RasterField(self.landscape, values)

    def habitable_values(self) -> np.ndarray:
        """Values at habitable cells (index space HABITABLE)."""
        return self._values[self.landscape.habitable_index].copy()
