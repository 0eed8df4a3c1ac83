"""Raster landscape: geometry plus accessible / habitable cell sets.

A Landscape wraps one habitat raster:
  - NaN (or nodata) cells are inaccessible: migrants never land there
  - finite cells are accessible
  - accessible cells with value > habitable_threshold are habitable

HABITABLE ⊆ ACCESSIBLE holds by construction. Cell indices are flat
row-major raster indices; accessible and habitable cells keep raster
order, so the habitable cells are a sorted subsequence of the
accessible ones.

Raster file reading (rasterio) is a thin scoped helper: the file is
opened, one band read, and closed before any simulation starts.
"""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Optional, Tuple, Union

import numpy as np

from spatial_popgen.errors import ConfigurationError
from spatial_popgen.types import IndexSpace


class Landscape:
    """Immutable raster geometry with accessible and habitable masks."""

    def __init__(
        self,
        values: np.ndarray,
        resolution: Union[float, Tuple[float, float]] = 1.0,
        origin: Tuple[float, float] = (0.0, 0.0),
        habitable_threshold: float = 0.0,
        accessible: Optional[np.ndarray] = None,
        habitable: Optional[np.ndarray] = None,
    ):
        values = np.array(values, dtype=np.float64)
        if values.ndim != 2 or values.size == 0:
            raise ConfigurationError(
                f"landscape values must be a non-empty 2-D array, "
                f"got shape {values.shape}"
            )
        if np.ndim(resolution) == 0:
            resolution = (float(resolution), float(resolution))
        x_res, y_res = abs(float(resolution[0])), abs(float(resolution[1]))
        if x_res <= 0 or y_res <= 0:
            raise ConfigurationError(
                f"cell resolution must be positive, got {resolution}"
            )

        if accessible is None:
            accessible = np.isfinite(values)
        if habitable is None:
            with np.errstate(invalid='ignore'):
                habitable = accessible & (np.nan_to_num(values, nan=-np.inf)
                                          > habitable_threshold)
        accessible = np.array(accessible, dtype=bool)
        habitable = np.array(habitable, dtype=bool)
        if accessible.shape != values.shape or habitable.shape != values.shape:
            raise ConfigurationError("mask shapes must match the raster shape")
        if np.any(habitable & ~accessible):
            raise ConfigurationError(
                "habitable cells must be a subset of accessible cells"
            )

        self._values = values
        self._values.flags.writeable = False
        self.resolution = (x_res, y_res)
        self.origin = (float(origin[0]), float(origin[1]))
        self.habitable_threshold = float(habitable_threshold)
        self._accessible = accessible
        self._accessible.flags.writeable = False
        self._habitable = habitable
        self._habitable.flags.writeable = False

        flat_acc = accessible.ravel()
        flat_hab = habitable.ravel()
        self.accessible_index = np.flatnonzero(flat_acc)
        self.habitable_index = np.flatnonzero(flat_hab)
        # Position of each habitable cell within the accessible ordering
        self.habitable_in_accessible = np.flatnonzero(flat_hab[flat_acc])
        self._fingerprint: Optional[str] = None

    # ── Constructors ─────────────────────────────────────────────────

    @classmethod
    def from_array(
        cls,
        values: np.ndarray,
        resolution: Union[float, Tuple[float, float]] = 1.0,
        origin: Tuple[float, float] = (0.0, 0.0),
        habitable_threshold: float = 0.0,
    ) -> 'Landscape':
        """Build from a habitat array; NaN marks inaccessible cells."""
        return cls(values, resolution=resolution, origin=origin,
                   habitable_threshold=habitable_threshold)

    @classmethod
    def from_masks(
        cls,
        accessible: np.ndarray,
        habitable: np.ndarray,
        resolution: Union[float, Tuple[float, float]] = 1.0,
        origin: Tuple[float, float] = (0.0, 0.0),
    ) -> 'Landscape':
        """Build from explicit boolean masks (habitat value 1 / 0 / NaN)."""
        accessible = np.asarray(accessible, dtype=bool)
        habitable = np.asarray(habitable, dtype=bool)
        values = np.where(accessible, habitable.astype(np.float64), np.nan)
        return cls(values, resolution=resolution, origin=origin,
                   accessible=accessible, habitable=habitable)

    @classmethod
    def from_file(
        cls,
        path: Union[str, Path],
        band: int = 1,
        habitable_threshold: float = 0.0,
    ) -> 'Landscape':
        """Read one raster band with rasterio; nodata cells become NaN.

        Raises:
            FileNotFoundError: If path doesn't exist.
        """
        import rasterio

        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Raster file not found: {path}")
        with rasterio.open(path) as src:
            data = src.read(band, masked=True).astype(np.float64)
            values = np.ma.filled(data, np.nan)
            resolution = src.res
            origin = (src.transform.c, src.transform.f)
        return cls(values, resolution=resolution, origin=origin,
                   habitable_threshold=habitable_threshold)

    # ── Sizes & masks ────────────────────────────────────────────────

    @property
    def shape(self) -> Tuple[int, int]:
        return self._values.shape

    @property
    def values(self) -> np.ndarray:
        return self._values

    @property
    def accessible(self) -> np.ndarray:
        return self._accessible

    @property
    def habitable(self) -> np.ndarray:
        return self._habitable

    @property
    def n_cells(self) -> int:
        return int(self._values.size)

    @property
    def n_accessible(self) -> int:
        return int(self.accessible_index.size)

    @property
    def n_habitable(self) -> int:
        return int(self.habitable_index.size)

    def size(self, space: IndexSpace) -> int:
        if space == IndexSpace.RASTER:
            return self.n_cells
        if space == IndexSpace.ACCESSIBLE:
            return self.n_accessible
        return self.n_habitable

    def index(self, space: IndexSpace) -> np.ndarray:
        """Flat raster indices of the cells in an index space."""
        if space == IndexSpace.RASTER:
            return np.arange(self.n_cells)
        if space == IndexSpace.ACCESSIBLE:
            return self.accessible_index
        return self.habitable_index

    @property
    def fingerprint(self) -> str:
        """SHA-256 tag of the raster geometry and accessible-cell layout."""
        if self._fingerprint is None:
            h = hashlib.sha256()
            h.update(np.asarray(self.shape, dtype=np.int64).tobytes())
            h.update(np.asarray(self.resolution, dtype=np.float64).tobytes())
            h.update(np.packbits(self._accessible.ravel()).tobytes())
            h.update(np.packbits(self._habitable.ravel()).tobytes())
            self._fingerprint = h.hexdigest()
        return self._fingerprint

    # ── Coordinates ──────────────────────────────────────────────────

    def coordinates(self, space: IndexSpace = IndexSpace.RASTER) -> np.ndarray:
        """Cell-centre (x, y) coordinates, shape (n, 2), in map units."""
        idx = self.index(space)
        rows, cols = np.divmod(idx, self.shape[1])
        x = self.origin[0] + (cols + 0.5) * self.resolution[0]
        y = self.origin[1] + (rows + 0.5) * self.resolution[1]
        return np.column_stack([x, y])

    # ── Index-space transfer ─────────────────────────────────────────

    def transfer(
        self,
        values: np.ndarray,
        src: IndexSpace,
        dst: IndexSpace,
        fill: float = 0.0,
    ) -> np.ndarray:
        """Move a per-cell vector or matrix from one index space to another.

        Expanding (e.g. HABITABLE → ACCESSIBLE) fills new cells with
        `fill`; restricting drops cells outside `dst`.

        Raises:
            ConfigurationError: If values.shape[0] != size(src).
        """
        values = np.asarray(values)
        n_src = self.size(src)
        if values.ndim == 0 or values.shape[0] != n_src:
            raise ConfigurationError(
                f"expected {n_src} rows in {src.name} space, "
                f"got shape {values.shape}"
            )
        if src == dst:
            return values.copy()
        if src == IndexSpace.ACCESSIBLE and dst == IndexSpace.HABITABLE:
            return values[self.habitable_in_accessible].copy()
        dtype = np.result_type(values.dtype, np.asarray(fill).dtype)
        raster = np.full((self.n_cells,) + values.shape[1:], fill, dtype=dtype)
        raster[self.index(src)] = values
        return raster[self.index(dst)]

    def to_grid(self, values: np.ndarray, space: IndexSpace,
                fill: float = np.nan) -> np.ndarray:
        """Reshape a per-cell vector into a 2-D raster array."""
        flat = self.transfer(np.asarray(values, dtype=np.float64),
                             space, IndexSpace.RASTER, fill=fill)
        return flat.reshape(self.shape + flat.shape[1:])

    def habitat_values(self) -> np.ndarray:
        """Habitat raster value at each habitable cell."""
        return self._values.ravel()[self.habitable_index].copy()

    def __repr__(self) -> str:
        return (f"Landscape(shape={self.shape}, resolution={self.resolution}, "
                f"accessible={self.n_accessible}, habitable={self.n_habitable})")
