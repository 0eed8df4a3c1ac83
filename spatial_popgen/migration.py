"""Migration operators: kernel-based spatial smoothing.

Two-phase construction:
  - MigrationOperator:  kernel + optional n-step mixture weights.
      Applies lazily as a raster convolution (scipy.ndimage), recomputing
      the neighbour stencil and normalisation on every call.
  - RealizedMigration:  produced by MigrationOperator.realize(landscape).
      Holds a precomputed sparse CSR matrix M (|accessible| × |accessible|)
      tagged with the landscape fingerprint. Realizing never mutates the
      template, so one operator can be realized against many landscapes.

Matrix semantics:
  M[a, b] = kernel(d(a, b))    for accessible a, b with d(a, b) ≤ radius
  M[a, :] *= τ / Σ_b M[a, b]   if normalize=τ and the row sum is > 0
  y = M @ x

With n-step weights (n₁, n₂, …):
  y = (1 − Σ nₖ) x + Σ nₖ Mᵏ x
where Mᵏ x is computed by k successive applications of M.

Both backends give the same y (to floating-point tolerance) for the same
kernel and landscape. The matrix backend pays the neighbour search once;
the raster backend pays it on every call but never materialises M.
"""

from __future__ import annotations

import logging
import time
import warnings
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Sequence, Tuple

import numpy as np
from scipy import ndimage, sparse
from scipy.spatial import cKDTree

from spatial_popgen.errors import (
    ConfigurationError,
    GeometryMismatchError,
    NumericDegeneracyWarning,
)
from spatial_popgen.kernels import Kernel
from spatial_popgen.landscape import Landscape
from spatial_popgen.types import IndexSpace

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════
# WEIGHT MATRIX (matrix backend)
# ═══════════════════════════════════════════════════════════════════════

def build_weight_matrix(kernel: Kernel, landscape: Landscape) -> sparse.csr_matrix:
    """Sparse kernel weight matrix over the accessible cells.

    Neighbour pairs within the radius are found with a k-d tree on
    cell-centre coordinates. Rows with no neighbours are left all-zero
    (with a NumericDegeneracyWarning if normalisation was requested).

    Args:
        kernel: Truncated distance kernel.
        landscape: Landscape whose accessible cells index rows and columns.

    Returns:
        (n_accessible, n_accessible) CSR matrix (float64).
    """
    coords = landscape.coordinates(IndexSpace.ACCESSIBLE)
    n = coords.shape[0]
    if n == 0:
        return sparse.csr_matrix((0, 0), dtype=np.float64)

    tree = cKDTree(coords)
    pairs = tree.query_pairs(kernel.cutoff, output_type='ndarray')
    if pairs.size:
        delta = coords[pairs[:, 0]] - coords[pairs[:, 1]]
        w = kernel.weights(np.hypot(delta[:, 0], delta[:, 1]))
    else:
        pairs = np.empty((0, 2), dtype=np.intp)
        w = np.empty(0, dtype=np.float64)

    # Kernel distance is symmetric: store both (a, b) and (b, a)
    rows = [pairs[:, 0], pairs[:, 1]]
    cols = [pairs[:, 1], pairs[:, 0]]
    data = [w, w]
    if kernel.include_self:
        diag = np.arange(n)
        rows.append(diag)
        cols.append(diag)
        data.append(kernel.weights(np.zeros(n)))

    M = sparse.coo_matrix(
        (np.concatenate(data), (np.concatenate(rows), np.concatenate(cols))),
        shape=(n, n),
    ).tocsr()
    M.eliminate_zeros()

    if kernel.normalize is not None:
        row_sums = np.asarray(M.sum(axis=1)).ravel()
        M = sparse.diags(_row_scale(row_sums, kernel.normalize)) @ M
        M = M.tocsr()
    return M


def _row_scale(row_sums: np.ndarray, target: float) -> np.ndarray:
    """Per-row factor τ / row_sum, 0 for empty rows (warned)."""
    empty = row_sums <= 0.0
    n_empty = int(np.count_nonzero(empty))
    if n_empty:
        warnings.warn(
            f"{n_empty} of {row_sums.size} operator rows have no neighbours "
            f"within the kernel radius; left as zero rows",
            NumericDegeneracyWarning,
            stacklevel=3,
        )
    safe = np.where(empty, 1.0, row_sums)
    return np.where(empty, 0.0, target / safe)


# ═══════════════════════════════════════════════════════════════════════
# RASTER CONVOLUTION (raster backend)
# ═══════════════════════════════════════════════════════════════════════

def convolve_raster(kernel: Kernel, landscape: Landscape,
                    x: np.ndarray) -> np.ndarray:
    """One application of the kernel operator directly on raster cells.

    Inaccessible cells are structurally absent: they contribute nothing,
    are excluded from normalisation, and receive 0 in the output.

    Args:
        kernel: Truncated distance kernel.
        landscape: Raster geometry.
        x: (n_cells,) or (n_cells, k) values in RASTER index space.

    Returns:
        Array with the same shape as x.
    """
    x = np.asarray(x, dtype=np.float64)
    stencil = kernel.stencil(landscape.resolution)
    mask = landscape.accessible.astype(np.float64)
    grid = x.reshape(landscape.shape + x.shape[1:])

    if grid.ndim == 2:
        layers = [grid]
    else:
        layers = [grid[..., c] for c in range(grid.shape[-1])]

    out = [ndimage.correlate(layer * mask, stencil, mode='constant', cval=0.0)
           for layer in layers]

    if kernel.normalize is not None:
        denom = ndimage.correlate(mask, stencil, mode='constant', cval=0.0)
        acc = landscape.accessible
        factor = np.zeros(landscape.shape)
        factor[acc] = _row_scale(denom[acc], kernel.normalize)
        out = [layer * factor for layer in out]

    out = [layer * mask for layer in out]
    y = out[0] if grid.ndim == 2 else np.stack(out, axis=-1)
    return y.reshape(x.shape)


# ═══════════════════════════════════════════════════════════════════════
# N-STEP MIXTURE
# ═══════════════════════════════════════════════════════════════════════

def mix_steps(x: np.ndarray,
              step: Callable[[np.ndarray], np.ndarray],
              n_steps: Optional[Tuple[float, ...]]) -> np.ndarray:
    """(1 − Σ nₖ) x + Σ nₖ stepᵏ(x), iterating `step` k times.

    Without mixture weights this is a single application of `step`.
    """
    if not n_steps:
        return step(x)
    stay = 1.0 - float(sum(n_steps))
    y = stay * x if abs(stay) > 1e-12 else np.zeros_like(x, dtype=np.float64)
    current = x
    for nk in n_steps:
        current = step(current)
        if nk != 0.0:
            y = y + nk * current
    return y


def _validate_n_steps(n_steps: Optional[Sequence[float]]) -> Optional[Tuple[float, ...]]:
    if n_steps is None:
        return None
    steps = tuple(float(v) for v in n_steps)
    if len(steps) == 0:
        return None
    if any(not np.isfinite(v) or v < 0 for v in steps):
        raise ConfigurationError(
            f"n_steps mixture weights must be finite and >= 0, got {steps}"
        )
    return steps


# ═══════════════════════════════════════════════════════════════════════
# OPERATORS
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class MigrationOperator:
    """Unrealized migration operator (kernel + mixture weights).

    apply() runs the raster backend; realize() returns a RealizedMigration
    that runs the matrix backend.
    """
    kernel: Kernel
    n_steps: Optional[Tuple[float, ...]] = None
    name: str = ''

    def __post_init__(self):
        if not isinstance(self.kernel, Kernel):
            raise ConfigurationError(
                f"kernel must be a Kernel, got {type(self.kernel).__name__}"
            )
        object.__setattr__(self, 'n_steps', _validate_n_steps(self.n_steps))

    @property
    def is_realized(self) -> bool:
        return False

    @property
    def template(self) -> 'MigrationOperator':
        return self

    def realize(self, landscape: Landscape, perf=None) -> 'RealizedMigration':
        """Precompute the sparse weight matrix for one landscape."""
        t0 = time.perf_counter()
        M = build_weight_matrix(self.kernel, landscape)
        elapsed = time.perf_counter() - t0
        if perf is not None:
            perf.record(f"realize:{self.name or 'migration'}", elapsed)
        logger.debug(
            "realized %s: %d accessible cells, %d non-zeros, %.3fs",
            self.name or 'migration', M.shape[0], M.nnz, elapsed,
        )
        return RealizedMigration(
            operator=self,
            matrix=M,
            fingerprint=landscape.fingerprint,
        )

    def apply(self, x: np.ndarray, landscape: Landscape,
              space: IndexSpace = IndexSpace.RASTER) -> np.ndarray:
        """Raster-backend application; result stays in `space`."""
        x_raster = landscape.transfer(np.asarray(x, dtype=np.float64),
                                      space, IndexSpace.RASTER)
        # Inaccessible cells hold nothing, including in the stay term
        x_raster[~landscape.accessible.ravel()] = 0.0
        y = mix_steps(
            x_raster,
            lambda v: convolve_raster(self.kernel, landscape, v),
            self.n_steps,
        )
        return landscape.transfer(y, IndexSpace.RASTER, space)


@dataclass(frozen=True, eq=False)
class RealizedMigration:
    """Migration operator bound to one landscape's accessible-cell layout."""
    operator: MigrationOperator
    matrix: sparse.csr_matrix = field(repr=False)
    fingerprint: str = ''

    @property
    def kernel(self) -> Kernel:
        return self.operator.kernel

    @property
    def n_steps(self) -> Optional[Tuple[float, ...]]:
        return self.operator.n_steps

    @property
    def name(self) -> str:
        return self.operator.name

    @property
    def is_realized(self) -> bool:
        return True

    @property
    def template(self) -> MigrationOperator:
        return self.operator

    def check_landscape(self, landscape: Landscape) -> None:
        """Raises GeometryMismatchError unless realized for `landscape`."""
        if landscape.fingerprint != self.fingerprint:
            raise GeometryMismatchError(
                f"operator '{self.name or 'migration'}' was realized for a "
                f"different landscape (fingerprint {self.fingerprint[:12]} "
                f"!= {landscape.fingerprint[:12]})"
            )

    def realize(self, landscape: Landscape, perf=None) -> 'RealizedMigration':
        """Idempotent for the same landscape; mismatch is an error."""
        self.check_landscape(landscape)
        return self

    def apply(self, x: np.ndarray, landscape: Landscape,
              space: IndexSpace = IndexSpace.ACCESSIBLE) -> np.ndarray:
        """Matrix-backend application; result stays in `space`."""
        self.check_landscape(landscape)
        x_acc = landscape.transfer(np.asarray(x, dtype=np.float64),
                                   space, IndexSpace.ACCESSIBLE)
        M = self.matrix
        y = mix_steps(x_acc, lambda v: M @ v, self.n_steps)
        return landscape.transfer(np.asarray(y), IndexSpace.ACCESSIBLE, space)

    def row_sums(self) -> np.ndarray:
        return np.asarray(self.matrix.sum(axis=1)).ravel()


def realize_once(
    op,
    landscape: Landscape,
    perf=None,
    cache: Optional[Dict[int, RealizedMigration]] = None,
) -> RealizedMigration:
    """Realize `op` for `landscape`, reusing an existing realization.

    Already-realized operators for the same landscape pass through; ones
    realized for another landscape are re-derived from their template.
    `cache` maps id(template) to a realization so that one template
    shared by several rates is realized once.
    """
    if op.is_realized and op.fingerprint == landscape.fingerprint:
        return op
    template = op.template
    if cache is not None:
        hit = cache.get(id(template))
        if hit is not None and hit.fingerprint == landscape.fingerprint:
            return hit
    realized = template.realize(landscape, perf=perf)
    if cache is not None:
        cache[id(template)] = realized
    return realized
