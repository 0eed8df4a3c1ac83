"""Tests for spatial_popgen.migration: operator realization and backends.

Covers:
  - Row-normalization of realized operators
  - Raster / matrix backend equivalence
  - Isolated cells (radius below nearest-neighbour distance)
  - n-step mixtures
  - Two-phase binding and geometry checks
"""

import warnings

import numpy as np
import pytest

from spatial_popgen.errors import (
    ConfigurationError,
    GeometryMismatchError,
    NumericDegeneracyWarning,
)
from spatial_popgen.kernels import Kernel
from spatial_popgen.landscape import Landscape
from spatial_popgen.migration import (
    MigrationOperator,
    RealizedMigration,
    build_weight_matrix,
    mix_steps,
    realize_once,
)
from spatial_popgen.types import IndexSpace


def _holey_landscape(seed=0):
    """8×9 raster with scattered inaccessible cells (none isolated)."""
    rng = np.random.default_rng(seed)
    values = rng.uniform(0.0, 2.0, size=(8, 9))
    values[2, 3] = np.nan
    values[5, 1:4] = np.nan
    values[0, 8] = np.nan
    values[values < 0.3] = 0.0
    return Landscape(values)


def _isolated_landscape():
    """Two accessible cells with nothing within distance 1.5 of each other."""
    values = np.full((5, 5), np.nan)
    values[0, 0] = 1.0
    values[4, 4] = 1.0
    return Landscape(values)


def _realize_quiet(op, land):
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", NumericDegeneracyWarning)
        return op.realize(land)


# ═══════════════════════════════════════════════════════════════════════
# WEIGHT MATRIX
# ═══════════════════════════════════════════════════════════════════════

class TestWeightMatrix:
    def test_shape_accessible(self):
        land = _holey_landscape()
        M = build_weight_matrix(Kernel(radius=1.5), land)
        assert M.shape == (land.n_accessible, land.n_accessible)

    def test_row_normalization(self):
        land = _holey_landscape()
        M = build_weight_matrix(Kernel(radius=2.0, normalize=1.0), land)
        np.testing.assert_allclose(np.asarray(M.sum(axis=1)).ravel(), 1.0,
                                   rtol=1e-12)

    def test_row_normalization_target(self):
        land = _holey_landscape()
        M = build_weight_matrix(Kernel(radius=2.0, normalize=2.5), land)
        np.testing.assert_allclose(np.asarray(M.sum(axis=1)).ravel(), 2.5,
                                   rtol=1e-12)

    def test_unnormalized_symmetric(self):
        land = _holey_landscape()
        M = build_weight_matrix(Kernel(radius=2.0, normalize=None,
                                       include_self=True), land)
        np.testing.assert_allclose(M.toarray(), M.toarray().T)
        np.testing.assert_allclose(M.diagonal(), 1.0)

    def test_no_self_weight_by_default(self):
        land = _holey_landscape()
        M = build_weight_matrix(Kernel(radius=2.0, normalize=None), land)
        assert np.all(M.diagonal() == 0.0)

    def test_radius_truncation(self):
        land = Landscape(np.ones((1, 5)))
        M = build_weight_matrix(Kernel(shape='uniform', radius=1.0,
                                       normalize=None), land)
        # each cell sees its left and right neighbour only
        np.testing.assert_array_equal(np.asarray(M.sum(axis=1)).ravel(),
                                      [1, 2, 2, 2, 1])

    def test_inaccessible_cells_absent(self):
        values = np.ones((1, 3))
        values[0, 1] = np.nan
        land = Landscape(values)
        with pytest.warns(NumericDegeneracyWarning):
            M = build_weight_matrix(Kernel(radius=1.0), land)
        assert M.shape == (2, 2)
        assert M.nnz == 0

    def test_zero_rows_warn(self):
        land = _isolated_landscape()
        with pytest.warns(NumericDegeneracyWarning, match="no neighbours"):
            M = build_weight_matrix(Kernel(radius=1.5), land)
        np.testing.assert_array_equal(np.asarray(M.sum(axis=1)).ravel(), 0.0)


# ═══════════════════════════════════════════════════════════════════════
# BACKEND EQUIVALENCE
# ═══════════════════════════════════════════════════════════════════════

class TestBackendEquivalence:
    @pytest.mark.parametrize("kernel", [
        Kernel(shape='gaussian', scale=1.0, radius=2.0),
        Kernel(shape='exponential', scale=0.7, radius=3.0, include_self=True),
        Kernel(shape='cauchy', scale=1.5, radius=2.5, normalize=None),
        Kernel(shape='uniform', radius=1.0, normalize=3.0, include_self=True),
    ])
    def test_vector(self, kernel):
        land = _holey_landscape()
        op = MigrationOperator(kernel)
        x = np.random.default_rng(1).uniform(0, 10, land.n_accessible)
        lazy = op.apply(x, land, IndexSpace.ACCESSIBLE)
        bound = op.realize(land).apply(x, land, IndexSpace.ACCESSIBLE)
        np.testing.assert_allclose(lazy, bound, rtol=1e-6, atol=1e-12)

    def test_matrix_input(self):
        land = _holey_landscape()
        op = MigrationOperator(Kernel(radius=2.0))
        x = np.random.default_rng(2).uniform(0, 5, (land.n_habitable, 3))
        lazy = op.apply(x, land, IndexSpace.HABITABLE)
        bound = op.realize(land).apply(x, land, IndexSpace.HABITABLE)
        assert lazy.shape == (land.n_habitable, 3)
        np.testing.assert_allclose(lazy, bound, rtol=1e-6, atol=1e-12)

    def test_raster_space(self):
        land = _holey_landscape()
        op = MigrationOperator(Kernel(radius=1.5))
        x = np.random.default_rng(3).uniform(0, 5, land.n_cells)
        lazy = op.apply(x, land, IndexSpace.RASTER)
        bound = op.realize(land).apply(x, land, IndexSpace.RASTER)
        np.testing.assert_allclose(lazy, bound, rtol=1e-6, atol=1e-12)
        assert np.all(lazy[~land.accessible.ravel()] == 0.0)

    def test_anisotropic_resolution(self):
        values = np.random.default_rng(4).uniform(0.5, 1.0, (6, 7))
        values[3, 3] = np.nan
        land = Landscape(values, resolution=(2.0, 1.0))
        op = MigrationOperator(Kernel(radius=2.5, scale=2.0))
        x = np.random.default_rng(5).uniform(0, 1, land.n_accessible)
        np.testing.assert_allclose(
            op.apply(x, land, IndexSpace.ACCESSIBLE),
            op.realize(land).apply(x, land, IndexSpace.ACCESSIBLE),
            rtol=1e-6, atol=1e-12,
        )

    def test_n_steps(self):
        land = _holey_landscape()
        op = MigrationOperator(Kernel(radius=2.0), n_steps=(0.3, 0.2))
        x = np.random.default_rng(6).uniform(0, 5, land.n_accessible)
        np.testing.assert_allclose(
            op.apply(x, land, IndexSpace.ACCESSIBLE),
            op.realize(land).apply(x, land, IndexSpace.ACCESSIBLE),
            rtol=1e-6, atol=1e-12,
        )

    def test_constant_field_preserved(self):
        """A normalized operator maps a constant field to itself."""
        land = Landscape(np.ones((6, 6)))
        op = MigrationOperator(Kernel(radius=1.5, include_self=True))
        realized = op.realize(land)
        np.testing.assert_allclose(realized.row_sums(), 1.0)
        y = realized.apply(np.ones(land.n_accessible), land, IndexSpace.ACCESSIBLE)
        np.testing.assert_allclose(y, 1.0)


# ═══════════════════════════════════════════════════════════════════════
# ISOLATED CELLS
# ═══════════════════════════════════════════════════════════════════════

class TestIsolatedCells:
    def test_small_radius_zero_operator(self):
        land = Landscape(np.ones((4, 4)))
        op = MigrationOperator(Kernel(radius=0.5))
        with pytest.warns(NumericDegeneracyWarning):
            realized = op.realize(land)
        assert realized.matrix.nnz == 0
        np.testing.assert_array_equal(realized.row_sums(), 0.0)

    def test_apply_gives_zero_both_backends(self):
        land = Landscape(np.ones((4, 4)))
        op = MigrationOperator(Kernel(radius=0.5))
        x = np.arange(16, dtype=float) + 1
        with pytest.warns(NumericDegeneracyWarning):
            lazy = op.apply(x, land, IndexSpace.ACCESSIBLE)
        np.testing.assert_array_equal(lazy, 0.0)
        realized = _realize_quiet(op, land)
        np.testing.assert_array_equal(
            realized.apply(x, land, IndexSpace.ACCESSIBLE), 0.0)

    def test_include_self_gives_identity(self):
        land = Landscape(np.ones((3, 3)))
        op = MigrationOperator(Kernel(radius=0.5, include_self=True))
        realized = op.realize(land)
        np.testing.assert_allclose(realized.matrix.toarray(), np.eye(9))
        x = np.arange(9, dtype=float)
        np.testing.assert_allclose(op.apply(x, land, IndexSpace.ACCESSIBLE), x)


# ═══════════════════════════════════════════════════════════════════════
# N-STEP MIXTURE
# ═══════════════════════════════════════════════════════════════════════

class TestNSteps:
    def test_matches_explicit_powers(self):
        land = _holey_landscape()
        op = MigrationOperator(Kernel(radius=2.0), n_steps=(0.5, 0.25))
        realized = op.realize(land)
        M = realized.matrix.toarray()
        x = np.random.default_rng(7).uniform(0, 1, land.n_accessible)
        expected = 0.25 * x + 0.5 * M @ x + 0.25 * M @ (M @ x)
        np.testing.assert_allclose(
            realized.apply(x, land, IndexSpace.ACCESSIBLE), expected,
            rtol=1e-10,
        )

    def test_raster_stay_term_skips_inaccessible(self):
        land = Landscape(np.array([[1.0, np.nan, 1.0]]))
        op = MigrationOperator(Kernel(radius=1.5, include_self=True),
                               n_steps=(0.5,))
        y = op.apply(np.array([1.0, 7.0, 1.0]), land, IndexSpace.RASTER)
        assert y[1] == 0.0
        np.testing.assert_allclose(y[[0, 2]], 1.0)
        np.testing.assert_allclose(
            op.realize(land).apply(np.ones(2), land, IndexSpace.ACCESSIBLE),
            y[land.accessible_index],
        )

    def test_mix_steps_without_weights(self):
        y = mix_steps(np.ones(3), lambda v: 2 * v, None)
        np.testing.assert_array_equal(y, 2.0)

    def test_mix_steps_full_weight(self):
        y = mix_steps(np.ones(3), lambda v: 2 * v, (0.0, 1.0))
        np.testing.assert_allclose(y, 4.0)

    def test_empty_steps_is_single_application(self):
        op = MigrationOperator(Kernel(), n_steps=())
        assert op.n_steps is None

    def test_negative_weight_rejected(self):
        with pytest.raises(ConfigurationError):
            MigrationOperator(Kernel(), n_steps=(0.5, -0.1))


# ═══════════════════════════════════════════════════════════════════════
# TWO-PHASE BINDING
# ═══════════════════════════════════════════════════════════════════════

class TestRealization:
    def test_realize_returns_new_value(self):
        land = _holey_landscape()
        op = MigrationOperator(Kernel(radius=1.5), name='seed')
        realized = op.realize(land)
        assert isinstance(realized, RealizedMigration)
        assert realized.is_realized
        assert not op.is_realized
        assert realized.template is op
        assert realized.name == 'seed'
        assert realized.fingerprint == land.fingerprint

    def test_one_template_many_landscapes(self):
        a = _holey_landscape(seed=0)
        b = Landscape(np.ones((3, 3)))
        op = MigrationOperator(Kernel(radius=1.5))
        ra = op.realize(a)
        rb = op.realize(b)
        assert ra.matrix.shape == (a.n_accessible, a.n_accessible)
        assert rb.matrix.shape == (9, 9)

    def test_realize_idempotent(self):
        land = _holey_landscape()
        realized = MigrationOperator(Kernel(radius=1.5)).realize(land)
        assert realized.realize(land) is realized

    def test_realize_other_landscape_raises(self):
        land = _holey_landscape()
        realized = MigrationOperator(Kernel(radius=1.5)).realize(land)
        with pytest.raises(GeometryMismatchError):
            realized.realize(Landscape(np.ones((3, 3))))

    def test_apply_other_landscape_raises(self):
        land = _holey_landscape()
        realized = MigrationOperator(Kernel(radius=1.5)).realize(land)
        other = Landscape(np.ones((8, 9)))
        with pytest.raises(GeometryMismatchError, match="different landscape"):
            realized.apply(np.ones(other.n_accessible), other,
                           IndexSpace.ACCESSIBLE)

    def test_equal_geometry_accepted(self):
        realized = MigrationOperator(Kernel(radius=1.5)).realize(_holey_landscape(0))
        same = _holey_landscape(0)
        y = realized.apply(np.ones(same.n_accessible), same, IndexSpace.ACCESSIBLE)
        assert y.shape == (same.n_accessible,)

    def test_kernel_type_checked(self):
        with pytest.raises(ConfigurationError):
            MigrationOperator("gaussian")

    def test_perf_records_realization(self):
        from spatial_popgen.perf import PerfMonitor
        perf = PerfMonitor(enabled=True)
        MigrationOperator(Kernel(radius=1.5), name='pollen').realize(
            _holey_landscape(), perf=perf)
        assert perf.get_stats()['realize:pollen'].calls == 1


class TestRealizeOnce:
    def test_cache_shares_template(self):
        land = _holey_landscape()
        op = MigrationOperator(Kernel(radius=1.5))
        cache = {}
        first = realize_once(op, land, cache=cache)
        second = realize_once(op, land, cache=cache)
        assert first is second

    def test_passes_through_matching(self):
        land = _holey_landscape()
        realized = MigrationOperator(Kernel(radius=1.5)).realize(land)
        assert realize_once(realized, land) is realized

    def test_rederives_for_new_landscape(self):
        land = _holey_landscape()
        op = MigrationOperator(Kernel(radius=1.5))
        realized = op.realize(land)
        other = Landscape(np.ones((3, 3)))
        rebound = realize_once(realized, other)
        assert rebound.fingerprint == other.fingerprint
        assert rebound.template is op
