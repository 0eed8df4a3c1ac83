"""Tests for spatial_popgen.mating: mating tensor validation and builders."""

import numpy as np
import pytest

from spatial_popgen.errors import ConfigurationError
from spatial_popgen.mating import MatingTensor


class TestValidation:
    def test_rows_must_sum_to_one(self):
        T = np.full((2, 2, 2), 0.5)
        T[0, 1] = [0.5, 0.6]
        with pytest.raises(ConfigurationError, match="sum to 1"):
            MatingTensor(['a', 'b'], T)

    def test_tolerance(self):
        T = np.full((2, 2, 2), 0.5)
        T[0, 0, 0] += 1e-11
        MatingTensor(['a', 'b'], T)

    def test_wrong_shape(self):
        with pytest.raises(ConfigurationError, match="shape"):
            MatingTensor(['a', 'b'], np.ones((2, 2, 1)))

    def test_negative_entries(self):
        T = np.zeros((2, 2, 2))
        T[..., 0] = 1.5
        T[..., 1] = -0.5
        with pytest.raises(ConfigurationError):
            MatingTensor(['a', 'b'], T)

    def test_duplicate_genotypes(self):
        with pytest.raises(ConfigurationError):
            MatingTensor(['a', 'a'], np.full((2, 2, 2), 0.5))

    def test_table_read_only(self):
        m = MatingTensor.single()
        with pytest.raises(ValueError):
            m.table[0, 0, 0] = 2.0


class TestBuilders:
    def test_single(self):
        m = MatingTensor.single('aa')
        assert m.genotypes == ('aa',)
        assert m.table.shape == (1, 1, 1)

    def test_clonal(self):
        m = MatingTensor.clonal(['x', 'y', 'z'])
        for i in range(3):
            for j in range(3):
                np.testing.assert_array_equal(m.table[i, j], np.eye(3)[i])
        assert not m.is_symmetric()

    def test_diploid_genotypes(self):
        m = MatingTensor.diploid(('a', 'A'))
        assert m.genotypes == ('aa', 'aA', 'AA')

    def test_diploid_mendelian(self):
        m = MatingTensor.diploid()
        aa, aA, AA = 0, 1, 2
        np.testing.assert_allclose(m.table[aA, aA], [0.25, 0.5, 0.25])
        np.testing.assert_allclose(m.table[aa, AA], [0.0, 1.0, 0.0])
        np.testing.assert_allclose(m.table[aa, aA], [0.5, 0.5, 0.0])
        np.testing.assert_allclose(m.table[AA, AA], [0.0, 0.0, 1.0])
        assert m.is_symmetric()

    def test_diploid_three_alleles(self):
        m = MatingTensor.diploid(('a', 'b', 'c'))
        assert m.n_genotypes == 6
        np.testing.assert_allclose(m.table.sum(axis=2), 1.0, atol=1e-12)

    def test_diploid_duplicate_alleles(self):
        with pytest.raises(ConfigurationError):
            MatingTensor.diploid(('a', 'a'))


class TestOffspring:
    def test_bilinear_form(self):
        m = MatingTensor.diploid()
        seeders = np.array([[0.0, 4.0, 0.0], [2.0, 0.0, 0.0]])
        pollen = np.array([[0.0, 1.0, 0.0], [0.0, 0.0, 1.0]])
        S = m.offspring(seeders, pollen)
        np.testing.assert_allclose(S[0], [1.0, 2.0, 1.0])
        np.testing.assert_allclose(S[1], [0.0, 2.0, 0.0])

    def test_total_seeds_preserved_with_composition(self):
        m = MatingTensor.diploid()
        rng = np.random.default_rng(0)
        seeders = rng.uniform(0, 10, (5, 3))
        pollen = rng.uniform(0, 1, (5, 3))
        pollen /= pollen.sum(axis=1, keepdims=True)
        S = m.offspring(seeders, pollen)
        np.testing.assert_allclose(S.sum(axis=1), seeders.sum(axis=1))

    def test_no_pollen_no_seed(self):
        m = MatingTensor.clonal(['x', 'y'])
        S = m.offspring(np.ones((2, 2)), np.zeros((2, 2)))
        np.testing.assert_array_equal(S, 0.0)
