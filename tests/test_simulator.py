"""Tests for spatial_popgen.simulator: time grid, summaries, trajectories."""

import numpy as np
import pytest

from spatial_popgen import vital_rates
from spatial_popgen.config import default_config
from spatial_popgen.demography import Demography
from spatial_popgen.errors import ConfigurationError, GenerationError, SummaryError
from spatial_popgen.kernels import Kernel
from spatial_popgen.landscape import Landscape
from spatial_popgen.mating import MatingTensor
from spatial_popgen.migration import MigrationOperator
from spatial_popgen.perf import PerfMonitor
from spatial_popgen.population import Population
from spatial_popgen.simulator import (
    allele_frequency,
    generation_indices,
    genotype_totals,
    occupied_cells,
    simulate,
    simulate_config,
    total_abundance,
)
from spatial_popgen.snapshots import Trajectory


def _setup(shape=(5, 5), per_cell=(3, 4, 3)):
    land = Landscape(np.ones(shape))
    mating = MatingTensor.diploid()
    pop = Population.uniform(land, mating.genotypes, list(per_cell))
    comp = MigrationOperator(Kernel(shape='uniform', radius=1.5,
                                    include_self=True))
    demo = Demography(
        genotypes=mating.genotypes,
        mating=mating,
        pollen_migration=MigrationOperator(Kernel(radius=2.0, include_self=True)),
        seed_migration=MigrationOperator(Kernel(radius=1.5, include_self=True)),
        prob_seed=0.5,
        fecundity=4.0,
        prob_germination=vital_rates.beverton_holt(0.5, comp),
        prob_survival=0.5,
    )
    K = np.full(land.n_habitable, 10.0)
    return pop, demo, K


# ── Built-in summaries ────────────────────────────────────────────────

class TestSummaries:
    N = np.array([[1, 0, 1], [0, 0, 0], [2, 2, 0]])

    def test_genotype_totals(self):
        np.testing.assert_array_equal(genotype_totals(self.N), [3, 2, 1])

    def test_total_abundance(self):
        assert total_abundance(self.N) == 6.0

    def test_occupied_cells(self):
        assert occupied_cells(self.N) == 2

    def test_allele_frequency(self):
        freq = allele_frequency(('aa', 'aA', 'AA'), 'A')
        # A copies: 0·3 + 1·2 + 2·1 = 4 of 12
        assert freq(self.N) == pytest.approx(4 / 12)

    def test_allele_frequency_empty(self):
        freq = allele_frequency(('aa', 'aA', 'AA'), 'a')
        assert np.isnan(freq(np.zeros((2, 3))))


# ── Time grid ─────────────────────────────────────────────────────────

class TestTimeGrid:
    def test_integer_grid(self):
        np.testing.assert_array_equal(generation_indices([0, 1, 5]), [0, 1, 5])

    def test_offset_origin(self):
        np.testing.assert_array_equal(generation_indices([2.0, 3.0, 4.5]),
                                      [0, 1, 2])

    def test_close_times_share_generation(self):
        np.testing.assert_array_equal(generation_indices([0.0, 0.4, 0.9, 1.0]),
                                      [0, 0, 0, 1])

    def test_float_noise_absorbed(self):
        assert generation_indices([0.0, 0.1 + 0.2 + 0.7])[1] == 1

    def test_unsorted(self):
        with pytest.raises(ConfigurationError, match="sorted"):
            generation_indices([0, 3, 2])

    def test_empty(self):
        with pytest.raises(ConfigurationError):
            generation_indices([])

    def test_non_finite(self):
        with pytest.raises(ConfigurationError):
            generation_indices([0, np.inf])


# ── simulate ──────────────────────────────────────────────────────────

class TestSimulate:
    def test_one_snapshot_per_time(self):
        pop, demo, K = _setup()
        traj = simulate(pop, demo, K, [0, 1, 1.5, 4],
                        summaries={'totals': genotype_totals},
                        rng=np.random.default_rng(0))
        assert len(traj) == 4
        assert traj.generations == [0, 1, 1, 4]
        assert traj.times == [0.0, 1.0, 1.5, 4.0]
        assert traj.summary('totals').shape == (4, 3)

    def test_first_snapshot_is_initial(self):
        pop, demo, K = _setup()
        traj = simulate(pop, demo, K, [0, 3], rng=np.random.default_rng(0))
        np.testing.assert_array_equal(traj.snapshots[0], pop.abundance)

    def test_shared_generation_same_snapshot(self):
        pop, demo, K = _setup()
        traj = simulate(pop, demo, K, [0, 2, 2.5], rng=np.random.default_rng(1))
        np.testing.assert_array_equal(traj.snapshots[1], traj.snapshots[2])

    def test_reproducible_with_seed(self):
        pop, demo, K = _setup()
        a = simulate(pop, demo, K, [0, 5], rng=np.random.default_rng(42))
        b = simulate(pop, demo, K, [0, 5], rng=np.random.default_rng(42))
        np.testing.assert_array_equal(a.final, b.final)

    def test_backends_agree_in_expectation(self):
        pop, demo, K = _setup()
        grid = [0, 1, 2, 3]
        lazy = simulate(pop, demo, K, grid, backend='raster', stochastic=False)
        bound = simulate(pop, demo, K, grid, backend='matrix', stochastic=False)
        np.testing.assert_allclose(lazy.final, bound.final, rtol=1e-6)

    def test_summary_failure_reports_generation(self):
        pop, demo, K = _setup()
        calls = []

        def fragile(N):
            calls.append(1)
            if len(calls) == 3:
                raise ValueError("bad summary")
            return N.sum()

        with pytest.raises(SummaryError) as info:
            simulate(pop, demo, K, [0, 1, 2, 3], summaries={'fragile': fragile},
                     rng=np.random.default_rng(0))
        assert info.value.summary == 'fragile'
        assert info.value.generation == 2
        assert isinstance(info.value.__cause__, ValueError)

    def test_summary_gets_copy(self):
        pop, demo, K = _setup()

        def vandal(N):
            N[:] = -1
            return 0

        traj = simulate(pop, demo, K, [0], summaries={'v': vandal})
        assert np.all(traj.snapshots[0] >= 0)

    def test_stage_error_propagates(self):
        pop, demo, K = _setup()
        bad = demo.with_rates(prob_survival=2.0)
        with pytest.raises(GenerationError) as info:
            simulate(pop, bad, K, [0, 5], rng=np.random.default_rng(0))
        assert info.value.generation == 0
        assert info.value.stage == 'survival'

    def test_callable_capacity(self):
        pop, demo, K = _setup()
        seen = []

        def capacity(g):
            seen.append(g)
            return K

        simulate(pop, demo, capacity, [0, 3], stochastic=False)
        assert seen == [0, 1, 2]

    def test_progress_callback(self):
        pop, demo, K = _setup()
        progress = []
        simulate(pop, demo, K, [0, 2, 4], stochastic=False,
                 progress_callback=lambda g, n: progress.append((g, n)))
        assert progress == [(1, 4), (2, 4), (3, 4), (4, 4)]

    def test_invalid_backend(self):
        pop, demo, K = _setup()
        with pytest.raises(ConfigurationError):
            simulate(pop, demo, K, [0, 1], backend='sparse')

    def test_genotype_mismatch_before_running(self):
        pop, demo, K = _setup()
        other = Population.uniform(pop.landscape, ['x', 'y', 'z'], 1)
        with pytest.raises(ConfigurationError):
            simulate(other, demo, K, [0, 1])

    def test_perf_counts_generations(self):
        pop, demo, K = _setup()
        perf = PerfMonitor(enabled=True)
        simulate(pop, demo, K, [0, 4], stochastic=False, perf=perf)
        assert perf.generations == 4
        assert perf.summary()['seeders']['calls'] == 4

    def test_extinct_population_stays_extinct(self):
        pop, demo, K = _setup(per_cell=(0, 0, 0))
        traj = simulate(pop, demo, K, [0, 5], summaries={'n': total_abundance},
                        rng=np.random.default_rng(0))
        np.testing.assert_array_equal(traj.summary('n'), [0.0, 0.0])


# ── Trajectory persistence ────────────────────────────────────────────

class TestTrajectory:
    def test_save_load(self, tmp_path):
        pop, demo, K = _setup()
        freq = allele_frequency(pop.genotypes, 'A')
        traj = simulate(pop, demo, K, [0, 1, 2],
                        summaries={'totals': genotype_totals, 'pA': freq},
                        rng=np.random.default_rng(3))
        path = tmp_path / "out" / "run.npz"
        traj.save(str(path))
        loaded = Trajectory.load(str(path))
        assert loaded.genotypes == traj.genotypes
        assert loaded.times == traj.times
        assert loaded.generations == traj.generations
        for a, b in zip(loaded.snapshots, traj.snapshots):
            np.testing.assert_array_equal(a, b)
        np.testing.assert_array_equal(loaded.summary('totals'),
                                      traj.summary('totals'))
        np.testing.assert_allclose(loaded.summary('pA'), traj.summary('pA'))

    def test_save_rejects_non_numeric_summary(self, tmp_path):
        traj = Trajectory(genotypes=('aa',))
        traj.record(0.0, 0, np.ones((2, 1)), {'note': None})
        with pytest.raises(TypeError, match="note"):
            traj.save(str(tmp_path / "run.npz"))
        assert not (tmp_path / "run.npz").exists()

    def test_unknown_summary(self):
        traj = Trajectory(genotypes=('aa',))
        with pytest.raises(KeyError):
            traj.summary('missing')

    def test_final_empty(self):
        with pytest.raises(IndexError):
            Trajectory(genotypes=('aa',)).final

    def test_abundance_stack(self):
        pop, demo, K = _setup()
        traj = simulate(pop, demo, K, [0, 1], stochastic=False)
        assert traj.abundance().shape == (2, pop.n_cells, 3)


# ── Config-driven run ─────────────────────────────────────────────────

class TestSimulateConfig:
    def test_default_config_runs(self):
        config = default_config()
        config.simulation.n_generations = 3
        config.landscape.rows = 4
        config.landscape.cols = 4
        traj = simulate_config(config)
        assert traj.generations == [0, 1, 2, 3]
        assert traj.summary('genotype_totals').shape == (4, 3)

    def test_record_every(self):
        config = default_config()
        config.simulation.n_generations = 5
        config.simulation.record_every = 2
        config.landscape.rows = 3
        config.landscape.cols = 3
        traj = simulate_config(config, summaries={})
        assert traj.generations == [0, 2, 4, 5]

    def test_seeded_runs_match(self):
        config = default_config()
        config.simulation.n_generations = 2
        config.landscape.rows = 3
        config.landscape.cols = 3
        np.testing.assert_array_equal(simulate_config(config).final,
                                      simulate_config(config).final)
