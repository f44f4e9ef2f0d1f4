# Tests for running statistics

import numpy as np
from gigalearn.core.stats import BatchedRunningStat, RunningStat


class TestRunningStat:

    def test_defaults_before_two_samples(self):
        """Std is 1 and mean is 0 until two samples exist."""
        stat = RunningStat()
        assert stat.get_std() == 1.0
        stat.update(np.array([5.0]))
        assert stat.get_std() == 1.0
        assert stat.get_mean() == 0.0

    def test_matches_numpy(self):
        """Welford result should match the sample mean and std."""
        samples = np.random.default_rng(0).normal(3.0, 2.0, size=200)
        stat = RunningStat()
        stat.update(samples[:50])
        stat.update(samples[50:])

        assert np.isclose(stat.get_mean(), samples.mean())
        assert np.isclose(stat.get_std(), samples.std(ddof=1))
        assert stat.count == 200

    def test_constant_samples_fall_back_to_unit_std(self):
        """Zero variance should not produce a zero std."""
        stat = RunningStat()
        stat.update(np.full(10, 2.0))
        assert stat.get_std() == 1.0

    def test_dict_roundtrip(self):
        """Saved statistics should restore exactly."""
        stat = RunningStat()
        stat.update(np.array([1.0, 2.0, 3.0, 4.0]))

        restored = RunningStat()
        restored.load_dict(stat.to_dict())

        assert restored.count == 4
        assert np.isclose(restored.get_std(), stat.get_std())

    def test_reset(self):
        stat = RunningStat()
        stat.update(np.array([1.0, 2.0]))
        stat.reset()
        assert stat.count == 0


class TestBatchedRunningStat:

    def test_matches_numpy(self):
        """Per-feature stats should match numpy."""
        rows = np.random.default_rng(1).normal(size=(100, 3)).astype(np.float32)
        stat = BatchedRunningStat(3)
        stat.update(rows)

        assert np.allclose(stat.get_mean(), rows.mean(axis=0), atol=1e-5)
        assert np.allclose(stat.get_std(), rows.std(axis=0, ddof=1), atol=1e-5)

    def test_normalize_passthrough_before_two_rows(self):
        """Observations are unchanged until two rows were seen."""
        stat = BatchedRunningStat(2)
        obs = np.array([[5.0, -5.0]], dtype=np.float32)
        stat.update_row(obs[0])

        assert stat.normalize(obs, mean_clamp=1.0, min_std=0.1) is obs

    def test_normalize_clamps_mean_and_std(self):
        """Mean is clamped to the range and std floored."""
        stat = BatchedRunningStat(1)
        stat.update(np.array([[10.0], [10.0], [10.0]]))

        normalized = stat.normalize(np.array([[10.0]], dtype=np.float32), mean_clamp=3.0, min_std=0.5)

        # Zero variance gives std 1, which is above the floor
        assert normalized.dtype == np.float32
        assert np.allclose(normalized, [[7.0]])

    def test_dict_roundtrip(self):
        stat = BatchedRunningStat(2)
        stat.update(np.array([[1.0, 2.0], [3.0, 5.0], [2.0, 0.0]]))

        restored = BatchedRunningStat(2)
        restored.load_dict(stat.to_dict())

        assert restored.count == 3
        assert np.allclose(restored.get_mean(), stat.get_mean())
        assert np.allclose(restored.get_std(), stat.get_std())
