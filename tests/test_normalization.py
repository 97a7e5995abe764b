"""Tests for normalization strategies."""

import numpy as np
import pytest

from cry_analyzer.features.normalization import (
    FeatureStatistics, MinMaxNormalizer, RobustNormalizer, ZScoreNormalizer, get_normalizer
)


@pytest.fixture
def training_matrix():
    rng = np.random.default_rng(3)
    return rng.normal(loc=[0.0, 10.0, -5.0], scale=[1.0, 3.0, 0.5], size=(200, 3))


class TestFeatureStatistics:
    """Test cases for FeatureStatistics."""

    def test_fit(self, training_matrix):
        """Test column-wise statistics."""
        stats = FeatureStatistics.fit(training_matrix)

        assert len(stats) == 3
        np.testing.assert_allclose(stats.mean, training_matrix.mean(axis=0))
        np.testing.assert_allclose(stats.median, np.median(training_matrix, axis=0))
        assert np.all(stats.iqr > 0)

    def test_round_trip_arrays(self, training_matrix):
        """Test conversion to and from plain arrays."""
        stats = FeatureStatistics.fit(training_matrix)
        restored = FeatureStatistics.from_arrays(stats.to_arrays())
        np.testing.assert_array_equal(restored.iqr, stats.iqr)

    def test_fit_rejects_empty(self):
        """Test that an empty matrix cannot be fitted."""
        with pytest.raises(ValueError):
            FeatureStatistics.fit(np.empty((0, 3)))

    def test_read_only(self, training_matrix):
        """Test that fitted statistics cannot be modified."""
        stats = FeatureStatistics.fit(training_matrix)
        with pytest.raises(ValueError):
            stats.mean[0] = 1.0


class TestNormalizers:
    """Test cases for the normalization strategies."""

    @pytest.mark.parametrize("method", ["minmax", "zscore", "robust"])
    def test_in_distribution_within_range(self, training_matrix, method):
        """Test that fitted data lands inside the target range."""
        stats = FeatureStatistics.fit(training_matrix)
        normalizer = get_normalizer(method, target_range=(-1.0, 1.0))

        for row in training_matrix[:20]:
            values = normalizer.normalize(row, stats)
            assert values.shape == row.shape
            assert np.all((values >= -1.0) & (values <= 1.0))

    @pytest.mark.parametrize("method", ["minmax", "zscore", "robust"])
    def test_outliers_clamped(self, training_matrix, method):
        """Test that extreme values are clamped to the nearest boundary."""
        stats = FeatureStatistics.fit(training_matrix)
        normalizer = get_normalizer(method, target_range=(0.0, 1.0))

        values = normalizer.normalize(np.array([1e6, -1e6, 10.0]), stats)
        assert values[0] == 1.0
        assert values[1] == 0.0
        assert len(values) == 3

    def test_robust_centers_median(self, training_matrix):
        """Test that the median maps to the middle of the range."""
        stats = FeatureStatistics.fit(training_matrix)
        values = RobustNormalizer(target_range=(-1.0, 1.0)).normalize(stats.median, stats)
        np.testing.assert_allclose(values, 0.0, atol=1e-12)

    def test_zscore_threshold(self, training_matrix):
        """Test that the outlier threshold marks the range boundary."""
        stats = FeatureStatistics.fit(training_matrix)
        normalizer = ZScoreNormalizer(target_range=(0.0, 1.0), outlier_threshold=2.0)
        values = normalizer.normalize(stats.mean + 2.0 * stats.std, stats)
        np.testing.assert_allclose(values, 1.0)

    def test_minmax_bounds(self, training_matrix):
        """Test that fitted min and max land inside the range at the threshold's scale."""
        stats = FeatureStatistics.fit(training_matrix)
        normalizer = MinMaxNormalizer(target_range=(-1.0, 1.0), outlier_threshold=2.5)
        np.testing.assert_allclose(normalizer.normalize(stats.minimum, stats), -0.4)
        np.testing.assert_allclose(normalizer.normalize(stats.maximum, stats), 0.4)

    def test_minmax_outlier_threshold(self, training_matrix):
        """Test that min-max clamps at outlier_threshold spans around the fitted range."""
        stats = FeatureStatistics.fit(training_matrix)
        span = stats.maximum - stats.minimum
        midpoint = (stats.minimum + stats.maximum) / 2.0

        wide = MinMaxNormalizer(target_range=(-1.0, 1.0), outlier_threshold=3.0)
        np.testing.assert_allclose(wide.normalize(midpoint + 1.5 * span, stats), 1.0)
        np.testing.assert_allclose(wide.normalize(midpoint - 1.5 * span, stats), -1.0)
        assert np.all(wide.normalize(stats.maximum + 0.5 * span, stats) < 1.0)

        tight = MinMaxNormalizer(target_range=(-1.0, 1.0), outlier_threshold=1.0)
        np.testing.assert_allclose(tight.normalize(stats.maximum, stats), 1.0)
        np.testing.assert_allclose(tight.normalize(stats.maximum + span, stats), 1.0)

    def test_constant_feature(self):
        """Test that a feature without spread maps to the range midpoint."""
        stats = FeatureStatistics.fit(np.ones((10, 2)))
        values = RobustNormalizer(target_range=(-1.0, 1.0)).normalize(np.ones(2), stats)
        np.testing.assert_allclose(values, 0.0)

    def test_non_finite_values(self, training_matrix):
        """Test that NaN inputs still produce in-range values."""
        stats = FeatureStatistics.fit(training_matrix)
        values = get_normalizer("robust").normalize(np.array([np.nan, 10.0, -5.0]), stats)
        assert np.all(np.isfinite(values))

    def test_self_statistics(self):
        """Test normalization against a vector's own statistics."""
        values = np.array([0.0, 1.0, 2.0, 100.0, -50.0])
        stats = FeatureStatistics.across_features(values)
        result = get_normalizer("minmax", outlier_threshold=2.5).normalize(values, stats)
        assert result.min() == pytest.approx(-0.4)
        assert result.max() == pytest.approx(0.4)

    def test_length_mismatch(self, training_matrix):
        """Test that statistics must cover every feature."""
        stats = FeatureStatistics.fit(training_matrix)
        with pytest.raises(ValueError):
            get_normalizer("robust").normalize(np.zeros(5), stats)

    def test_unknown_method(self):
        """Test that an unknown strategy name is rejected."""
        with pytest.raises(ValueError, match="Unknown normalization method"):
            get_normalizer("quantile")

    def test_invalid_range(self):
        """Test that an empty target range is rejected."""
        with pytest.raises(ValueError):
            get_normalizer("minmax", target_range=(1.0, 1.0))
