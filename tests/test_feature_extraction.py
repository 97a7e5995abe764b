"""Tests for feature extraction and noise suppression."""

import threading
import time
from unittest.mock import patch

import numpy as np
import pytest

from cry_analyzer.exceptions import (
    ExtractionCancelledError, ExtractionTimeoutError, FeatureQualityError, InvalidInputError
)
from cry_analyzer.features.feature_extraction import BASE_FEATURES, ExtractionOptions
from cry_analyzer.features.noise_filter import NoiseFilter
from cry_analyzer.features.normalization import FeatureStatistics
from cry_analyzer.schema import AudioSample


class TestFeatureExtractor:
    """Test cases for FeatureExtractor."""

    def test_feature_names(self, extractor):
        """Test that names cover base descriptors and MFCCs."""
        assert extractor.feature_dim == len(BASE_FEATURES) + 13
        assert extractor.feature_names[0] == "rms_mean"
        assert extractor.feature_names[-1] == "mfcc_13"

    def test_values_within_range(self, extractor, hunger_sample):
        """Test that every normalized value lies within the target range."""
        vector = extractor.extract(hunger_sample)

        assert len(vector) == extractor.feature_dim
        low, high = vector.value_range
        assert np.all(vector.values >= low)
        assert np.all(vector.values <= high)

    @pytest.mark.parametrize("method", ["minmax", "zscore", "robust"])
    def test_values_within_range_for_each_method(self, extractor, sample_audio_data, method):
        """Test range invariant for every normalization strategy."""
        options = ExtractionOptions(normalization_method=method, target_range=(0.0, 1.0))
        vector = extractor.extract(sample_audio_data, options)

        assert vector.value_range == (0.0, 1.0)
        assert np.all((vector.values >= 0.0) & (vector.values <= 1.0))

    def test_cry_is_usable(self, extractor, cry_generator):
        """Test that synthetic cries have noise level below signal quality."""
        for need in ("hunger", "tiredness", "pain", "discomfort"):
            vector = extractor.extract(cry_generator.generate(need))
            assert 0.0 <= vector.noise_level <= vector.signal_quality <= 1.0
            assert vector.ensure_usable() is vector

    def test_white_noise_is_rejected(self, extractor, white_noise_sample):
        """Test that pure noise fails the quality check."""
        vector = extractor.extract(
            white_noise_sample, ExtractionOptions(enable_noise_reduction=False)
        )
        with pytest.raises(FeatureQualityError):
            vector.ensure_usable()

    def test_quality_metrics_attached(self, extractor, hunger_sample):
        """Test that quality metrics are populated."""
        quality = extractor.extract(hunger_sample).quality

        assert quality.snr_db > 0
        assert 0.0 <= quality.clarity <= 1.0
        assert 0.0 <= quality.confidence <= 1.0
        assert quality.latency_ms >= 0

    def test_fundamental_frequency(self, extractor, sample_audio_data):
        """Test that the autocorrelation pitch estimate finds a 440 Hz tone."""
        raw = extractor.extract_raw(sample_audio_data, ExtractionOptions(enable_noise_reduction=False))
        f0 = raw.values[BASE_FEATURES.index("fundamental_frequency")]
        assert f0 == pytest.approx(440, rel=0.03)
        assert raw.clarity > 0.9

    def test_deterministic(self, extractor, hunger_sample):
        """Test that identical input yields identical output."""
        first = extractor.extract(hunger_sample)
        second = extractor.extract(hunger_sample)
        np.testing.assert_array_equal(first.values, second.values)

    def test_fitted_statistics(self, extractor, cry_generator):
        """Test normalization against statistics fitted on other samples."""
        raws = [extractor.extract_raw(cry_generator.generate(n)) for n in ("hunger", "pain", "tiredness")]
        stats = FeatureStatistics.fit(np.stack([r.values for r in raws]))
        options = ExtractionOptions(statistics=stats)

        vector = extractor.normalize(raws[0], options)
        assert len(vector) == extractor.feature_dim
        assert np.all(np.abs(vector.values) <= 1.0)

    def test_short_sample(self, extractor):
        """Test that a sample shorter than one FFT window is still processed."""
        sample = AudioSample(samples=np.sin(np.arange(200) * 0.3), sample_rate=16000)
        vector = extractor.extract(sample)
        assert len(vector) == extractor.feature_dim

    @pytest.mark.parametrize("samples, rate", [
        (np.array([]), 16000),
        (np.array([0.1, np.nan, 0.2]), 16000),
        (np.array([0.1, np.inf, 0.2]), 16000),
        (np.zeros(100), 0),
        (np.zeros(100), -16000),
        (np.zeros(100), float("nan")),
        (np.zeros((2, 100)), 16000),
    ])
    def test_invalid_input(self, extractor, samples, rate):
        """Test that malformed samples raise InvalidInputError."""
        with pytest.raises(InvalidInputError):
            extractor.extract(AudioSample(samples=samples, sample_rate=rate))

    def test_invalid_input_is_value_error(self, extractor):
        """Test that InvalidInputError is also a ValueError."""
        with pytest.raises(ValueError):
            extractor.extract(AudioSample(samples=np.array([]), sample_rate=16000))

    def test_timeout(self, extractor, hunger_sample):
        """Test that a slow stage ends the extraction with a TimeoutError."""
        def slow_filter(audio):
            time.sleep(0.1)
            return audio

        with patch.object(extractor.noise_filter, "apply", side_effect=slow_filter):
            with pytest.raises(ExtractionTimeoutError) as exc_info:
                extractor.extract(hunger_sample, ExtractionOptions(timeout_ms=20))

        assert isinstance(exc_info.value, TimeoutError)

    def test_cancellation(self, extractor, hunger_sample):
        """Test that a set cancel event abandons the extraction."""
        cancel_event = threading.Event()
        cancel_event.set()

        with pytest.raises(ExtractionCancelledError):
            extractor.extract(hunger_sample, cancel_event=cancel_event)


class TestNoiseFilter:
    """Test cases for NoiseFilter."""

    def test_preserves_length(self, hunger_sample):
        """Test that filtering keeps the sample count."""
        audio = np.asarray(hunger_sample.samples)
        assert len(NoiseFilter().apply(audio)) == len(audio)

    def test_suppresses_background(self, cry_generator):
        """Test that quiet stretches lose energy after filtering."""
        audio = np.asarray(cry_generator.generate("discomfort").samples)
        noise_filter = NoiseFilter()

        before = noise_filter.estimate_noise_floor(audio)
        after = noise_filter.estimate_noise_floor(noise_filter.apply(audio))
        assert after < before

    def test_stationary_tone_kept(self, sample_audio_data):
        """Test that a recording without a noise floor is not gated away."""
        audio = np.asarray(sample_audio_data.samples)
        filtered = NoiseFilter().apply(audio)
        assert np.sqrt(np.mean(filtered ** 2)) == pytest.approx(np.sqrt(np.mean(audio ** 2)), rel=0.1)

    def test_deterministic(self, hunger_sample):
        """Test that identical input gives identical output."""
        audio = np.asarray(hunger_sample.samples)
        np.testing.assert_array_equal(NoiseFilter().apply(audio), NoiseFilter().apply(audio))
