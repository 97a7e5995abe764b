"""
Feature extraction module for infant cry classification
Turns a raw AudioSample into a normalized FeatureVector with quality metrics
"""

import logging
import time
from dataclasses import dataclass
from typing import Optional, Tuple

import librosa
import numpy as np
from scipy.signal import correlate, find_peaks

from ..config import (
    N_MFCC, N_MELS, N_FFT, HOP_LENGTH, ROLLOFF_PERCENT,
    MIN_CRY_FREQUENCY, MAX_CRY_FREQUENCY, EXTRACTION_TIMEOUT_MS,
    MIN_EXTRACTION_CONFIDENCE, SNR_REFERENCE_DB, NORMALIZATION_METHOD,
    NORMALIZATION_RANGE, OUTLIER_THRESHOLD, NOISE_FLOOR_PERCENTILE
)
from ..exceptions import ExtractionCancelledError, ExtractionTimeoutError
from ..schema import FeatureVector, QualityMetrics
from .noise_filter import NoiseFilter
from .normalization import FeatureStatistics, get_normalizer

logger = logging.getLogger(__name__)

_EPSILON = 1e-10

BASE_FEATURES = (
    "rms_mean",
    "rms_std",
    "peak_amplitude",
    "energy",
    "zero_crossing_rate",
    "spectral_centroid",
    "spectral_bandwidth",
    "spectral_rolloff",
    "spectral_flatness",
    "fundamental_frequency",
    "noise_level",
)


@dataclass(frozen=True)
class ExtractionOptions:
    """Per-call extraction settings."""

    enable_noise_reduction: bool = True
    timeout_ms: float = EXTRACTION_TIMEOUT_MS
    min_confidence: float = MIN_EXTRACTION_CONFIDENCE
    normalization_method: str = NORMALIZATION_METHOD
    target_range: Tuple[float, float] = NORMALIZATION_RANGE
    outlier_threshold: float = OUTLIER_THRESHOLD
    statistics: Optional[FeatureStatistics] = None


@dataclass(frozen=True, eq=False)
class RawFeatures:
    """Unnormalized descriptors of one sample, before scaling."""

    values: np.ndarray
    noise_level: float
    signal_quality: float
    snr_db: float
    clarity: float
    confidence: float
    elapsed_ms: float


class FeatureExtractor:
    """
    Extracts acoustic descriptors for cry need classification.

    Stages run in order (noise suppression, descriptors, normalization) and
    the deadline and cancellation flag are checked between them, so an
    abandoned extraction stops at the next stage boundary and never returns
    a partial vector.
    """

    def __init__(
        self,
        n_mfcc=N_MFCC,
        n_mels=N_MELS,
        n_fft=N_FFT,
        hop_length=HOP_LENGTH,
        noise_filter=None,
        default_options=None,
    ):
        self.n_mfcc = n_mfcc
        self.n_mels = n_mels
        self.n_fft = n_fft
        self.hop_length = hop_length
        self.noise_filter = noise_filter or NoiseFilter(n_fft=n_fft, hop_length=hop_length)
        self.default_options = default_options or ExtractionOptions()
        self._feature_names = BASE_FEATURES + tuple(
            f"mfcc_{i + 1}" for i in range(self.n_mfcc)
        )

        logger.info(
            f"Feature extractor initialized ({len(self._feature_names)} features, "
            f"{self.default_options.normalization_method} normalization)"
        )

    @property
    def feature_names(self):
        return self._feature_names

    @property
    def feature_dim(self):
        return len(self._feature_names)

    def extract(self, sample, options=None, cancel_event=None):
        """
        Extract a normalized feature vector from an audio sample.

        Args:
            sample: AudioSample to analyze
            options: ExtractionOptions, defaults to the extractor's own
            cancel_event: optional threading.Event set by an abandoning caller

        Returns:
            FeatureVector whose values lie within options.target_range

        Raises:
            InvalidInputError: malformed or empty sample
            ExtractionTimeoutError: the deadline passed before completion
            ExtractionCancelledError: cancel_event was set
        """
        options = options or self.default_options
        start = time.monotonic()
        deadline = start + options.timeout_ms / 1000.0

        raw = self._extract_raw(sample, options, cancel_event, start, deadline)
        vector = self.normalize(raw, options)
        self._checkpoint(cancel_event, deadline, options, "normalization")

        latency_ms = (time.monotonic() - start) * 1000.0
        quality = QualityMetrics(
            snr_db=raw.snr_db,
            clarity=raw.clarity,
            confidence=raw.confidence,
            latency_ms=latency_ms,
        )
        return FeatureVector(
            names=vector.names,
            values=vector.values,
            noise_level=vector.noise_level,
            signal_quality=vector.signal_quality,
            quality=quality,
            value_range=vector.value_range,
        )

    def extract_raw(self, sample, options=None, cancel_event=None):
        """Run noise suppression and descriptor extraction without normalizing."""
        options = options or self.default_options
        start = time.monotonic()
        return self._extract_raw(
            sample, options, cancel_event, start, start + options.timeout_ms / 1000.0
        )

    def normalize(self, raw, options=None):
        """Scale raw descriptors into the target range and clamp outliers."""
        options = options or self.default_options
        normalizer = get_normalizer(
            options.normalization_method,
            target_range=options.target_range,
            outlier_threshold=options.outlier_threshold,
        )
        stats = options.statistics
        if stats is None:
            stats = FeatureStatistics.across_features(raw.values)
        values = normalizer.normalize(raw.values, stats)
        return FeatureVector(
            names=self._feature_names,
            values=values,
            noise_level=raw.noise_level,
            signal_quality=raw.signal_quality,
            quality=QualityMetrics(
                snr_db=raw.snr_db,
                clarity=raw.clarity,
                confidence=raw.confidence,
                latency_ms=raw.elapsed_ms,
            ),
            value_range=normalizer.target_range,
        )

    def _extract_raw(self, sample, options, cancel_event, start, deadline):
        sample.validate()
        sample_rate = int(round(float(sample.sample_rate)))
        audio = np.asarray(sample.samples, dtype=np.float32)
        snr_db = self._estimate_snr(audio)
        self._checkpoint(cancel_event, deadline, options, "validation")

        # 1. Background noise suppression
        if options.enable_noise_reduction:
            audio = self.noise_filter.apply(self._pad(audio))[: max(len(audio), 1)]
        self._checkpoint(cancel_event, deadline, options, "noise suppression")

        # 2. Descriptors
        values, noise_level, clarity = self._descriptors(audio, sample_rate)
        self._checkpoint(cancel_event, deadline, options, "descriptor extraction")

        confidence = float(
            np.clip(clarity * min(1.0, snr_db / SNR_REFERENCE_DB), 0.0, 1.0)
        )
        if confidence < options.min_confidence:
            logger.warning(
                f"Low confidence in extracted features: {confidence:.2f} "
                f"(snr={snr_db:.1f} dB, clarity={clarity:.2f})"
            )

        return RawFeatures(
            values=values,
            noise_level=noise_level,
            signal_quality=clarity,
            snr_db=snr_db,
            clarity=clarity,
            confidence=confidence,
            elapsed_ms=(time.monotonic() - start) * 1000.0,
        )

    def _checkpoint(self, cancel_event, deadline, options, stage):
        if cancel_event is not None and cancel_event.is_set():
            raise ExtractionCancelledError(f"Feature extraction cancelled after {stage}")
        if time.monotonic() > deadline:
            raise ExtractionTimeoutError(
                f"Feature extraction exceeded {options.timeout_ms:.0f} ms during {stage}"
            )

    def _pad(self, audio):
        if len(audio) >= self.n_fft:
            return audio
        return np.pad(audio, (0, self.n_fft - len(audio)), mode="constant")

    def _estimate_snr(self, audio):
        """SNR in dB between loud and quiet frames of the unfiltered signal."""
        rms = self.noise_filter.frame_rms(self._pad(audio))
        noise = np.percentile(rms, NOISE_FLOOR_PERCENTILE)
        signal_level = np.percentile(rms, 100 - NOISE_FLOOR_PERCENTILE)
        if signal_level <= _EPSILON:
            return 0.0
        snr = 20.0 * np.log10(signal_level / max(noise, _EPSILON))
        return float(np.clip(snr, 0.0, 60.0))

    def _descriptors(self, audio, sample_rate):
        """
        Amplitude, frequency-domain and cepstral descriptors.
        Returns the value array plus the noise level and clarity scores.
        """
        padded = self._pad(audio)

        # Amplitude features on the filtered signal
        rms = self.noise_filter.frame_rms(padded)
        peak = float(np.max(np.abs(audio))) if len(audio) else 0.0
        energy = float(np.mean(np.square(audio, dtype=np.float64))) if len(audio) else 0.0

        # Normalize amplitude for spectral analysis
        if peak > 0:
            padded = padded / peak

        zcr = librosa.feature.zero_crossing_rate(
            y=padded, frame_length=self.n_fft, hop_length=self.hop_length
        )[0]

        spectrum = np.abs(librosa.stft(padded, n_fft=self.n_fft, hop_length=self.hop_length))
        centroid = librosa.feature.spectral_centroid(S=spectrum, sr=sample_rate)[0]
        bandwidth = librosa.feature.spectral_bandwidth(S=spectrum, sr=sample_rate)[0]
        rolloff = librosa.feature.spectral_rolloff(
            S=spectrum, sr=sample_rate, roll_percent=ROLLOFF_PERCENT
        )[0]
        flatness = librosa.feature.spectral_flatness(S=spectrum)[0]

        # Energy-weighted flatness so silent gaps do not dominate the estimate
        frame_power = np.square(spectrum).sum(axis=0)
        if frame_power.sum() > _EPSILON:
            noise_level = float(np.average(flatness, weights=frame_power))
        else:
            noise_level = float(np.mean(flatness))
        noise_level = float(np.clip(noise_level, 0.0, 1.0))

        f0, clarity = self._periodicity(padded, sample_rate)

        mfcc = librosa.feature.mfcc(
            y=padded,
            sr=sample_rate,
            n_mfcc=self.n_mfcc,
            n_fft=self.n_fft,
            hop_length=self.hop_length,
            n_mels=self.n_mels,
        )

        values = np.concatenate([
            [
                float(np.mean(rms)),
                float(np.std(rms)),
                peak,
                energy,
                float(np.mean(zcr)),
                float(np.mean(centroid)),
                float(np.mean(bandwidth)),
                float(np.mean(rolloff)),
                float(np.mean(flatness)),
                f0,
                noise_level,
            ],
            np.mean(mfcc, axis=1),
        ]).astype(np.float64)
        return np.nan_to_num(values), noise_level, clarity

    def _periodicity(self, audio, sample_rate):
        """
        Fundamental frequency and clarity from the normalized autocorrelation.
        Clarity is the autocorrelation peak height in the cry pitch range.
        """
        min_lag = max(1, int(sample_rate / MAX_CRY_FREQUENCY))
        max_lag = min(len(audio) - 1, int(sample_rate / MIN_CRY_FREQUENCY))
        if max_lag <= min_lag:
            return 0.0, 0.0

        centered = audio.astype(np.float64) - np.mean(audio)
        autocorr = correlate(centered, centered, mode="full", method="fft")[len(centered) - 1:]
        if autocorr[0] <= _EPSILON:
            return 0.0, 0.0

        lags = np.arange(max_lag + 1)
        unbiased = autocorr[: max_lag + 1] / autocorr[0] * len(centered) / (len(centered) - lags)
        window = unbiased[min_lag:]

        peaks, _ = find_peaks(window)
        if len(peaks) == 0:
            return 0.0, float(np.clip(window.max(), 0.0, 1.0))

        best = window[peaks].max()
        # First strong peak, so sub-harmonics are not mistaken for the pitch
        lag = min_lag + peaks[np.flatnonzero(window[peaks] >= 0.9 * best)[0]]
        return float(sample_rate / lag), float(np.clip(best, 0.0, 1.0))
