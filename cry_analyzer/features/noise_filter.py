"""
Background noise suppression for cry recordings
Adaptive noise gate, spectral subtraction and median filtering
"""

import logging

import librosa
import numpy as np
from scipy.signal import medfilt

from ..config import (
    N_FFT, HOP_LENGTH, NOISE_FLOOR_PERCENTILE, NOISE_GATE_RATIO,
    SPECTRAL_SUBTRACTION_ALPHA, SPECTRAL_FLOOR, MEDIAN_FILTER_SIZE
)

logger = logging.getLogger(__name__)


class NoiseFilter:
    """
    Suppresses stationary background noise before feature extraction.

    The noise profile is estimated from the quietest frames of the recording
    itself, so the filter holds no state between calls and identical input
    always produces identical output.
    """

    def __init__(
        self,
        n_fft=N_FFT,
        hop_length=HOP_LENGTH,
        noise_percentile=NOISE_FLOOR_PERCENTILE,
        gate_ratio=NOISE_GATE_RATIO,
        alpha=SPECTRAL_SUBTRACTION_ALPHA,
        spectral_floor=SPECTRAL_FLOOR,
        median_size=MEDIAN_FILTER_SIZE,
    ):
        self.n_fft = n_fft
        self.hop_length = hop_length
        self.noise_percentile = noise_percentile
        self.gate_ratio = gate_ratio
        self.alpha = alpha
        self.spectral_floor = spectral_floor
        self.median_size = median_size

    def frame_rms(self, audio):
        return librosa.feature.rms(
            y=audio, frame_length=self.n_fft, hop_length=self.hop_length
        )[0]

    def estimate_noise_floor(self, audio):
        """Noise floor as a low percentile of frame RMS."""
        return float(np.percentile(self.frame_rms(audio), self.noise_percentile))

    def apply(self, audio):
        """
        Apply the full suppression chain.

        Args:
            audio: mono float waveform, at least one FFT window long

        Returns:
            numpy array of the same length
        """
        audio = np.asarray(audio, dtype=np.float32)
        if len(audio) < self.n_fft:
            return self._median(audio)

        rms = self.frame_rms(audio)
        noise_floor = float(np.percentile(rms, self.noise_percentile))
        signal_level = float(np.percentile(rms, 100 - self.noise_percentile))

        # A recording without quiet stretches gives no usable noise profile
        if signal_level <= self.gate_ratio * noise_floor:
            logger.debug("No distinct noise floor found; skipping gate and subtraction")
            return self._median(audio)

        filtered = self._noise_gate(audio, rms, noise_floor)
        filtered = self._spectral_subtraction(filtered)
        return self._median(filtered)

    def _noise_gate(self, audio, rms, noise_floor):
        """Soft gate: frames below the threshold are attenuated proportionally."""
        threshold = self.gate_ratio * noise_floor
        if threshold <= 0:
            return audio
        frame_gain = np.clip(rms / threshold, 0.0, 1.0)
        frame_positions = np.arange(len(frame_gain)) * self.hop_length
        sample_gain = np.interp(np.arange(len(audio)), frame_positions, frame_gain)
        return (audio * sample_gain).astype(np.float32)

    def _spectral_subtraction(self, audio):
        stft = librosa.stft(audio, n_fft=self.n_fft, hop_length=self.hop_length)
        magnitude = np.abs(stft)
        phase = np.angle(stft)

        frame_energy = magnitude.sum(axis=0)
        quiet = frame_energy <= np.percentile(frame_energy, self.noise_percentile)
        noise_profile = magnitude[:, quiet].mean(axis=1, keepdims=True)

        enhanced = np.maximum(
            magnitude - self.alpha * noise_profile,
            self.spectral_floor * magnitude,
        )
        return librosa.istft(
            enhanced * np.exp(1j * phase),
            hop_length=self.hop_length,
            n_fft=self.n_fft,
            length=len(audio),
        ).astype(np.float32)

    def _median(self, audio):
        if self.median_size <= 1 or len(audio) < self.median_size:
            return audio
        return medfilt(audio, kernel_size=self.median_size).astype(np.float32)
