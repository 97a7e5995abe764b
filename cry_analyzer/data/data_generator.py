"""
Training data sources
Synthetic infant cry generation and labeled WAV directory loading
"""

import logging
from pathlib import Path

import librosa
import numpy as np

from ..config import NEED_TYPES, SAMPLE_RATE
from ..schema import AudioSample, NeedType

logger = logging.getLogger(__name__)

# Acoustic profile per need type:
#   f0: base fundamental (Hz), burst/gap: cry cycle (s), decay: amplitude
#   drift per second, amplitude: peak level, noise: background level
CRY_PROFILES = {
    NeedType.HUNGER: {"f0": 350.0, "burst": 0.25, "gap": 0.10, "decay": 0.0,
                      "amplitude": 0.5, "noise": 0.004},
    NeedType.TIREDNESS: {"f0": 280.0, "burst": 0.45, "gap": 0.20, "decay": 0.6,
                         "amplitude": 0.35, "noise": 0.004},
    NeedType.PAIN: {"f0": 550.0, "burst": 0.80, "gap": 0.08, "decay": 0.0,
                    "amplitude": 0.9, "noise": 0.004},
    NeedType.DISCOMFORT: {"f0": 430.0, "burst": 0.30, "gap": 0.25, "decay": 0.0,
                          "amplitude": 0.45, "noise": 0.02},
}

HARMONIC_WEIGHTS = (1.0, 0.5, 0.25, 0.12)


class CryDataGenerator:
    """
    Generates labeled synthetic cry recordings for training and tests.
    Every sample gets random pitch jitter, vibrato and timing variation, and
    the same seed always reproduces the same dataset.
    """

    def __init__(self, sample_rate=SAMPLE_RATE, duration_s=1.0, seed=None,
                 pitch_jitter=0.05, vibrato_depth=0.02, vibrato_rate=5.0):
        self.sample_rate = sample_rate
        self.duration_s = duration_s
        self.pitch_jitter = pitch_jitter
        self.vibrato_depth = vibrato_depth
        self.vibrato_rate = vibrato_rate
        self.rng = np.random.default_rng(seed)

    def generate(self, need_type):
        """Synthesize one cry of the given need type as an AudioSample."""
        need_type = NeedType(need_type)
        profile = CRY_PROFILES[need_type]
        num_samples = int(self.sample_rate * self.duration_s)
        t = np.arange(num_samples) / self.sample_rate

        # Pitch contour: jittered base with vibrato
        f0 = profile["f0"] * (1.0 + self.rng.uniform(-self.pitch_jitter, self.pitch_jitter))
        vibrato_phase = self.rng.uniform(0, 2 * np.pi)
        contour = f0 * (1.0 + self.vibrato_depth * np.sin(
            2 * np.pi * self.vibrato_rate * t + vibrato_phase
        ))
        phase = 2 * np.pi * np.cumsum(contour) / self.sample_rate

        tone = np.zeros(num_samples)
        for harmonic, weight in enumerate(HARMONIC_WEIGHTS, start=1):
            if f0 * harmonic * 1.05 >= self.sample_rate / 2:
                break
            tone += weight * np.sin(harmonic * phase)
        tone /= np.max(np.abs(tone))

        envelope = self._envelope(t, profile)
        noise = self.rng.normal(0.0, profile["noise"], num_samples)
        audio = profile["amplitude"] * envelope * tone + noise
        return AudioSample(samples=audio.astype(np.float32), sample_rate=self.sample_rate)

    def _envelope(self, t, profile):
        """Cry bursts separated by inhalation gaps, with smooth edges."""
        burst = profile["burst"] * self.rng.uniform(0.85, 1.15)
        gap = profile["gap"] * self.rng.uniform(0.85, 1.15)
        period = burst + gap
        offset = self.rng.uniform(0, gap)
        position = np.mod(t + offset, period)

        ramp = 0.02
        envelope = np.clip(np.minimum(position, burst - position) / ramp, 0.0, 1.0)
        envelope[position >= burst] = 0.0
        if profile["decay"]:
            envelope *= np.exp(-profile["decay"] * t)
        return envelope

    def generate_dataset(self, samples_per_class):
        """
        Balanced dataset of synthetic cries.

        Returns:
            (samples, labels) lists in shuffled order
        """
        samples, labels = [], []
        for need in NEED_TYPES:
            for _ in range(samples_per_class):
                samples.append(self.generate(need))
                labels.append(NeedType(need))
        order = self.rng.permutation(len(samples))
        logger.info(
            f"Generated {len(samples)} synthetic cries ({samples_per_class} per need type)"
        )
        return [samples[i] for i in order], [labels[i] for i in order]


def load_audio_file(path, sample_rate=SAMPLE_RATE):
    """Load a recording as a mono AudioSample resampled to `sample_rate`."""
    audio, sr = librosa.load(str(path), sr=sample_rate, mono=True)
    return AudioSample(samples=audio, sample_rate=sr)


def load_labeled_directory(path, sample_rate=SAMPLE_RATE):
    """
    Load a labeled dataset laid out as `path/<need_type>/*.wav`.

    Returns:
        (samples, labels) lists
    """
    root = Path(path)
    samples, labels = [], []
    for need in NEED_TYPES:
        class_dir = root / need
        if not class_dir.is_dir():
            logger.warning(f"No directory for need type '{need}' under {root}")
            continue
        files = sorted(class_dir.glob("*.wav"))
        for file in files:
            samples.append(load_audio_file(file, sample_rate))
            labels.append(NeedType(need))
        logger.info(f"Loaded {len(files)} '{need}' recordings from {class_dir}")
    return samples, labels
