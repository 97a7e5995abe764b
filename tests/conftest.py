"""Pytest configuration and fixtures for the cry analyzer tests."""

import pytest
import numpy as np

from cry_analyzer.config import NEED_TYPES
from cry_analyzer.data.data_generator import CryDataGenerator
from cry_analyzer.features.feature_extraction import FeatureExtractor
from cry_analyzer.model.artifact import ModelArtifact
from cry_analyzer.schema import AudioSample, ModelMetrics


@pytest.fixture
def sample_audio_data():
    """Fixture providing sample audio data for testing."""
    # Generate 1 second of audio at 16kHz
    sample_rate = 16000
    duration = 1.0
    samples = int(sample_rate * duration)

    # Create a simple sine wave as test audio
    frequency = 440  # A4 note
    t = np.linspace(0, duration, samples, False)
    audio = (0.5 * np.sin(frequency * 2 * np.pi * t)).astype(np.float32)

    return AudioSample(samples=audio, sample_rate=sample_rate)


@pytest.fixture
def white_noise_sample():
    """One second of white noise, which carries no usable cry signal."""
    rng = np.random.default_rng(0)
    return AudioSample(samples=rng.normal(0, 0.3, 16000).astype(np.float32), sample_rate=16000)


@pytest.fixture
def cry_generator():
    return CryDataGenerator(seed=1234)


@pytest.fixture
def hunger_sample(cry_generator):
    return cry_generator.generate("hunger")


@pytest.fixture(scope="session")
def extractor():
    return FeatureExtractor()


def build_artifact(input_dim=24, num_classes=4, hidden_units=(16, 8), version="test-model",
                   seed=0, **kwargs):
    """Artifact with random weights of consistent dense-layer shapes."""
    rng = np.random.default_rng(seed)
    weights = []
    width = input_dim
    for units in list(hidden_units) + [num_classes]:
        weights.append(rng.normal(0, 0.3, (width, units)).astype(np.float32))
        weights.append(np.zeros(units, dtype=np.float32))
        width = units
    kwargs.setdefault("class_names", NEED_TYPES[:num_classes] if num_classes <= 4 else NEED_TYPES)
    return ModelArtifact(
        version=version,
        weights=weights,
        input_dim=input_dim,
        num_classes=num_classes,
        hidden_units=hidden_units,
        **kwargs,
    )


def build_metrics(accuracy):
    return ModelMetrics(
        accuracy=accuracy,
        precision=accuracy,
        recall=accuracy,
        f1_score=accuracy,
        confusion_matrix={},
        sample_count=10,
    )


@pytest.fixture
def make_artifact():
    return build_artifact


@pytest.fixture
def make_metrics():
    return build_metrics
