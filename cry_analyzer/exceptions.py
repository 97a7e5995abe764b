"""Custom exceptions for the cry classification pipeline."""


class CryAnalyzerError(Exception):
    """Base exception for cry classification errors."""

    pass


class InvalidInputError(CryAnalyzerError, ValueError):
    """Raised for malformed or empty audio samples."""

    pass


class FeatureQualityError(InvalidInputError):
    """Raised when a feature vector's noise level exceeds its signal quality."""

    def __init__(self, noise_level, signal_quality):
        self.noise_level = noise_level
        self.signal_quality = signal_quality
        super().__init__(
            f"Noise level {noise_level:.3f} exceeds signal quality {signal_quality:.3f}"
        )


class InvalidTrainingDataError(InvalidInputError):
    """Raised when a training dataset is empty or does not match its labels."""

    pass


class PipelineTimeoutError(CryAnalyzerError, TimeoutError):
    """Base exception for pipeline stages that exceeded their deadline."""

    pass


class ExtractionTimeoutError(PipelineTimeoutError):
    """Raised when feature extraction exceeds its deadline."""

    pass


class InferenceTimeoutError(PipelineTimeoutError):
    """Raised when model inference exceeds its deadline."""

    pass


class ExtractionCancelledError(CryAnalyzerError):
    """Raised inside an extraction whose caller has abandoned it."""

    pass


class QueueFullError(CryAnalyzerError):
    """Raised when the processing queue is at capacity."""

    pass


class NoModelLoadedError(CryAnalyzerError):
    """Raised when a prediction is requested before any model is published."""

    pass


class ArchitectureMismatchError(CryAnalyzerError):
    """Raised when a model artifact's shapes do not fit the need-type classes."""

    pass


class ModelLoadError(CryAnalyzerError):
    """Raised when a model cannot be loaded or fails its warm-up."""

    pass


class AccuracyGateError(CryAnalyzerError):
    """Raised when a trained model is rejected by the accuracy gate."""

    def __init__(self, message, metrics=None):
        super().__init__(message)
        self.metrics = metrics
