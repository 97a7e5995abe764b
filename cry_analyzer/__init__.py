"""
Infant cry need classifier
Feature extraction, calibrated prediction and supervised retraining
"""

__version__ = "1.0.0"

from .config import NEED_TYPES
from .exceptions import (
    CryAnalyzerError,
    InvalidInputError,
    FeatureQualityError,
    InvalidTrainingDataError,
    PipelineTimeoutError,
    ExtractionTimeoutError,
    InferenceTimeoutError,
    ExtractionCancelledError,
    QueueFullError,
    NoModelLoadedError,
    ArchitectureMismatchError,
    ModelLoadError,
    AccuracyGateError,
)
from .schema import (
    NeedType,
    AudioSample,
    FeatureVector,
    CalibrationParams,
    PredictionResult,
    ModelMetrics,
    TrainingConfig,
    TrainingRun,
    RunStatus,
)
from .features.feature_extraction import ExtractionOptions, FeatureExtractor
from .model.artifact import ModelArtifact, load_artifact, save_artifact
from .model.calibration import calibrate
from .model.registry import ModelRegistry
from .model.train import Trainer
from .engine.predictor import Predictor
