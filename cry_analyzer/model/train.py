"""
Supervised training of the cry need classifier
Extraction, fitting, evaluation, accuracy gate, drift detection and publication
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

import numpy as np
import tensorflow as tf
from sklearn.model_selection import train_test_split

from ..config import (
    NEED_TYPES, NUM_CLASSES, NORMALIZATION_METHOD, NORMALIZATION_RANGE, OUTLIER_THRESHOLD,
    MEMORY_MONITOR_INTERVAL_S, MAX_MEMORY_USAGE
)
from ..engine.resources import ResourceMonitor
from ..exceptions import AccuracyGateError, InvalidTrainingDataError, NoModelLoadedError
from ..features.feature_extraction import ExtractionOptions, FeatureExtractor
from ..features.normalization import FeatureStatistics
from ..schema import CalibrationParams, NeedType, RunStatus, TrainingConfig, TrainingRun
from .architecture import CryClassifierModel
from .artifact import ModelArtifact, new_model_version
from .calibration import fit_temperature
from .metrics import compute_metrics

logger = logging.getLogger(__name__)


class Trainer:
    """
    Handles training, evaluation and publication of cry classifiers.

    A run that misses the accuracy gate leaves the registry untouched.
    Accuracy of every accepted run feeds the drift window.
    """

    def __init__(
        self,
        registry,
        extractor=None,
        config=None,
        normalization_method=NORMALIZATION_METHOD,
        normalization_range=NORMALIZATION_RANGE,
        outlier_threshold=OUTLIER_THRESHOLD,
        monitor_interval_s=MEMORY_MONITOR_INTERVAL_S,
        memory_threshold=MAX_MEMORY_USAGE,
    ):
        self.registry = registry
        self.extractor = extractor or FeatureExtractor()
        self.config = config or TrainingConfig()
        self.normalization_method = normalization_method
        self.normalization_range = normalization_range
        self.outlier_threshold = outlier_threshold
        self.monitor_interval_s = monitor_interval_s
        self.memory_threshold = memory_threshold

        self._accepted_accuracies = []
        self._runs = []

    @property
    def runs(self):
        return list(self._runs)

    @property
    def accuracy_history(self):
        return list(self._accepted_accuracies)

    def _extraction_options(self, statistics=None):
        return ExtractionOptions(
            normalization_method=self.normalization_method,
            target_range=self.normalization_range,
            outlier_threshold=self.outlier_threshold,
            statistics=statistics,
        )

    def train(self, dataset, labels, config=None, raise_on_reject=False):
        """
        Train a new model and publish it if it passes the accuracy gate.

        Args:
            dataset: sequence of AudioSample
            labels: need type of each sample (NeedType or its string value)
            config: TrainingConfig, defaults to the trainer's own
            raise_on_reject: raise AccuracyGateError instead of returning
                the metrics of a rejected run

        Returns:
            ModelMetrics of the validation partition, with status and drift set

        Raises:
            InvalidTrainingDataError: empty dataset, mismatched labels,
                unknown need type or too few usable samples
        """
        config = config or self.config
        run = TrainingRun(
            dataset_reference=config.dataset_version,
            hyperparameters=config.hyperparameters(),
        )
        self._runs.append(run)
        logger.info(f"Starting training run {run.run_id} on {len(dataset)} samples...")

        try:
            return self._train(run, dataset, labels, config, raise_on_reject)
        except AccuracyGateError:
            raise
        except Exception as e:
            run.status = RunStatus.REJECTED
            run.rejection_reason = f"{type(e).__name__}: {e}"
            run.finished_at = datetime.now(timezone.utc)
            logger.error(f"Training run {run.run_id} failed: {run.rejection_reason}")
            raise

    def _train(self, run, dataset, labels, config, raise_on_reject):
        start_time = time.monotonic()
        y = self._validate(dataset, labels)
        if config.seed is not None:
            tf.keras.utils.set_random_seed(config.seed)

        monitor = ResourceMonitor(
            interval_s=self.monitor_interval_s, threshold=self.memory_threshold
        )
        with monitor:
            raw, y = self._extract_raw(dataset, y, config.extraction_workers)
            raw_train, raw_val, y_train, y_val = self._split(raw, y, config)

            statistics = FeatureStatistics.fit(np.stack([r.values for r in raw_train]))
            options = self._extraction_options(statistics)
            x_train = self._normalize(raw_train, options)
            x_val = self._normalize(raw_val, options)

            classifier = self._fit(x_train, y_train, x_val, y_val, config)
            logits = classifier.scores(x_val)

            temperature = config.temperature
            if config.fit_temperature:
                temperature = fit_temperature(logits, y_val)
            metrics = compute_metrics(y_val, logits, temperature)

        metrics.training_time_s = time.monotonic() - start_time
        metrics.resource_utilization = monitor.summary()
        self._check_drift(metrics, config)

        run.metrics = metrics
        run.finished_at = datetime.now(timezone.utc)
        logger.info(
            f"Validation accuracy {metrics.accuracy:.4f}, F1 {metrics.f1_score:.4f} "
            f"({metrics.sample_count} samples, {metrics.training_time_s:.1f}s)"
        )

        if metrics.accuracy < config.min_accuracy:
            reason = (
                f"Validation accuracy {metrics.accuracy:.4f} is below the "
                f"{config.min_accuracy:.2f} gate"
            )
            metrics.status = run.status = RunStatus.REJECTED
            run.rejection_reason = reason
            logger.warning(f"Training run {run.run_id} rejected: {reason}")
            if raise_on_reject:
                raise AccuracyGateError(reason, metrics=metrics)
            return metrics

        artifact = ModelArtifact(
            version=new_model_version(),
            weights=classifier.get_weights(),
            input_dim=x_train.shape[1],
            num_classes=NUM_CLASSES,
            class_names=NEED_TYPES,
            hidden_units=classifier.hidden_units,
            calibration=CalibrationParams(
                temperature=temperature, calibration_factor=config.calibration_factor
            ),
            feature_names=self.extractor.feature_names,
            normalization_method=self.normalization_method,
            normalization_range=self.normalization_range,
            outlier_threshold=self.outlier_threshold,
            feature_statistics=statistics,
            metadata={
                "run_id": run.run_id,
                "dataset_version": config.dataset_version,
                "hyperparameters": config.hyperparameters(),
                "accuracy": metrics.accuracy,
                "f1_score": metrics.f1_score,
            },
        )
        self.registry.publish(artifact)
        metrics.model_version = artifact.version
        metrics.status = run.status = RunStatus.ACCEPTED
        self._accepted_accuracies.append(metrics.accuracy)
        logger.info(f"Training run {run.run_id} accepted, published model {artifact.version}")
        return metrics

    def evaluate_model(self, dataset, labels, artifact=None):
        """
        Evaluate a model on a labeled dataset without changing any state.
        Uses the registry's current model unless `artifact` is given.
        """
        artifact = artifact or self.registry.current()
        if artifact is None:
            raise NoModelLoadedError("No model to evaluate")

        y = self._validate(dataset, labels)
        raw, y = self._extract_raw(dataset, y, self.config.extraction_workers)
        x = self._normalize(raw, artifact.extraction_options())

        classifier = CryClassifierModel.from_artifact(artifact)
        logits = classifier.scores(x)
        metrics = compute_metrics(y, logits, artifact.calibration.temperature)
        metrics.model_version = artifact.version
        self._check_drift(metrics, self.config)
        logger.info(f"Model {artifact.version} accuracy {metrics.accuracy:.4f} on {len(y)} samples")
        return metrics

    def _validate(self, dataset, labels):
        if len(dataset) == 0:
            raise InvalidTrainingDataError("Training dataset is empty")
        if len(dataset) != len(labels):
            raise InvalidTrainingDataError(
                f"Dataset has {len(dataset)} samples but {len(labels)} labels"
            )
        indices = []
        for label in labels:
            try:
                indices.append(NeedType(label).index)
            except ValueError:
                raise InvalidTrainingDataError(f"Unknown need type label: {label!r}")
        return np.array(indices, dtype=np.int64)

    def _extract_raw(self, dataset, y, workers):
        options = self._extraction_options()
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="train-extract") as pool:
            raw = list(pool.map(lambda sample: self.extractor.extract_raw(sample, options), dataset))

        keep = [i for i, r in enumerate(raw) if r.noise_level <= r.signal_quality]
        dropped = len(raw) - len(keep)
        if dropped:
            logger.warning(
                f"Dropped {dropped} sample(s) whose noise level exceeds signal quality"
            )
        if len(keep) < 2:
            raise InvalidTrainingDataError(
                f"Only {len(keep)} usable sample(s) after quality filtering"
            )
        return [raw[i] for i in keep], y[keep]

    def _split(self, raw, y, config):
        counts = np.bincount(y, minlength=NUM_CLASSES)
        present = counts[counts > 0]
        stratify = y if present.min() >= 2 else None
        try:
            return train_test_split(
                raw, y, test_size=config.validation_split,
                stratify=stratify, random_state=config.seed
            )
        except ValueError as e:
            if stratify is None:
                raise
            logger.warning(f"Stratified split not possible ({e}), falling back to random split")
            return train_test_split(
                raw, y, test_size=config.validation_split, random_state=config.seed
            )

    def _normalize(self, raw, options):
        return np.stack([self.extractor.normalize(r, options).values for r in raw])

    def _fit(self, x_train, y_train, x_val, y_val, config):
        classifier = CryClassifierModel(input_dim=x_train.shape[1])
        classifier.build_model(learning_rate=config.learning_rate)

        callbacks = []
        if config.early_stopping_patience:
            callbacks.append(tf.keras.callbacks.EarlyStopping(
                monitor="val_loss",
                patience=config.early_stopping_patience,
                restore_best_weights=True,
            ))

        history = classifier.model.fit(
            x_train, tf.keras.utils.to_categorical(y_train, num_classes=NUM_CLASSES),
            epochs=config.epochs,
            batch_size=config.batch_size,
            validation_data=(x_val, tf.keras.utils.to_categorical(y_val, num_classes=NUM_CLASSES)),
            callbacks=callbacks,
            verbose=0,
        )
        logger.info(f"Model training finished after {len(history.history['loss'])} epochs.")
        return classifier

    def _check_drift(self, metrics, config):
        history = self._accepted_accuracies[-config.drift_window:]
        if not history:
            return
        baseline = float(np.mean(history))
        if metrics.accuracy < config.drift_tolerance * baseline:
            metrics.drift_detected = True
            metrics.drift_message = (
                f"Accuracy {metrics.accuracy:.4f} is below {config.drift_tolerance:.0%} "
                f"of the recent mean {baseline:.4f} over {len(history)} run(s)"
            )
            logger.warning(f"Model drift detected: {metrics.drift_message}")
