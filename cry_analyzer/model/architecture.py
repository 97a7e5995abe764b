"""
Classifier model for infant cry need detection
Small dense network over the normalized feature vector, emitting one raw
score (logit) per need type for downstream calibration
"""

import logging

import numpy as np
import tensorflow as tf

from ..config import NUM_CLASSES, HIDDEN_UNITS, DROPOUT_RATES, DEFAULT_LEARNING_RATE

logger = logging.getLogger(__name__)


class CryClassifierModel:
    """
    Builds and holds the Keras network behind a model artifact.
    Output layer is linear; softmax happens in the calibrator.
    """

    def __init__(self, input_dim, num_classes=NUM_CLASSES, hidden_units=HIDDEN_UNITS,
                 dropout_rates=DROPOUT_RATES):
        self.input_dim = int(input_dim)
        self.num_classes = int(num_classes)
        self.hidden_units = tuple(int(units) for units in hidden_units)
        self.dropout_rates = tuple(dropout_rates)

        # Model will be built when needed
        self.model = None

    def build_model(self, learning_rate=DEFAULT_LEARNING_RATE):
        """
        Build and compile the dense classifier
        Hidden layers with ReLU and dropout, linear score head
        """
        logger.info(
            f"Building cry classifier: {self.input_dim} inputs, "
            f"hidden {list(self.hidden_units)}, {self.num_classes} classes"
        )

        inputs = tf.keras.Input(shape=(self.input_dim,), name="feature_input")
        x = inputs
        for i, units in enumerate(self.hidden_units):
            x = tf.keras.layers.Dense(units, activation="relu", name=f"hidden_{i + 1}")(x)
            if i < len(self.dropout_rates) and self.dropout_rates[i] > 0:
                x = tf.keras.layers.Dropout(self.dropout_rates[i])(x)

        # Raw scores; temperature scaling and softmax are applied at calibration
        outputs = tf.keras.layers.Dense(self.num_classes, name="need_scores")(x)

        model = tf.keras.Model(inputs=inputs, outputs=outputs, name="cry_need_classifier")
        model.compile(
            optimizer=tf.keras.optimizers.Adam(learning_rate=learning_rate),
            loss=tf.keras.losses.CategoricalCrossentropy(from_logits=True),
            metrics=["accuracy"],
        )

        self.model = model
        logger.info(f"Model built with {model.count_params()} parameters")
        return model

    def get_weights(self):
        if self.model is None:
            raise RuntimeError("Model not built. Call build_model() first")
        return [np.array(w, copy=True) for w in self.model.get_weights()]

    def set_weights(self, weights):
        if self.model is None:
            self.build_model()
        self.model.set_weights([np.asarray(w) for w in weights])

    def scores(self, features):
        """Raw class scores for a (batch, input_dim) array."""
        if self.model is None:
            raise RuntimeError("Model not built. Call build_model() first")
        batch = tf.convert_to_tensor(np.asarray(features, dtype=np.float32))
        return self.model(batch, training=False).numpy()

    @classmethod
    def from_artifact(cls, artifact):
        """Rebuild the network described by a ModelArtifact and load its weights."""
        classifier = cls(
            input_dim=artifact.input_dim,
            num_classes=artifact.num_classes,
            hidden_units=artifact.hidden_units,
        )
        classifier.build_model()
        classifier.set_weights(artifact.weights)
        return classifier
