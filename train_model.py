#!/usr/bin/env python3
"""
Model training script for the infant cry need classifier
Trains on synthetic cries and saves the model artifact

Implements Persistent Model Check:
- At startup, checks for an existing artifact at models/saved_models
- If exists: Loads it and proceeds to evaluation
- If not: Trains the model and saves it for next run
"""

import logging
import os
import sys

from cry_analyzer.config import DEFAULT_MODEL_DIR, ARTIFACT_METADATA_FILE
from cry_analyzer.data.data_generator import CryDataGenerator
from cry_analyzer.model.registry import ModelRegistry
from cry_analyzer.model.train import Trainer
from cry_analyzer.schema import TrainingConfig


def train_and_save(model_dir=DEFAULT_MODEL_DIR, samples_per_class=60, seed=42):
    """
    Complete training pipeline with persistent model check.
    """
    print("Infant Cry Need Classifier Training")
    print("=" * 55)

    registry = ModelRegistry()
    trainer = Trainer(registry)

    if os.path.exists(os.path.join(model_dir, ARTIFACT_METADATA_FILE)):
        print("\n" + "=" * 55)
        print("Existing model found. Loading artifact...")
        print("=" * 55)
        artifact = registry.load(model_dir)
        print(f"Model {artifact.version} loaded from: {model_dir}")
        print("\nSkipping training - using existing model.")
        print("To retrain, delete the existing model directory.")
    else:
        print("\n" + "=" * 55)
        print("No existing model found. Starting training...")
        print("=" * 55)

        dataset, labels = CryDataGenerator(seed=seed).generate_dataset(samples_per_class)
        print(f"Training data: {len(dataset)} recordings")

        metrics = trainer.train(dataset, labels, TrainingConfig(seed=seed, dataset_version="synthetic"))
        print(f"Validation accuracy: {metrics.accuracy:.3f} ({metrics.status.value})")
        if metrics.drift_detected:
            print(f"Drift: {metrics.drift_message}")
        if registry.current() is None:
            raise RuntimeError("Trained model did not pass the accuracy gate")

        path = registry.save(model_dir)
        print(f"Model saved to {path}")

    # === EVALUATION (runs for both loaded and trained models) ===
    print("\nEvaluating model on fresh synthetic cries...")
    dataset, labels = CryDataGenerator(seed=seed + 1).generate_dataset(20)
    metrics = trainer.evaluate_model(dataset, labels)
    print(f"Accuracy: {metrics.accuracy:.2f}")
    print(f"F1: {metrics.f1_score:.2f}")

    return registry.current()


if __name__ == '__main__':
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    try:
        artifact = train_and_save()
        print(f"\nModel {artifact.version} ready for deployment!")
        print("   Run 'python verify_model.py' to validate and benchmark it")
        print("   Run 'cry-analyzer predict <file.wav>' to classify a recording")

    except Exception as e:
        print(f"\nTraining failed: {e}")
        sys.exit(1)
