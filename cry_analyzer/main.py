"""
Command line interface for the infant cry need classifier
Provides training, evaluation, prediction and benchmarking
"""

import argparse
import json
import logging
import sys

from .config import DEFAULT_EPOCHS, BATCH_SIZE, DEFAULT_MODEL_DIR, MIN_ACCURACY_THRESHOLD
from .data.data_generator import CryDataGenerator, load_audio_file, load_labeled_directory
from .engine.predictor import Predictor
from .exceptions import CryAnalyzerError
from .model.registry import ModelRegistry
from .model.train import Trainer
from .schema import TrainingConfig

logger = logging.getLogger(__name__)


class CryAnalyzerApp:
    """
    Main application class tying the registry, trainer and predictor together
    """

    def __init__(self, model_dir=DEFAULT_MODEL_DIR):
        self.model_dir = model_dir
        self.registry = ModelRegistry()

    def _load_dataset(self, data_dir, synthetic, seed):
        if data_dir:
            return load_labeled_directory(data_dir)
        print("⚠️  Using synthetic cry recordings (development only)")
        return CryDataGenerator(seed=seed).generate_dataset(synthetic)

    # -------------------------------------------------------------------
    # Train model
    # -------------------------------------------------------------------
    def train_model(self, data_dir=None, synthetic=40, epochs=DEFAULT_EPOCHS,
                    batch_size=BATCH_SIZE, min_accuracy=MIN_ACCURACY_THRESHOLD, seed=None):
        print("🔧 Training infant cry need classifier")
        print("========================================")

        dataset, labels = self._load_dataset(data_dir, synthetic, seed)
        config = TrainingConfig(
            epochs=epochs,
            batch_size=batch_size,
            min_accuracy=min_accuracy,
            seed=seed,
            dataset_version=data_dir or f"synthetic-{synthetic}",
        )
        trainer = Trainer(self.registry)
        metrics = trainer.train(dataset, labels, config)

        print(json.dumps(metrics.to_dict(), indent=4))
        if self.registry.current() is None:
            print(f"❌ Model rejected: accuracy {metrics.accuracy:.3f} < {min_accuracy:.2f}")
            return metrics

        path = self.registry.save(self.model_dir)
        print(f"✅ Model {metrics.model_version} saved to: {path}")
        return metrics

    # -------------------------------------------------------------------
    # Evaluate model
    # -------------------------------------------------------------------
    def evaluate_model(self, data_dir=None, synthetic=20, seed=None):
        self.registry.load(self.model_dir)
        dataset, labels = self._load_dataset(data_dir, synthetic, seed)
        metrics = Trainer(self.registry).evaluate_model(dataset, labels)
        print(json.dumps(metrics.to_dict(), indent=4))
        return metrics

    # -------------------------------------------------------------------
    # Predict a recording
    # -------------------------------------------------------------------
    def predict_file(self, path):
        with Predictor(self.registry) as predictor:
            predictor.load_model(self.model_dir)
            result = predictor.predict(load_audio_file(path))

        print(f"Need: {result.need_type} (confidence: {result.confidence:.3f})")
        for need, probability in result.to_dict()["probabilities"].items():
            print(f"  {need:<12} {probability:.3f}")
        print(f"Processing time: {result.processing_time_ms:.1f} ms")
        return result

    # -------------------------------------------------------------------
    # Benchmark model
    # -------------------------------------------------------------------
    def benchmark_model(self, num_runs=100):
        print("📊 Benchmarking cry classifier performance")
        print("========================================")

        with Predictor(self.registry) as predictor:
            predictor.load_model(self.model_dir)
            engine = predictor.current_engine()
            latency_results = engine.benchmark_latency(num_runs=num_runs)
            model_info = engine.get_model_info()

            sample = CryDataGenerator(seed=0).generate("hunger")
            result = predictor.predict(sample)

        print("\nLatency Results:")
        print(f"Average latency: {latency_results['average_latency_ms']:.2f} ms")
        print(f"Max latency: {latency_results['max_latency_ms']:.2f} ms")
        print(f"Meets target: {'✅' if latency_results['meets_target'] else '❌'}")

        print("\nModel Information:")
        print(f"Version: {model_info['version']}")
        print(f"Input shape: {model_info['input_shape']}")
        print(f"Output shape: {model_info['output_shape']}")
        print(f"Parameters: {model_info['parameters']}")

        print("\nSample Inference (synthetic hunger cry):")
        print(f"Predicted need: {result.need_type}")
        print(f"Confidence: {result.confidence:.3f}")
        print(f"End-to-end time: {result.processing_time_ms:.1f} ms")
        return latency_results


# -------------------------------------------------------------------
# Entry point
# -------------------------------------------------------------------
def main(argv=None):
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    parser = argparse.ArgumentParser(description="Infant cry need classifier")
    parser.add_argument(
        "command",
        choices=["train", "evaluate", "predict", "benchmark"],
        help="Command to execute",
    )
    parser.add_argument("audio", nargs="?", help="WAV file to classify (predict only)")
    parser.add_argument(
        "--model-dir",
        default=DEFAULT_MODEL_DIR,
        help=f"Model artifact directory (default: {DEFAULT_MODEL_DIR})",
    )
    parser.add_argument(
        "--data-dir",
        help="Labeled dataset laid out as <dir>/<need_type>/*.wav; synthetic data if omitted",
    )
    parser.add_argument(
        "--synthetic",
        type=int,
        default=40,
        help="Synthetic recordings per need type (default: 40)",
    )
    parser.add_argument(
        "--epochs",
        type=int,
        default=DEFAULT_EPOCHS,
        help=f"Training epochs (default: {DEFAULT_EPOCHS})",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=BATCH_SIZE,
        help=f"Training batch size (default: {BATCH_SIZE})",
    )
    parser.add_argument(
        "--min-accuracy",
        type=float,
        default=MIN_ACCURACY_THRESHOLD,
        help=f"Accuracy gate for publishing (default: {MIN_ACCURACY_THRESHOLD})",
    )
    parser.add_argument("--seed", type=int, help="Random seed")

    args = parser.parse_args(argv)
    app = CryAnalyzerApp(model_dir=args.model_dir)

    try:
        if args.command == "train":
            app.train_model(args.data_dir, args.synthetic, args.epochs, args.batch_size,
                            args.min_accuracy, args.seed)
        elif args.command == "evaluate":
            app.evaluate_model(args.data_dir, args.synthetic, args.seed)
        elif args.command == "predict":
            if not args.audio:
                parser.error("predict needs an audio file")
            app.predict_file(args.audio)
        elif args.command == "benchmark":
            app.benchmark_model()
    except CryAnalyzerError as e:
        logger.error(f"{args.command} failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
