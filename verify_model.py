import logging
import sys

from cry_analyzer.config import DEFAULT_MODEL_DIR
from cry_analyzer.engine.predictor import Predictor
from cry_analyzer.exceptions import CryAnalyzerError
from cry_analyzer.model.registry import ModelRegistry


def verify_model(model_dir=DEFAULT_MODEL_DIR):
    """
    Loads a saved artifact, validates its architecture and benchmarks it.
    """
    try:
        print(f"Attempting to load the model from {model_dir}...")
        registry = ModelRegistry()
        with Predictor(registry) as predictor:
            artifact = predictor.load_model(model_dir)
            summary = registry.validate_architecture(artifact)
            print("✅ Model loaded and warmed up successfully!")
            print(f"   Version: {artifact.version}")
            print(f"   Inputs: {summary.input_dim}, classes: {summary.num_classes}, "
                  f"parameters: {summary.parameter_count}")

            results = predictor.current_engine().benchmark_latency(num_runs=100)
            print(f"   Average latency: {results['average_latency_ms']:.2f} ms")
        return True
    except CryAnalyzerError as e:
        print(f"❌ Model verification failed: {e}")
        return False


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    sys.exit(0 if verify_model(*sys.argv[1:2]) else 1)
