"""
Configuration constants for the infant cry need classifier
"""

# Need Classes (index order is the model's output order)
NEED_TYPES = [
    "hunger",      # 0
    "tiredness",   # 1
    "pain",        # 2
    "discomfort",  # 3
]
NUM_CLASSES = len(NEED_TYPES)

# Audio Configuration
SAMPLE_RATE = 16000  # 16 kHz capture rate used by the mobile clients
MIN_CRY_FREQUENCY = 150  # Lowest fundamental searched (Hz)
MAX_CRY_FREQUENCY = 1000  # Highest fundamental searched (Hz)

# Feature Extraction
N_MFCC = 13  # Number of MFCC coefficients
N_MELS = 40  # Mel bins feeding the MFCCs
N_FFT = 512  # FFT window size
HOP_LENGTH = 160  # 10ms hop at 16 kHz
ROLLOFF_PERCENT = 0.85
EXTRACTION_TIMEOUT_MS = 5000
MIN_EXTRACTION_CONFIDENCE = 0.7  # Below this a warning is logged
SNR_REFERENCE_DB = 20.0  # SNR at which the confidence metric saturates

# Noise Suppression
NOISE_FLOOR_PERCENTILE = 10  # Percentile of frame RMS taken as the noise floor
NOISE_GATE_RATIO = 1.5  # Gate opens this far above the noise floor
SPECTRAL_SUBTRACTION_ALPHA = 2.0  # Over-subtraction factor
SPECTRAL_FLOOR = 0.02  # Fraction of the original magnitude always kept
MEDIAN_FILTER_SIZE = 3

# Normalization
NORMALIZATION_METHOD = "robust"  # "minmax", "zscore" or "robust"
NORMALIZATION_RANGE = (-1.0, 1.0)
OUTLIER_THRESHOLD = 2.5  # Multiples of the spread measure before clamping

# Model Configuration
HIDDEN_UNITS = (128, 64)
DROPOUT_RATES = (0.3, 0.2)
MODEL_VERSION_PREFIX = "cry"
REGISTRY_HISTORY_LIMIT = 100  # Publications remembered by ModelRegistry.history()

# Calibration
DEFAULT_TEMPERATURE = 1.2
DEFAULT_CALIBRATION_FACTOR = 0.95
TEMPERATURE_BOUNDS = (0.25, 10.0)

# Prediction
MAX_QUEUE_SIZE = 1000
CACHE_TTL_MS = 5000
CACHE_MAX_ENTRIES = 10000  # Oldest results are dropped beyond this
INFERENCE_TIMEOUT_MS = 1000
BATCH_SIZE = 32  # Largest combined inference call
WARM_UP_ITERATIONS = 100
EXTRACTOR_WARM_UP_TIMEOUT_MS = 60000  # One-off extraction run while loading a model
RETAINED_ENGINES = 2  # Current model plus the one it replaced
PREDICTION_WORKERS = 8
GPU_MEMORY_LIMIT = 0.8  # Fraction of the accelerator budget before cleanup
GPU_MEMORY_BUDGET_MB = 4096  # Accelerator memory budget the limit applies to
MEMORY_CHECK_INTERVAL_S = 5.0
MAINTENANCE_INTERVAL_S = 60.0

# Alerting policy owned by the consumer, published here as its default
ALERT_CONFIDENCE_THRESHOLD = 0.90

# Training
DEFAULT_EPOCHS = 100
DEFAULT_LEARNING_RATE = 0.001
DEFAULT_VALIDATION_SPLIT = 0.2
MIN_ACCURACY_THRESHOLD = 0.9
EARLY_STOPPING_PATIENCE = 10
DRIFT_WINDOW = 5  # Accepted runs averaged for drift detection
DRIFT_TOLERANCE = 0.9  # Drift when accuracy < tolerance * historical mean
EXTRACTION_WORKERS = 4
MEMORY_MONITOR_INTERVAL_S = 60.0
MAX_MEMORY_USAGE = 0.8

# Persistence
ARTIFACT_METADATA_FILE = "metadata.json"
ARTIFACT_WEIGHTS_FILE = "weights.npz"
ARTIFACT_STATISTICS_FILE = "statistics.npz"
DEFAULT_MODEL_DIR = "models/saved_models"
