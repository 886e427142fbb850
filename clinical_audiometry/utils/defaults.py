"""Constants and default values for autonomous audiometry testing."""

# Output limits (dB HL)
MIN_TEST_LEVEL = -10
MAX_TEST_LEVEL = 120

# Test sequence
DEFAULT_EAR_ORDER = ('right', 'left')
DEFAULT_TEST_FREQUENCIES = [1000, 2000, 4000, 500, 250, 8000, 6000, 3000, 1500, 750, 125]
AUDIOMETRIC_FREQUENCIES = [125, 250, 500, 750, 1000, 1500, 2000, 3000, 4000, 6000, 8000]
DEFAULT_RETEST_FREQUENCIES = (1000,)
PTA_FREQUENCIES = (500, 1000, 2000)

# Familiarization
FAMILIARIZATION_FREQUENCY = 1000
FAMILIARIZATION_LEVEL = 40
FAMILIARIZATION_MAX_ATTEMPTS = 3
FAMILIARIZATION_STEP_UP = 10

# Hughson-Westlake stepping
DEFAULT_STARTING_LEVEL = 30
SEEKING_STEP_UP = 10
BRACKETING_STEP_DOWN = 10
BRACKETING_STEP_UP = 5
DEFAULT_REVERSALS_TO_CONFIRM = 6
MAX_TRIALS_PER_FREQUENCY = 30
OUTPUT_LIMIT_PRESENTATIONS = 2
ASCENDING_MIN_TRIALS = 3
ASCENDING_RESPONSE_RATIO = 0.5

# Threshold confidence
CONFIDENCE_SPREAD_TOLERANCE_DB = 20.0
CONFIDENCE_WEIGHTS = {
    'reversal_efficiency': 0.3,
    'timing_validity': 0.35,
    'reversal_spread': 0.35,
}

# Response timing boundaries (ms)
ANTICIPATORY_MAX_MS = 150
NORMAL_MIN_MS = 200
OPTIMAL_MIN_MS = 300
OPTIMAL_MAX_MS = 800
NORMAL_MAX_MS = 1500
SLOW_VALID_MAX_MS = 2000
RESPONSE_CEILING_MS = 3000

# Fatigue tracking
FATIGUE_WINDOW = 10
FATIGUE_BASELINE_WINDOW = 5
FATIGUE_SLOWDOWN_FRACTION = 0.5

# Latency dispersion (coefficient of variation) mapped to consistency
CONSISTENT_LATENCY_CV = 0.3
INCONSISTENT_LATENCY_CV = 0.8
MIN_LATENCIES_FOR_DISPERSION = 3

# Session timing (seconds)
RESPONSE_WAIT_S = 5.0
AUDIO_RETRY_BACKOFF_S = 0.25

# Catch trials
DEFAULT_CATCH_TRIAL_PROBABILITY = 0.12
MIN_SCORED_TRIALS_BEFORE_CATCH = 2
MAX_FALSE_POSITIVE_RATE = 0.2
MIN_CATCH_TRIALS_FOR_ESCALATION = 1

# Malingering risk weights (points out of 100)
THRESHOLD_CONSISTENCY_WEIGHT = 25.0
CROSS_FREQUENCY_WEIGHT = 20.0
BILATERAL_SYMMETRY_WEIGHT = 15.0
TIMING_ANOMALY_WEIGHT = 40.0

# Malingering detection bands (dB unless noted)
RETEST_PLAUSIBILITY_BAND_DB = 10.0
RETEST_SATURATION_DB = 20.0
ADJACENT_JUMP_DB = 40.0
INVERTED_SLOPE_DB = 20.0
ZIGZAG_DB = 20.0
FLAT_AUDIOGRAM_MIN_FREQUENCIES = 4
ASYMMETRY_DB = 40.0
TIGHT_SYMMETRY_DB = 5.0
SYMMETRY_MIN_PAIRS = 4
ANTICIPATORY_SATURATION_FRACTION = 0.3
UNIFORM_LATENCY_CV = 0.05
UNIFORM_MIN_RESPONSES = 5

# Risk categories (lower bound of each band)
MODERATE_RISK_FROM = 20.0
HIGH_RISK_FROM = 40.0
VERY_HIGH_RISK_FROM = 60.0

# Simulated listener defaults
DEFAULT_SLOPE = 0.2
DEFAULT_GUESS_RATE = 0.01
DEFAULT_LAPSE_RATE = 0.01
DEFAULT_LATENCY_MEDIAN_MS = 550.0
DEFAULT_LATENCY_SIGMA = 0.25
