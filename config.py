# config.py

# Engine identification
ENGINE_VERSION = "1.0.0"
ENGINE_CAPABILITIES = ["FOPDT", "PID", "Noise", "Metrics", "SetpointRamp"]

# Sampling and timing settings
DEFAULT_SAMPLING_TIME = 0.1  # seconds (10 Hz)
MIN_SAMPLING_TIME = 0.01
MAX_SAMPLING_TIME = 1.0

# Telemetry buffer settings
DEFAULT_BUFFER_SIZE = 10000  # ~16 minutes at 10 Hz
MAX_BUFFER_SIZE = 100000     # ~2.7 hours at 10 Hz

# Default controller settings
DEFAULT_PID_PARAMS = {
    'kp': 1.0,
    'ki': 0.1,
    'kd': 0.0,
    'N': 10.0,
    'Tt': 2.5,
    'enabled': True
}

# Controller output limits
OUTPUT_MIN = 0.0
OUTPUT_MAX = 1.0

# Default plant (large industrial oven, up to 200 degC)
DEFAULT_PLANT_PARAMS = {
    'K': 175.0,
    'tau': 360.0,
    'L': 25.0,
    'T_amb': 25.0,
    'mode': 'heating'
}

DEFAULT_SETPOINT = 25.0

# Plant parameter advisory limits
MAX_TAU = 3600.0
MAX_DEAD_TIME_RATIO = 10.0
MAX_ABS_GAIN = 100.0
MAX_ABS_AMBIENT = 1000.0

# Metrics settings
METRICS_SETTINGS = {
    'sp_change_threshold': 5.0,   # % change of SP that starts a calculation
    'settling_threshold': 2.0,    # % band around SP
    'settling_window': 2.0,       # seconds inside the band to confirm
    'max_calculation_time': 60.0  # seconds before a forced finish
}

# Performance monitoring
CYCLE_OVERRUN_RATIO = 0.8
CYCLE_TIME_HISTORY = 100
STATE_INTERVAL = 1.0         # seconds of simulated time between STATE events
BOUNDS_WINDOW = 60.0         # seconds covered by TICK bounds

# Host settings
READY_TIMEOUT = 5.0          # seconds
SESSION_TIMEOUT = 3600       # 1 hour
