"""Shared constants for epoch evaluation."""

from yumacore.math.fixed import ONE, U16_MAX

# Hyperparameter defaults
DEFAULT_KAPPA = 32_767                    # majority fraction for the consensus clip (u16)
DEFAULT_ACTIVITY_CUTOFF = 5_000           # blocks
DEFAULT_MAX_ALLOWED_VALIDATORS = 64
DEFAULT_VALIDATOR_MIN_STAKE = 0
DEFAULT_BONDS_MOVING_AVERAGE = 900_000    # per million; static bonds rate is 1 - value / 1e6
DEFAULT_ALPHA_LOW = 45_875                # ~0.7 (u16)
DEFAULT_ALPHA_HIGH = 58_982               # ~0.9 (u16)
DEFAULT_ALPHA_SIGMOID_STEEPNESS = 1_000   # divided by STEEPNESS_SCALE
DEFAULT_BONDS_PENALTY = 0

STEEPNESS_SCALE = 100
BONDS_MOVING_AVERAGE_SCALE = 1_000_000

# Bonds row sums may exceed ONE by at most one 16-bit unit per column from rounding
BONDS_ROW_TOLERANCE_PER_COL = ONE // U16_MAX + 1
