"""
Review scheduling constants.

This module contains the static parameters of the ladder scheduler, the
load-aware fuzzer and the priority scorer.
No runtime configuration or path defaults - pure constants only.
"""
from datetime import datetime, timezone
from typing import Tuple

# Base interval in days for each stage. Must be strictly increasing.
DEFAULT_LADDER_STEPS: Tuple[int, ...] = (
    1,    # stage 0
    3,    # stage 1
    7,    # stage 2
    14,   # stage 3
    21,   # stage 4
    35,   # stage 5
    50,   # stage 6
    70,   # stage 7
    100,  # stage 8
)

# Hard ceiling on the raw interval, in days.
MAX_INTERVAL_DAYS: int = 120

# --- Stage transitions ---
FORGOT_STAGE_REGRESSION: int = 3
HARD_REQUEUE_THRESHOLD: int = 2
HARD_INTERVAL_FACTOR: float = 0.5
GOOD_GROWTH_NUMERATOR: float = 0.5
PERFECT_GROWTH_FACTOR: float = 1.8
PERFECT_DOUBLE_JUMP_BELOW_STAGE: int = 5
HEALTH_CHECK_MIN_DAYS: int = 60
HEALTH_CHECK_MAX_DAYS: int = 90

# --- Fuzzing ---
FUZZ_MIN_RADIUS: int = 3
FUZZ_MAX_RADIUS: int = 14
FUZZ_INTERVAL_FRACTION: float = 0.2
FUZZ_DISTANCE_PENALTY: float = 0.5

# --- Load forecast ---
DEFAULT_FORECAST_HORIZON_DAYS: int = 14

# --- Priority scoring ---
PRIORITY_UNSET_SCORE_WEIGHT: int = 15
PRIORITY_OVERDUE_PER_DAY: int = 3
PRIORITY_OVERDUE_CAP: int = 30
PRIORITY_STAGE_PIVOT: int = 10
PRIORITY_STAGE_WEIGHT: int = 2
PRIORITY_HARD_WEIGHT: int = 5

# --- Settings ---
DEFAULT_DAILY_TARGET: int = 50
MAX_DAILY_TARGET: int = 1000

# Far-future date stored for retired items so they never come due.
RETIRED_SENTINEL: datetime = datetime(9999, 12, 31, tzinfo=timezone.utc)
