"""
config.py
Configuration and constants for the allocation engine
"""

import os
from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Tuple

# ============================================================
# DEFAULT SETTINGS
# ============================================================
DB_PATH = "allocations.db"

# Capital call timing
DEFAULT_DUE_DAYS = 30              # call date -> due date
REMINDER_SCHEDULE = (7, 3, 1)      # days before due date
DEFAULT_CALL_PERCENTAGE = 25.0     # per-period share when no count is given
MAX_CALL_COUNT = 240

# Months between calls for periodic schedules
SCHEDULE_CADENCE_MONTHS: Dict[str, int] = {
    "monthly": 1,
    "quarterly": 3,
    "biannual": 6,
    "annual": 12,
}

# Commitment limits
MIN_COMMITMENT = 1
MAX_COMMITMENT = 10_000_000_000

# Concurrency
DEFAULT_MAX_RETRIES = 3
DB_BUSY_TIMEOUT_SECONDS = 5.0

# ============================================================
# PERFORMANCE CALCULATION
# ============================================================
DEFAULT_MOIC = 1.0
DEFAULT_IRR = 0.0

# XIRR solver. Rates are annual decimals on an ACT/365 basis.
IRR_INITIAL_GUESS = 0.10
IRR_TOLERANCE = 1e-6               # relative
IRR_MAX_ITERATIONS = 100
IRR_LOWER_BOUND = -0.9999
IRR_UPPER_BOUND = 10.0
MIN_DAYS_FOR_IRR = 30

# Display precision
MOIC_PRECISION = 2
IRR_PRECISION = 4
WEIGHT_PRECISION = 6


# ============================================================
# RUNTIME SETTINGS
# ============================================================

@dataclass
class EngineSettings:
    """Values an operator may override per deployment"""
    db_path: str = DB_PATH
    due_days: int = DEFAULT_DUE_DAYS
    default_call_percentage: float = DEFAULT_CALL_PERCENTAGE
    reminder_days: Tuple[int, ...] = REMINDER_SCHEDULE
    max_retries: int = DEFAULT_MAX_RETRIES
    busy_timeout: float = DB_BUSY_TIMEOUT_SECONDS


def load_settings(env: Optional[Mapping[str, str]] = None) -> EngineSettings:
    """Build settings from defaults with environment variable overrides.

    Recognised variables: ALLOCATION_DB_PATH, ALLOCATION_DUE_DAYS,
    ALLOCATION_DEFAULT_CALL_PCT, ALLOCATION_REMINDER_DAYS (comma list),
    ALLOCATION_MAX_RETRIES, ALLOCATION_BUSY_TIMEOUT.
    """
    env = os.environ if env is None else env
    settings = EngineSettings()

    if env.get("ALLOCATION_DB_PATH"):
        settings.db_path = env["ALLOCATION_DB_PATH"]
    if env.get("ALLOCATION_DUE_DAYS"):
        settings.due_days = int(env["ALLOCATION_DUE_DAYS"])
    if env.get("ALLOCATION_DEFAULT_CALL_PCT"):
        settings.default_call_percentage = float(env["ALLOCATION_DEFAULT_CALL_PCT"])
    if env.get("ALLOCATION_REMINDER_DAYS"):
        settings.reminder_days = tuple(
            int(p) for p in env["ALLOCATION_REMINDER_DAYS"].split(",") if p.strip()
        )
    if env.get("ALLOCATION_MAX_RETRIES"):
        settings.max_retries = int(env["ALLOCATION_MAX_RETRIES"])
    if env.get("ALLOCATION_BUSY_TIMEOUT"):
        settings.busy_timeout = float(env["ALLOCATION_BUSY_TIMEOUT"])

    if settings.due_days < 0:
        raise ValueError("ALLOCATION_DUE_DAYS must not be negative")
    if not 0 < settings.default_call_percentage <= 100:
        raise ValueError("ALLOCATION_DEFAULT_CALL_PCT must be in (0, 100]")
    if settings.max_retries < 1:
        raise ValueError("ALLOCATION_MAX_RETRIES must be at least 1")

    return settings
