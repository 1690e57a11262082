"""
Constants for the Material Lot Tracker.

This module defines system-wide constants including:
- Application metadata
- Database defaults
- Consumption engine defaults (alternatives, retries, deadlines)
- Standard rollback reasons recorded in the audit ledger
"""

from decimal import Decimal

# ============================================================================
# Application Metadata
# ============================================================================

APP_NAME = "Material Lot Tracker"
APP_VERSION = "0.1.0"

# ============================================================================
# Database
# ============================================================================

DATABASE_FILENAME = "lot_tracker.db"
ENVIRONMENT_VARIABLE = "LOT_TRACKER_ENV"
DATABASE_URL_VARIABLE = "LOT_TRACKER_DATABASE_URL"

# ============================================================================
# Consumption Engine Defaults
# ============================================================================

# Alternative lots proposed when a requested lot is short
DEFAULT_MAX_ALTERNATIVE_LOTS = 3

# Retry policy for a single storage primitive (withdraw/restore)
DEFAULT_STORAGE_RETRY_ATTEMPTS = 3
DEFAULT_STORAGE_RETRY_BACKOFF = 0.05  # seconds, doubled on every attempt

# None means consume() is unbounded unless the caller passes a timeout
DEFAULT_CONSUME_TIMEOUT = None

# Batch numbers look like PB-2025-007
DEFAULT_BATCH_NUMBER_PREFIX = "PB"

# Output units per input unit when a material has no yield baseline
DEFAULT_THEORETICAL_YIELD = Decimal("1")

# ============================================================================
# Precision
# ============================================================================

QUANTITY_PLACES = Decimal("0.001")
MONEY_PLACES = Decimal("0.0001")
PERCENT_PLACES = Decimal("0.01")

# ============================================================================
# Rollback Reasons
# ============================================================================

REASON_RACE_LOST = "insufficient quantity during multi-lot consumption"
REASON_SUPERSEDED = "superseded by update"
REASON_DEADLINE = "consumption deadline exceeded"
REASON_STORAGE_FAILURE = "storage failure during multi-lot consumption"
REASON_UNEXPECTED = "unexpected error during multi-lot consumption"
REASON_PERSISTENCE_FAILED = "batch persistence failed after consumption"
