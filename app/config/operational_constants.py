"""
Operational constants for the commission ledger.

Technical/operational constants used across the application.
Includes lock timeouts, retry configurations and job time limits.
"""

# =============================================================================
# LOCK TIMEOUTS (seconds)
# =============================================================================
# Used by distributed_lock.py

# Per-aggregate writes (ledger writer, rollback)
LOCK_TIMEOUT_SHORT = 30

# Full reconciliation runs
LOCK_TIMEOUT_EXTENDED = 600


# =============================================================================
# BLOCKING TIMEOUTS (seconds)
# =============================================================================
# How long to wait for lock acquisition

BLOCKING_TIMEOUT_DEFAULT = 5.0

# Polling interval while waiting on a Redis lock
LOCK_POLL_INTERVAL = 0.05


# =============================================================================
# RETRY CONFIGURATIONS
# =============================================================================

# Backoff for transient store errors (seconds): 50 ms, 200 ms, 1 s
STORE_RETRY_BACKOFF = (0.05, 0.2, 1.0)

# Attempts before a transient error becomes fatal
STORE_MAX_ATTEMPTS = 5

# Store call deadline (seconds)
STORE_CALL_DEADLINE = 5.0

# Notification delivery
NOTIFICATION_MAX_RETRIES = 3


# =============================================================================
# DRAMATIQ TASK TIME LIMITS (milliseconds)
# =============================================================================

# Short tasks (1 minute) - single event intake, notification delivery
DRAMATIQ_TIME_LIMIT_SHORT = 60_000

# Long tasks (10 minutes) - reconciliation
DRAMATIQ_TIME_LIMIT_LONG = 600_000


# =============================================================================
# PAGINATION LIMITS
# =============================================================================

DEFAULT_PAGE_SIZE = 50

MAX_PAGE_SIZE = 500

# Batch size for reconciler sweeps over the events log
RECONCILER_BATCH_SIZE = 500
