"""Application-wide constants.

This module centralizes all magic numbers and tunable defaults so the
pipeline, the HTTP clients and the settings layer share a single source
of truth. Every value here can be overridden through Settings.
"""

# =============================================================================
# Change Detection
# =============================================================================

# Pages at or above this similarity are considered unchanged
DEFAULT_SIMILARITY_THRESHOLD = 0.95

# =============================================================================
# Deletion Debouncing
# =============================================================================

# Consecutive misses before a page is marked for deletion
DEFAULT_DELETION_THRESHOLD = 3

# Hours after which a website is due for another reconcile
DEFAULT_SYNC_INTERVAL_HOURS = 12

# =============================================================================
# Batch Capture
# =============================================================================

# Poll interval while waiting on a batch fetch job (seconds)
BATCH_POLL_INTERVAL_SECONDS = 5.0

# Give up waiting on a batch fetch job after this long (seconds)
BATCH_MAX_WAIT_SECONDS = 600.0

# Minimum gap between progress writes to the job record (seconds)
BATCH_PROGRESS_LOG_SECONDS = 30.0

# A running capture job older than this is considered stuck (seconds)
STUCK_JOB_AGE_SECONDS = 60.0

# =============================================================================
# Indexing
# =============================================================================

# Max pages handled per indexing run, deletions first
INDEX_BATCH_LIMIT = 200

# Pages uploaded concurrently per sub-batch
INDEX_CONCURRENCY = 5

# Pause between sub-batches to stay under rate limits (seconds)
INDEX_BATCH_PAUSE_SECONDS = 0.5

# Upload operation polling (seconds)
UPLOAD_POLL_INTERVAL_SECONDS = 2.0
UPLOAD_MAX_WAIT_SECONDS = 300.0

# Attempts for a single upload call on transient errors
UPLOAD_MAX_ATTEMPTS = 3

# Attempts for a dispatched indexing run before giving up
INDEXING_MAX_ATTEMPTS = 3

# Base delay for dispatcher retries (seconds)
INDEXING_RETRY_BASE_SECONDS = 2.0

# A page claim older than this is treated as abandoned by a crashed run (seconds)
INDEX_CLAIM_TIMEOUT_SECONDS = 900.0

# =============================================================================
# HTTP Configuration
# =============================================================================

# Default timeout for outbound HTTP requests (seconds)
DEFAULT_HTTP_TIMEOUT_SECONDS = 30.0

# HTTP status codes that are safe to retry
RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})

# HTTP status codes that count as "page gone" during reconcile
GONE_STATUS_CODES = frozenset({404, 410})

# Max pages the self-hosted crawler will enumerate
DEFAULT_CRAWLER_MAX_PAGES = 100

# Delay between crawler requests (seconds)
POLITE_REQUEST_DELAY_SECONDS = 0.5

# =============================================================================
# Input Constraints
# =============================================================================

MAX_DISPLAY_NAME_CHARS = 512

# Default number of jobs returned by job history
DEFAULT_JOB_HISTORY_LIMIT = 20
