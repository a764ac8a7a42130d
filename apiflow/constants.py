"""Default values shared across apiflow modules."""

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY_MS = 500
DEFAULT_BACKOFF_MULTIPLIER = 2.0
DEFAULT_MAX_DELAY_MS = 30_000

DEFAULT_EXECUTION_TIMEOUT_MS = 300_000
DEFAULT_HTTP_TIMEOUT_SECONDS = 30.0
DEFAULT_STUCK_EXECUTION_MINUTES = 30
DEFAULT_RETENTION_DAYS = 30

MAX_EXPRESSION_LENGTH = 1_000
MAX_EXPRESSION_NODES = 200
MAX_CONCAT_LENGTH = 10_000

REDACTED = "***"
