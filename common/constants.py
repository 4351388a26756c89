"""Project-wide constants (default intervals, table suffixes, positions)."""

DEFAULT_APPLICATION_NAME: str = "shard-coordinator"
DEFAULT_STREAM_NAME: str = "events"

CLIENTS_TABLE_SUFFIX: str = "clients"
CHECKPOINTS_TABLE_SUFFIX: str = "checkpoints"
METADATA_TABLE_SUFFIX: str = "metadata"

# Key of the single record holding the leader lease and the assignment plan
ASSIGNMENT_PLAN_KEY: str = "assignment_plan"

DEFAULT_HEARTBEAT_INTERVAL: float = 5.0
DEFAULT_DEAD_WORKER_TIMEOUT: float = 30.0
DEFAULT_LEASE_DURATION: float = 30.0
DEFAULT_CLOCK_SKEW_TOLERANCE: float = 1.0
DEFAULT_REBALANCE_INTERVAL: float = 60.0
DEFAULT_PLAN_REFRESH_INTERVAL: float = 5.0

DEFAULT_MAX_RECORDS_PER_FETCH: int = 100
DEFAULT_POLL_INTERVAL: float = 1.0

DEFAULT_CALLBACK_MAX_RETRIES: int = 3
DEFAULT_CALLBACK_BACKOFF_BASE: float = 0.5
DEFAULT_CALLBACK_BACKOFF_MAX: float = 10.0
DEFAULT_STORE_MAX_RETRIES: int = 3

DEFAULT_SHUTDOWN_GRACE_PERIOD: float = 10.0
DEFAULT_HEALTH_PORT: int = 8080
DEFAULT_REPORT_INTERVAL: float = 3.0

# Lease must outlive this many renewal intervals
MIN_LEASE_RENEWAL_RATIO: int = 3

POSITION_TRIM_HORIZON: str = "TRIM_HORIZON"
POSITION_LATEST: str = "LATEST"
POSITION_AFTER_SEQUENCE_NUMBER: str = "AFTER_SEQUENCE_NUMBER"
