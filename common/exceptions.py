"""Custom exception classes for the shard coordinator."""


class CoordinatorException(Exception):
    """
    Base exception class for all coordination errors.
    """
    pass


class ConfigurationError(CoordinatorException):
    """
    Raised when configuration values are missing or inconsistent.
    """
    pass


class StoreUnavailableError(CoordinatorException):
    """
    Raised when the durable store cannot be reached (locked, busy, I/O).
    Transient: callers retry with backoff.
    """
    pass


class ConditionalCheckFailedError(CoordinatorException):
    """
    Raised when a conditional write finds a field value other than the expected one.
    Signals a lost race, not a failure.
    """

    def __init__(self, key: str, field: str, expected, actual):
        super().__init__(
            f"Conditional check failed for {key}: {field} expected={expected!r} actual={actual!r}"
        )
        self.key = key
        self.field = field
        self.expected = expected
        self.actual = actual


class PlanVersionConflictError(CoordinatorException):
    """
    Raised when another leader published a plan between read and write.
    """
    pass


class CheckpointRegressionError(CoordinatorException):
    """
    Raised when a checkpoint write would move a shard's sequence number backwards.
    Indicates two workers processing the same shard.
    """

    def __init__(self, shard_id: str, current: str, attempted: str):
        super().__init__(
            f"Checkpoint regression on shard {shard_id}: current={current} attempted={attempted}"
        )
        self.shard_id = shard_id
        self.current = current
        self.attempted = attempted


class ShardConsumptionError(CoordinatorException):
    """
    Raised when the consumption callback keeps failing after all retries.
    Fatal to the affected shard reader only.
    """

    def __init__(self, shard_id: str, sequence_number: str, cause: Exception):
        super().__init__(
            f"Consumption failed on shard {shard_id} at sequence {sequence_number}: {cause}"
        )
        self.shard_id = shard_id
        self.sequence_number = sequence_number
        self.cause = cause


class StreamUnavailableError(CoordinatorException):
    """
    Raised when the stream service cannot be reached. Transient.
    """
    pass


class ShardNotFoundError(CoordinatorException):
    """
    Raised when a shard or shard iterator refers to an unknown shard.
    """
    pass


class InvalidIteratorError(CoordinatorException):
    """
    Raised when a shard iterator token cannot be decoded.
    """
    pass
