"""Configuration settings for coordinator workers."""

import os
import socket
import uuid
from typing import Dict, Literal, Optional

from pydantic import BaseModel, Field, ValidationError, model_validator

from common.constants import (
    CHECKPOINTS_TABLE_SUFFIX,
    CLIENTS_TABLE_SUFFIX,
    DEFAULT_APPLICATION_NAME,
    DEFAULT_CALLBACK_BACKOFF_BASE,
    DEFAULT_CALLBACK_BACKOFF_MAX,
    DEFAULT_CALLBACK_MAX_RETRIES,
    DEFAULT_CLOCK_SKEW_TOLERANCE,
    DEFAULT_DEAD_WORKER_TIMEOUT,
    DEFAULT_HEALTH_PORT,
    DEFAULT_HEARTBEAT_INTERVAL,
    DEFAULT_LEASE_DURATION,
    DEFAULT_MAX_RECORDS_PER_FETCH,
    DEFAULT_PLAN_REFRESH_INTERVAL,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_REBALANCE_INTERVAL,
    DEFAULT_REPORT_INTERVAL,
    DEFAULT_SHUTDOWN_GRACE_PERIOD,
    DEFAULT_STORE_MAX_RETRIES,
    DEFAULT_STREAM_NAME,
    METADATA_TABLE_SUFFIX,
    MIN_LEASE_RENEWAL_RATIO,
    POSITION_TRIM_HORIZON,
)
from common.exceptions import ConfigurationError


def generate_worker_id() -> str:
    """Hostname plus a random suffix, unique across restarts of the same container."""
    return f"{socket.gethostname()}-{uuid.uuid4()}"


class CoordinatorConfig(BaseModel):
    """
    All tunables of one worker.

    Timing values are seconds. renewal_interval defaults to a third of
    lease_duration.
    """

    application_name: str = DEFAULT_APPLICATION_NAME
    stream_name: str = DEFAULT_STREAM_NAME
    worker_id: str = Field(default_factory=generate_worker_id)

    database_path: str = "./data/coordination.db"
    stream_database_path: str = "./data/stream.db"
    clients_table: Optional[str] = None
    checkpoints_table: Optional[str] = None
    metadata_table: Optional[str] = None

    heartbeat_interval: float = Field(default=DEFAULT_HEARTBEAT_INTERVAL, gt=0)
    dead_worker_timeout: float = Field(default=DEFAULT_DEAD_WORKER_TIMEOUT, gt=0)
    lease_duration: float = Field(default=DEFAULT_LEASE_DURATION, gt=0)
    renewal_interval: Optional[float] = Field(default=None, gt=0)
    clock_skew_tolerance: float = Field(default=DEFAULT_CLOCK_SKEW_TOLERANCE, ge=0)
    rebalance_interval: float = Field(default=DEFAULT_REBALANCE_INTERVAL, gt=0)
    plan_refresh_interval: float = Field(default=DEFAULT_PLAN_REFRESH_INTERVAL, gt=0)

    initial_position: Literal["TRIM_HORIZON", "LATEST"] = POSITION_TRIM_HORIZON
    max_records_per_fetch: int = Field(default=DEFAULT_MAX_RECORDS_PER_FETCH, gt=0)
    poll_interval: float = Field(default=DEFAULT_POLL_INTERVAL, gt=0)

    callback_max_retries: int = Field(default=DEFAULT_CALLBACK_MAX_RETRIES, ge=0)
    callback_backoff_base: float = Field(default=DEFAULT_CALLBACK_BACKOFF_BASE, ge=0)
    callback_backoff_max: float = Field(default=DEFAULT_CALLBACK_BACKOFF_MAX, ge=0)
    store_max_retries: int = Field(default=DEFAULT_STORE_MAX_RETRIES, gt=0)

    shutdown_grace_period: float = Field(default=DEFAULT_SHUTDOWN_GRACE_PERIOD, gt=0)
    health_port: int = Field(default=DEFAULT_HEALTH_PORT, gt=0, lt=65536)
    report_interval: float = Field(default=DEFAULT_REPORT_INTERVAL, gt=0)

    @model_validator(mode="after")
    def _fill_and_check(self) -> "CoordinatorConfig":
        if self.clients_table is None:
            self.clients_table = f"{self.application_name}_{CLIENTS_TABLE_SUFFIX}"
        if self.checkpoints_table is None:
            self.checkpoints_table = f"{self.application_name}_{CHECKPOINTS_TABLE_SUFFIX}"
        if self.metadata_table is None:
            self.metadata_table = f"{self.application_name}_{METADATA_TABLE_SUFFIX}"
        if self.renewal_interval is None:
            self.renewal_interval = self.lease_duration / MIN_LEASE_RENEWAL_RATIO

        # tolerate float rounding of the derived default
        if self.lease_duration + 1e-9 < MIN_LEASE_RENEWAL_RATIO * self.renewal_interval:
            raise ValueError(
                f"lease_duration ({self.lease_duration}s) must be at least "
                f"{MIN_LEASE_RENEWAL_RATIO}x renewal_interval ({self.renewal_interval}s)"
            )
        if self.dead_worker_timeout <= self.heartbeat_interval:
            raise ValueError(
                f"dead_worker_timeout ({self.dead_worker_timeout}s) must exceed "
                f"heartbeat_interval ({self.heartbeat_interval}s)"
            )
        return self

    @property
    def table_names(self) -> Dict[str, str]:
        return {
            "clients": self.clients_table,
            "checkpoints": self.checkpoints_table,
            "metadata": self.metadata_table,
        }

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None, **overrides) -> "CoordinatorConfig":
        """
        Build configuration from environment variables.

        Unset variables fall back to the defaults above; overrides win over both.

        Raises:
            ConfigurationError: If a value is malformed or the values are inconsistent
        """
        env = os.environ if environ is None else environ
        values = {}
        for field_name, env_name in ENV_VARS.items():
            raw = env.get(env_name)
            if raw is not None and raw != "":
                values[field_name] = raw
        if "initial_position" in values:
            values["initial_position"] = values["initial_position"].upper()
        values.update(overrides)

        try:
            return cls(**values)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e


ENV_VARS: Dict[str, str] = {
    "application_name": "APPLICATION_NAME",
    "stream_name": "STREAM_NAME",
    "worker_id": "WORKER_ID",
    "database_path": "COORDINATION_DATABASE_PATH",
    "stream_database_path": "STREAM_DATABASE_PATH",
    "clients_table": "CLIENTS_TABLE",
    "checkpoints_table": "CHECKPOINTS_TABLE",
    "metadata_table": "METADATA_TABLE",
    "heartbeat_interval": "HEARTBEAT_INTERVAL",
    "dead_worker_timeout": "DEAD_WORKER_TIMEOUT",
    "lease_duration": "LEASE_DURATION",
    "renewal_interval": "LEASE_RENEWAL_INTERVAL",
    "clock_skew_tolerance": "CLOCK_SKEW_TOLERANCE",
    "rebalance_interval": "REBALANCE_INTERVAL",
    "plan_refresh_interval": "PLAN_REFRESH_INTERVAL",
    "initial_position": "INITIAL_POSITION",
    "max_records_per_fetch": "MAX_RECORDS_PER_FETCH",
    "poll_interval": "POLL_INTERVAL",
    "callback_max_retries": "CALLBACK_MAX_RETRIES",
    "callback_backoff_base": "CALLBACK_BACKOFF_BASE",
    "callback_backoff_max": "CALLBACK_BACKOFF_MAX",
    "store_max_retries": "STORE_MAX_RETRIES",
    "shutdown_grace_period": "SHUTDOWN_GRACE_PERIOD",
    "health_port": "PORT",
    "report_interval": "REPORT_INTERVAL",
}
