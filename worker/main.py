"""Entry point for a shard coordination worker.
Builds the runtime from environment, serves /health and /status, and
consumes its assigned shards until SIGTERM or SIGINT.
"""

import asyncio
import contextlib
import os
import signal
import sys

import uvicorn

from common.exceptions import ConfigurationError
from common.logging_config import set_worker_id, setup_logging
from common.types import StreamRecord
from coordinator.config import CoordinatorConfig
from stream.client import SqliteStreamClient
from worker.health import create_health_app
from worker.runtime import WorkerRuntime
from worker.stats import LoggingStatsReceiver, RecordCounter, report_record_counts

logger = setup_logging('worker')

HEALTH_HOST = "0.0.0.0"


class HealthServer(uvicorn.Server):
    """uvicorn server that leaves SIGTERM/SIGINT to the worker."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


def log_record(record: StreamRecord) -> None:
    """Default consumption callback: log the record."""
    logger.info(
        f"Record [shard={record.shard_id}] [sequence={record.sequence_number}] "
        f"[partition_key={record.partition_key}] {record.data[:200]!r}"
    )


async def serve(config: CoordinatorConfig) -> None:
    """
    Run the worker and its health server until a shutdown signal arrives.

    Args:
        config: Validated worker configuration
    """
    stream = SqliteStreamClient(config.stream_database_path, config.stream_name)
    shard_count = os.getenv("STREAM_SHARD_COUNT")
    if shard_count:
        shards = await asyncio.to_thread(stream.create_stream, int(shard_count))
        logger.info(f"Stream {config.stream_name} has {len(shards)} shards")
    else:
        await asyncio.to_thread(stream.init_schema)

    counter = RecordCounter(delegate=LoggingStatsReceiver())
    runtime = WorkerRuntime(config, log_record, stream=stream, stats=counter)

    app = create_health_app(runtime)
    server = HealthServer(uvicorn.Config(app, host=HEALTH_HOST, port=config.health_port, log_config=None))

    await runtime.start()
    report_task = asyncio.create_task(report_record_counts(counter, config.worker_id, config.report_interval))
    server_task = asyncio.create_task(server.serve())
    logger.info(f"Health server listening on {HEALTH_HOST}:{config.health_port}")

    stop_event = asyncio.Event()

    def request_shutdown(sig=None):
        if sig:
            logger.info(f"Received signal {sig.name}, shutting down...")
        stop_event.set()

    if sys.platform != 'win32':
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: request_shutdown(s))

    try:
        await stop_event.wait()
    finally:
        await runtime.stop()
        await stream.close()

        report_task.cancel()
        try:
            await report_task
        except asyncio.CancelledError:
            pass

        server.should_exit = True
        await server_task
        logger.info("Worker shutdown complete")


def main() -> None:
    """Bootstrap a worker process."""
    try:
        config = CoordinatorConfig.from_env()
    except ConfigurationError as e:
        logger.error(str(e))
        sys.exit(2)

    set_worker_id(config.worker_id)
    logger.info(f"Initializing worker [worker_id={config.worker_id}] [stream={config.stream_name}]")

    try:
        asyncio.run(serve(config))
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt, worker stopped")
    except Exception as e:
        logger.error(f"Worker error: {e}", exc_info=True)
        raise


if __name__ == "__main__":
    main()
