"""Heartbeat loop keeping this worker's registry record fresh."""

import asyncio
import time
from typing import Callable, Optional

from common.exceptions import StoreUnavailableError
from common.logging_config import get_logger
from coordinator.client_registry import ClientRegistry
from worker.state import WorkerState

logger = get_logger(__name__)


class HeartbeatService:
    """
    Sends periodic heartbeats to the client registry.

    When the record is gone (collected by the leader) or heartbeats have
    failed for longer than the grace window, the worker assumes it may have
    been evicted and registers again.
    """

    def __init__(
        self,
        registry: ClientRegistry,
        state: WorkerState,
        interval: float,
        grace_period: float,
        clock: Callable[[], float] = time.time
    ):
        """
        Args:
            registry: Registry holding the heartbeat record
            state: Worker state updated on every successful heartbeat
            interval: Seconds between heartbeats
            grace_period: Seconds of failed heartbeats after which the worker re-registers
            clock: Time source
        """
        self.registry = registry
        self.state = state
        self.interval = interval
        self.grace_period = grace_period
        self.clock = clock

        self.consecutive_failures = 0
        self.running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def worker_id(self) -> str:
        return self.state.worker_id

    async def register(self) -> None:
        await self.registry.register(self.worker_id)
        self._succeeded()
        self.state.registered = True

    def _succeeded(self) -> None:
        self.state.last_heartbeat_ok_at = self.clock()
        self.consecutive_failures = 0

    async def start(self) -> None:
        """Start heartbeat background task"""
        if self.running:
            return
        self.running = True
        self._task = asyncio.create_task(self._heartbeat_loop())
        logger.info(f"Heartbeat service started - worker_id={self.worker_id}, interval={self.interval}s")

    async def stop(self) -> None:
        """Stop heartbeat background task"""
        self.running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Heartbeat service stopped")

    async def _heartbeat_loop(self) -> None:
        """Send periodic heartbeat to the registry"""
        while self.running:
            await asyncio.sleep(self.interval)
            try:
                await self.beat()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Heartbeat error: {e}", exc_info=True)

    def _beyond_grace(self) -> bool:
        last = self.state.last_heartbeat_ok_at
        return last is None or self.clock() - last > self.grace_period

    async def beat(self) -> bool:
        """
        Send one heartbeat, re-registering when needed.

        Returns:
            True if the registry now holds a fresh record for this worker
        """
        try:
            if not self.state.registered or self._beyond_grace():
                if self.state.registered:
                    logger.warning(
                        f"No successful heartbeat for more than {self.grace_period}s, re-registering"
                    )
                await self.register()
                return True

            if not await self.registry.heartbeat(self.worker_id):
                logger.warning("Registry record missing, possibly evicted; re-registering")
                await self.register()
                return True

        except StoreUnavailableError as e:
            self.consecutive_failures += 1
            logger.warning(f"Heartbeat failed ({self.consecutive_failures} in a row): {e}")
            return False

        self._succeeded()
        return True
