"""
Connectivity monitor for the durable order store.

One ``AvailabilityMonitor`` is created by the application root and handed
to every consumer. It owns the connection state, drives reconnection with
exponential backoff in strict mode, runs the periodic health check and
exposes the health surface used by ``/system/status``.

Retry policy:

* the startup connect is not a retry and does not count toward the cap;
* every failed automatic, manual or periodic attempt increments
  ``retry_attempts``; a successful connect resets it to 0;
* automatic attempt ``k`` (``k = retry_attempts + 1``) waits
  ``base_delay * 2 ** (k - 1)`` and at most ``max_attempts`` run;
* the periodic check, when disconnected, resets the counter and makes one
  immediate attempt, after which the schedule resumes in strict mode.
"""

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Optional

from storefront.db import Database
from storefront.schemas import DatabaseStatus, ReconnectResult, utcnow

logger = logging.getLogger("storefront.monitor")


class ConnectionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"
    DISCONNECTED = "disconnected"


@dataclass
class ConnectionHealth:
    state: ConnectionState = ConnectionState.UNINITIALIZED
    last_error: Optional[str] = None
    retry_attempts: int = 0
    last_connect_attempt: Optional[datetime] = None
    connected_since: Optional[datetime] = None


class AvailabilityMonitor:
    def __init__(
        self,
        database: Database,
        *,
        strict: bool = True,
        base_delay: float = 5.0,
        max_attempts: int = 5,
        check_interval: float = 60.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.database = database
        self.strict = strict
        self.base_delay = base_delay
        self.max_attempts = max_attempts
        self.check_interval = check_interval
        self.health = ConnectionHealth()
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._retry_task: Optional[asyncio.Task] = None
        self._check_task: Optional[asyncio.Task] = None

    @property
    def is_connected(self) -> bool:
        return self.health.state is ConnectionState.CONNECTED

    @property
    def retry_pending(self) -> bool:
        return self._retry_task is not None and not self._retry_task.done()

    def backoff_delay(self, attempt: int) -> float:
        return self.base_delay * 2 ** (attempt - 1)

    async def start(self) -> None:
        if not await self.connect(counted=False):
            self._schedule_retries()
        self._check_task = asyncio.create_task(self._periodic_check())

    async def connect(self, counted: bool = True) -> bool:
        """Make one connection attempt. Returns True when connected."""
        async with self._lock:
            if self.is_connected:
                return True

            self.health.state = ConnectionState.CONNECTING
            self.health.last_connect_attempt = utcnow()
            try:
                await self.database.connect()
            except asyncio.CancelledError:
                self.health.state = ConnectionState.DISCONNECTED
                raise
            except Exception as e:
                self.health.state = ConnectionState.DISCONNECTED
                self.health.last_error = str(e) or e.__class__.__name__
                if counted:
                    self.health.retry_attempts += 1
                logger.error("[Monitor] Database connection failed (retry attempts: %d): %s",
                             self.health.retry_attempts, self.health.last_error)
                return False

            self.health.state = ConnectionState.CONNECTED
            self.health.last_error = None
            self.health.retry_attempts = 0
            self.health.connected_since = utcnow()
            logger.info("[Monitor] Database connected: %s", self.database.host)
            return True

    def report_failure(self, exc: BaseException) -> None:
        """Called by the durable store when a query hits a dead connection."""
        if not self.is_connected:
            return
        self.health.state = ConnectionState.DISCONNECTED
        self.health.last_error = str(exc) or exc.__class__.__name__
        self.health.connected_since = None
        logger.warning("[Monitor] Database connection lost: %s", self.health.last_error)
        self._schedule_retries()

    def _schedule_retries(self) -> None:
        if not self.strict:
            return
        self._cancel_retries()
        if self.health.retry_attempts >= self.max_attempts:
            logger.warning("[Monitor] Automatic reconnect limit (%d) reached, waiting for a manual "
                           "or periodic reconnect", self.max_attempts)
            return
        self._retry_task = asyncio.create_task(self._retry_loop())

    def _cancel_retries(self) -> None:
        task = self._retry_task
        self._retry_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _retry_loop(self) -> None:
        while not self.is_connected:
            attempt = self.health.retry_attempts + 1
            if attempt > self.max_attempts:
                logger.warning("[Monitor] Giving up after %d automatic reconnect attempts",
                               self.max_attempts)
                return
            delay = self.backoff_delay(attempt)
            logger.info("[Monitor] Reconnect attempt %d/%d in %.0f s", attempt, self.max_attempts, delay)
            await self._sleep(delay)
            await self.connect()

    async def wait_for_retries(self) -> None:
        task = self._retry_task
        if task is not None:
            await asyncio.wait({task})

    async def _periodic_check(self) -> None:
        while True:
            await asyncio.sleep(self.check_interval)
            await self.check()

    async def check(self) -> None:
        if self.is_connected:
            try:
                await self.database.ping()
            except Exception as e:
                self.report_failure(e)
            return

        logger.info("[Monitor] Periodic check: database not connected, forcing reconnect")
        self._cancel_retries()
        self.health.retry_attempts = 0
        if not await self.connect():
            self._schedule_retries()

    async def reconnect(self) -> ReconnectResult:
        """Manual reconnect: one immediate attempt outside the backoff schedule."""
        if self.is_connected:
            return ReconnectResult(
                success=True,
                message="Database already connected",
                status=self.health.state.value,
            )

        self._cancel_retries()
        if await self.connect():
            return ReconnectResult(
                success=True,
                message="Successfully reconnected to database",
                status=self.health.state.value,
                host=self.database.host,
            )

        self._schedule_retries()
        return ReconnectResult(
            success=False,
            message="Failed to reconnect to database",
            status=self.health.state.value,
            error=self.health.last_error,
            retry_attempts=self.health.retry_attempts,
        )

    async def shutdown(self) -> None:
        tasks = [t for t in (self._retry_task, self._check_task) if t is not None]
        self._retry_task = None
        self._check_task = None
        for task in tasks:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        self.health.state = ConnectionState.DISCONNECTING
        try:
            await self.database.dispose()
        finally:
            self.health.state = ConnectionState.DISCONNECTED
            self.health.connected_since = None
        logger.info("[Monitor] Shut down")

    def status(self) -> DatabaseStatus:
        connected = self.is_connected
        uptime = 0.0
        if connected and self.health.connected_since is not None:
            uptime = (utcnow() - self.health.connected_since).total_seconds()
        return DatabaseStatus(
            connected=connected,
            state=self.health.state.value,
            host=self.database.host if connected else None,
            last_error=self.health.last_error,
            retry_attempts=self.health.retry_attempts,
            last_connect_attempt=self.health.last_connect_attempt,
            uptime=uptime,
        )
