# Heartbeat Manager - Liveness Watchdog
# Declares the connection dead when nothing arrives within the window

"""
Heartbeat Manager Module

Responsibilities:
- Track the time of the last inbound frame
- Send a ping every heartbeat interval and count the pong as activity
- Trigger reconnection on timeout
"""

import asyncio
from typing import Awaitable, Callable, Optional

from ..utils.logger import setup_logger

# Server pings every 30s; 3s margin for network delays
DEFAULT_PING_TIMEOUT = 30.0 + 3.0


class HeartbeatManager:
    """
    Restartable liveness watchdog for one WebSocket connection

    The watchdog is deadline based: touch() only moves the deadline, so
    frequent inbound traffic costs no task churn. At most one watch task
    and one ping task exist at any time; start() cancels the previous ones.
    """

    def __init__(
        self,
        on_timeout: Callable[[], Awaitable[None]],
        timeout: float = DEFAULT_PING_TIMEOUT,
        ping_interval: Optional[float] = None,
        logger=None
    ):
        """
        Initialize heartbeat manager

        Args:
            on_timeout: Coroutine function called once when the window expires
            timeout: Liveness window in seconds
            ping_interval: Seconds between client pings (None disables pings)
            logger: Optional logger
        """
        if timeout <= 0:
            raise ValueError("timeout must be positive")

        self.on_timeout = on_timeout
        self.timeout = timeout
        self.ping_interval = ping_interval
        self.logger = logger or setup_logger("HeartbeatManager", "INFO")

        self._last_activity = 0.0
        self._watch_task: Optional[asyncio.Task] = None
        self._ping_task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._watch_task is not None and not self._watch_task.done()

    def start(self, connection=None):
        """
        Arm the watchdog (re-arming cancels the previous instance)

        Args:
            connection: Transport to ping; pings are skipped when None
        """
        self._cancel_tasks()
        self.touch()
        self._watch_task = asyncio.create_task(self._watch_loop())

        if connection is not None and self.ping_interval:
            self._ping_task = asyncio.create_task(self._ping_loop(connection))

    def touch(self):
        """Record inbound activity."""
        self._last_activity = asyncio.get_running_loop().time()

    def seconds_since_activity(self) -> float:
        return asyncio.get_running_loop().time() - self._last_activity

    async def stop(self):
        """Disarm the watchdog and stop pinging."""
        tasks = self._cancel_tasks()
        for task in tasks:
            try:
                await asyncio.wait_for(task, timeout=1.0)
            except (asyncio.CancelledError, asyncio.TimeoutError):
                pass

    def _cancel_tasks(self):
        current = asyncio.current_task()
        cancelled = []
        for task in (self._watch_task, self._ping_task):
            if task is None or task.done() or task is current:
                continue
            task.cancel()
            cancelled.append(task)
        self._watch_task = None
        self._ping_task = None
        return cancelled

    async def _watch_loop(self):
        loop = asyncio.get_running_loop()
        while True:
            remaining = self._last_activity + self.timeout - loop.time()
            if remaining <= 0:
                break
            await asyncio.sleep(remaining)

        self.logger.warning(
            f"Connection timed out (no inbound activity for {self.timeout:.1f}s)"
        )
        # Detach before firing: the handler stops this manager
        self._watch_task = None
        await self.on_timeout()

    async def _ping_loop(self, connection):
        try:
            while True:
                await asyncio.sleep(self.ping_interval)
                pong_waiter = await connection.ping()
                await asyncio.wait_for(pong_waiter, timeout=self.timeout)
                self.touch()
                self.logger.debug("Received pong")

        except asyncio.CancelledError:
            raise
        except Exception as e:
            # The watchdog decides when the connection is dead
            self.logger.debug(f"Heartbeat ping stopped: {e}")
