# WebSocket Client - Connection Management
# Resilient WebSocket client for the price service streaming API

"""
WebSocket Client Module

Responsibilities:
- Establish WebSocket connection to the price service
- Detect silent disconnects with a liveness watchdog
- Auto-reconnect with exponential backoff until closed by the owner
- Connection state management
- Event callbacks (message, error, reconnect)
"""

import asyncio
import json
from enum import Enum
from typing import Any, Callable, Dict, Optional, Union

from websockets.asyncio.client import connect as websocket_connect
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK

from .backoff import BackoffPolicy
from .heartbeat_manager import HeartbeatManager, DEFAULT_PING_TIMEOUT
from ..exceptions import ConnectionNotReadyError, HeartbeatTimeoutError
from ..utils.helpers import maybe_await
from ..utils.logger import setup_logger


class ConnectionState(Enum):
    """WebSocket connection states"""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"


class ResilientWebSocketClient:
    """
    WebSocket client that keeps one connection alive until closed

    Features:
    - Auto-reconnect with exponential backoff (unbounded attempts)
    - Liveness watchdog with client pings
    - Bounded wait for readiness on send
    - Event callbacks

    All state changes happen on the event loop that called connect();
    the watchdog and the backoff timer are tasks on that same loop.
    Transitions run under one lock, and every connect attempt carries an
    id so a handshake that completes after disconnect() is discarded.
    """

    def __init__(
        self,
        url: str,
        backoff: Optional[BackoffPolicy] = None,
        ping_timeout: float = DEFAULT_PING_TIMEOUT,
        heartbeat_interval: Optional[float] = 20.0,
        send_timeout: float = 5.0,
        open_timeout: float = 10.0,
        close_timeout: float = 5.0,
        connector: Optional[Callable] = None,
        logger=None
    ):
        """
        Initialize WebSocket client

        Args:
            url: WebSocket URL
            backoff: Reconnect delay policy
            ping_timeout: Liveness window in seconds
            heartbeat_interval: Seconds between client pings (None disables)
            send_timeout: Max seconds send() waits for the connection to open
            open_timeout: Max seconds for the opening handshake
            close_timeout: Max seconds for a graceful close
            connector: Transport connect function (defaults to websockets)
            logger: Optional logger
        """
        self.url = url
        self.backoff = backoff or BackoffPolicy()
        self.send_timeout = send_timeout
        self.open_timeout = open_timeout
        self.close_timeout = close_timeout
        self._connector = connector or websocket_connect
        self.logger = logger or setup_logger("ResilientWebSocket", "INFO")

        # Connection state
        self.connection = None
        self.state = ConnectionState.DISCONNECTED
        self._failed_attempts = 0
        self._user_closed = True
        self._reconnect_pending = False
        self._open_event = asyncio.Event()
        self._closed_event = asyncio.Event()
        self._closed_event.set()
        # Guards connect/disconnect/loss handling; never held across
        # the handshake or a user callback
        self._state_lock = asyncio.Lock()
        self._attempt_id = 0

        # Event callbacks
        self.on_message_callback: Optional[Callable] = None
        self.on_error_callback: Optional[Callable] = None
        self.on_reconnect_callback: Optional[Callable] = None

        # Tasks
        self._receive_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._heartbeat = HeartbeatManager(
            on_timeout=self._on_heartbeat_timeout,
            timeout=ping_timeout,
            ping_interval=heartbeat_interval,
            logger=self.logger
        )

        self._stats = {
            "messages_received": 0,
            "messages_sent": 0,
            "reconnects": 0,
            "errors": 0,
        }

    async def connect(self):
        """
        Start the connection if not already started.

        Never raises on transport failure: a failed attempt is reported to
        the error callback and retried after a backoff delay. Waits for a
        disconnect() in progress to finish before opening a new transport.
        """
        async with self._state_lock:
            if self.state in (ConnectionState.CONNECTING, ConnectionState.OPEN):
                return

            self._user_closed = False
            self._closed_event.clear()
            self._cancel_reconnect()
            attempt_id = self._begin_attempt()

        await self._attempt_connect(attempt_id)

    async def disconnect(self):
        """
        Close the connection and stop reconnecting.

        Effective even while a connect attempt or a backoff wait is in flight.
        """
        if self._user_closed and self.connection is None and self._receive_task is None:
            return

        self.logger.info("Closing WebSocket client")
        # Set before waiting for the lock: releases waiting sends and voids
        # any handshake still in flight
        self._user_closed = True
        self._closed_event.set()
        self._reconnect_pending = False
        self._attempt_id += 1
        self._cancel_reconnect()

        async with self._state_lock:
            connection = self.connection
            self.connection = None
            if self.state != ConnectionState.DISCONNECTED:
                self.state = ConnectionState.CLOSING
            self._open_event.clear()

            await self._teardown(connection)
            self.state = ConnectionState.DISCONNECTED

        self.logger.info("Closed WebSocket client")

    async def send(self, message: Union[str, bytes, Dict[str, Any]]) -> bool:
        """
        Send a message, waiting a bounded time for the connection to open

        Sends are fire-and-forget: when the connection does not open in
        time, the failure is reported and the message is dropped.

        Args:
            message: Text, bytes, or a dict serialized as JSON

        Returns:
            True if sent, False otherwise
        """
        payload = json.dumps(message) if isinstance(message, dict) else message

        if not self._open_event.is_set():
            if not self._user_closed:
                await self._wait_until_open()

            if self._user_closed:
                await self._report_error(
                    ConnectionNotReadyError("WebSocket client is closed")
                )
                return False

            if not self._open_event.is_set():
                self.logger.error(
                    "Couldn't connect to the websocket server. Error callback is called."
                )
                await self._report_error(ConnectionNotReadyError(
                    f"WebSocket not open after {self.send_timeout:.1f}s"
                ))
                return False

        connection = self.connection
        if connection is None:
            await self._report_error(ConnectionNotReadyError("WebSocket connection lost"))
            return False

        try:
            await connection.send(payload)
            self._stats["messages_sent"] += 1
            self.logger.debug(f"Sent: {payload}")
            return True

        except Exception as e:
            self.logger.error(f"Failed to send message: {e}")
            await self._report_error(e)
            return False

    async def _wait_until_open(self):
        """Wait until open, closed by the owner, or send_timeout elapses."""
        waiters = [
            asyncio.ensure_future(self._open_event.wait()),
            asyncio.ensure_future(self._closed_event.wait()),
        ]
        try:
            await asyncio.wait(
                waiters,
                timeout=self.send_timeout,
                return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for waiter in waiters:
                waiter.cancel()

    def _begin_attempt(self) -> int:
        """Mark a new connect attempt; call with the state lock held."""
        self._attempt_id += 1
        self.state = ConnectionState.CONNECTING
        self.logger.info(f"Connecting to {self.url}...")
        return self._attempt_id

    async def _attempt_connect(self, attempt_id: int):
        # Handshake runs outside the state lock; a voided attempt closes its transport
        try:
            connection = await self._connector(
                self.url,
                ping_interval=None,  # HeartbeatManager pings
                open_timeout=self.open_timeout,
                close_timeout=self.close_timeout
            )
        except asyncio.CancelledError:
            if attempt_id == self._attempt_id:
                self.state = ConnectionState.DISCONNECTED
            raise
        except Exception as e:
            async with self._state_lock:
                if attempt_id != self._attempt_id:
                    return
                self.state = ConnectionState.DISCONNECTED
                self.logger.error(f"Connection failed: {e}")
                self._schedule_reconnect()
            await self._report_error(e)
            return

        async with self._state_lock:
            if attempt_id != self._attempt_id:
                # disconnect() won the race against the handshake
                await self._close_transport(connection)
                return

            self.connection = connection
            self.state = ConnectionState.OPEN
            self._failed_attempts = 0
            self._open_event.set()
            self._heartbeat.start(connection)
            self._receive_task = asyncio.create_task(self._receive_loop(connection))
            reconnected = self._reconnect_pending
            self._reconnect_pending = False

        self.logger.info("✅ Connected successfully")

        if reconnected:
            self._stats["reconnects"] += 1
            if self.on_reconnect_callback:
                try:
                    await maybe_await(self.on_reconnect_callback())
                except Exception as e:
                    self.logger.error(f"Reconnect callback error: {e}")
                    await self._report_error(e)

    async def _receive_loop(self, connection):
        """Background task to receive messages"""
        error: Optional[Exception] = None
        try:
            while True:
                message = await connection.recv()
                self._heartbeat.touch()
                self._stats["messages_received"] += 1
                await self._dispatch(message)

        except asyncio.CancelledError:
            self.logger.debug("Receive loop cancelled")
            raise

        except ConnectionClosedOK:
            self.logger.warning("Connection closed by server")

        except ConnectionClosed as e:
            self.logger.warning(f"Connection closed abnormally: {e}")
            error = e

        except Exception as e:
            self.logger.error(f"Receive loop error: {e}")
            error = e

        await self._handle_connection_lost(connection, error)

    async def _dispatch(self, message):
        if not self.on_message_callback:
            return
        try:
            await maybe_await(self.on_message_callback(message))
        except Exception as e:
            self.logger.error(f"Error handling message: {e}")
            await self._report_error(e)

    async def _on_heartbeat_timeout(self):
        self.logger.warning("Connection timed out (no inbound activity). Reconnecting...")
        connection = self.connection
        if connection is None:
            return
        await self._handle_connection_lost(
            connection, HeartbeatTimeoutError(self._heartbeat.timeout)
        )

    async def _handle_connection_lost(self, connection, error: Optional[Exception]):
        """Common path for transport errors, remote closes and liveness timeouts"""
        async with self._state_lock:
            if connection is not self.connection:
                return

            self.connection = None
            self.state = ConnectionState.DISCONNECTED
            self._open_event.clear()
            await self._teardown(connection)

            if self._user_closed:
                self.logger.info("User requested close; will not reconnect.")
                return

            self._schedule_reconnect()

        if error is not None:
            await self._report_error(error)

    def _schedule_reconnect(self):
        if self._user_closed:
            return

        self._failed_attempts += 1
        self._reconnect_pending = True
        delay = self.backoff.delay(self._failed_attempts)
        self.logger.info(
            f"Reconnecting in {delay:.2f}s (attempt {self._failed_attempts})..."
        )

        self._cancel_reconnect()
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float):
        await asyncio.sleep(delay)
        async with self._state_lock:
            if self._reconnect_task is asyncio.current_task():
                # Past the wait: disconnect() now voids this attempt by id
                self._reconnect_task = None
            if self._user_closed or self.state != ConnectionState.DISCONNECTED:
                return
            attempt_id = self._begin_attempt()
        await self._attempt_connect(attempt_id)

    def _cancel_reconnect(self):
        task = self._reconnect_task
        self._reconnect_task = None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _teardown(self, connection):
        """Stop the watchdog, the receive loop and the transport."""
        task = self._receive_task
        self._receive_task = None
        await self._heartbeat.stop()

        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await asyncio.wait_for(task, timeout=self.close_timeout)
            except (asyncio.CancelledError, asyncio.TimeoutError):
                pass

        if connection is not None:
            await self._close_transport(connection)

    async def _close_transport(self, connection):
        try:
            await asyncio.wait_for(connection.close(), timeout=self.close_timeout)
        except asyncio.TimeoutError:
            self.logger.warning("Connection close timeout - forcing")
        except Exception as e:
            self.logger.warning(f"Error closing connection: {e}")

    async def _report_error(self, error: Exception):
        self._stats["errors"] += 1
        if not self.on_error_callback:
            self.logger.error(f"WebSocket error: {error}")
            return
        try:
            await maybe_await(self.on_error_callback(error))
        except Exception as e:
            self.logger.error(f"Error callback raised: {e}")

    def is_connected(self) -> bool:
        """True while the connection is open"""
        return self.connection is not None and self.state == ConnectionState.OPEN

    @property
    def is_closed(self) -> bool:
        """True until connect() is called, and again after disconnect()"""
        return self._user_closed

    @property
    def failed_attempts(self) -> int:
        return self._failed_attempts

    def get_state(self) -> ConnectionState:
        return self.state

    def get_stats(self) -> dict:
        stats = dict(self._stats)
        stats["failed_attempts"] = self._failed_attempts
        stats["state"] = self.state.value
        return stats

    # Event callback setters
    def on_message(self, callback: Callable):
        """Set on_message callback (receives the raw frame)"""
        self.on_message_callback = callback

    def on_error(self, callback: Callable):
        """Set on_error callback"""
        self.on_error_callback = callback

    def on_reconnect(self, callback: Callable):
        """Set on_reconnect callback"""
        self.on_reconnect_callback = callback
