# Subscription Manager - Price Feed Subscriptions
# Multiplexes many feed callbacks over one resilient WebSocket

"""
Subscription Manager Module

Responsibilities:
- Track callbacks per price feed id (interest table)
- Send only newly interesting / no longer interesting ids on the wire
- Resubscribe to every id after a reconnect
- Dispatch price updates to the callbacks of the matching id
- Close the connection once nothing is subscribed
"""

import asyncio
from typing import Any, Callable, Dict, Iterable, List, Optional

from .websocket_client import ResilientWebSocketClient
from ..exceptions import MessageParseError, ServerResponseError, UnsupportedMessageError
from ..processors.message_parser import (
    MessageParser,
    MessageType,
    build_subscribe_message,
    build_unsubscribe_message,
)
from ..processors.price_feed import PriceFeed
from ..utils.helpers import maybe_await, remove_leading_0x
from ..utils.logger import setup_logger

PriceFeedUpdateCallback = Callable[[PriceFeed], Any]


class SubscriptionManager:
    """
    Manages price feed subscriptions over one WebSocket connection

    The interest table maps feed id -> callbacks in registration order
    (a dict used as an ordered set). An id is present only while at
    least one callback is registered for it. Table mutations and the
    wire messages they produce run under one lock so the server always
    sees interest in the order the table changed.
    """

    def __init__(
        self,
        websocket_client: ResilientWebSocketClient,
        request_config=None,
        on_error: Optional[Callable[[Exception], Any]] = None,
        logger=None
    ):
        """
        Initialize subscription manager

        Args:
            websocket_client: Connection to multiplex (opened lazily)
            request_config: PriceFeedRequestConfig sent with subscriptions
            on_error: Error handler (defaults to logging the error)
            logger: Optional logger
        """
        self.websocket_client = websocket_client
        self.request_config = request_config
        self.logger = logger or setup_logger("SubscriptionManager", "INFO")
        self.parser = MessageParser(logger=self.logger)
        self.on_error = on_error or self._log_error

        self._callbacks: Dict[str, Dict[PriceFeedUpdateCallback, None]] = {}
        self._lock = asyncio.Lock()
        self._stats = {
            "updates_dispatched": 0,
            "errors": 0,
        }

        websocket_client.on_message(self.handle_message)
        websocket_client.on_reconnect(self.resubscribe_all)
        websocket_client.on_error(self.report_error)

    async def subscribe(self, ids: Iterable[str], callback: PriceFeedUpdateCallback):
        """
        Register callback for the given price feed ids

        Opens the connection on first use. Only ids that were not
        subscribed before are sent to the server.
        """
        ids = [remove_leading_0x(i) for i in ids]

        async with self._lock:
            if self.websocket_client.is_closed:
                await self.websocket_client.connect()

            new_ids: List[str] = []
            for feed_id in ids:
                if feed_id not in self._callbacks:
                    self._callbacks[feed_id] = {}
                    new_ids.append(feed_id)
                self._callbacks[feed_id][callback] = None

            if new_ids:
                self.logger.info(f"Subscribing to {len(new_ids)} price feeds")
                await self.websocket_client.send(
                    build_subscribe_message(new_ids, self.request_config)
                )

    async def unsubscribe(self, ids: Iterable[str], callback: Optional[PriceFeedUpdateCallback] = None):
        """
        Remove callback (or every callback when None) for the given ids

        Ids left without callbacks are unsubscribed on the server. The
        connection is closed when no id remains subscribed.
        """
        ids = [remove_leading_0x(i) for i in ids]

        async with self._lock:
            removed_ids: List[str] = []
            for feed_id in ids:
                callbacks = self._callbacks.get(feed_id)
                if callbacks is None:
                    continue

                if callback is not None:
                    callbacks.pop(callback, None)
                    if callbacks:
                        continue

                del self._callbacks[feed_id]
                removed_ids.append(feed_id)

            if removed_ids:
                self.logger.info(f"Unsubscribing from {len(removed_ids)} price feeds")
                await self.websocket_client.send(build_unsubscribe_message(removed_ids))

            if not self._callbacks:
                await self._close_locked()

    async def resubscribe_all(self):
        """Declare every subscribed id again (server forgets on reconnect)"""
        async with self._lock:
            if not self._callbacks:
                return
            self.logger.info("Resubscribing to existing price feeds.")
            await self.websocket_client.send(
                build_subscribe_message(list(self._callbacks), self.request_config)
            )

    async def close_all(self):
        """Close the connection and forget every subscription"""
        # Stop reconnects first so a send waiting under the lock is released
        await self.websocket_client.disconnect()
        async with self._lock:
            await self._close_locked()

    async def _close_locked(self):
        self._callbacks.clear()
        await self.websocket_client.disconnect()

    async def handle_message(self, raw_message):
        """
        Handle an inbound frame

        Never raises: every failure goes to the error handler so later
        frames keep flowing.
        """
        try:
            parsed = self.parser.parse(raw_message)
        except MessageParseError as e:
            self.logger.error(f"{e} ({e.raw})")
            await self.report_error(e)
            return

        if parsed.message_type == MessageType.RESPONSE:
            if parsed.is_error:
                self.logger.error(f"Error response from the websocket server {parsed.error}")
                await self.report_error(ServerResponseError(parsed.error))

        elif parsed.message_type == MessageType.PRICE_UPDATE:
            await self._dispatch(parsed.price_feed)

        else:
            self.logger.warning(f"Ignoring unsupported server response: {parsed.type}")
            await self.report_error(UnsupportedMessageError(parsed.type))

    async def _dispatch(self, price_feed: PriceFeed):
        # Snapshot: callbacks may (un)subscribe while being called
        callbacks = list(self._callbacks.get(price_feed.id, ()))
        for callback in callbacks:
            try:
                await maybe_await(callback(price_feed))
                self._stats["updates_dispatched"] += 1
            except Exception as e:
                self.logger.error(f"Price feed callback error for {price_feed.id}: {e}")
                await self.report_error(e)

    async def report_error(self, error: Exception):
        """Hand an error to the error handler; the handler itself may not break dispatch"""
        self._stats["errors"] += 1
        try:
            await maybe_await(self.on_error(error))
        except Exception as e:
            self.logger.error(f"Error handler raised: {e}")

    def _log_error(self, error: Exception):
        self.logger.error(f"WebSocket error: {error!r}")

    def subscribed_ids(self) -> List[str]:
        return list(self._callbacks)

    def callbacks_for(self, feed_id: str) -> List[PriceFeedUpdateCallback]:
        return list(self._callbacks.get(remove_leading_0x(feed_id), ()))

    def get_stats(self) -> dict:
        stats = dict(self._stats)
        stats["feeds"] = len(self._callbacks)
        stats["callbacks"] = sum(len(c) for c in self._callbacks.values())
        return stats
