# Price Service Connection - Client Facade
# HTTP queries and streaming subscriptions behind one entry point

"""
Price Service Connection

Entry point for applications:
- HTTP queries for latest / historical price feeds and VAAs
- Streaming price feed updates over a resilient WebSocket

Streaming never raises on network or server problems. Those go to
`on_ws_error`, which logs by default; assign your own handler (sync or
async) to react to them.
"""

from typing import Any, Callable, Iterable, List, NamedTuple, Optional

from .config import PriceServiceConnectionConfig
from .connection.backoff import BackoffPolicy
from .connection.rest_client import RestClient
from .connection.subscription_manager import PriceFeedUpdateCallback, SubscriptionManager
from .connection.websocket_client import ResilientWebSocketClient
from .exceptions import EndpointNotConfiguredError
from .processors.price_feed import PriceFeed
from .utils.helpers import make_websocket_url
from .utils.logger import setup_logger


class VaaResponse(NamedTuple):
    vaa: str
    publish_time: int


class PriceServiceConnection:
    """
    Client for a price service endpoint

    Usage:
        async with PriceServiceConnection("https://hermes.example.com") as conn:
            feeds = await conn.get_latest_price_feeds([feed_id])
            await conn.subscribe_price_feed_updates([feed_id], on_update)
    """

    def __init__(
        self,
        endpoint: str,
        config: Optional[PriceServiceConnectionConfig] = None,
        connector: Optional[Callable] = None
    ):
        """
        Args:
            endpoint: HTTP(S) endpoint of the price service
            config: Optional client configuration
            connector: Optional WebSocket connect function (tests)
        """
        self.config = config or PriceServiceConnectionConfig()
        self.logger = self.config.logger or setup_logger("PriceServiceConnection", "INFO")
        self.request_config = self.config.effective_request_config()

        self.rest_client = RestClient(
            endpoint,
            timeout=self.config.timeout,
            retries=self.config.http_retries,
            retry_delay=self.config.http_retry_delay,
            logger=self.logger,
        )

        try:
            self.ws_endpoint: Optional[str] = make_websocket_url(endpoint)
        except ValueError as e:
            self.logger.warning(f"Streaming disabled: {e}")
            self.ws_endpoint = None

        self._connector = connector
        self._subscriptions: Optional[SubscriptionManager] = None
        self._on_ws_error: Callable[[Exception], Any] = self._log_ws_error

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    @property
    def on_ws_error(self) -> Callable[[Exception], Any]:
        """Handler for WebSocket connection and message errors"""
        return self._on_ws_error

    @on_ws_error.setter
    def on_ws_error(self, handler: Callable[[Exception], Any]):
        self._on_ws_error = handler
        if self._subscriptions is not None:
            self._subscriptions.on_error = handler

    def _log_ws_error(self, error: Exception):
        self.logger.error(f"WebSocket error: {error!r}")

    # ------------------------------------------------------------------
    # HTTP API
    #
    # Every get_* call retries transport errors, timeouts, 429 and 5xx.
    # Other 4xx responses (unknown price ids, publish_time out of range)
    # raise PriceServiceHTTPError on the first attempt.
    # ------------------------------------------------------------------
    async def get_latest_price_feeds(self, price_ids: Iterable[str]) -> List[PriceFeed]:
        """
        Fetch latest price feeds of the given ids

        Raises PriceServiceHTTPError without retrying when an id is unknown (400).
        """
        price_ids = list(price_ids)
        if not price_ids:
            return []

        data = await self.rest_client.get(
            "/api/latest_price_feeds",
            {
                "ids[]": price_ids,
                "verbose": self.request_config.verbose,
                "binary": self.request_config.binary,
            },
        )
        return [PriceFeed.from_dict(item) for item in data or []]

    async def get_latest_vaas(self, price_ids: Iterable[str]) -> List[str]:
        """Fetch latest VAAs (base64) of the given ids"""
        data = await self.rest_client.get("/api/latest_vaas", {"ids[]": list(price_ids)})
        return [str(vaa) for vaa in data or []]

    async def get_vaa(self, price_id: str, publish_time: int) -> VaaResponse:
        """
        Fetch the earliest VAA of a price id published since publish_time

        Raises PriceServiceHTTPError if publish_time is in the future or too
        old for the endpoint to serve.
        """
        data = await self.rest_client.get(
            "/api/get_vaa",
            {"id": price_id, "publish_time": publish_time},
        )
        return VaaResponse(vaa=data["vaa"], publish_time=int(data["publishTime"]))

    async def get_price_feed(self, price_id: str, publish_time: int) -> Optional[PriceFeed]:
        """Fetch the price feed of a price id published since publish_time"""
        data = await self.rest_client.get(
            "/api/get_price_feed",
            {
                "id": price_id,
                "publish_time": publish_time,
                "verbose": self.request_config.verbose,
                "binary": self.request_config.binary,
            },
        )
        if not data:
            return None
        return PriceFeed.from_dict(data)

    async def get_price_feed_ids(self) -> List[str]:
        """Fetch the list of available price feed ids"""
        data = await self.rest_client.get("/api/price_feed_ids")
        return [str(feed_id) for feed_id in data or []]

    # ------------------------------------------------------------------
    # Streaming API
    # ------------------------------------------------------------------
    async def subscribe_price_feed_updates(self, price_ids: Iterable[str], callback: PriceFeedUpdateCallback):
        """
        Subscribe callback to updates of the given price ids

        Starts the WebSocket on first use. Invalid ids and connection
        problems are reported to on_ws_error rather than raised.
        """
        subscriptions = self._ensure_subscriptions()
        await subscriptions.subscribe(price_ids, callback)

    async def unsubscribe_price_feed_updates(
        self,
        price_ids: Iterable[str],
        callback: Optional[PriceFeedUpdateCallback] = None
    ):
        """
        Unsubscribe callback (or all callbacks) from the given price ids

        Closes the WebSocket once nothing is subscribed anymore.
        """
        if self._subscriptions is None:
            return
        await self._subscriptions.unsubscribe(price_ids, callback)

    async def start_websocket(self):
        """Open the WebSocket; called automatically by subscribe."""
        subscriptions = self._ensure_subscriptions()
        await subscriptions.websocket_client.connect()

    async def close_websocket(self):
        """Close the WebSocket and drop every subscription."""
        if self._subscriptions is not None:
            await self._subscriptions.close_all()

    async def close(self):
        """Release the WebSocket and the HTTP session."""
        await self.close_websocket()
        await self.rest_client.close()

    @property
    def subscriptions(self) -> Optional[SubscriptionManager]:
        return self._subscriptions

    def _ensure_subscriptions(self) -> SubscriptionManager:
        if self.ws_endpoint is None:
            raise EndpointNotConfiguredError("Websocket endpoint is undefined.")

        if self._subscriptions is None:
            ws_config = self.config.websocket
            websocket_client = ResilientWebSocketClient(
                self.ws_endpoint,
                backoff=BackoffPolicy(
                    base_delay=ws_config.reconnect_base_delay,
                    max_delay=ws_config.max_reconnect_delay,
                ),
                ping_timeout=ws_config.ping_timeout,
                heartbeat_interval=ws_config.heartbeat_interval,
                send_timeout=ws_config.send_timeout,
                open_timeout=ws_config.open_timeout,
                close_timeout=ws_config.close_timeout,
                connector=self._connector,
                logger=self.config.logger,
            )
            self._subscriptions = SubscriptionManager(
                websocket_client,
                request_config=self.request_config,
                on_error=self._on_ws_error,
                logger=self.config.logger,
            )
        return self._subscriptions
