"""
In-memory WebSocket transport for tests

FakeConnector stands in for websockets' connect(): every call hands out
a new FakeWebSocket, or raises while `failures` is positive.
"""

import asyncio
import json

from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK


class FakeWebSocket:
    def __init__(self, url: str):
        self.url = url
        self.sent = []
        self.closed = False
        self._incoming = asyncio.Queue()

    async def send(self, data):
        if self.closed:
            raise ConnectionClosedOK(None, None)
        self.sent.append(data)

    async def recv(self):
        item = await self._incoming.get()
        if isinstance(item, Exception):
            self.closed = True
            raise item
        return item

    async def ping(self):
        waiter = asyncio.get_running_loop().create_future()
        waiter.set_result(0.0)
        return waiter

    async def close(self):
        if not self.closed:
            self.closed = True
            self._incoming.put_nowait(ConnectionClosedOK(None, None))

    # Test controls
    def push(self, message):
        """Deliver an inbound frame (dicts are JSON encoded)"""
        if isinstance(message, dict):
            message = json.dumps(message)
        self._incoming.put_nowait(message)

    def drop(self):
        """Simulate an abrupt transport failure"""
        self._incoming.put_nowait(ConnectionClosedError(None, None))

    def remote_close(self):
        """Simulate a clean close initiated by the server"""
        self._incoming.put_nowait(ConnectionClosedOK(None, None))

    def sent_json(self):
        return [json.loads(item) for item in self.sent]


class FakeConnector:
    def __init__(self, failures: int = 0):
        self.failures = failures
        self.attempts = 0
        self.sockets = []
        self.kwargs = []

    async def __call__(self, url, **kwargs):
        self.attempts += 1
        self.kwargs.append(kwargs)
        if self.failures > 0:
            self.failures -= 1
            raise OSError("Connection refused")
        ws = FakeWebSocket(url)
        self.sockets.append(ws)
        return ws

    @property
    def latest(self) -> FakeWebSocket:
        return self.sockets[-1]

    def all_sent_json(self):
        messages = []
        for ws in self.sockets:
            messages.extend(ws.sent_json())
        return messages


class GatedConnector(FakeConnector):
    """Connector whose handshakes block while `gate` is cleared"""

    def __init__(self, failures: int = 0):
        super().__init__(failures)
        self.gate = asyncio.Event()
        self.gate.set()
        self.waiting = 0

    async def __call__(self, url, **kwargs):
        self.waiting += 1
        try:
            await self.gate.wait()
        finally:
            self.waiting -= 1
        return await super().__call__(url, **kwargs)


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.005):
    """Poll predicate until true; fail the test on timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


class Recorder:
    """Hashable update callback that keeps every feed it receives"""

    def __init__(self):
        self.feeds = []

    def __call__(self, feed):
        self.feeds.append(feed)
