"""
Tests for price feed subscription multiplexing over one WebSocket.

Usage:
    python -m pytest tests/test_subscription_manager.py -v
"""

import asyncio

import pytest

from fakes import GatedConnector, Recorder, wait_until
from price_service.connection.websocket_client import ConnectionState
from price_service.exceptions import (
    ConnectionNotReadyError,
    MessageParseError,
    ServerResponseError,
    UnsupportedMessageError,
)


def price_update(feed_id, **fields):
    return {"type": "price_update", "price_feed": {"id": feed_id, **fields}}


def subscribe_messages(connector):
    return [m for m in connector.all_sent_json() if m["type"] == "subscribe"]


def unsubscribe_messages(connector):
    return [m for m in connector.all_sent_json() if m["type"] == "unsubscribe"]


def subscribe_messages_on(ws):
    return [m for m in ws.sent_json() if m["type"] == "subscribe"]


class TestSubscribe:

    @pytest.mark.asyncio
    async def test_connection_opens_lazily(self, manager, connector):
        assert connector.attempts == 0

        await manager.subscribe(["abc123"], lambda feed: None)

        assert connector.attempts == 1
        assert manager.websocket_client.is_connected()

    @pytest.mark.asyncio
    async def test_update_reaches_callback(self, manager, connector):
        received = Recorder()
        await manager.subscribe(["abc123"], received)

        connector.latest.push(price_update("abc123", value=100))
        await wait_until(lambda: received.feeds)

        assert len(received.feeds) == 1
        assert received.feeds[0].id == "abc123"
        assert received.feeds[0].raw["value"] == 100

    @pytest.mark.asyncio
    async def test_duplicate_registration_is_a_noop(self, manager, connector):
        received = Recorder()
        await manager.subscribe(["abc123"], received)
        await manager.subscribe(["abc123"], received)

        assert subscribe_messages(connector) == [{"type": "subscribe", "ids": ["abc123"]}]

        connector.latest.push(price_update("abc123"))
        connector.latest.push(price_update("other"))
        await wait_until(lambda: manager.websocket_client.get_stats()["messages_received"] == 2)

        assert len(received.feeds) == 1

    @pytest.mark.asyncio
    async def test_only_new_ids_are_sent(self, manager, connector):
        await manager.subscribe(["a", "b"], lambda feed: None)
        await manager.subscribe(["b", "c"], lambda feed: None)

        assert [m["ids"] for m in subscribe_messages(connector)] == [["a", "b"], ["c"]]

    @pytest.mark.asyncio
    async def test_ids_are_normalized(self, manager, connector):
        received = Recorder()
        await manager.subscribe(["0xabc123"], received)

        assert subscribe_messages(connector)[0]["ids"] == ["abc123"]

        connector.latest.push(price_update("0xabc123"))
        await wait_until(lambda: received.feeds)
        assert received.feeds[0].id == "abc123"

    @pytest.mark.asyncio
    async def test_request_flags_are_sent_when_set(self, make_client, connector):
        from price_service.config import PriceFeedRequestConfig
        from price_service.connection.subscription_manager import SubscriptionManager

        manager = SubscriptionManager(
            make_client(),
            request_config=PriceFeedRequestConfig(verbose=True, allow_out_of_order=False),
        )
        await manager.subscribe(["a"], lambda feed: None)

        assert subscribe_messages(connector) == [
            {"type": "subscribe", "ids": ["a"], "verbose": True, "allow_out_of_order": False}
        ]
        await manager.close_all()

    @pytest.mark.asyncio
    async def test_callbacks_run_in_registration_order(self, manager, connector):
        calls = []
        await manager.subscribe(["a"], lambda feed: calls.append("first"))
        await manager.subscribe(["a"], lambda feed: calls.append("second"))

        connector.latest.push(price_update("a"))
        await wait_until(lambda: len(calls) == 2)

        assert calls == ["first", "second"]

    @pytest.mark.asyncio
    async def test_same_callback_for_many_ids(self, manager, connector):
        received = Recorder()
        await manager.subscribe(["a", "b"], received)

        connector.latest.push(price_update("a"))
        connector.latest.push(price_update("b"))
        await wait_until(lambda: len(received.feeds) == 2)

        assert [feed.id for feed in received.feeds] == ["a", "b"]


class TestUnsubscribe:

    @pytest.mark.asyncio
    async def test_other_callback_keeps_receiving(self, manager, connector):
        first, second = Recorder(), Recorder()
        await manager.subscribe(["a"], first)
        await manager.subscribe(["a"], second)

        await manager.unsubscribe(["a"], first)

        assert unsubscribe_messages(connector) == []
        connector.latest.push(price_update("a"))
        await wait_until(lambda: second.feeds)
        assert first.feeds == []

    @pytest.mark.asyncio
    async def test_last_callback_unsubscribes_and_closes(self, manager, connector):
        callback = lambda feed: None
        await manager.subscribe(["a"], callback)

        await manager.unsubscribe(["a"], callback)

        assert unsubscribe_messages(connector) == [{"type": "unsubscribe", "ids": ["a"]}]
        assert manager.subscribed_ids() == []
        assert manager.websocket_client.get_state() == ConnectionState.DISCONNECTED
        assert connector.latest.closed

    @pytest.mark.asyncio
    async def test_unsubscribe_without_callback_removes_all(self, manager, connector):
        await manager.subscribe(["a", "b"], lambda feed: None)
        await manager.subscribe(["a"], lambda feed: None)

        await manager.unsubscribe(["a", "unknown"])

        assert unsubscribe_messages(connector) == [{"type": "unsubscribe", "ids": ["a"]}]
        assert manager.subscribed_ids() == ["b"]
        assert manager.websocket_client.is_connected()

    @pytest.mark.asyncio
    async def test_resubscribe_after_close(self, manager, connector):
        await manager.subscribe(["a"], lambda feed: None)
        await manager.unsubscribe(["a"])

        await manager.subscribe(["a"], lambda feed: None)

        assert connector.attempts == 2
        assert manager.websocket_client.is_connected()
        assert connector.latest.sent_json() == [{"type": "subscribe", "ids": ["a"]}]

    @pytest.mark.asyncio
    async def test_close_all_clears_table(self, manager, connector):
        await manager.subscribe(["a", "b"], lambda feed: None)

        await manager.close_all()

        assert manager.subscribed_ids() == []
        assert manager.websocket_client.get_state() == ConnectionState.DISCONNECTED


class TestReconnect:

    @pytest.mark.asyncio
    async def test_reconnect_resubscribes_every_id(self, manager, connector):
        await manager.subscribe(["a"], lambda feed: None)
        await manager.subscribe(["b", "c"], lambda feed: None)

        connector.latest.drop()
        await wait_until(lambda: len(connector.sockets) == 2 and connector.latest.sent)

        assert connector.latest.sent_json() == [{"type": "subscribe", "ids": ["a", "b", "c"]}]

    @pytest.mark.asyncio
    async def test_updates_flow_after_reconnect(self, manager, connector):
        received = Recorder()
        await manager.subscribe(["a"], received)

        connector.latest.drop()
        await wait_until(lambda: len(connector.sockets) == 2 and connector.latest.sent)

        connector.latest.push(price_update("a"))
        await wait_until(lambda: received.feeds)
        assert received.feeds[0].id == "a"


class TestInboundErrors:

    @pytest.mark.asyncio
    async def test_malformed_frame_reported_once_then_delivery_continues(self, manager, connector, errors):
        received = Recorder()
        await manager.subscribe(["abc123"], received)

        connector.latest.push("{not json")
        connector.latest.push(price_update("abc123", value=1))
        await wait_until(lambda: received.feeds)

        assert len(errors) == 1
        assert isinstance(errors[0], MessageParseError)

    @pytest.mark.asyncio
    async def test_server_error_response_is_reported(self, manager, connector, errors):
        await manager.subscribe(["a"], lambda feed: None)

        connector.latest.push({"type": "response", "status": "error", "error": "Unknown ids"})
        connector.latest.push({"type": "response", "status": "ok"})
        await wait_until(lambda: manager.websocket_client.get_stats()["messages_received"] == 2)

        assert len(errors) == 1
        assert isinstance(errors[0], ServerResponseError)
        assert str(errors[0]) == "Unknown ids"
        assert manager.websocket_client.is_connected()

    @pytest.mark.asyncio
    async def test_unknown_type_is_reported(self, manager, connector, errors):
        await manager.subscribe(["a"], lambda feed: None)

        connector.latest.push({"type": "mystery"})
        await wait_until(lambda: errors)

        assert isinstance(errors[0], UnsupportedMessageError)

    @pytest.mark.asyncio
    async def test_price_update_without_id_is_reported(self, manager, connector, errors):
        await manager.subscribe(["a"], lambda feed: None)

        connector.latest.push({"type": "price_update", "price_feed": {"value": 1}})
        await wait_until(lambda: errors)

        assert isinstance(errors[0], MessageParseError)

    @pytest.mark.asyncio
    async def test_update_for_unknown_id_is_ignored(self, manager, connector, errors):
        await manager.subscribe(["a"], lambda feed: None)

        connector.latest.push(price_update("zzz"))
        await wait_until(lambda: manager.websocket_client.get_stats()["messages_received"] == 1)

        assert errors == []

    @pytest.mark.asyncio
    async def test_raising_callback_does_not_block_others(self, manager, connector, errors):
        received = Recorder()

        def broken(feed):
            raise RuntimeError("callback failed")

        await manager.subscribe(["a"], broken)
        await manager.subscribe(["a"], received)

        connector.latest.push(price_update("a"))
        await wait_until(lambda: received.feeds)

        assert len(errors) == 1
        assert isinstance(errors[0], RuntimeError)

    @pytest.mark.asyncio
    async def test_async_error_handler_is_awaited(self, make_client, connector):
        from price_service.connection.subscription_manager import SubscriptionManager

        handled = []

        async def on_error(error):
            await asyncio.sleep(0)
            handled.append(error)

        manager = SubscriptionManager(make_client(), on_error=on_error)
        await manager.subscribe(["a"], lambda feed: None)
        connector.latest.push("garbage")
        await wait_until(lambda: handled)

        assert isinstance(handled[0], MessageParseError)
        await manager.close_all()

    @pytest.mark.asyncio
    async def test_unsubscribe_from_inside_callback(self, manager, connector):
        received = []

        async def once(feed):
            received.append(feed)
            await manager.unsubscribe([feed.id], once)

        await manager.subscribe(["a"], once)
        connector.latest.push(price_update("a"))
        await wait_until(lambda: manager.websocket_client.get_state() == ConnectionState.DISCONNECTED)

        assert len(received) == 1
        assert unsubscribe_messages(connector) == [{"type": "unsubscribe", "ids": ["a"]}]


def server_interest(messages):
    """Ids the server holds after replaying one socket's wire messages"""
    interest = set()
    for message in messages:
        if message["type"] == "subscribe":
            interest |= set(message["ids"])
        elif message["type"] == "unsubscribe":
            interest -= set(message["ids"])
    return interest


class TestConcurrency:

    @pytest.mark.asyncio
    async def test_unsubscribe_during_reconnect_is_not_undone_by_resubscribe(self, make_client, errors):
        from price_service.connection.subscription_manager import SubscriptionManager

        gated = GatedConnector()
        manager = SubscriptionManager(make_client(connector=gated), on_error=errors.append)
        await manager.subscribe(["a", "b"], lambda feed: None)

        gated.gate.clear()
        gated.latest.drop()
        await wait_until(lambda: gated.waiting == 1)

        unsubscribing = asyncio.create_task(manager.unsubscribe(["a"]))
        await asyncio.sleep(0.01)
        gated.gate.set()
        await unsubscribing
        await wait_until(lambda: subscribe_messages_on(gated.latest))

        assert len(gated.sockets) == 2
        assert manager.subscribed_ids() == ["b"]
        assert server_interest(gated.latest.sent_json()) == {"b"}
        for message in subscribe_messages_on(gated.latest):
            assert "a" not in message["ids"]

        await manager.close_all()

    @pytest.mark.asyncio
    async def test_subscribe_while_dispatching(self, manager, connector, errors):
        calls = []
        late = Recorder()
        dispatching = asyncio.Event()
        release = asyncio.Event()

        async def slow(feed):
            calls.append(feed)
            dispatching.set()
            await release.wait()

        await manager.subscribe(["a"], slow)
        connector.latest.push(price_update("a", seq=1))
        await asyncio.wait_for(dispatching.wait(), timeout=1.0)

        await manager.subscribe(["a", "b"], late)
        release.set()
        connector.latest.push(price_update("a", seq=2))
        await wait_until(lambda: len(calls) == 2 and late.feeds)

        assert [feed.raw["seq"] for feed in late.feeds] == [2]
        assert manager.callbacks_for("a") == [slow, late]
        assert server_interest(connector.latest.sent_json()) == {"a", "b"}
        assert errors == []

    @pytest.mark.asyncio
    async def test_close_all_while_subscribe_is_connecting(self, make_client, errors):
        from price_service.connection.subscription_manager import SubscriptionManager

        gated = GatedConnector()
        gated.gate.clear()
        manager = SubscriptionManager(make_client(connector=gated), on_error=errors.append)

        subscribing = asyncio.create_task(manager.subscribe(["a"], lambda feed: None))
        await wait_until(lambda: gated.waiting == 1)
        closing = asyncio.create_task(manager.close_all())
        await asyncio.sleep(0.01)
        gated.gate.set()
        await asyncio.gather(subscribing, closing)

        assert manager.subscribed_ids() == []
        assert manager.websocket_client.get_state() == ConnectionState.DISCONNECTED
        assert not manager.websocket_client.is_connected()
        assert all(ws.closed for ws in gated.sockets)
        assert isinstance(errors[-1], ConnectionNotReadyError)

    @pytest.mark.asyncio
    async def test_concurrent_subscribes_send_each_id_once(self, manager, connector):
        await asyncio.gather(
            manager.subscribe(["a", "b"], Recorder()),
            manager.subscribe(["b", "c"], Recorder()),
            manager.subscribe(["a", "c"], Recorder()),
        )

        sent_ids = [i for m in subscribe_messages(connector) for i in m["ids"]]
        assert sorted(sent_ids) == ["a", "b", "c"]
        assert connector.attempts == 1
        assert server_interest(connector.latest.sent_json()) == set(manager.subscribed_ids())
