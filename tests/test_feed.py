"""
Tests for the live message feed.

Tests cover:
- Initial and change-driven snapshots
- Ordering and window limit
- Anonymous subscriptions (single empty snapshot, stays open)
- Cancellation, including listen callbacks that fail
- The /feed WebSocket, including snapshot-triggered read marking
"""

import asyncio

import pytest

from app.feed import MessageFeed
from app.storage import ChangeNotifier, SessionLocal, add_reader, append_message
from conftest import ALICE, BOB, auth_headers

TIMEOUT = 5


def post(identity, text):
    with SessionLocal() as db:
        return append_message(db, identity, text=text).id


async def next_snapshot(subscription, timeout=TIMEOUT):
    return await asyncio.wait_for(subscription.__anext__(), timeout)


class TestFeedSubscription:

    @pytest.mark.asyncio
    async def test_first_snapshot_is_current_window(self, tables):
        post(ALICE, "hello")
        subscription = MessageFeed().subscribe(BOB)

        snapshot = await next_snapshot(subscription)

        assert [m.text for m in snapshot.messages] == ["hello"]
        assert snapshot.limit == 50
        subscription.cancel()

    @pytest.mark.asyncio
    async def test_new_message_delivers_full_snapshot(self, tables):
        post(ALICE, "one")
        subscription = MessageFeed().subscribe(BOB)
        await next_snapshot(subscription)

        post(ALICE, "two")
        snapshot = await next_snapshot(subscription)

        # Complete window, not a diff
        assert [m.text for m in snapshot.messages] == ["one", "two"]
        subscription.cancel()

    @pytest.mark.asyncio
    async def test_read_receipt_delivers_snapshot(self, tables):
        message_id = post(ALICE, "hello")
        subscription = MessageFeed().subscribe(ALICE)
        first = await next_snapshot(subscription)
        assert first.messages[0].read_count == 0

        with SessionLocal() as db:
            add_reader(db, message_id, "bob")
        snapshot = await next_snapshot(subscription)

        assert snapshot.messages[0].read_count == 1
        assert "bob" in snapshot.messages[0].read_by
        subscription.cancel()

    @pytest.mark.asyncio
    async def test_snapshot_bounded_and_ordered(self, tables):
        for i in range(5):
            post(ALICE, f"m{i}")
        subscription = MessageFeed(limit=3).subscribe(BOB)

        snapshot = await next_snapshot(subscription)

        assert [m.text for m in snapshot.messages] == ["m2", "m3", "m4"]
        timestamps = [m.timestamp for m in snapshot.messages]
        assert timestamps == sorted(timestamps)
        subscription.cancel()

    @pytest.mark.asyncio
    async def test_anonymous_gets_one_empty_snapshot_and_stays_open(self, tables):
        post(ALICE, "hello")
        subscription = MessageFeed().subscribe(None)

        snapshot = await next_snapshot(subscription)
        assert snapshot.messages == []

        post(ALICE, "again")
        with pytest.raises(asyncio.TimeoutError):
            await next_snapshot(subscription, timeout=0.3)

        subscription.cancel()
        with pytest.raises(StopAsyncIteration):
            await next_snapshot(subscription)

    @pytest.mark.asyncio
    async def test_no_snapshot_after_cancel(self, tables):
        feed = MessageFeed()
        subscription = feed.subscribe(BOB)
        await next_snapshot(subscription)

        subscription.cancel()
        post(ALICE, "after cancel")

        with pytest.raises(StopAsyncIteration):
            await next_snapshot(subscription)
        assert feed.notifier.listener_count == 0

    @pytest.mark.asyncio
    async def test_cancel_wakes_waiting_consumer(self, tables):
        subscription = MessageFeed().subscribe(BOB)
        await next_snapshot(subscription)

        waiter = asyncio.create_task(next_snapshot(subscription))
        await asyncio.sleep(0.05)
        subscription.cancel()

        with pytest.raises(StopAsyncIteration):
            await waiter

    @pytest.mark.asyncio
    async def test_resubscribe_restarts_from_current_state(self, tables):
        feed = MessageFeed()
        subscription = feed.subscribe(BOB)
        await next_snapshot(subscription)
        subscription.cancel()

        post(ALICE, "while away")
        resubscribed = feed.subscribe(BOB)
        try:
            snapshot = await next_snapshot(resubscribed)
        finally:
            resubscribed.cancel()

        assert [m.text for m in snapshot.messages] == ["while away"]
        assert feed.notifier.listener_count == 0

    @pytest.mark.asyncio
    async def test_listen_stops_calling_back_after_cancel(self, tables):
        received = []
        subscription = MessageFeed().listen(BOB, received.append)

        post(ALICE, "one")
        for _ in range(100):
            if received and received[-1].messages:
                break
            await asyncio.sleep(0.02)
        assert [m.text for m in received[-1].messages] == ["one"]

        subscription.cancel()
        count = len(received)
        post(ALICE, "two")
        await asyncio.sleep(0.2)

        assert len(received) == count
        await asyncio.wait_for(subscription.task, TIMEOUT)

    @pytest.mark.asyncio
    async def test_failing_callback_ends_subscription(self, tables):
        feed = MessageFeed(notifier=ChangeNotifier())

        def broken(snapshot):
            raise RuntimeError("boom")

        subscription = feed.listen(BOB, broken)
        await asyncio.wait_for(subscription.task, TIMEOUT)

        assert subscription.cancelled
        assert feed.notifier.listener_count == 0

    @pytest.mark.asyncio
    async def test_failing_async_callback_ends_subscription(self, tables):
        feed = MessageFeed(notifier=ChangeNotifier())

        async def broken(snapshot):
            raise RuntimeError("boom")

        subscription = feed.listen(BOB, broken)
        await asyncio.wait_for(subscription.task, TIMEOUT)

        assert subscription.cancelled
        assert feed.notifier.listener_count == 0


class TestFeedSocket:

    def test_anonymous_socket_gets_empty_snapshot(self, client):
        client.post("/messages", json={"text": "hello"}, headers=auth_headers(ALICE))

        with client.websocket_connect("/feed") as websocket:
            snapshot = websocket.receive_json()

        assert snapshot["messages"] == []

    def test_snapshot_triggers_mark_read(self, client):
        created = client.post("/messages", json={"text": "hello"}, headers=auth_headers(ALICE)).json()

        with client.websocket_connect("/feed", headers=auth_headers(BOB)) as websocket:
            first = websocket.receive_json()
            assert [m["id"] for m in first["messages"]] == [created["id"]]
            assert first["messages"][0]["read_by"] == {}

            # The background mark-as-read is itself a store change
            second = websocket.receive_json()
            assert "bob" in second["messages"][0]["read_by"]

        seen_by_alice = client.get(f"/messages/{created['id']}", headers=auth_headers(ALICE)).json()
        assert seen_by_alice["read_count"] == 1

    def test_socket_receives_new_messages(self, client):
        with client.websocket_connect("/feed", headers=auth_headers(ALICE)) as websocket:
            assert websocket.receive_json()["messages"] == []

            client.post("/messages", json={"text": "mine"}, headers=auth_headers(ALICE))
            snapshot = websocket.receive_json()

        assert [m["text"] for m in snapshot["messages"]] == ["mine"]
