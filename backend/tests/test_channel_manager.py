"""Tests for live channels: subscription rules, ordering, cleanup and the SSE body."""
import asyncio
import json
import threading

import pytest

from app.services.channel_manager import (
    ChannelClosed, ChannelManager, ChannelState, UnauthorizedSubscription, event_stream, format_sse,
)


def _frame(raw: str) -> dict:
    assert raw.startswith("data: ") and raw.endswith("\n\n")
    return json.loads(raw[len("data: "):])


class TestSubscription:

    @pytest.mark.parametrize("user_id", [None, "", "guest", "anonymous", "  Guest "])
    def test_anonymous_ids_are_rejected(self, user_id):
        with pytest.raises(UnauthorizedSubscription):
            ChannelManager.check_subscriber(user_id)

    def test_guest_role_is_rejected(self):
        with pytest.raises(UnauthorizedSubscription):
            ChannelManager.check_subscriber("u-1", "GUEST")

    def test_open_rejects_guest_without_registering(self):
        manager = ChannelManager()

        async def scenario():
            async with manager.open("guest"):
                pass

        with pytest.raises(UnauthorizedSubscription):
            asyncio.run(scenario())
        assert manager.channel_count() == 0


class TestDelivery:

    def test_messages_arrive_in_push_order(self):
        manager = ChannelManager()

        async def scenario():
            async with manager.open("u-1") as channel:
                for i in range(5):
                    manager.push_to_user("u-1", {"seq": i})
                return [_frame(await channel.receive(timeout=1))["seq"] for _ in range(5)]

        assert asyncio.run(scenario()) == [0, 1, 2, 3, 4]

    def test_push_from_another_thread(self):
        manager = ChannelManager()

        async def scenario():
            async with manager.open("u-1") as channel:
                worker = threading.Thread(target=manager.push_to_users, args=(["u-1"], {"from": "worker"}))
                worker.start()
                worker.join()
                return _frame(await channel.receive(timeout=1))

        assert asyncio.run(scenario()) == {"from": "worker"}

    def test_every_channel_of_a_user_receives(self):
        manager = ChannelManager()

        async def scenario():
            async with manager.open("u-1") as a, manager.open("u-1") as b, manager.open("u-2") as c:
                delivered = manager.push_to_user("u-1", {"n": 1})
                got = [await a.receive(timeout=1), await b.receive(timeout=1), await c.receive(timeout=0.01)]
                return delivered, got

        delivered, got = asyncio.run(scenario())
        assert delivered == 2
        assert got[0] == got[1] == format_sse({"n": 1})
        assert got[2] is None

    def test_broadcast_and_registry(self):
        manager = ChannelManager()

        async def scenario():
            async with manager.open("u-1"), manager.open("u-2"):
                return manager.broadcast({"type": "system"}), manager.connected_user_ids(), manager.channel_count()

        assert asyncio.run(scenario()) == (2, {"u-1", "u-2"}, 2)
        assert manager.connected_user_ids() == set()

    def test_push_to_nobody(self):
        assert ChannelManager().push_to_user("u-1", {"x": 1}) == 0


class TestCleanup:

    def test_close_happens_exactly_once(self):
        manager = ChannelManager()
        results = {}

        async def scenario():
            async with manager.open("u-1") as channel:
                results["first"] = channel.close()
                results["second"] = channel.close()
                results["push_after_close"] = channel.push("data: {}\n\n")
                with pytest.raises(ChannelClosed):
                    await channel.receive(timeout=1)
            results["state"] = channel.state

        asyncio.run(scenario())
        assert results == {
            "first": True, "second": False, "push_after_close": False, "state": ChannelState.closed,
        }
        assert manager.channel_count() == 0

    def test_exit_by_exception_still_unregisters(self):
        manager = ChannelManager()

        async def scenario():
            async with manager.open("u-1"):
                raise ValueError("client went away")

        with pytest.raises(ValueError):
            asyncio.run(scenario())
        assert manager.channel_count() == 0

    def test_stalled_channel_is_closed(self):
        manager = ChannelManager(queue_size=2)

        async def scenario():
            async with manager.open("u-1") as channel:
                for i in range(3):
                    manager.push_to_user("u-1", {"seq": i})
                await asyncio.sleep(0)
                await asyncio.sleep(0)
                return channel.state, manager.channel_count()

        assert asyncio.run(scenario()) == (ChannelState.closed, 0)

    def test_close_all_wakes_readers(self):
        manager = ChannelManager()

        async def scenario():
            async with manager.open("u-1") as channel:
                reader = asyncio.ensure_future(channel.receive(timeout=5))
                await asyncio.sleep(0)
                assert manager.close_all() == 1
                with pytest.raises(ChannelClosed):
                    await reader

        asyncio.run(scenario())
        assert manager.channel_count() == 0


class TestEventStream:

    def test_connected_then_notification_then_heartbeat(self):
        manager = ChannelManager(heartbeat_interval=0.2)

        async def scenario():
            stream = event_stream(manager, "u-1")
            frames = [_frame(await stream.__anext__())]
            manager.push_to_user("u-1", {"type": "notification", "data": {"id": 1}})
            frames.append(_frame(await stream.__anext__()))
            frames.append(_frame(await stream.__anext__()))
            await stream.aclose()
            return frames

        connected, notification, heartbeat = asyncio.run(scenario())
        assert connected["type"] == "connected"
        assert connected["userId"] == "u-1"
        assert notification == {"type": "notification", "data": {"id": 1}}
        assert heartbeat["type"] == "heartbeat"
        assert manager.channel_count() == 0

    def test_heartbeat_is_not_starved_by_traffic(self):
        manager = ChannelManager(heartbeat_interval=0.1)

        async def scenario():
            stream = event_stream(manager, "u-1")
            frames = [_frame(await stream.__anext__())]
            await asyncio.sleep(0.15)
            manager.push_to_user("u-1", {"type": "notification", "data": {"id": 1}})
            frames.append(_frame(await stream.__anext__()))
            frames.append(_frame(await stream.__anext__()))
            await stream.aclose()
            return frames

        connected, heartbeat, notification = asyncio.run(scenario())
        assert connected["type"] == "connected"
        assert heartbeat["type"] == "heartbeat"
        assert notification == {"type": "notification", "data": {"id": 1}}

    def test_stream_stops_on_disconnect(self):
        manager = ChannelManager(heartbeat_interval=0.05)

        async def gone() -> bool:
            return True

        async def scenario():
            return [frame async for frame in event_stream(manager, "u-1", is_disconnected=gone)]

        frames = asyncio.run(scenario())
        assert len(frames) == 1
        assert _frame(frames[0])["type"] == "connected"
        assert manager.channel_count() == 0


class TestStreamRoute:

    def test_missing_user_id_is_401(self, client):
        assert client.get("/api/notifications/stream").status_code == 401

    def test_guest_is_401(self, client):
        resp = client.get(
            "/api/notifications/stream", params={"userId": "guest"},
            headers={"X-User-Id": "guest", "X-User-Role": "GUEST"},
        )
        assert resp.status_code == 401

    def test_no_caller_is_401(self, client):
        assert client.get("/api/notifications/stream", params={"userId": "u-1"}).status_code == 401

    def test_other_users_stream_is_403(self, client):
        resp = client.get(
            "/api/notifications/stream", params={"userId": "u-2"},
            headers={"X-User-Id": "u-1", "X-User-Role": "TEACHER"},
        )
        assert resp.status_code == 403
