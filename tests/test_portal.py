"""
Unit tests for Portal: room creation idempotence and recovery, cursor-based
backfill, timezone handling, and Matrix -> Hostex relay.
"""

from datetime import timezone
from unittest.mock import AsyncMock, patch

import pytest

from hostex_bridge.hostex_client import Conversation, Guest, HostexAPIError, Message
from hostex_bridge.matrix_client import InboundEvent
from hostex_bridge.portal import (
    BACKFILL_LIMIT,
    Portal,
    PortalError,
    localize,
    resolve_timezone,
)


def _conversation(cid="c1", name="Alice"):
    return Conversation(
        id=cid,
        channel_type="airbnb",
        last_message_at=1700000000,
        guest=Guest(name=name),
        property_title="Beach House",
    )


def _make_portal(cid="c1", **kwargs):
    store = AsyncMock()
    store.get_portal_room.return_value = None
    store.get_last_message_timestamp.return_value = None
    store.put_message.return_value = True
    hostex = AsyncMock()
    hostex.list_messages.return_value = []
    matrix = AsyncMock()
    matrix.create_room.return_value = "!room:example.org"
    matrix.send_message.return_value = "$event"
    portal = Portal(cid, store=store, hostex=hostex, matrix=matrix, **kwargs)
    return portal, store, hostex, matrix


# ---------------------------------------------------------------------------
# Timezones
# ---------------------------------------------------------------------------


class TestTimezone:
    def test_valid_zone(self):
        tz = resolve_timezone("America/Los_Angeles")
        assert localize(1700000000, tz).utcoffset().total_seconds() == -8 * 3600

    def test_invalid_zone_falls_back_to_utc(self):
        """An invalid zone name renders in UTC instead of failing."""
        tz = resolve_timezone("Mars/Olympus_Mons")
        assert tz is timezone.utc
        assert localize(1700000000, tz).isoformat() == "2023-11-14T22:13:20+00:00"

    def test_empty_zone_is_utc(self):
        assert resolve_timezone("") is timezone.utc


# ---------------------------------------------------------------------------
# ensure_room
# ---------------------------------------------------------------------------


class TestEnsureRoom:
    @pytest.mark.asyncio
    async def test_creates_once(self):
        """Two consecutive calls create the room at most once."""
        portal, store, _, matrix = _make_portal(admin_user_id="@admin:example.org")
        portal.update_info(_conversation())

        assert await portal.ensure_room() is True
        assert await portal.ensure_room() is False

        matrix.create_room.assert_awaited_once_with(
            name="airbnb - Alice",
            topic="Hostex conversation for Beach House",
            invitees=["@admin:example.org"],
        )
        store.put_portal.assert_awaited_once()
        assert store.put_portal.call_args.args == ("c1", "!room:example.org")
        assert portal.room_id == "!room:example.org"

    @pytest.mark.asyncio
    async def test_recovers_room_from_store(self):
        portal, store, _, matrix = _make_portal()
        store.get_portal_room.return_value = "!old:example.org"

        assert await portal.ensure_room() is False

        assert portal.room_id == "!old:example.org"
        matrix.create_room.assert_not_called()

    @pytest.mark.asyncio
    async def test_requires_snapshot(self):
        portal, _, _, matrix = _make_portal()

        with pytest.raises(PortalError):
            await portal.ensure_room()
        matrix.create_room.assert_not_called()

    @pytest.mark.asyncio
    async def test_creation_failure_propagates(self):
        portal, store, _, matrix = _make_portal()
        portal.update_info(_conversation())
        matrix.create_room.side_effect = RuntimeError("homeserver down")

        with pytest.raises(RuntimeError):
            await portal.ensure_room()
        assert portal.room_id is None
        store.put_portal.assert_not_called()

    @pytest.mark.asyncio
    async def test_store_failure_keeps_room_in_memory(self):
        portal, store, _, matrix = _make_portal()
        portal.update_info(_conversation())
        store.put_portal.side_effect = RuntimeError("db gone")

        assert await portal.ensure_room() is True
        assert await portal.ensure_room() is False
        matrix.create_room.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_attaches_to_space(self):
        portal, _, _, matrix = _make_portal(
            space_room_id="!space:example.org", homeserver_domain="example.org"
        )
        portal.update_info(_conversation())

        await portal.ensure_room()

        matrix.write_room_state.assert_awaited_once_with(
            "!space:example.org",
            "m.space.child",
            {"via": ["example.org"]},
            state_key="!room:example.org",
        )

    @pytest.mark.asyncio
    async def test_space_failure_is_not_fatal(self):
        portal, _, _, matrix = _make_portal(space_room_id="!space:example.org")
        portal.update_info(_conversation())
        matrix.write_room_state.side_effect = RuntimeError("forbidden")

        assert await portal.ensure_room() is True
        assert portal.room_id == "!room:example.org"

    @pytest.mark.asyncio
    async def test_guest_name_falls_back_to_conversation_id(self):
        portal, _, _, matrix = _make_portal()
        portal.update_info(Conversation(id="c9"))

        await portal.ensure_room()

        assert matrix.create_room.call_args.kwargs["name"] == "c9"


# ---------------------------------------------------------------------------
# backfill
# ---------------------------------------------------------------------------


class TestBackfill:
    @pytest.mark.asyncio
    async def test_relays_only_newer_than_cursor(self):
        """Stored messages up to T, remote up to T+N: only > T are relayed."""
        portal, store, hostex, matrix = _make_portal()
        portal.update_info(_conversation())
        portal.room_id = "!room:example.org"
        store.get_last_message_timestamp.return_value = 1000
        hostex.list_messages.return_value = [
            Message(id="m0", content="old", timestamp=1000),
            Message(id="m1", content="one", timestamp=1001),
            Message(id="m2", content="two", timestamp=1002),
        ]

        relayed = await portal.backfill()

        assert relayed == 2
        bodies = [c.args[1] for c in matrix.send_message.call_args_list]
        assert bodies == ["one", "two"]
        since = hostex.list_messages.call_args.args[1]
        assert int(since.timestamp()) == 1000
        assert hostex.list_messages.call_args.args[2] == BACKFILL_LIMIT

    @pytest.mark.asyncio
    async def test_no_cursor_starts_from_epoch(self):
        portal, _, hostex, _ = _make_portal()
        portal.room_id = "!room:example.org"

        await portal.backfill()

        since = hostex.list_messages.call_args.args[1]
        assert since.timestamp() == 0

    @pytest.mark.asyncio
    async def test_records_each_message_with_sender_label(self):
        portal, store, hostex, matrix = _make_portal()
        portal.update_info(_conversation())
        portal.room_id = "!room:example.org"
        matrix.send_message.side_effect = ["$a", "$b"]
        hostex.list_messages.return_value = [
            Message(id="m1", content="hi", timestamp=1700000000),
            Message(id="m2", content="yo", timestamp=1700000001, sender="Host"),
        ]

        await portal.backfill()

        calls = [c.args for c in store.put_message.call_args_list]
        assert calls == [
            ("c1", "$a", 1700000000, "Alice", "hi"),
            ("c1", "$b", 1700000001, "Host", "yo"),
        ]
        assert matrix.send_message.call_args_list[0].kwargs["timestamp_ms"] == 1700000000000

    @pytest.mark.asyncio
    async def test_send_failure_is_isolated_per_message(self):
        portal, store, hostex, matrix = _make_portal()
        portal.update_info(_conversation())
        portal.room_id = "!room:example.org"
        matrix.send_message.side_effect = [RuntimeError("rate limited"), "$b"]
        hostex.list_messages.return_value = [
            Message(id="m1", content="lost", timestamp=1),
            Message(id="m2", content="kept", timestamp=2),
        ]

        assert await portal.backfill() == 1
        store.put_message.assert_awaited_once()
        assert store.put_message.call_args.args[1] == "$b"

    @pytest.mark.asyncio
    async def test_requires_room(self):
        portal, _, hostex, _ = _make_portal()

        with pytest.raises(PortalError):
            await portal.backfill()
        hostex.list_messages.assert_not_called()

    @pytest.mark.asyncio
    async def test_list_failure_propagates(self):
        portal, _, hostex, _ = _make_portal()
        portal.room_id = "!room:example.org"
        hostex.list_messages.side_effect = HostexAPIError("API error: boom")

        with pytest.raises(HostexAPIError):
            await portal.backfill()


# ---------------------------------------------------------------------------
# relay_inbound
# ---------------------------------------------------------------------------


def _inbound(body="Thanks!", msgtype="m.text", ts=1700000100):
    return InboundEvent(
        room_id="!room:example.org",
        event_id="$in1",
        sender="@admin:example.org",
        body=body,
        timestamp=ts,
        msgtype=msgtype,
    )


class TestRelayInbound:
    @pytest.mark.asyncio
    async def test_forwards_and_records(self):
        portal, store, hostex, _ = _make_portal()
        portal.room_id = "!room:example.org"

        with patch("hostex_bridge.portal.time.time", return_value=1700000101.7):
            assert await portal.relay_inbound(_inbound()) is True

        hostex.send_message.assert_awaited_once_with("c1", "Thanks!")
        store.put_message.assert_awaited_once_with(
            "c1", "$in1", 1700000101, "@admin:example.org", "Thanks!", delivered=True
        )

    @pytest.mark.asyncio
    async def test_hostex_copy_of_reply_not_backfilled(self):
        """The stored reply time comes from after the Hostex send, so the
        copy Hostex lists back is at or below the backfill cursor."""
        portal, store, hostex, matrix = _make_portal()
        portal.room_id = "!room:example.org"
        clock = {"now": 1700000100.0}

        async def hostex_records_reply(conversation_id, text):
            clock["now"] = 1700000101.2

        hostex.send_message.side_effect = hostex_records_reply

        with patch("hostex_bridge.portal.time.time", side_effect=lambda: clock["now"]):
            await portal.relay_inbound(_inbound(body="welcome!", ts=1700000100))

        stored_at = store.put_message.call_args.args[2]
        assert stored_at == 1700000101

        store.get_last_message_timestamp.return_value = stored_at
        hostex.list_messages.return_value = [
            Message(id="m2", content="welcome!", timestamp=1700000101),
        ]

        assert await portal.backfill() == 0
        matrix.send_message.assert_not_called()

    @pytest.mark.asyncio
    async def test_non_text_ignored(self):
        portal, store, hostex, _ = _make_portal()

        assert await portal.relay_inbound(_inbound(msgtype="m.image")) is False

        hostex.send_message.assert_not_called()
        store.put_message.assert_not_called()

    @pytest.mark.asyncio
    async def test_send_failure_recorded_as_undelivered(self):
        portal, store, hostex, _ = _make_portal()
        audit = AsyncMock()
        portal._audit = audit
        hostex.send_message.side_effect = HostexAPIError("API error: closed")

        assert await portal.relay_inbound(_inbound()) is False

        hostex.send_message.assert_awaited_once()
        assert store.put_message.call_args.kwargs["delivered"] is False
        assert audit.log.call_args.args[0] == "relay_failed"
        assert audit.log.call_args.kwargs["conversation_id"] == portal.conversation_id

    @pytest.mark.asyncio
    async def test_store_failure_does_not_raise(self):
        portal, store, _, _ = _make_portal()
        store.put_message.side_effect = RuntimeError("db gone")

        assert await portal.relay_inbound(_inbound()) is True
