import asyncio

import pytest

from conftest import DummyConnection
from pairshare.errors import RoomFull
from pairshare.signaling import Events, RoomRegistry


async def _join(registry: RoomRegistry, room_id: str, name: str, member_id: str) -> DummyConnection:
    conn = DummyConnection(member_id)
    await registry.join(room_id, name, member_id, conn.send)
    return conn


@pytest.mark.asyncio
async def test_second_member_triggers_ready_to_connect_with_earlier_initiator():
    registry = RoomRegistry()
    alice = await _join(registry, "X7Q2", "Alice", "member-a")
    bob = await _join(registry, "X7Q2", "Bob", "member-b")

    assert alice.types == [Events.ROOM_JOINED, Events.MEMBER_JOINED, Events.READY_TO_CONNECT]
    assert bob.types == [Events.ROOM_JOINED, Events.READY_TO_CONNECT]

    assert alice.of_type(Events.MEMBER_JOINED) == [{"memberId": "member-b", "displayName": "Bob"}]
    assert alice.of_type(Events.READY_TO_CONNECT)[0] == {
        "initiator": True,
        "partnerId": "member-b",
        "partnerName": "Bob",
    }
    assert bob.of_type(Events.READY_TO_CONNECT)[0] == {
        "initiator": False,
        "partnerId": "member-a",
        "partnerName": "Alice",
    }

    joined = bob.of_type(Events.ROOM_JOINED)[0]
    assert joined["roomId"] == "X7Q2"
    assert [m["memberId"] for m in joined["members"]] == ["member-a", "member-b"]
    assert joined["messages"] == []


@pytest.mark.asyncio
async def test_third_member_is_rejected_without_changing_membership():
    registry = RoomRegistry()
    alice = await _join(registry, "X7Q2", "Alice", "member-a")
    await _join(registry, "X7Q2", "Bob", "member-b")
    alice_messages = len(alice.messages)

    carol = DummyConnection("member-c")
    with pytest.raises(RoomFull) as exc_info:
        await registry.join("x7q2", "Carol", "member-c", carol.send)

    assert exc_info.value.room_id == "X7Q2"
    assert registry.get_room("X7Q2").member_count == 2
    assert registry.get_member_room("member-c") is None
    assert carol.messages == []
    assert len(alice.messages) == alice_messages


@pytest.mark.asyncio
async def test_room_ids_are_case_insensitive():
    registry = RoomRegistry()
    await _join(registry, " x7q2 ", "Alice", "member-a")
    await _join(registry, "X7Q2", "Bob", "member-b")

    assert registry.room_count == 1
    assert registry.get_room("x7Q2").member_count == 2


@pytest.mark.asyncio
async def test_empty_room_id_is_rejected():
    registry = RoomRegistry()
    with pytest.raises(ValueError):
        await _join(registry, "   ", "Alice", "member-a")
    assert registry.room_count == 0


@pytest.mark.asyncio
async def test_display_name_defaults_and_truncates():
    registry = RoomRegistry(max_name_length=5)
    await _join(registry, "ROOM", "  ", "member-a")
    await _join(registry, "ROOM", "Bartholomew", "member-b")

    names = [m.display_name for m in registry.get_room("ROOM").members]
    assert names == ["Anonymous", "Barth"]


@pytest.mark.asyncio
async def test_relay_strips_recipient_and_adds_sender():
    registry = RoomRegistry()
    alice = await _join(registry, "ROOM", "Alice", "member-a")
    bob = await _join(registry, "ROOM", "Bob", "member-b")

    offer = {"offer": {"type": "offer", "sdp": "v=0\r\n"}, "to": "member-b"}
    assert await registry.relay(Events.OFFER, offer, "member-a", "member-b") is True

    assert bob.of_type(Events.OFFER) == [{"offer": {"type": "offer", "sdp": "v=0\r\n"}, "from": "member-a"}]
    assert alice.of_type(Events.OFFER) == []
    # payload is not mutated
    assert offer["to"] == "member-b"


@pytest.mark.asyncio
async def test_relay_refuses_other_rooms_and_self():
    registry = RoomRegistry()
    alice = await _join(registry, "ROOM1", "Alice", "member-a")
    other = await _join(registry, "ROOM2", "Other", "member-x")

    assert await registry.relay(Events.ICE_CANDIDATE, {"candidate": {}}, "member-a", "member-x") is False
    assert await registry.relay(Events.ICE_CANDIDATE, {"candidate": {}}, "member-a", "member-a") is False
    assert await registry.relay(Events.CHAT_MESSAGE, {}, "member-a", "member-x") is False
    assert other.of_type(Events.ICE_CANDIDATE) == []
    assert alice.of_type(Events.ICE_CANDIDATE) == []


@pytest.mark.asyncio
async def test_chat_is_broadcast_to_everyone_including_sender():
    registry = RoomRegistry()
    alice = await _join(registry, "ROOM", "Alice", "member-a")
    bob = await _join(registry, "ROOM", "Bob", "member-b")

    message = await registry.post_message("room", "member-a", None, "  hello  ")

    assert message.text == "hello"
    assert message.display_name == "Alice"
    for conn in (alice, bob):
        chat = conn.of_type(Events.CHAT_MESSAGE)
        assert len(chat) == 1
        assert chat[0]["id"] == message.id
        assert chat[0]["memberId"] == "member-a"
        assert chat[0]["text"] == "hello"


@pytest.mark.asyncio
async def test_chat_ignores_empty_text_and_non_members():
    registry = RoomRegistry(max_message_length=10)
    alice = await _join(registry, "ROOM", "Alice", "member-a")

    assert await registry.post_message("ROOM", "member-a", None, "   ") is None
    assert await registry.post_message("ROOM", "stranger", None, "hi") is None
    assert alice.of_type(Events.CHAT_MESSAGE) == []

    message = await registry.post_message("ROOM", "member-a", None, "x" * 50)
    assert message.text == "x" * 10


@pytest.mark.asyncio
async def test_chat_history_is_capped_and_replayed_on_join():
    registry = RoomRegistry(history_limit=5, history_replay=3)
    await _join(registry, "ROOM", "Alice", "member-a")
    for i in range(7):
        await registry.post_message("ROOM", "member-a", None, f"message {i}")

    room = registry.get_room("ROOM")
    assert [m.text for m in room.messages] == [f"message {i}" for i in range(2, 7)]

    bob = await _join(registry, "ROOM", "Bob", "member-b")
    replayed = bob.of_type(Events.ROOM_JOINED)[0]["messages"]
    assert [m["text"] for m in replayed] == ["message 4", "message 5", "message 6"]


@pytest.mark.asyncio
async def test_leave_notifies_remaining_member():
    registry = RoomRegistry()
    alice = await _join(registry, "ROOM", "Alice", "member-a")
    await _join(registry, "ROOM", "Bob", "member-b")

    assert await registry.leave("member-b") == "ROOM"
    assert alice.of_type(Events.MEMBER_LEFT) == [{"memberId": "member-b"}]
    assert registry.get_room("ROOM").member_count == 1
    assert await registry.leave("member-b") is None


@pytest.mark.asyncio
async def test_joining_another_room_leaves_the_previous_one():
    registry = RoomRegistry(empty_room_grace=10)
    conn = DummyConnection("member-a")
    await registry.join("ROOM1", "Alice", "member-a", conn.send)
    await registry.join("ROOM2", "Alice", "member-a", conn.send)

    assert registry.get_member_room("member-a") == "ROOM2"
    assert registry.get_room("ROOM1").is_empty
    await registry.close()


class SlowConnection(DummyConnection):
    def __init__(self, connection_id: str) -> None:
        super().__init__(connection_id)
        self.release = asyncio.Event()

    async def send(self, message: dict) -> None:
        if message["type"] == Events.MEMBER_LEFT:
            await self.release.wait()
        await super().send(message)


@pytest.mark.asyncio
async def test_room_switch_holds_its_seat_while_old_room_is_notified():
    registry = RoomRegistry(empty_room_grace=10)
    partner = SlowConnection("member-p")
    await registry.join("ROOMA", "Pat", "member-p", partner.send)
    mover = await _join(registry, "ROOMA", "Mia", "member-m")
    await _join(registry, "ROOMB", "Ben", "member-b")

    switching = asyncio.ensure_future(registry.join("ROOMB", "Mia", "member-m", mover.send))
    await asyncio.sleep(0)

    with pytest.raises(RoomFull):
        await _join(registry, "ROOMB", "Xavier", "member-x")

    partner.release.set()
    await switching

    assert [m.member_id for m in registry.get_room("ROOMB").members] == ["member-b", "member-m"]
    assert registry.get_member_room("member-x") is None
    assert partner.of_type(Events.MEMBER_LEFT) == [{"memberId": "member-m"}]
    await registry.close()


def test_capacity_above_two_is_rejected():
    with pytest.raises(ValueError):
        RoomRegistry(capacity=3)


@pytest.mark.asyncio
async def test_rejoining_same_room_only_resends_room_joined():
    registry = RoomRegistry()
    await _join(registry, "ROOM", "Alice", "member-a")
    fresh = DummyConnection("member-a")
    await registry.join("ROOM", "Alice", "member-a", fresh.send)

    assert fresh.types == [Events.ROOM_JOINED]
    assert registry.get_room("ROOM").member_count == 1


@pytest.mark.asyncio
async def test_empty_room_is_deleted_after_grace_period():
    registry = RoomRegistry(empty_room_grace=0.05)
    await _join(registry, "ROOM", "Alice", "member-a")
    await registry.leave("member-a")

    assert registry.get_room("ROOM") is not None
    await asyncio.sleep(0.1)
    assert registry.get_room("ROOM") is None


@pytest.mark.asyncio
async def test_rejoin_during_grace_period_keeps_room_and_history():
    registry = RoomRegistry(empty_room_grace=0.05)
    await _join(registry, "ROOM", "Alice", "member-a")
    await registry.post_message("ROOM", "member-a", None, "still here")
    await registry.leave("member-a")

    bob = await _join(registry, "ROOM", "Bob", "member-b")
    await asyncio.sleep(0.1)

    assert registry.get_room("ROOM") is not None
    assert [m["text"] for m in bob.of_type(Events.ROOM_JOINED)[0]["messages"]] == ["still here"]


@pytest.mark.asyncio
async def test_close_cancels_pending_deletions():
    registry = RoomRegistry(empty_room_grace=0.05)
    await _join(registry, "ROOM", "Alice", "member-a")
    await registry.leave("member-a")

    await registry.close()
    await asyncio.sleep(0.1)
    assert registry.get_room("ROOM") is not None


@pytest.mark.asyncio
async def test_screen_share_notification_goes_to_partner_only():
    registry = RoomRegistry()
    alice = await _join(registry, "ROOM", "Alice", "member-a")
    bob = await _join(registry, "ROOM", "Bob", "member-b")

    await registry.notify_screen_share_state("ROOM", "member-a", started=True)
    await registry.notify_screen_share_state("ROOM", "member-a", started=False)

    assert bob.of_type(Events.SCREEN_SHARE_STARTED) == [{"memberId": "member-a"}]
    assert bob.of_type(Events.SCREEN_SHARE_STOPPED) == [{"memberId": "member-a"}]
    assert alice.of_type(Events.SCREEN_SHARE_STARTED) == []


@pytest.mark.asyncio
async def test_failing_send_does_not_abort_broadcast():
    registry = RoomRegistry()

    async def broken_send(message):
        raise RuntimeError("socket closed")

    await registry.join("ROOM", "Alice", "member-a", broken_send)
    bob = await _join(registry, "ROOM", "Bob", "member-b")

    assert registry.get_room("ROOM").member_count == 2
    assert bob.types == [Events.ROOM_JOINED, Events.READY_TO_CONNECT]


@pytest.mark.asyncio
async def test_room_list_reports_metadata():
    registry = RoomRegistry()
    await _join(registry, "ROOM", "Alice", "member-a")

    rooms = registry.get_room_list()
    assert len(rooms) == 1
    assert rooms[0]["roomId"] == "ROOM"
    assert rooms[0]["memberCount"] == 1
    assert rooms[0]["capacity"] == 2
    assert rooms[0]["members"][0]["displayName"] == "Alice"
