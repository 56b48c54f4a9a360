"""Tests for the relay WebSocket endpoint and HTTP room queries."""
from __future__ import annotations

import pytest
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

import app as server
from conftest import DummyConnection
from pairshare.signaling import Events, RoomRegistry
from routes import init_registry


@pytest.fixture
def registry():
    fresh = RoomRegistry()
    init_registry(fresh)
    yield fresh
    init_registry(server.room_registry)


def _join(ws, room_id: str, name: str) -> None:
    ws.send_json({"type": Events.JOIN_ROOM, "data": {"roomId": room_id, "displayName": name}})


def test_websocket_pairing_relay_and_chat(registry):
    with TestClient(server.app) as client:
        with client.websocket_connect("/ws") as ws_a:
            peer_a = ws_a.receive_json()
            assert peer_a["type"] == Events.PEER_ID
            id_a = peer_a["data"]["memberId"]

            _join(ws_a, "x7q2", "Alice")
            joined = ws_a.receive_json()
            assert joined["type"] == Events.ROOM_JOINED
            assert joined["data"]["roomId"] == "X7Q2"

            with client.websocket_connect("/ws") as ws_b:
                id_b = ws_b.receive_json()["data"]["memberId"]
                _join(ws_b, "X7Q2", "Bob")

                assert ws_b.receive_json()["type"] == Events.ROOM_JOINED
                ready_b = ws_b.receive_json()
                assert ready_b == {
                    "type": Events.READY_TO_CONNECT,
                    "data": {"initiator": False, "partnerId": id_a, "partnerName": "Alice"},
                }

                assert ws_a.receive_json() == {
                    "type": Events.MEMBER_JOINED,
                    "data": {"memberId": id_b, "displayName": "Bob"},
                }
                ready_a = ws_a.receive_json()
                assert ready_a["data"]["initiator"] is True
                assert ready_a["data"]["partnerId"] == id_b

                ws_a.send_json({
                    "type": Events.OFFER,
                    "data": {"offer": {"type": "offer", "sdp": "v=0\r\n"}, "to": id_b},
                })
                assert ws_b.receive_json() == {
                    "type": Events.OFFER,
                    "data": {"offer": {"type": "offer", "sdp": "v=0\r\n"}, "from": id_a},
                }

                ws_b.send_json({"type": Events.CHAT_MESSAGE, "data": {"roomId": "X7Q2", "text": "hi"}})
                for ws in (ws_a, ws_b):
                    chat = ws.receive_json()
                    assert chat["type"] == Events.CHAT_MESSAGE
                    assert chat["data"]["text"] == "hi"
                    assert chat["data"]["displayName"] == "Bob"

                with client.websocket_connect("/ws") as ws_c:
                    ws_c.receive_json()
                    _join(ws_c, "X7Q2", "Carol")
                    assert ws_c.receive_json() == {"type": Events.ROOM_FULL, "data": {"roomId": "X7Q2"}}

                assert registry.get_room("X7Q2").member_count == 2

            left = ws_a.receive_json()
            assert left == {"type": Events.MEMBER_LEFT, "data": {"memberId": id_b}}


def test_websocket_reports_protocol_errors(registry):
    with TestClient(server.app) as client:
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()

            ws.send_json({"type": "dance", "data": {}})
            error = ws.receive_json()
            assert error["type"] == Events.ERROR
            assert "Unknown message type" in error["data"]["message"]

            ws.send_json({"type": Events.JOIN_ROOM, "data": {"displayName": "NoRoom"}})
            error = ws.receive_json()
            assert error == {"type": Events.ERROR, "data": {"message": "Invalid join-room payload"}}

            ws.send_json({"type": Events.OFFER, "data": {"offer": {}}})
            assert ws.receive_json()["data"]["message"] == "Invalid offer payload"

            ws.send_text("not json")
            assert ws.receive_json()["data"]["message"] == "Invalid JSON"

            ws.send_json({"type": Events.JOIN_ROOM, "data": "ROOM"})
            assert ws.receive_json()["type"] == Events.ERROR

    assert registry.room_count == 0


def test_leave_room_message_notifies_partner(registry):
    with TestClient(server.app) as client:
        with client.websocket_connect("/ws") as ws_a, client.websocket_connect("/ws") as ws_b:
            ws_a.receive_json()
            id_b = ws_b.receive_json()["data"]["memberId"]
            _join(ws_a, "ROOM", "Alice")
            ws_a.receive_json()
            _join(ws_b, "ROOM", "Bob")
            ws_b.receive_json()
            ws_b.receive_json()
            ws_a.receive_json()
            ws_a.receive_json()

            ws_b.send_json({"type": Events.LEAVE_ROOM, "data": {}})
            assert ws_a.receive_json() == {"type": Events.MEMBER_LEFT, "data": {"memberId": id_b}}
            assert registry.get_member_room(id_b) is None


@pytest.mark.asyncio
async def test_health_and_room_endpoints(registry):
    conn = DummyConnection("member-a")
    await registry.join("X7Q2", "Alice", "member-a", conn.send)

    transport = ASGITransport(app=server.app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as client:
        health = await client.get("/health")
        room = await client.get("/room/x7q2")
        missing = await client.get("/room/NOPE")
        rooms = await client.get("/api/rooms")
        root = await client.get("/")

    assert health.status_code == 200
    assert health.json() == {"status": "ok", "roomCount": 1}

    assert room.status_code == 200
    body = room.json()
    assert body["roomId"] == "X7Q2"
    assert body["memberCount"] == 1
    assert body["capacity"] == 2
    assert body["members"][0]["displayName"] == "Alice"

    assert missing.status_code == 404
    assert missing.json() == {"detail": "Room not found"}

    assert [r["roomId"] for r in rooms.json()["rooms"]] == ["X7Q2"]
    assert root.json() == {"status": "ok", "service": "PairShare Signaling Server"}
