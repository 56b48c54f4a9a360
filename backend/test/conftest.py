"""Shared fakes for the PairShare test suite."""
from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, List, Optional

import pytest
from aiortc import RTCSessionDescription


SAMPLE_OFFER_SDP = "\r\n".join([
    "v=0",
    "o=- 3900000000 3900000000 IN IP4 0.0.0.0",
    "s=-",
    "t=0 0",
    "b=AS:500",
    "a=group:BUNDLE 0 1",
    "a=msid-semantic:WMS *",
    "m=audio 9 UDP/TLS/RTP/SAVPF 111 0",
    "c=IN IP4 0.0.0.0",
    "b=AS:64",
    "a=mid:0",
    "a=rtpmap:111 opus/48000/2",
    "a=rtpmap:0 PCMU/8000",
    "m=video 9 UDP/TLS/RTP/SAVPF 97 98 99 100",
    "c=IN IP4 0.0.0.0",
    "b=AS:2000",
    "b=CT:1000",
    "a=mid:1",
    "a=candidate:1 1 UDP 2130706431 192.168.1.2 5000 typ host",
    "a=rtpmap:97 VP8/90000",
    "a=rtpmap:98 rtx/90000",
    "a=fmtp:98 apt=97",
    "a=rtpmap:99 H264/90000",
    "a=fmtp:99 level-asymmetry-allowed=1;packetization-mode=1;profile-level-id=42e01f",
    "a=rtpmap:100 rtx/90000",
    "a=fmtp:100 apt=99",
]) + "\r\n"

SAMPLE_ANSWER_SDP = "\r\n".join([
    "v=0",
    "o=- 3900000001 3900000001 IN IP4 0.0.0.0",
    "s=-",
    "t=0 0",
    "m=video 9 UDP/TLS/RTP/SAVPF 99",
    "c=IN IP4 0.0.0.0",
    "a=mid:1",
    "a=rtpmap:99 H264/90000",
]) + "\r\n"


class FakeTrack:
    def __init__(self, kind: str = "video") -> None:
        self.kind = kind
        self.stopped = False

    def stop(self) -> None:
        self.stopped = True


class FakeSender:
    def __init__(self, track) -> None:
        self.track = track


class FakeDataChannel:
    def __init__(self, label: str, ordered: bool, max_retransmits: Optional[int]) -> None:
        self.label = label
        self.ordered = ordered
        self.max_retransmits = max_retransmits
        self.closed = False

    def close(self) -> None:
        self.closed = True


class FakeTransport:
    """In-memory stand-in for the aiortc transport adapter."""

    def __init__(self, offer_sdp: str = SAMPLE_OFFER_SDP, fail_remote: bool = False) -> None:
        self.offer_sdp = offer_sdp
        self.fail_remote = fail_remote
        self.connection_state = "new"
        self.signaling_state = "stable"
        self.local_description: Optional[RTCSessionDescription] = None
        self.remote_description: Optional[RTCSessionDescription] = None
        self.handlers: Dict[str, List[Callable]] = {}
        self.added_candidates: List[dict] = []
        self.senders: List[FakeSender] = []
        self.applied_bitrates: List[int] = []
        self.data_channel: Optional[FakeDataChannel] = None
        self.stats: Any = {}
        self.close_calls = 0
        self.offers_created = 0

    async def create_offer(self) -> RTCSessionDescription:
        self.offers_created += 1
        return RTCSessionDescription(sdp=self.offer_sdp, type="offer")

    async def create_answer(self) -> RTCSessionDescription:
        return RTCSessionDescription(sdp=SAMPLE_ANSWER_SDP, type="answer")

    async def set_local_description(self, description: RTCSessionDescription) -> None:
        self.local_description = description
        self.signaling_state = "have-local-offer" if description.type == "offer" else "stable"

    async def set_remote_description(self, description: RTCSessionDescription) -> None:
        if self.fail_remote:
            raise ValueError("cannot apply remote description")
        self.remote_description = description
        self.signaling_state = "have-remote-offer" if description.type == "offer" else "stable"

    async def add_ice_candidate(self, candidate: dict) -> None:
        if candidate.get("candidate") == "malformed":
            raise ValueError("Malformed ICE candidate")
        self.added_candidates.append(candidate)

    def create_data_channel(self, label: str, ordered: bool = True, max_retransmits: Optional[int] = None):
        self.data_channel = FakeDataChannel(label, ordered, max_retransmits)
        return self.data_channel

    def add_track(self, track) -> FakeSender:
        sender = FakeSender(track)
        self.senders.append(sender)
        return sender

    def replace_track(self, sender, track) -> None:
        sender.track = track

    def apply_encoding(self, sender, policy) -> bool:
        self.applied_bitrates.append(policy.max_bitrate)
        return True

    def subscribe(self, event: str, handler: Callable) -> Callable[[], None]:
        self.handlers.setdefault(event, []).append(handler)

        def unsubscribe() -> None:
            if handler in self.handlers.get(event, []):
                self.handlers[event].remove(handler)

        return unsubscribe

    async def fire(self, event: str, *args) -> None:
        for handler in list(self.handlers.get(event, [])):
            result = handler(*args)
            if asyncio.iscoroutine(result):
                await result

    async def get_stats(self):
        return self.stats

    async def close(self) -> None:
        self.close_calls += 1
        self.connection_state = "closed"

    @property
    def subscription_count(self) -> int:
        return sum(len(handlers) for handlers in self.handlers.values())


class FakeChannel:
    """Relay channel double that records emitted events."""

    def __init__(self) -> None:
        self.sent: List[tuple] = []
        self.handlers: Dict[str, List[Callable]] = {}
        self.connected = True
        self.closed = False
        self.connect_calls = 0

    def on(self, event: str, handler: Callable) -> Callable[[], None]:
        self.handlers.setdefault(event, []).append(handler)

        def unsubscribe() -> None:
            if handler in self.handlers.get(event, []):
                self.handlers[event].remove(handler)

        return unsubscribe

    async def emit(self, event: str, data: Optional[dict] = None) -> bool:
        self.sent.append((event, data or {}))
        return self.connected

    async def connect(self) -> None:
        self.connect_calls += 1

    async def close(self) -> None:
        self.closed = True
        self.connected = False

    async def fire(self, event: str, data: Optional[dict] = None) -> None:
        for handler in list(self.handlers.get(event, [])):
            result = handler(data or {})
            if asyncio.iscoroutine(result):
                await result

    def sent_of(self, event: str) -> List[dict]:
        return [data for name, data in self.sent if name == event]


class DummyConnection:
    def __init__(self, connection_id: str) -> None:
        self.connection_id = connection_id
        self.messages: list[dict] = []

    async def send(self, message: dict) -> None:
        self.messages.append(message)

    def of_type(self, message_type: str) -> list[dict]:
        return [m["data"] for m in self.messages if m["type"] == message_type]

    @property
    def types(self) -> list[str]:
        return [m["type"] for m in self.messages]


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def fake_channel() -> FakeChannel:
    return FakeChannel()
