"""시그널링 모듈.

룸 관리와 offer/answer/ICE candidate 릴레이를 담당합니다.

Classes:
    RoomRegistry: 룸 및 멤버 관리, 메시지 릴레이
    Room, Member, ChatMessage: 룸 상태 데이터 클래스
    Events, ChannelEvents: 이벤트 이름 상수
"""

from .events import Events, ChannelEvents, RELAY_EVENTS, make_message
from .room_registry import (
    RoomRegistry,
    Room,
    Member,
    ChatMessage,
    normalize_room_id,
)
from .schemas import JoinRoomPayload, ChatMessagePayload, ScreenSharePayload, RelayPayload

__all__ = [
    "Events",
    "ChannelEvents",
    "RELAY_EVENTS",
    "make_message",
    "RoomRegistry",
    "Room",
    "Member",
    "ChatMessage",
    "normalize_room_id",
    "JoinRoomPayload",
    "ChatMessagePayload",
    "ScreenSharePayload",
    "RelayPayload",
]
