"""룸 기반 멤버 관리 및 시그널링 릴레이 모듈.

이 모듈은 1:1 화면 공유를 위한 룸(방)과 멤버(참가자)를 관리합니다.
룸은 최대 2명까지 입장할 수 있으며, 두 번째 멤버가 입장하면 양쪽에
ready-to-connect를 보내 P2P 협상을 시작시킵니다. 서버는 SDP와 ICE
candidate를 해석하지 않고 같은 룸의 상대방에게 그대로 전달합니다.

주요 기능:
    - 룸 생성 및 삭제 (첫 입장 시 자동 생성, 비면 유예 시간 후 삭제)
    - 정원(2명) 검사 및 입장/퇴장 알림
    - 협상 시작자(initiator) 지정 - 먼저 입장한 멤버가 offer를 생성
    - offer/answer/ice-candidate 릴레이
    - 룸별 채팅 기록 (최근 100개, 입장 시 최근 50개 전달)
    - 화면 공유 시작/종료 알림 전달

Architecture:
    - rooms: Dict[str, Room] - 룸 ID → 룸
    - member_to_room: Dict[str, str] - 멤버 ID → 룸 ID (빠른 조회용)
    - 상태 변경을 먼저 끝낸 뒤 메시지를 전송하므로 단일 이벤트 루프에서 락이 필요 없음

Classes:
    Member: 참가자 정보 데이터 클래스
    ChatMessage: 채팅 메시지 데이터 클래스
    Room: 룸 상태 데이터 클래스
    RoomRegistry: 룸 및 멤버 관리 클래스

Examples:
    기본 사용법:
        >>> registry = RoomRegistry()
        >>> await registry.join("x7q2", "Alice", "member-1", ws1.send_json)
        >>> await registry.join("X7Q2", "Bob", "member-2", ws2.send_json)
        >>> registry.get_room("X7Q2").member_count
        2

See Also:
    routes/signaling.py: WebSocket 엔드포인트
"""
import asyncio
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

from ..errors import RoomFull
from .events import Events, RELAY_EVENTS, make_message

logger = logging.getLogger(__name__)

SendFunc = Callable[[dict], Awaitable[Any]]

DEFAULT_DISPLAY_NAME = "Anonymous"
MAX_ROOM_CAPACITY = 2


def now_ms() -> int:
    """현재 시각 (epoch milliseconds)."""
    return int(time.time() * 1000)


def normalize_room_id(room_id: str) -> str:
    """룸 ID를 정규화합니다 (공백 제거, 대문자).

    Examples:
        >>> normalize_room_id(" x7q2 ")
        'X7Q2'
    """
    return (room_id or "").strip().upper()


@dataclass
class Member:
    """룸에 참가한 멤버를 나타내는 데이터 클래스.

    Attributes:
        member_id (str): 릴레이 채널이 부여한 고유 ID (UUID)
        display_name (str): 표시 이름
        joined_at (int): 입장 시각 (epoch ms)
        send (SendFunc): 해당 멤버의 채널로 메시지를 보내는 코루틴 함수
    """
    member_id: str
    display_name: str
    joined_at: int
    send: SendFunc = field(repr=False, compare=False)

    def to_dict(self) -> dict:
        return {
            "memberId": self.member_id,
            "displayName": self.display_name,
            "joinedAt": self.joined_at,
        }


@dataclass(frozen=True)
class ChatMessage:
    """채팅 메시지. 생성 후 변경되지 않습니다."""
    id: str
    member_id: str
    display_name: str
    text: str
    timestamp: int

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "memberId": self.member_id,
            "displayName": self.display_name,
            "text": self.text,
            "timestamp": self.timestamp,
        }


@dataclass
class Room:
    """룸 상태.

    Attributes:
        room_id (str): 정규화된 룸 ID
        created_at (int): 생성 시각 (epoch ms)
        members (List[Member]): 입장 순서대로 정렬된 멤버 목록
        messages (Deque[ChatMessage]): 채팅 기록 (오래된 것부터 자동 제거)
        deletion_handle: 빈 룸 삭제 타이머
    """
    room_id: str
    created_at: int
    history_limit: int = 100
    members: List[Member] = field(default_factory=list)
    messages: Deque[ChatMessage] = field(init=False)
    deletion_handle: Optional[asyncio.TimerHandle] = field(default=None, repr=False)

    def __post_init__(self):
        self.messages = deque(maxlen=self.history_limit)

    @property
    def member_count(self) -> int:
        return len(self.members)

    @property
    def is_empty(self) -> bool:
        return not self.members

    def get_member(self, member_id: str) -> Optional[Member]:
        for member in self.members:
            if member.member_id == member_id:
                return member
        return None

    def get_others(self, member_id: str) -> List[Member]:
        return [m for m in self.members if m.member_id != member_id]

    def to_dict(self, capacity: int = 2) -> dict:
        return {
            "roomId": self.room_id,
            "memberCount": self.member_count,
            "capacity": capacity,
            "createdAt": self.created_at,
            "members": [m.to_dict() for m in self.members],
        }


class RoomRegistry:
    """룸과 멤버를 관리하고 시그널링 메시지를 릴레이하는 핵심 클래스.

    Attributes:
        rooms (Dict[str, Room]): 룸 ID를 키로 하는 룸 딕셔너리
        member_to_room (Dict[str, str]): 멤버 ID → 룸 ID 역 매핑
        capacity (int): 룸 최대 인원
        history_replay (int): 입장 시 전달할 최근 채팅 개수
        empty_room_grace (float): 빈 룸 삭제 유예 시간 (초)

    Thread Safety:
        - asyncio 단일 이벤트 루프에서만 사용
        - 모든 상태 변경은 첫 await(메시지 전송) 이전에 완료됨
    """

    def __init__(
        self,
        capacity: int = 2,
        history_limit: int = 100,
        history_replay: int = 50,
        empty_room_grace: float = 60.0,
        max_name_length: int = 50,
        max_message_length: int = 1000,
    ):
        if not 1 <= capacity <= MAX_ROOM_CAPACITY:
            raise ValueError(f"Room capacity must be between 1 and {MAX_ROOM_CAPACITY}")

        # room_id -> Room
        self.rooms: Dict[str, Room] = {}

        # member_id -> room_id (for quick lookup)
        self.member_to_room: Dict[str, str] = {}

        self.capacity = capacity
        self.history_limit = history_limit
        self.history_replay = history_replay
        self.empty_room_grace = empty_room_grace
        self.max_name_length = max_name_length
        self.max_message_length = max_message_length

    @classmethod
    def from_settings(cls, settings) -> "RoomRegistry":
        """Settings 객체로부터 레지스트리를 생성합니다."""
        return cls(
            capacity=settings.ROOM_CAPACITY,
            history_limit=settings.CHAT_HISTORY_LIMIT,
            history_replay=settings.CHAT_HISTORY_REPLAY,
            empty_room_grace=settings.EMPTY_ROOM_GRACE_SECONDS,
            max_name_length=settings.MAX_DISPLAY_NAME_LENGTH,
            max_message_length=settings.MAX_MESSAGE_LENGTH,
        )

    # ------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------

    @property
    def room_count(self) -> int:
        return len(self.rooms)

    def get_room(self, room_id: str) -> Optional[Room]:
        return self.rooms.get(normalize_room_id(room_id))

    def get_member_room(self, member_id: str) -> Optional[str]:
        return self.member_to_room.get(member_id)

    def get_room_list(self) -> List[dict]:
        """모든 룸의 요약 정보를 반환합니다."""
        return [room.to_dict(self.capacity) for room in self.rooms.values()]

    # ------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------

    async def join(self, room_id: str, display_name: str, member_id: str, send: SendFunc) -> Room:
        """멤버를 룸에 입장시킵니다.

        룸이 없으면 생성하고, 이미 정원이 차 있으면 RoomFull을 발생시킵니다.
        두 번째 멤버가 입장하면 먼저 있던 멤버에게 initiator=True,
        새 멤버에게 initiator=False로 ready-to-connect를 전송합니다.

        Args:
            room_id (str): 룸 ID (대소문자 구분 없음)
            display_name (str): 표시 이름
            member_id (str): 멤버 고유 ID
            send (SendFunc): 멤버에게 메시지를 보내는 코루틴 함수

        Returns:
            Room: 입장한 룸

        Raises:
            RoomFull: 정원 초과 시 (멤버십 변경 없음)
            ValueError: 룸 ID가 비어 있을 때

        Note:
            - 다른 룸에 있던 멤버는 먼저 기존 룸에서 퇴장 처리됨
            - 같은 룸에 다시 입장하면 room-joined만 다시 전송됨
            - 삭제 대기 중인 룸에 입장하면 삭제 타이머가 취소됨
        """
        room_id = normalize_room_id(room_id)
        if not room_id:
            raise ValueError("Room ID is required")
        display_name = self._clean_display_name(display_name)

        room = self.rooms.get(room_id)
        existing = room.get_member(member_id) if room else None

        # Capacity check before any mutation
        if room is not None and existing is None and room.member_count >= self.capacity:
            logger.warning(f"[Room] 룸 '{room_id}' 정원 초과 - 멤버 {member_id[:8]} 입장 거부")
            raise RoomFull(room_id, self.capacity)

        # No await between the capacity check and the append below
        previous = None
        previous_room_id = self.member_to_room.get(member_id)
        if previous_room_id and previous_room_id != room_id:
            previous = self._detach(member_id)

        if room is None:
            room = Room(room_id=room_id, created_at=now_ms(), history_limit=self.history_limit)
            self.rooms[room_id] = room
            logger.info(f"[Room] 룸 '{room_id}' 생성")

        self._cancel_deletion(room)

        if existing is not None:
            existing.send = send
            await self._send(existing, Events.ROOM_JOINED, self._room_joined_payload(room))
            return room

        member = Member(
            member_id=member_id,
            display_name=display_name,
            joined_at=now_ms(),
            send=send,
        )
        room.members.append(member)
        self.member_to_room[member_id] = room_id
        logger.info(
            f"[Room] '{display_name}' ({member_id[:8]}) 룸 '{room_id}' 입장 "
            f"({room.member_count}/{self.capacity})"
        )

        others = room.get_others(member_id)

        if previous is not None:
            await self._broadcast(list(previous.members), Events.MEMBER_LEFT, {"memberId": member_id})
        await self._send(member, Events.ROOM_JOINED, self._room_joined_payload(room))
        await self._broadcast(others, Events.MEMBER_JOINED, {
            "memberId": member.member_id,
            "displayName": member.display_name,
        })

        if room.member_count == 2:
            earlier = others[0]
            # The member already present initiates negotiation
            await self._send(earlier, Events.READY_TO_CONNECT, {
                "initiator": True,
                "partnerId": member.member_id,
                "partnerName": member.display_name,
            })
            await self._send(member, Events.READY_TO_CONNECT, {
                "initiator": False,
                "partnerId": earlier.member_id,
                "partnerName": earlier.display_name,
            })
            logger.info(
                f"[Room] 룸 '{room_id}' 연결 준비 - initiator={earlier.member_id[:8]}, "
                f"responder={member.member_id[:8]}"
            )

        return room

    async def relay(self, event: str, payload: dict, from_id: str, to_id: str) -> bool:
        """offer/answer/ice-candidate를 같은 룸의 상대방에게 전달합니다.

        payload는 해석하지 않으며 'to'를 제거하고 'from'을 추가해 전달합니다.

        Returns:
            bool: 전달 여부
        """
        if event not in RELAY_EVENTS:
            logger.warning(f"[Room] 릴레이 불가 이벤트: {event}")
            return False

        room_id = self.member_to_room.get(from_id)
        if room_id is None or to_id == from_id or self.member_to_room.get(to_id) != room_id:
            logger.warning(
                f"[Room] {event} 릴레이 거부 - {from_id[:8]} → {str(to_id)[:8]} (같은 룸 아님)"
            )
            return False

        target = self.rooms[room_id].get_member(to_id)
        forwarded = {k: v for k, v in payload.items() if k != "to"}
        forwarded["from"] = from_id
        logger.debug(f"[Room] {event} 릴레이 {from_id[:8]} → {to_id[:8]}")
        return await self._send(target, event, forwarded)

    async def post_message(
        self,
        room_id: str,
        from_id: str,
        display_name: Optional[str],
        text: str,
    ) -> Optional[ChatMessage]:
        """채팅 메시지를 기록하고 룸 전체(보낸 사람 포함)에 전송합니다.

        Returns:
            Optional[ChatMessage]: 기록된 메시지. 보낸 사람이 룸 멤버가 아니거나
                내용이 비어 있으면 None
        """
        room = self.rooms.get(normalize_room_id(room_id))
        sender = room.get_member(from_id) if room else None
        if sender is None:
            logger.warning(f"[Room] 룸 멤버가 아닌 {from_id[:8]}의 채팅 무시")
            return None

        text = (text or "").strip()[:self.max_message_length]
        if not text:
            return None

        message = ChatMessage(
            id=uuid.uuid4().hex,
            member_id=from_id,
            display_name=self._clean_display_name(display_name) if display_name else sender.display_name,
            text=text,
            timestamp=now_ms(),
        )
        room.messages.append(message)

        await self._broadcast(list(room.members), Events.CHAT_MESSAGE, message.to_dict())
        return message

    async def leave(self, member_id: str) -> Optional[str]:
        """멤버를 현재 룸에서 퇴장시킵니다.

        남은 멤버에게 member-left를 보내고, 룸이 비면 유예 시간 후 삭제를 예약합니다.

        Returns:
            Optional[str]: 퇴장한 룸 ID. 룸에 없던 멤버면 None
        """
        room = self._detach(member_id)
        if room is None:
            return None

        await self._broadcast(list(room.members), Events.MEMBER_LEFT, {"memberId": member_id})
        return room.room_id

    async def notify_screen_share_state(self, room_id: str, from_id: str, started: bool) -> None:
        """화면 공유 시작/종료를 상대방에게 알립니다. 상태는 저장하지 않습니다."""
        room = self.rooms.get(normalize_room_id(room_id))
        if room is None or room.get_member(from_id) is None:
            logger.warning(f"[Room] 룸 멤버가 아닌 {from_id[:8]}의 화면 공유 알림 무시")
            return

        event = Events.SCREEN_SHARE_STARTED if started else Events.SCREEN_SHARE_STOPPED
        await self._broadcast(room.get_others(from_id), event, {"memberId": from_id})

    async def close(self) -> None:
        """예약된 모든 룸 삭제 타이머를 취소합니다 (서버 종료 시)."""
        for room in self.rooms.values():
            self._cancel_deletion(room)
        logger.info(f"[Room] 레지스트리 종료 ({self.room_count}개 룸)")

    # ------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------

    def _clean_display_name(self, display_name: Optional[str]) -> str:
        name = (display_name or "").strip()[:self.max_name_length]
        return name or DEFAULT_DISPLAY_NAME

    def _detach(self, member_id: str) -> Optional[Room]:
        """멤버를 룸 목록에서 제거합니다. 알림은 호출 측에서 보냅니다."""
        room_id = self.member_to_room.pop(member_id, None)
        room = self.rooms.get(room_id) if room_id else None
        if room is None:
            return None

        member = room.get_member(member_id)
        if member is not None:
            room.members.remove(member)
        logger.info(f"[Room] 멤버 {member_id[:8]} 룸 '{room_id}' 퇴장 ({room.member_count}명 남음)")

        if room.is_empty:
            self._schedule_deletion(room)
        return room

    def _room_joined_payload(self, room: Room) -> dict:
        recent = list(room.messages)[-self.history_replay:] if self.history_replay else []
        return {
            "roomId": room.room_id,
            "members": [m.to_dict() for m in room.members],
            "messages": [m.to_dict() for m in recent],
        }

    def _schedule_deletion(self, room: Room) -> None:
        self._cancel_deletion(room)
        loop = asyncio.get_running_loop()
        room.deletion_handle = loop.call_later(
            self.empty_room_grace, self._delete_if_empty, room.room_id
        )
        logger.info(f"[Room] 빈 룸 '{room.room_id}' {self.empty_room_grace}초 후 삭제 예약")

    def _cancel_deletion(self, room: Room) -> None:
        if room.deletion_handle is not None:
            room.deletion_handle.cancel()
            room.deletion_handle = None

    def _delete_if_empty(self, room_id: str) -> None:
        room = self.rooms.get(room_id)
        if room is None:
            return
        room.deletion_handle = None
        # Someone may have rejoined during the grace period
        if not room.is_empty:
            return
        del self.rooms[room_id]
        logger.info(f"[Room] 룸 '{room_id}' 삭제")

    async def _send(self, member: Member, event: str, data: dict) -> bool:
        try:
            await member.send(make_message(event, data))
            return True
        except Exception as e:
            logger.error(f"[Room] 멤버 {member.member_id[:8]}에 {event} 전송 중 오류: {e}")
            return False

    async def _broadcast(self, members: List[Member], event: str, data: dict) -> None:
        for member in members:
            await self._send(member, event, data)
