"""릴레이 이벤트 이름 정의.

서버와 클라이언트가 주고받는 모든 메시지는 다음 형태의 JSON 텍스트 프레임입니다.

    {"type": "<event>", "data": {...}}
"""


class Events:
    """릴레이 채널 이벤트 타입."""

    # Client -> Server
    JOIN_ROOM = "join-room"
    LEAVE_ROOM = "leave-room"

    # Server -> Client
    PEER_ID = "peer-id"
    ROOM_JOINED = "room-joined"
    ROOM_FULL = "room-full"
    MEMBER_JOINED = "member-joined"
    MEMBER_LEFT = "member-left"
    READY_TO_CONNECT = "ready-to-connect"
    ERROR = "error"

    # Both directions (relayed)
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"
    CHAT_MESSAGE = "chat-message"
    SCREEN_SHARE_STARTED = "screen-share-started"
    SCREEN_SHARE_STOPPED = "screen-share-stopped"


# 서버가 해석하지 않고 상대방에게 그대로 전달하는 이벤트
RELAY_EVENTS = frozenset({Events.OFFER, Events.ANSWER, Events.ICE_CANDIDATE})


class ChannelEvents:
    """릴레이 채널 자체 생명주기 이벤트 (로컬에서만 발생)."""

    CONNECT = "connect"
    DISCONNECT = "disconnect"
    RECONNECT_FAILED = "reconnect-failed"


def make_message(event: str, data: dict = None) -> dict:
    """전송용 메시지 envelope을 생성합니다."""
    return {"type": event, "data": data if data is not None else {}}
