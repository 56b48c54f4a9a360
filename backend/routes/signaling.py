"""시그널링 WebSocket 라우터.

1:1 화면 공유를 위한 릴레이 엔드포인트를 제공합니다.
룸 입장/퇴장, offer/answer/ICE candidate 전달, 채팅, 화면 공유 알림을 담당합니다.
"""

import logging
import uuid

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from pairshare.errors import RoomFull
from pairshare.signaling import (
    Events,
    RELAY_EVENTS,
    RoomRegistry,
    JoinRoomPayload,
    ChatMessagePayload,
    ScreenSharePayload,
    RelayPayload,
    make_message,
)
from .deps import peek_registry

logger = logging.getLogger(__name__)

router = APIRouter()


async def _send_error(websocket: WebSocket, message: str) -> None:
    await websocket.send_json(make_message(Events.ERROR, {"message": message}))


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """릴레이 채널 WebSocket 엔드포인트.

    처리하는 메시지 타입:
        - join-room: 룸 입장 (roomId, displayName)
        - leave-room: 현재 룸에서 퇴장
        - offer / answer / ice-candidate: 상대방(to)에게 그대로 전달
        - chat-message: 룸 채팅 (roomId, text)
        - screen-share-started / screen-share-stopped: 화면 공유 상태 알림

    Args:
        websocket: FastAPI WebSocket 연결 객체
    """
    registry = peek_registry()
    if registry is None:
        logger.error("레지스트리가 초기화되지 않음")
        await websocket.close(code=1011, reason="Server not ready")
        return

    await websocket.accept()

    member_id = str(uuid.uuid4())
    logger.info(f"[Relay] 멤버 {member_id[:8]} 연결됨")

    # 클라이언트에 멤버 ID 전송
    await websocket.send_json(make_message(Events.PEER_ID, {"memberId": member_id}))

    try:
        while True:
            try:
                message = await websocket.receive_json()
            except ValueError:
                await _send_error(websocket, "Invalid JSON")
                continue

            if not isinstance(message, dict):
                await _send_error(websocket, "Message must be an object")
                continue

            message_type = message.get("type")
            data = message.get("data") or {}
            if not isinstance(data, dict):
                await _send_error(websocket, "Message data must be an object")
                continue

            try:
                await _dispatch(registry, websocket, member_id, message_type, data)
            except ValidationError as e:
                logger.warning(f"[Relay] {message_type} 검증 실패 - 멤버 {member_id[:8]}: {e.errors()}")
                await _send_error(websocket, f"Invalid {message_type} payload")

    except WebSocketDisconnect:
        logger.info(f"[Relay] 멤버 {member_id[:8]} 연결 끊김")
    except Exception as e:
        logger.error(f"[Relay] 멤버 {member_id[:8]}의 WebSocket 연결 중 오류: {e}", exc_info=True)
    finally:
        await registry.leave(member_id)
        logger.info(f"[Relay] 멤버 {member_id[:8]} 정리 완료")


async def _dispatch(
    registry: RoomRegistry,
    websocket: WebSocket,
    member_id: str,
    message_type: str,
    data: dict,
) -> None:
    """메시지 타입별 처리."""
    if message_type == Events.JOIN_ROOM:
        await _handle_join_room(registry, websocket, member_id, data)

    elif message_type in RELAY_EVENTS:
        payload = RelayPayload.model_validate(data)
        await registry.relay(message_type, data, member_id, payload.to)

    elif message_type == Events.CHAT_MESSAGE:
        payload = ChatMessagePayload.model_validate(data)
        await registry.post_message(payload.room_id, member_id, payload.display_name, payload.text)

    elif message_type in (Events.SCREEN_SHARE_STARTED, Events.SCREEN_SHARE_STOPPED):
        payload = ScreenSharePayload.model_validate(data)
        await registry.notify_screen_share_state(
            payload.room_id,
            member_id,
            started=message_type == Events.SCREEN_SHARE_STARTED,
        )

    elif message_type == Events.LEAVE_ROOM:
        await registry.leave(member_id)

    else:
        logger.warning(f"[Relay] 알 수 없는 메시지 타입: {message_type}")
        await _send_error(websocket, f"Unknown message type: {message_type}")


async def _handle_join_room(
    registry: RoomRegistry,
    websocket: WebSocket,
    member_id: str,
    data: dict,
) -> None:
    """방 입장 처리."""
    payload = JoinRoomPayload.model_validate(data)
    logger.debug(f"[join-room] room={payload.room_id}, displayName={payload.display_name}")

    try:
        await registry.join(payload.room_id, payload.display_name, member_id, websocket.send_json)
    except RoomFull as e:
        await websocket.send_json(make_message(Events.ROOM_FULL, {"roomId": e.room_id}))
    except ValueError as e:
        await _send_error(websocket, str(e))
