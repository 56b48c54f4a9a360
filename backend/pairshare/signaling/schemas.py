"""클라이언트 요청 payload 스키마.

서버가 해석하는 이벤트(join-room, chat-message, screen-share-*)의 data 필드를 검증합니다.
offer/answer/ice-candidate는 수신자 ID(to)만 확인하고 나머지는 해석하지 않습니다.
"""
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class JoinRoomPayload(BaseModel):
    """join-room 요청."""
    model_config = ConfigDict(populate_by_name=True)

    room_id: str = Field(alias="roomId", min_length=1, max_length=64)
    display_name: str = Field(default="Anonymous", alias="displayName")


class ChatMessagePayload(BaseModel):
    """chat-message 요청."""
    model_config = ConfigDict(populate_by_name=True)

    room_id: str = Field(alias="roomId", min_length=1)
    text: str
    display_name: Optional[str] = Field(default=None, alias="displayName")


class ScreenSharePayload(BaseModel):
    """screen-share-started / screen-share-stopped 요청."""
    model_config = ConfigDict(populate_by_name=True)

    room_id: str = Field(alias="roomId", min_length=1)


class RelayPayload(BaseModel):
    """offer / answer / ice-candidate 요청. 'to' 외 필드는 그대로 전달됩니다."""
    model_config = ConfigDict(extra="allow")

    to: str = Field(min_length=1)
