"""Health Check 및 룸 조회 API 라우터.

서비스 상태와 룸 메타데이터 조회를 위한 엔드포인트들을 제공합니다.
"""

from fastapi import APIRouter, Depends, HTTPException

from pairshare.signaling import RoomRegistry
from .deps import get_room_registry

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(registry: RoomRegistry = Depends(get_room_registry)):
    """서버 상태와 활성 룸 수를 반환합니다.

    Returns:
        dict: {"status": "ok", "roomCount": int}
    """
    return {"status": "ok", "roomCount": registry.room_count}


@router.get("/room/{room_id}")
async def get_room(room_id: str, registry: RoomRegistry = Depends(get_room_registry)):
    """룸 메타데이터를 조회합니다. 룸 ID는 대소문자를 구분하지 않습니다.

    Raises:
        HTTPException: 룸이 없으면 404
    """
    room = registry.get_room(room_id)
    if room is None:
        raise HTTPException(status_code=404, detail="Room not found")
    return room.to_dict(registry.capacity)


@router.get("/api/rooms")
async def get_rooms(registry: RoomRegistry = Depends(get_room_registry)):
    """활성화된 모든 룸의 목록을 조회합니다.

    Returns:
        dict: 룸 목록을 포함하는 딕셔너리
    """
    return {"rooms": registry.get_room_list()}
