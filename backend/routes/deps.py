"""공유 의존성 모듈.

라우터들이 공통으로 사용하는 RoomRegistry 참조를 관리합니다.
"""

import logging
from typing import Optional

from fastapi import HTTPException

from pairshare.signaling import RoomRegistry

logger = logging.getLogger(__name__)

# 글로벌 레지스트리 참조 (app.py에서 설정됨)
_room_registry: Optional[RoomRegistry] = None


def init_registry(room_registry: RoomRegistry) -> None:
    """레지스트리 인스턴스를 초기화합니다.

    app.py에서 호출하여 글로벌 레지스트리 참조를 설정합니다.

    Args:
        room_registry: RoomRegistry 인스턴스
    """
    global _room_registry
    _room_registry = room_registry
    logger.info("라우터 레지스트리 초기화 완료")


def peek_registry() -> Optional[RoomRegistry]:
    """초기화되지 않았으면 None을 반환합니다 (WebSocket 엔드포인트용)."""
    return _room_registry


def get_room_registry() -> RoomRegistry:
    """HTTP 라우트용 레지스트리 의존성.

    Raises:
        HTTPException: 레지스트리가 초기화되지 않았을 때 (503)
    """
    if _room_registry is None:
        raise HTTPException(status_code=503, detail="Server not ready")
    return _room_registry
