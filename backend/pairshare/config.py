"""PairShare 서버/클라이언트 공통 설정.

룸 정원, 채팅 기록, 재연결 정책, 로깅 등 환경변수 기반 설정을 제공합니다.
"""

import logging
from functools import lru_cache
from pathlib import Path
from typing import List

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

# .env 파일 로드
_env_path = Path(__file__).parent.parent / "config" / ".env"
load_dotenv(_env_path)


class Settings(BaseSettings):
    """PairShare 설정 클래스.

    환경 변수를 Python 객체로 매핑하고 유효성을 검증합니다.
    """

    # 서버 설정
    HOST: str = Field(default="0.0.0.0", description="서버 바인드 주소")
    PORT: int = Field(default=8000, description="서버 포트")
    CORS_ALLOW_ORIGINS: str = Field(
        default="*",
        description="허용할 Origin 목록 (쉼표 구분)"
    )

    # 로깅 설정
    LOG_LEVEL: str = Field(default="INFO", description="로그 레벨")
    LOG_DIR: str = Field(default="logs", description="로그 파일 디렉토리")
    LOG_RETENTION_DAYS: int = Field(
        default=60,
        description="로그 보관 기간 (일)"
    )

    # 룸 설정
    ROOM_CAPACITY: int = Field(default=2, description="룸 최대 인원")
    CHAT_HISTORY_LIMIT: int = Field(
        default=100,
        description="룸별 채팅 기록 최대 개수"
    )
    CHAT_HISTORY_REPLAY: int = Field(
        default=50,
        description="입장 시 전달하는 최근 채팅 개수"
    )
    EMPTY_ROOM_GRACE_SECONDS: float = Field(
        default=60.0,
        description="빈 룸 삭제 유예 시간 (초)"
    )
    MAX_DISPLAY_NAME_LENGTH: int = Field(default=50, description="표시 이름 최대 길이")
    MAX_MESSAGE_LENGTH: int = Field(default=1000, description="채팅 메시지 최대 길이")

    # 클라이언트 설정
    SIGNALING_SERVER_URL: str = Field(
        default="ws://localhost:8000/ws",
        description="릴레이 서버 WebSocket URL"
    )
    RECONNECT_ATTEMPTS: int = Field(default=5, description="최대 재연결 시도 횟수")
    RECONNECT_INITIAL_DELAY: float = Field(
        default=1.0,
        description="첫 재연결 대기 시간 (초)"
    )
    RECONNECT_BACKOFF_FACTOR: float = Field(
        default=2.0,
        description="재연결 대기 시간 증가 배수"
    )

    @field_validator('LOG_LEVEL')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """로그 레벨 유효성 검증"""
        allowed = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in allowed:
            raise ValueError(f"LOG_LEVEL은 {allowed} 중 하나여야 합니다.")
        return v.upper()

    @field_validator('ROOM_CAPACITY')
    @classmethod
    def validate_room_capacity(cls, v: int) -> int:
        """룸 정원 검증 (1:1 전용이므로 최대 2명)"""
        if not 1 <= v <= 2:
            raise ValueError("ROOM_CAPACITY는 1 또는 2여야 합니다.")
        return v

    @field_validator('RECONNECT_ATTEMPTS')
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """양수 검증"""
        if v < 1:
            raise ValueError("1 이상이어야 합니다.")
        return v

    @property
    def cors_origins(self) -> List[str]:
        """CORS 허용 Origin 리스트."""
        return [origin.strip() for origin in self.CORS_ALLOW_ORIGINS.split(",") if origin.strip()]

    class Config:
        """Pydantic 설정"""
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    """설정 싱글톤 인스턴스 반환.

    Returns:
        Settings: 설정 객체
    """
    return Settings()


# 전역 settings 객체
settings = get_settings()

logger.info(f"[Config] .env 경로: {_env_path} (존재: {_env_path.exists()})")
logger.info(
    f"[Config] 룸 정원: {settings.ROOM_CAPACITY}, "
    f"채팅 기록: {settings.CHAT_HISTORY_LIMIT}, "
    f"빈 룸 유예: {settings.EMPTY_ROOM_GRACE_SECONDS}s"
)
