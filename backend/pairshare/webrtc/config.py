"""WebRTC 모듈 설정.

TURN/STUN 서버, 적응형 화질 조절, 통계 수집 등 WebRTC 관련 상수와 환경변수 기반 설정.
"""

import os
import logging
from pathlib import Path
from dataclasses import dataclass
from typing import List, Optional

from aiortc import RTCConfiguration, RTCIceServer
# 환경변수 로드 (상위에서 이미 로드됨)
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

_env_path = Path(__file__).parent.parent.parent / "config" / ".env"
load_dotenv(_env_path)


# ============================================================
# ICE Server 설정
# ============================================================

@dataclass(frozen=True)
class ICEServerConfig:
    """ICE 서버 설정."""

    # TURN 서버
    TURN_SERVER_URL: Optional[str] = os.getenv("TURN_SERVER_URL")
    TURN_USERNAME: Optional[str] = os.getenv("TURN_USERNAME")
    TURN_CREDENTIAL: Optional[str] = os.getenv("TURN_CREDENTIAL")

    # STUN 서버
    STUN_SERVER_URL: Optional[str] = os.getenv("STUN_SERVER_URL")

    # 기본 공개 STUN 서버 (fallback)
    DEFAULT_STUN_SERVERS: tuple = (
        "stun:stun.l.google.com:19302",
        "stun:stun1.l.google.com:19302",
        "stun:stun.services.mozilla.com",
        "stun:stun.stunprotocol.org:3478",
    )

    @property
    def has_turn_server(self) -> bool:
        """TURN 서버 설정 완료 여부."""
        return all([self.TURN_SERVER_URL, self.TURN_USERNAME, self.TURN_CREDENTIAL])


# ============================================================
# 적응형 화질 조절 설정
# ============================================================

@dataclass(frozen=True)
class QualityConfig:
    """송신 비트레이트 자동 조절 설정."""

    # 조절 주기 (초)
    TICK_INTERVAL: float = 3.0

    # 비트레이트 하한/상한/시작값 (bps) - 하한은 720p 유지 가능한 수준
    MIN_BITRATE: int = 3_000_000
    MAX_BITRATE: int = 8_000_000
    START_BITRATE: int = 6_000_000

    # 손실률 임계값
    HIGH_LOSS_THRESHOLD: float = 0.10
    LOW_LOSS_THRESHOLD: float = 0.02

    # 조절 배수
    DECREASE_FACTOR: float = 0.8
    INCREASE_FACTOR: float = 1.3

    # 최대 프레임레이트
    MAX_FRAMERATE: int = 60


# ============================================================
# 통계 수집 설정
# ============================================================

@dataclass(frozen=True)
class StatsConfig:
    """연결 통계 수집 설정."""

    # 수집 주기 (초)
    POLL_INTERVAL: float = 2.0


# ============================================================
# 싱글톤 인스턴스
# ============================================================

ice_config = ICEServerConfig()
quality_config = QualityConfig()
stats_config = StatsConfig()


def build_ice_servers(config: ICEServerConfig = ice_config) -> List[RTCIceServer]:
    """ICE 서버 목록을 생성합니다 (커스텀 STUN → 기본 STUN → TURN 순)."""
    ice_servers = []

    if config.STUN_SERVER_URL:
        ice_servers.append(RTCIceServer(urls=config.STUN_SERVER_URL))

    ice_servers.append(RTCIceServer(urls=list(config.DEFAULT_STUN_SERVERS)))

    if config.has_turn_server:
        ice_servers.append(RTCIceServer(
            urls=config.TURN_SERVER_URL,
            username=config.TURN_USERNAME,
            credential=config.TURN_CREDENTIAL,
        ))

    return ice_servers


def build_rtc_configuration(config: ICEServerConfig = ice_config) -> RTCConfiguration:
    """aiortc RTCConfiguration을 생성합니다."""
    return RTCConfiguration(iceServers=build_ice_servers(config))


# ============================================================
# 설정 로드 확인 로그
# ============================================================

logger.info(f"[WebRTC Config] .env 경로: {_env_path} (존재: {_env_path.exists()})")
logger.info(f"[WebRTC Config] TURN 서버 설정 완료: {ice_config.has_turn_server}")
if ice_config.STUN_SERVER_URL:
    logger.info(f"[WebRTC Config] STUN URL: {ice_config.STUN_SERVER_URL}")
else:
    logger.info("[WebRTC Config] STUN URL: 기본 공개 STUN 사용")
logger.info(
    f"[WebRTC Config] 비트레이트 범위: "
    f"{quality_config.MIN_BITRATE // 1000}-{quality_config.MAX_BITRATE // 1000} kbps"
)
