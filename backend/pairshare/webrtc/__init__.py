"""WebRTC 모듈.

P2P 세션 상태 머신, SDP 조정, 적응형 화질 조절, 통계 수집, 화면 캡처 기능을 제공합니다.

Classes:
    PeerSession: 상대방 한 명과의 P2P 세션
    AiortcTransport: aiortc 기반 전송 계층 어댑터
    AdaptiveQualityController: 송신 비트레이트 자동 조절
    StatsSampler: 연결 통계 수집
    ScreenCapture: 화면 캡처 트랙 생성

Config:
    ice_config: ICE 서버 설정
    quality_config: 화질 조절 설정
    stats_config: 통계 수집 설정
"""

from .config import (
    ice_config,
    quality_config,
    stats_config,
    ICEServerConfig,
    QualityConfig,
    StatsConfig,
    build_rtc_configuration,
)
from .sdp import SdpTuning, apply_sdp_tuning, tune_description
from .transport import AiortcTransport, TransportCapability
from .quality import (
    AdaptiveQualityController,
    EncodingPolicy,
    OutboundLossSampler,
    QualitySample,
    CaptureProfile,
    CAPTURE_PROFILES,
    select_capture_profile,
)
from .stats import StatsSampler, StreamStats, grade_connection, format_bitrate
from .capture import ScreenCapture
from .peer_session import PeerSession, SessionState, NegotiationRole, TERMINAL_STATES

__all__ = [
    # Classes
    "PeerSession",
    "SessionState",
    "NegotiationRole",
    "TERMINAL_STATES",
    "AiortcTransport",
    "TransportCapability",
    "AdaptiveQualityController",
    "EncodingPolicy",
    "OutboundLossSampler",
    "QualitySample",
    "CaptureProfile",
    "CAPTURE_PROFILES",
    "select_capture_profile",
    "StatsSampler",
    "StreamStats",
    "grade_connection",
    "format_bitrate",
    "ScreenCapture",
    "SdpTuning",
    "apply_sdp_tuning",
    "tune_description",
    # Config
    "ice_config",
    "quality_config",
    "stats_config",
    "ICEServerConfig",
    "QualityConfig",
    "StatsConfig",
    "build_rtc_configuration",
]
