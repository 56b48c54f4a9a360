"""PairShare 패키지.

두 참가자 간 1:1 화면 공유 및 채팅을 위한 시그널링 서버와 클라이언트 구성 요소를 제공합니다.

Modules:
    signaling: 룸 관리 및 메시지 릴레이 (서버)
    relay: 릴레이 채널 클라이언트
    webrtc: P2P 세션, SDP 조정, 화질 조절, 통계, 화면 캡처
    client: 참가자 클라이언트
"""

from .errors import (
    PairShareError,
    RoomFull,
    TransportUnavailable,
    NegotiationRejected,
    CapturePermissionDenied,
    CaptureSourceUnavailable,
    ChannelDisconnected,
    SessionNotReady,
    ShareInterrupted,
)
from .resilience import ReconnectBackoff, NetworkResilience
from .signaling import RoomRegistry, Events, ChannelEvents
from .relay import RelayChannel
from .client import PairShareClient

__all__ = [
    # Errors
    "PairShareError",
    "RoomFull",
    "TransportUnavailable",
    "NegotiationRejected",
    "CapturePermissionDenied",
    "CaptureSourceUnavailable",
    "ChannelDisconnected",
    "SessionNotReady",
    "ShareInterrupted",
    # Components
    "ReconnectBackoff",
    "NetworkResilience",
    "RoomRegistry",
    "Events",
    "ChannelEvents",
    "RelayChannel",
    "PairShareClient",
]
