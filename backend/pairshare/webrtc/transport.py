"""전송 계층 인터페이스와 aiortc 어댑터.

PeerSession은 RTCPeerConnection을 직접 다루지 않고 TransportCapability를 통해서만
접근합니다. 테스트에서는 같은 인터페이스를 가진 가짜 전송 객체로 대체합니다.

이벤트 구독은 해제 함수를 반환하므로, 세션 종료 시 모든 구독을 명시적으로 해제해
종료 이후의 콜백을 막을 수 있습니다.

Events:
    - icecandidate: 로컬 candidate (dict: candidate, sdpMid, sdpMLineIndex)
    - track: 원격 미디어 트랙 수신
    - connectionstatechange: 연결 상태 문자열
    - datachannel: 원격에서 연 데이터 채널

See Also:
    aiortc Documentation: https://aiortc.readthedocs.io/
"""
import logging
from typing import Any, Callable, Optional, Protocol

from aiortc import RTCConfiguration, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from .config import build_rtc_configuration

logger = logging.getLogger(__name__)

Unsubscribe = Callable[[], None]


class TransportCapability(Protocol):
    """PeerSession이 사용하는 전송 계층 인터페이스."""

    @property
    def connection_state(self) -> str: ...

    @property
    def signaling_state(self) -> str: ...

    @property
    def local_description(self) -> Optional[RTCSessionDescription]: ...

    async def create_offer(self) -> RTCSessionDescription: ...

    async def create_answer(self) -> RTCSessionDescription: ...

    async def set_local_description(self, description: RTCSessionDescription) -> None: ...

    async def set_remote_description(self, description: RTCSessionDescription) -> None: ...

    async def add_ice_candidate(self, candidate: dict) -> None: ...

    def create_data_channel(self, label: str, ordered: bool = True, max_retransmits: Optional[int] = None) -> Any: ...

    def add_track(self, track) -> Any: ...

    def replace_track(self, sender, track) -> None: ...

    def apply_encoding(self, sender, policy) -> bool: ...

    def subscribe(self, event: str, handler: Callable) -> Unsubscribe: ...

    async def get_stats(self) -> Any: ...

    async def close(self) -> None: ...


def candidate_to_dict(candidate) -> dict:
    """aiortc RTCIceCandidate를 시그널링용 dict로 변환합니다."""
    return {
        "candidate": "candidate:" + candidate_to_sdp(candidate),
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }


def candidate_from_dict(data: dict):
    """시그널링 dict를 aiortc RTCIceCandidate로 변환합니다.

    Raises:
        ValueError: candidate 문자열이 없거나 형식이 잘못된 경우
    """
    value = (data or {}).get("candidate") or ""
    if value.startswith("candidate:"):
        value = value[len("candidate:"):]
    if not value:
        raise ValueError("Empty ICE candidate")
    # candidate_from_sdp only asserts the field count
    if len(value.split()) < 8:
        raise ValueError(f"Malformed ICE candidate: {value}")
    try:
        candidate = candidate_from_sdp(value)
    except (IndexError, ValueError) as e:
        raise ValueError(f"Malformed ICE candidate: {value}") from e
    candidate.sdpMid = data.get("sdpMid")
    candidate.sdpMLineIndex = data.get("sdpMLineIndex")
    return candidate


class AiortcTransport:
    """aiortc RTCPeerConnection 기반 TransportCapability 구현.

    Attributes:
        pc (RTCPeerConnection): 내부 피어 연결
    """

    def __init__(self, configuration: Optional[RTCConfiguration] = None):
        self.pc = RTCPeerConnection(configuration=configuration or build_rtc_configuration())

    @classmethod
    def create(cls) -> "AiortcTransport":
        """기본 ICE 설정으로 전송 객체를 생성합니다 (PeerSession의 transport_factory)."""
        return cls(build_rtc_configuration())

    @property
    def connection_state(self) -> str:
        return self.pc.connectionState

    @property
    def signaling_state(self) -> str:
        return self.pc.signalingState

    @property
    def local_description(self) -> Optional[RTCSessionDescription]:
        return self.pc.localDescription

    async def create_offer(self) -> RTCSessionDescription:
        return await self.pc.createOffer()

    async def create_answer(self) -> RTCSessionDescription:
        return await self.pc.createAnswer()

    async def set_local_description(self, description: RTCSessionDescription) -> None:
        await self.pc.setLocalDescription(description)

    async def set_remote_description(self, description: RTCSessionDescription) -> None:
        await self.pc.setRemoteDescription(description)

    async def add_ice_candidate(self, candidate: dict) -> None:
        await self.pc.addIceCandidate(candidate_from_dict(candidate))

    def create_data_channel(self, label: str, ordered: bool = True, max_retransmits: Optional[int] = None):
        return self.pc.createDataChannel(label, ordered=ordered, maxRetransmits=max_retransmits)

    def add_track(self, track):
        return self.pc.addTrack(track)

    def replace_track(self, sender, track) -> None:
        sender.replaceTrack(track)

    def apply_encoding(self, sender, policy) -> bool:
        """송신 인코더의 목표 비트레이트를 설정합니다.

        aiortc는 RTCRtpSender.setParameters를 지원하지 않으므로 전송이 시작된 뒤
        생성되는 내부 인코더의 target_bitrate를 직접 조정합니다.

        Returns:
            bool: 인코더가 준비되어 적용되었는지 여부
        """
        encoder = getattr(sender, "_RTCRtpSender__encoder", None)
        if encoder is None or not hasattr(encoder, "target_bitrate"):
            return False
        encoder.target_bitrate = int(policy.max_bitrate)
        return True

    def subscribe(self, event: str, handler: Callable) -> Unsubscribe:
        pc = self.pc

        if event == "connectionstatechange":
            def listener():
                return handler(pc.connectionState)
        elif event == "icecandidate":
            def listener(candidate):
                if candidate is None:
                    return None
                return handler(candidate_to_dict(candidate))
        else:
            listener = handler

        pc.on(event, listener)

        def unsubscribe() -> None:
            try:
                pc.remove_listener(event, listener)
            except KeyError:
                pass

        return unsubscribe

    async def get_stats(self):
        return await self.pc.getStats()

    async def close(self) -> None:
        await self.pc.close()
