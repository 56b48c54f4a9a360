"""PairShare 에러 정의.

시그널링 서버와 클라이언트 세션에서 발생하는 오류를 구분하기 위한 예외 계층입니다.
모든 예외는 PairShareError를 상속하므로 호출 측에서 한 번에 처리할 수 있습니다.

Classes:
    PairShareError: 기본 예외
    RoomFull: 룸 정원 초과 (서버)
    TransportUnavailable: 전송 계층 생성 실패
    NegotiationRejected: SDP 적용 실패 (새 협상 필요)
    CapturePermissionDenied: 화면 캡처 권한 거부
    CaptureSourceUnavailable: 캡처 소스 없음
    ChannelDisconnected: 릴레이 채널 연결 끊김
    SessionNotReady: 피어 연결이 아직 수립되지 않음
    ShareInterrupted: 세션 재설정으로 화면 공유가 중단됨
"""
from typing import Optional


class PairShareError(Exception):
    """PairShare 기본 예외."""


class RoomFull(PairShareError):
    """룸이 이미 최대 인원(2명)으로 차 있을 때 발생합니다.

    Attributes:
        room_id (str): 정규화된 룸 ID
    """

    def __init__(self, room_id: str, capacity: int = 2):
        self.room_id = room_id
        self.capacity = capacity
        super().__init__(f"Room '{room_id}' is full ({capacity} members)")


class TransportUnavailable(PairShareError):
    """전송 계층(RTCPeerConnection) 생성에 실패했을 때 발생합니다."""


class NegotiationRejected(PairShareError):
    """로컬/원격 SDP를 적용하지 못했을 때 발생합니다.

    같은 description을 재시도하지 않고 새 협상을 시작해야 합니다.
    """

    def __init__(self, message: str, stage: Optional[str] = None):
        self.stage = stage
        super().__init__(message)


class CapturePermissionDenied(PairShareError):
    """화면 캡처 권한이 거부되었을 때 발생합니다."""


class CaptureSourceUnavailable(PairShareError):
    """사용 가능한 화면 캡처 소스가 없을 때 발생합니다."""


class ChannelDisconnected(PairShareError):
    """릴레이 채널이 끊어져 메시지를 보낼 수 없을 때 발생합니다."""


class SessionNotReady(PairShareError):
    """피어 연결이 수립되기 전에 미디어 공유를 시도했을 때 발생합니다."""


class ShareInterrupted(PairShareError):
    """세션이 재설정되어 진행 중이던 화면 공유가 중단되었을 때 전달됩니다."""
