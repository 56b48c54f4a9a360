"""P2P 세션 상태 머신 모듈.

이 모듈은 상대방 한 명과의 WebRTC 연결(전송 계층 1개)을 관리합니다.
릴레이 채널로 offer/answer/ICE candidate를 주고받으며, description이 적용되기
전에 도착한 candidate는 버퍼에 보관했다가 적용 직후 도착 순서대로 처리합니다.

주요 기능:
    - 전송 계층 생성 및 데이터 채널('app-data') 개설
    - offer 생성 (SDP 조정 적용) / offer 수락 후 answer 생성 / answer 적용
    - 로컬/원격 ICE candidate 버퍼링
    - 미디어 트랙 추가/교체 시 재협상
    - 멱등 종료 (구독 해제 후 전송 계층 종료)

States:
    uninitialized → negotiating → connected ⇄ disconnected
    negotiating/connected/disconnected → failed (종료 상태)
    모든 상태 → closed (종료 상태, teardown)

WebRTC Flow:
    1. initiator: initialize() → start_offer() → accept_answer()
    2. responder: accept_offer() (필요 시 initialize) → answer 전송
    3. 양쪽: add_remote_candidate()로 상대 candidate 적용
    4. 화면 공유 시작: attach_media() → 연결 상태면 start_offer()로 재협상

Examples:
    >>> session = PeerSession(channel, partner_id="member-2", role=NegotiationRole.INITIATOR)
    >>> session.initialize()
    >>> await session.start_offer()
    >>> await session.accept_answer({"sdp": "...", "type": "answer"})
    >>> await session.teardown()

See Also:
    transport.py: 전송 계층 인터페이스
    sdp.py: offer SDP 조정
"""
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from aiortc import RTCSessionDescription

from ..errors import NegotiationRejected, SessionNotReady, TransportUnavailable
from ..signaling.events import Events
from .quality import AdaptiveQualityController, EncodingPolicy, OutboundLossSampler, QualitySample
from .sdp import SdpTuning, tune_description
from .transport import AiortcTransport, TransportCapability

logger = logging.getLogger(__name__)

DATA_CHANNEL_LABEL = "app-data"
DATA_CHANNEL_MAX_RETRANSMITS = 3


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    CLOSED = "closed"


class NegotiationRole(str, Enum):
    INITIATOR = "initiator"
    RESPONDER = "responder"
    UNDETERMINED = "undetermined"


TERMINAL_STATES = frozenset({SessionState.FAILED, SessionState.CLOSED})

_TRANSPORT_STATES: Dict[str, SessionState] = {
    "new": SessionState.NEGOTIATING,
    "connecting": SessionState.NEGOTIATING,
    "connected": SessionState.CONNECTED,
    "disconnected": SessionState.DISCONNECTED,
    "failed": SessionState.FAILED,
    "closed": SessionState.CLOSED,
}

DescriptionLike = Union[dict, RTCSessionDescription]


class PeerSession:
    """상대방 한 명과의 P2P 세션.

    Attributes:
        channel: emit(event, data) 코루틴을 가진 릴레이 채널 (생성자 주입)
        partner_id (str): 상대방 멤버 ID
        role (NegotiationRole): 협상 역할
        state (SessionState): 현재 연결 상태
        transport (TransportCapability): 전송 계층 (initialize 이후)
        data_channel: 로컬에서 연 데이터 채널
        remote_tracks (List): 수신한 원격 트랙
        local_tracks (List): 송신 중인 로컬 트랙

    Note:
        - failed/closed 이후의 전송 계층 이벤트는 무시됨
        - teardown()은 여러 번 호출해도 한 번만 정리 작업을 수행
    """

    def __init__(
        self,
        channel,
        partner_id: str,
        *,
        transport_factory: Callable[[], TransportCapability] = AiortcTransport.create,
        role: NegotiationRole = NegotiationRole.UNDETERMINED,
        sdp_tuning: Optional[SdpTuning] = None,
        on_state_change: Optional[Callable[[SessionState], Any]] = None,
        on_remote_track: Optional[Callable[[Any], Any]] = None,
        on_data_channel: Optional[Callable[[Any], Any]] = None,
    ):
        self.channel = channel
        self.partner_id = partner_id
        self.role = role
        self.state = SessionState.UNINITIALIZED
        self._transport_factory = transport_factory
        self._tuning = sdp_tuning or SdpTuning.from_quality_config()
        self._on_state_change = on_state_change
        self._on_remote_track = on_remote_track
        self._on_data_channel = on_data_channel

        self.transport: Optional[TransportCapability] = None
        self.data_channel = None
        self.remote_data_channel = None
        self.remote_tracks: List[Any] = []
        self.local_tracks: List[Any] = []
        self.video_sender = None
        self.audio_sender = None
        self.quality_controller: Optional[AdaptiveQualityController] = None

        self._local_description_set = False
        self._remote_description_set = False
        self._pending_local_candidates: List[dict] = []
        self._pending_remote_candidates: List[dict] = []
        self._unsubscribers: List[Callable[[], None]] = []
        self._loss_sampler: Optional[OutboundLossSampler] = None
        self._closed = False

    # ------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def is_initiator(self) -> bool:
        return self.role == NegotiationRole.INITIATOR

    @property
    def local_description_set(self) -> bool:
        return self._local_description_set

    @property
    def remote_description_set(self) -> bool:
        return self._remote_description_set

    @property
    def pending_local_candidates(self) -> List[dict]:
        return list(self._pending_local_candidates)

    @property
    def pending_remote_candidates(self) -> List[dict]:
        return list(self._pending_remote_candidates)

    @property
    def has_pending_local_offer(self) -> bool:
        """응답받지 못한 로컬 offer가 있는지 (glare 판단용)."""
        return self.transport is not None and self.transport.signaling_state == "have-local-offer"

    # ------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------

    def initialize(self) -> None:
        """전송 계층을 생성하고 데이터 채널과 이벤트 구독을 설정합니다.

        Raises:
            TransportUnavailable: 전송 계층 생성 실패 또는 이미 종료된 세션
        """
        if self._closed:
            raise TransportUnavailable("Session already closed")
        if self.transport is not None:
            return

        try:
            transport = self._transport_factory()
            self.data_channel = transport.create_data_channel(
                DATA_CHANNEL_LABEL,
                ordered=True,
                max_retransmits=DATA_CHANNEL_MAX_RETRANSMITS,
            )
        except Exception as e:
            logger.error(f"[WebRTC] 전송 계층 생성 실패 - 상대 {self.partner_id[:8]}: {e}")
            raise TransportUnavailable(str(e)) from e

        self.transport = transport
        self._unsubscribers = [
            transport.subscribe("icecandidate", self._handle_local_candidate),
            transport.subscribe("track", self._handle_track),
            transport.subscribe("connectionstatechange", self._handle_connection_state),
            transport.subscribe("datachannel", self._handle_data_channel),
        ]
        self._set_state(SessionState.NEGOTIATING)
        logger.info(f"[WebRTC] 세션 초기화 - 상대 {self.partner_id[:8]}, 역할 {self.role.value}")

    async def teardown(self) -> None:
        """세션을 종료합니다. 여러 번 호출해도 안전합니다.

        Note:
            1. 로컬 트랙 정지
            2. 화질 조절 타이머 중지
            3. 모든 이벤트 구독 해제 (이후 콜백 차단)
            4. 데이터 채널 및 전송 계층 종료
            5. 상태를 closed로 변경
        """
        if self._closed:
            return
        self._closed = True

        self._stop_local_tracks()

        if self.quality_controller is not None:
            await self.quality_controller.stop()
            self.quality_controller = None

        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

        if self.data_channel is not None:
            try:
                self.data_channel.close()
            except Exception as e:
                logger.debug(f"[WebRTC] 데이터 채널 종료 중 오류 무시: {e}")

        if self.transport is not None:
            try:
                await self.transport.close()
            except Exception as e:
                logger.warning(f"[WebRTC] 전송 계층 종료 중 오류: {e}")

        self._pending_local_candidates.clear()
        self._pending_remote_candidates.clear()
        self._set_state(SessionState.CLOSED, force=True)
        logger.info(f"[WebRTC] 세션 종료 - 상대 {self.partner_id[:8]}")

    # ------------------------------------------------------------
    # Negotiation
    # ------------------------------------------------------------

    async def start_offer(self) -> RTCSessionDescription:
        """offer를 생성하여 로컬에 적용하고 상대방에게 전송합니다.

        Returns:
            RTCSessionDescription: 전송한 (조정된) offer

        Raises:
            NegotiationRejected: offer 생성 또는 적용 실패
        """
        self._require_open()
        if self.transport is None:
            self.initialize()
        if self.role == NegotiationRole.UNDETERMINED:
            self.role = NegotiationRole.INITIATOR

        try:
            offer = await self.transport.create_offer()
            tuned = tune_description(offer, self._tuning)
            await self.transport.set_local_description(tuned)
        except Exception as e:
            logger.error(f"[WebRTC] 로컬 offer 적용 실패: {e}")
            raise NegotiationRejected(f"Failed to commit local offer: {e}", stage="local-offer") from e

        # Committed description carries gathered candidates
        outgoing = tune_description(self.transport.local_description or tuned, self._tuning)
        await self._send(Events.OFFER, {"offer": {"sdp": outgoing.sdp, "type": outgoing.type}})
        logger.info(f"[WebRTC] offer 전송 → {self.partner_id[:8]}")

        self._local_description_set = True
        await self._flush_local_candidates()
        return outgoing

    async def accept_offer(self, description: DescriptionLike) -> RTCSessionDescription:
        """원격 offer를 적용하고 answer를 생성하여 전송합니다.

        Raises:
            NegotiationRejected: offer 또는 answer 적용 실패
        """
        self._require_open()
        if self.transport is None:
            self.initialize()
        if self.role == NegotiationRole.UNDETERMINED:
            self.role = NegotiationRole.RESPONDER

        await self._commit_remote(self._to_description(description))

        try:
            answer = await self.transport.create_answer()
            await self.transport.set_local_description(answer)
        except Exception as e:
            logger.error(f"[WebRTC] 로컬 answer 적용 실패: {e}")
            raise NegotiationRejected(f"Failed to commit local answer: {e}", stage="local-answer") from e

        outgoing = self.transport.local_description or answer
        await self._send(Events.ANSWER, {"answer": {"sdp": outgoing.sdp, "type": outgoing.type}})
        logger.info(f"[WebRTC] answer 전송 → {self.partner_id[:8]}")

        self._local_description_set = True
        await self._flush_local_candidates()
        return outgoing

    async def accept_answer(self, description: DescriptionLike) -> None:
        """원격 answer를 적용합니다.

        Raises:
            NegotiationRejected: 보낸 offer가 없거나 answer 적용 실패
        """
        self._require_open()
        if self.transport is None:
            raise NegotiationRejected("No local offer to answer", stage="remote")
        await self._commit_remote(self._to_description(description))
        logger.info(f"[WebRTC] answer 적용 완료 ← {self.partner_id[:8]}")

    async def add_remote_candidate(self, candidate: dict) -> None:
        """원격 ICE candidate를 적용합니다. 원격 description 전이면 버퍼에 보관합니다."""
        if self._closed:
            return
        if self.transport is None or not self._remote_description_set:
            self._pending_remote_candidates.append(candidate)
            logger.debug(
                f"[WebRTC] 원격 candidate 버퍼링 ({len(self._pending_remote_candidates)}개 대기)"
            )
            return
        await self._apply_remote_candidate(candidate)

    # ------------------------------------------------------------
    # Media
    # ------------------------------------------------------------

    async def attach_media(
        self,
        video_track,
        audio_track=None,
        quality_controller: Optional[AdaptiveQualityController] = None,
    ) -> bool:
        """송신 트랙을 추가(또는 교체)합니다. 연결된 상태면 재협상합니다.

        Returns:
            bool: 재협상 여부

        Raises:
            SessionNotReady: 이미 종료된 세션
            NegotiationRejected: 재협상 실패
        """
        if self._closed or self.is_terminal:
            raise SessionNotReady("Session is closed")
        if self.transport is None:
            self.initialize()

        self.video_sender = self._attach_track(self.video_sender, video_track)
        if audio_track is not None:
            self.audio_sender = self._attach_track(self.audio_sender, audio_track)
        self.local_tracks = [t for t in (video_track, audio_track) if t is not None]

        if quality_controller is not None:
            if self.quality_controller is not None and self.quality_controller is not quality_controller:
                await self.quality_controller.stop()
            self.quality_controller = quality_controller
            quality_controller.start()

        if self.state == SessionState.CONNECTED:
            logger.info(f"[WebRTC] 트랙 변경으로 재협상 시작 → {self.partner_id[:8]}")
            await self.start_offer()
            return True
        return False

    async def detach_media(self) -> None:
        """송신 트랙을 제거합니다 (재협상 없음)."""
        if self.quality_controller is not None:
            await self.quality_controller.stop()
            self.quality_controller = None

        if self.transport is not None:
            for sender in (self.video_sender, self.audio_sender):
                if sender is not None:
                    self.transport.replace_track(sender, None)

        self._stop_local_tracks()

    def apply_encoding(self, policy: EncodingPolicy) -> bool:
        """화질 조절기의 인코딩 정책을 영상 송신기에 적용합니다."""
        if self.transport is None or self.video_sender is None:
            return False
        return self.transport.apply_encoding(self.video_sender, policy)

    async def sample_outbound_quality(self) -> Optional[QualitySample]:
        """송신 손실률 샘플. 연결 상태가 아니면 None."""
        if self.transport is None or self.state != SessionState.CONNECTED:
            return None
        if self._loss_sampler is None:
            self._loss_sampler = OutboundLossSampler(self.transport.get_stats)
        return await self._loss_sampler()

    async def get_stats(self):
        if self.transport is None:
            return {}
        return await self.transport.get_stats()

    # ------------------------------------------------------------
    # Transport events
    # ------------------------------------------------------------

    async def _handle_local_candidate(self, candidate: dict) -> None:
        if self._closed:
            return
        if not self._local_description_set:
            self._pending_local_candidates.append(candidate)
            return
        await self._send(Events.ICE_CANDIDATE, {"candidate": candidate})

    def _handle_track(self, track) -> None:
        if self._closed:
            return
        logger.info(f"[WebRTC] 원격 트랙 수신 - 종류: {getattr(track, 'kind', '?')}")
        self.remote_tracks.append(track)
        if self._on_remote_track is not None:
            self._on_remote_track(track)

    def _handle_connection_state(self, transport_state: str) -> None:
        state = _TRANSPORT_STATES.get(transport_state)
        if state is None:
            logger.debug(f"[WebRTC] 알 수 없는 연결 상태 무시: {transport_state}")
            return
        self._set_state(state)

    def _handle_data_channel(self, channel) -> None:
        if self._closed:
            return
        self.remote_data_channel = channel
        logger.info(f"[WebRTC] 원격 데이터 채널 수신: {getattr(channel, 'label', '?')}")
        if self._on_data_channel is not None:
            self._on_data_channel(channel)

    # ------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------

    def _set_state(self, state: SessionState, force: bool = False) -> None:
        if self.state == state:
            return
        if self.is_terminal and not force:
            logger.debug(f"[WebRTC] 종료 상태({self.state.value})에서 {state.value} 전이 무시")
            return
        previous, self.state = self.state, state
        logger.info(f"[WebRTC] 세션 상태 {previous.value} → {state.value} (상대 {self.partner_id[:8]})")
        if self._on_state_change is not None:
            self._on_state_change(state)

    def _require_open(self) -> None:
        if self._closed or self.is_terminal:
            raise NegotiationRejected(f"Session is {self.state.value}", stage="state")

    @staticmethod
    def _to_description(description: DescriptionLike) -> RTCSessionDescription:
        if isinstance(description, RTCSessionDescription):
            return description
        try:
            return RTCSessionDescription(sdp=description["sdp"], type=description["type"])
        except (KeyError, TypeError, ValueError) as e:
            raise NegotiationRejected(f"Malformed session description: {e}", stage="remote") from e

    async def _commit_remote(self, description: RTCSessionDescription) -> None:
        try:
            await self.transport.set_remote_description(description)
        except Exception as e:
            logger.error(f"[WebRTC] 원격 {description.type} 적용 실패: {e}")
            raise NegotiationRejected(
                f"Failed to commit remote {description.type}: {e}", stage="remote"
            ) from e

        self._remote_description_set = True
        pending, self._pending_remote_candidates = self._pending_remote_candidates, []
        if pending:
            logger.info(f"[WebRTC] 버퍼링된 원격 candidate {len(pending)}개 적용")
        for candidate in pending:
            await self._apply_remote_candidate(candidate)

    async def _apply_remote_candidate(self, candidate: dict) -> None:
        try:
            await self.transport.add_ice_candidate(candidate)
        except Exception as e:
            logger.warning(f"[WebRTC] 원격 candidate 적용 실패 (무시): {e}")

    async def _flush_local_candidates(self) -> None:
        pending, self._pending_local_candidates = self._pending_local_candidates, []
        for candidate in pending:
            await self._send(Events.ICE_CANDIDATE, {"candidate": candidate})

    async def _send(self, event: str, payload: dict) -> None:
        await self.channel.emit(event, dict(payload, to=self.partner_id))

    def _attach_track(self, sender, track):
        if sender is not None:
            self.transport.replace_track(sender, track)
            return sender
        return self.transport.add_track(track)

    def _stop_local_tracks(self) -> None:
        for track in self.local_tracks:
            try:
                track.stop()
            except Exception as e:
                logger.debug(f"[WebRTC] 트랙 정지 중 오류 무시: {e}")
        self.local_tracks = []
