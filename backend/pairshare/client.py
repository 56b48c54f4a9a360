"""PairShare 참가자 클라이언트.

릴레이 채널 이벤트를 P2P 세션 동작으로 연결하는 참가자 측 최상위 컴포넌트입니다.
룸 입장, 협상 시작, 화면 공유, 채팅, 장애 복구를 담당하며 화면 표시 계층에는
콜백(원격 트랙, 연결 상태, 채팅, 멤버 목록 등)으로만 결과를 전달합니다.

주요 기능:
    - 채널 연결/재연결 시 join-room 자동 전송
    - ready-to-connect 수신 시 역할에 따라 세션 생성 (initiator는 바로 offer)
    - 세션 생성 전에 도착한 ICE candidate 보관 후 세션에 전달
    - glare 처리: 양쪽이 동시에 offer를 보내면 initiator의 offer가 우선
    - 화면 공유 시작/종료 (캡처 → 트랙 추가 → 재협상 → 화질 조절 시작)
    - 협상 실패/연결 실패 시 지수 백오프로 새 협상 (최대 5회)

Examples:
    >>> channel = RelayChannel("ws://localhost:8000/ws")
    >>> client = PairShareClient(channel, "X7Q2", "Alice", on_remote_track=show_track)
    >>> await client.start()
    >>> await client.start_share()
    >>> await client.send_chat("안녕하세요")
    >>> await client.leave()
"""
import asyncio
import logging
from collections import deque
from typing import Any, Callable, Deque, List, Optional, Set, Tuple

from .errors import (
    ChannelDisconnected,
    NegotiationRejected,
    PairShareError,
    RoomFull,
    SessionNotReady,
    ShareInterrupted,
)
from .resilience import NetworkResilience
from .signaling.events import ChannelEvents, Events
from .signaling.room_registry import normalize_room_id
from .webrtc.capture import ScreenCapture
from .webrtc.config import QualityConfig, quality_config, stats_config
from .webrtc.peer_session import NegotiationRole, PeerSession, SessionState
from .webrtc.quality import AdaptiveQualityController, select_capture_profile
from .webrtc.stats import StatsSampler, StreamStats
from .webrtc.transport import AiortcTransport

logger = logging.getLogger(__name__)

CHAT_HISTORY_LIMIT = 100

Callback = Optional[Callable[..., Any]]


class PairShareClient:
    """참가자 한 명의 룸/세션 상태를 관리합니다.

    Attributes:
        channel: 생성자로 주입된 릴레이 채널
        room_id (str): 정규화된 룸 ID
        member_id (Optional[str]): 서버가 부여한 내 멤버 ID
        members (List[dict]): 현재 룸 멤버 목록
        messages (Deque[dict]): 최근 채팅 (최대 100개)
        session (Optional[PeerSession]): 현재 P2P 세션
        is_sharing (bool): 내가 화면 공유 중인지
        peer_sharing (bool): 상대방이 화면 공유 중인지
    """

    def __init__(
        self,
        channel,
        room_id: str,
        display_name: str,
        *,
        transport_factory: Callable = AiortcTransport.create,
        capture: Optional[ScreenCapture] = None,
        resilience: Optional[NetworkResilience] = None,
        quality: QualityConfig = quality_config,
        stats_interval: float = stats_config.POLL_INTERVAL,
        on_state_change: Callback = None,
        on_remote_track: Callback = None,
        on_chat_message: Callback = None,
        on_members_changed: Callback = None,
        on_peer_screen_share: Callback = None,
        on_stats: Callback = None,
        on_error: Callback = None,
        on_terminal_notice: Callback = None,
    ):
        self.channel = channel
        self.room_id = normalize_room_id(room_id)
        self.display_name = display_name
        self.member_id: Optional[str] = None
        self.members: List[dict] = []
        self.messages: Deque[dict] = deque(maxlen=CHAT_HISTORY_LIMIT)

        self.session: Optional[PeerSession] = None
        self.partner_id: Optional[str] = None
        self.partner_name: Optional[str] = None
        self.is_initiator = False
        self.is_sharing = False
        self.peer_sharing = False
        self.stats_sampler: Optional[StatsSampler] = None

        self._transport_factory = transport_factory
        self._capture = capture
        self._resilience = resilience or NetworkResilience()
        self._quality = quality
        self._stats_interval = stats_interval
        # (from, candidate) pairs received before a session exists
        self._early_candidates: List[Tuple[Optional[str], dict]] = []
        self._unsubscribers: List[Callable[[], None]] = []
        self._tasks: Set[asyncio.Task] = set()
        self._left = False

        self._on_state_change = on_state_change
        self._on_remote_track = on_remote_track
        self._on_chat_message = on_chat_message
        self._on_members_changed = on_members_changed
        self._on_peer_screen_share = on_peer_screen_share
        self._on_stats = on_stats
        self._on_error = on_error
        self._on_terminal_notice = on_terminal_notice

    # ------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------

    @property
    def connection_state(self) -> SessionState:
        return self.session.state if self.session is not None else SessionState.UNINITIALIZED

    async def start(self) -> None:
        """채널 이벤트 핸들러를 등록하고 연결을 시작합니다."""
        handlers = {
            ChannelEvents.CONNECT: self._handle_connect,
            ChannelEvents.DISCONNECT: self._handle_disconnect,
            ChannelEvents.RECONNECT_FAILED: self._handle_reconnect_failed,
            Events.PEER_ID: self._handle_peer_id,
            Events.ROOM_JOINED: self._handle_room_joined,
            Events.ROOM_FULL: self._handle_room_full,
            Events.MEMBER_JOINED: self._handle_member_joined,
            Events.MEMBER_LEFT: self._handle_member_left,
            Events.READY_TO_CONNECT: self._handle_ready_to_connect,
            Events.OFFER: self._handle_offer,
            Events.ANSWER: self._handle_answer,
            Events.ICE_CANDIDATE: self._handle_ice_candidate,
            Events.CHAT_MESSAGE: self._handle_chat_message,
            Events.SCREEN_SHARE_STARTED: self._handle_peer_share_started,
            Events.SCREEN_SHARE_STOPPED: self._handle_peer_share_stopped,
        }
        self._unsubscribers = [self.channel.on(event, handler) for event, handler in handlers.items()]
        await self.channel.connect()

    async def start_share(self) -> None:
        """화면 공유를 시작합니다.

        Raises:
            SessionNotReady: P2P 연결이 수립되지 않았을 때
            CapturePermissionDenied: 화면 캡처 권한이 거부되었을 때
            CaptureSourceUnavailable: 캡처 소스가 없을 때
            NegotiationRejected: 재협상 실패
        """
        session = self.session
        if session is None or session.state != SessionState.CONNECTED:
            raise SessionNotReady("Please wait for peer connection to establish")
        if self.is_sharing:
            return

        latest = self.stats_sampler.latest if self.stats_sampler else None
        profile = select_capture_profile(latest.grade if latest else None)

        if self._capture is None:
            self._capture = ScreenCapture()
        video_track, audio_track = self._capture.open(profile)

        controller = AdaptiveQualityController(
            sample=session.sample_outbound_quality,
            apply=session.apply_encoding,
            config=self._quality,
        )
        try:
            await session.attach_media(video_track, audio_track, quality_controller=controller)
        except PairShareError:
            await session.detach_media()
            self._capture.close()
            raise

        self.is_sharing = True
        logger.info(f"[Client] 화면 공유 시작 ({profile.name} {profile.video_size}@{profile.framerate})")
        await self.channel.emit(Events.SCREEN_SHARE_STARTED, {"roomId": self.room_id})

    async def stop_share(self) -> None:
        """화면 공유를 종료합니다."""
        if not self.is_sharing:
            return
        self.is_sharing = False
        if self.session is not None:
            await self.session.detach_media()
        if self._capture is not None:
            self._capture.close()
        logger.info("[Client] 화면 공유 종료")
        await self.channel.emit(Events.SCREEN_SHARE_STOPPED, {"roomId": self.room_id})

    async def send_chat(self, text: str) -> bool:
        """채팅 메시지를 전송합니다. 빈 메시지는 보내지 않습니다.

        Raises:
            ChannelDisconnected: 릴레이 채널이 연결되어 있지 않을 때
        """
        text = (text or "").strip()
        if not text:
            return False
        if not self.channel.connected:
            raise ChannelDisconnected("Relay channel is not connected")
        return await self.channel.emit(Events.CHAT_MESSAGE, {
            "roomId": self.room_id,
            "text": text,
            "displayName": self.display_name,
        })

    async def leave(self) -> None:
        """룸에서 나가고 모든 리소스를 정리합니다."""
        if self._left:
            return
        self._left = True
        self._resilience.cancel()

        await self.stop_share()
        await self._close_session()
        await self.channel.emit(Events.LEAVE_ROOM, {})

        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

        await self._cancel_tasks()
        await self.channel.close()
        logger.info(f"[Client] 룸 '{self.room_id}' 퇴장")

    # ------------------------------------------------------------
    # Channel events
    # ------------------------------------------------------------

    async def _handle_connect(self, data: dict) -> None:
        # Rejoin after every (re)connection
        await self.channel.emit(Events.JOIN_ROOM, {
            "roomId": self.room_id,
            "displayName": self.display_name,
        })

    def _handle_disconnect(self, data: dict) -> None:
        logger.warning("[Client] 릴레이 채널 연결 끊김 - 재연결 대기 (세션 유지)")

    async def _handle_reconnect_failed(self, data: dict) -> None:
        logger.error("[Client] 릴레이 서버 재연결 실패")
        self._notify(self._on_terminal_notice, "Connection to the relay server was lost")
        self._resilience.cancel()
        await self.stop_share()
        await self._close_session()
        self.partner_id = None
        self.partner_name = None
        self.is_initiator = False
        self.members = []
        self.messages.clear()
        self._notify(self._on_members_changed, [])
        if self.peer_sharing:
            self.peer_sharing = False
            self._notify(self._on_peer_screen_share, False)

    def _handle_peer_id(self, data: dict) -> None:
        self.member_id = data.get("memberId")

    def _handle_room_joined(self, data: dict) -> None:
        self.members = list(data.get("members", []))
        self.messages.clear()
        self.messages.extend(data.get("messages", []))
        logger.info(f"[Client] 룸 '{data.get('roomId')}' 입장 ({len(self.members)}명)")
        self._notify(self._on_members_changed, list(self.members))

    def _handle_room_full(self, data: dict) -> None:
        logger.warning(f"[Client] 룸 '{data.get('roomId')}' 정원 초과")
        self._report(RoomFull(data.get("roomId", self.room_id)))

    def _handle_member_joined(self, data: dict) -> None:
        self.members.append({"memberId": data.get("memberId"), "displayName": data.get("displayName")})
        self._notify(self._on_members_changed, list(self.members))

    async def _handle_member_left(self, data: dict) -> None:
        member_id = data.get("memberId")
        self.members = [m for m in self.members if m.get("memberId") != member_id]
        self._notify(self._on_members_changed, list(self.members))

        if member_id == self.partner_id:
            logger.info(f"[Client] 상대방 {str(member_id)[:8]} 퇴장 - 세션 종료")
            self._resilience.cancel()
            await self.stop_share()
            await self._close_session()
            self.partner_id = None
            self.partner_name = None
            if self.peer_sharing:
                self.peer_sharing = False
                self._notify(self._on_peer_screen_share, False)

    async def _handle_ready_to_connect(self, data: dict) -> None:
        self.partner_id = data.get("partnerId")
        self.partner_name = data.get("partnerName")
        self.is_initiator = bool(data.get("initiator"))
        if not self.partner_id:
            return

        # Candidates that arrived ahead of this notice belong to the new session
        await self._close_session(keep_candidates=True)
        role = NegotiationRole.INITIATOR if self.is_initiator else NegotiationRole.RESPONDER
        logger.info(f"[Client] 연결 준비 - 상대 {self.partner_name}, 역할 {role.value}")

        try:
            session = await self._create_session(self.partner_id, role)
            if self.is_initiator:
                await session.start_offer()
        except PairShareError as e:
            self._report(e)
            if self.is_initiator:
                self._recover()

    async def _handle_offer(self, data: dict) -> None:
        from_id = data.get("from")
        if self.partner_id is None:
            self.partner_id = from_id
        elif from_id != self.partner_id:
            logger.warning(f"[Client] 상대방이 아닌 {str(from_id)[:8]}의 offer 무시")
            return

        session = self.session
        if session is not None and session.has_pending_local_offer:
            if session.is_initiator:
                logger.info("[Client] offer 충돌 - initiator이므로 수신 offer 무시")
                return
            logger.info("[Client] offer 충돌 - responder이므로 세션 재설정")
            await self._close_session(keep_candidates=True)
            session = None

        try:
            if session is None or session.is_terminal:
                session = await self._create_session(from_id, NegotiationRole.RESPONDER)
            await session.accept_offer(data.get("offer") or {})
        except PairShareError as e:
            self._report(e)
            # Wait for a fresh offer from the initiator
            await self._close_session()

    async def _handle_answer(self, data: dict) -> None:
        session = self.session
        if session is None or data.get("from") != session.partner_id:
            logger.warning("[Client] 대응하는 세션이 없는 answer 무시")
            return
        try:
            await session.accept_answer(data.get("answer") or {})
        except NegotiationRejected as e:
            self._report(e)
            if self.is_initiator:
                self._recover()

    async def _handle_ice_candidate(self, data: dict) -> None:
        candidate = data.get("candidate")
        from_id = data.get("from")
        if not candidate:
            return
        partner_id = self.session.partner_id if self.session is not None else self.partner_id
        if partner_id is not None and from_id != partner_id:
            logger.warning(f"[Client] 상대방이 아닌 {str(from_id)[:8]}의 ICE candidate 무시")
            return
        if self.session is None:
            self._early_candidates.append((from_id, candidate))
            return
        await self.session.add_remote_candidate(candidate)

    def _handle_chat_message(self, data: dict) -> None:
        self.messages.append(data)
        self._notify(self._on_chat_message, data)

    def _handle_peer_share_started(self, data: dict) -> None:
        self.peer_sharing = True
        self._notify(self._on_peer_screen_share, True)

    def _handle_peer_share_stopped(self, data: dict) -> None:
        self.peer_sharing = False
        self._notify(self._on_peer_screen_share, False)

    # ------------------------------------------------------------
    # Session management
    # ------------------------------------------------------------

    async def _create_session(self, partner_id: str, role: NegotiationRole) -> PeerSession:
        session = PeerSession(
            self.channel,
            partner_id,
            transport_factory=self._transport_factory,
            role=role,
            on_state_change=lambda state: self._handle_session_state(session, state),
            on_remote_track=lambda track: self._notify(self._on_remote_track, track),
        )
        self.session = session
        try:
            session.initialize()
        except PairShareError:
            self.session = None
            raise

        early, self._early_candidates = self._early_candidates, []
        for from_id, candidate in early:
            if from_id in (None, partner_id):
                await session.add_remote_candidate(candidate)

        self.stats_sampler = StatsSampler(session.get_stats, interval=self._stats_interval)
        if self._on_stats is not None:
            self.stats_sampler.subscribe(self._on_stats)
        self.stats_sampler.start()
        return session

    async def _close_session(self, keep_candidates: bool = False) -> None:
        session, self.session = self.session, None
        sampler, self.stats_sampler = self.stats_sampler, None
        if not keep_candidates:
            self._early_candidates = []
        if sampler is not None:
            await sampler.stop()
        if session is not None:
            if self.is_sharing:
                await self._interrupt_share()
            await session.teardown()

    async def _interrupt_share(self) -> None:
        """세션 재설정으로 끊긴 화면 공유를 정리하고 상대방과 사용자에게 알립니다."""
        self.is_sharing = False
        if self._capture is not None:
            self._capture.close()
        self._report(ShareInterrupted("Screen sharing stopped because the peer connection was reset"))
        await self.channel.emit(Events.SCREEN_SHARE_STOPPED, {"roomId": self.room_id})

    def _handle_session_state(self, session: PeerSession, state: SessionState) -> None:
        if session is not self.session:
            return
        self._notify(self._on_state_change, state)

        if state == SessionState.CONNECTED:
            self._resilience.reset()
        elif state == SessionState.FAILED:
            logger.warning("[Client] P2P 연결 실패")
            if self.is_initiator:
                self._recover()
            else:
                self._spawn(self._close_session())

    def _recover(self) -> None:
        """initiator 측에서 백오프 후 새 세션으로 다시 협상합니다."""
        if self._left or self.partner_id is None:
            return
        self._resilience.schedule(self._renegotiate, on_give_up=self._give_up)

    async def _renegotiate(self) -> None:
        if self.partner_id is None:
            return
        await self._close_session()
        session = await self._create_session(self.partner_id, NegotiationRole.INITIATOR)
        await session.start_offer()

    async def _give_up(self) -> None:
        self._notify(self._on_terminal_notice, "Unable to establish a peer connection")
        await self._close_session()

    # ------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _cancel_tasks(self) -> None:
        current = asyncio.current_task()
        tasks = [t for t in self._tasks if t is not current and not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    def _report(self, error: PairShareError) -> None:
        logger.warning(f"[Client] {type(error).__name__}: {error}")
        self._notify(self._on_error, error)

    @staticmethod
    def _notify(callback: Callback, *args) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            logger.error(f"[Client] 콜백 오류: {e}", exc_info=True)

    def latest_stats(self) -> Optional[StreamStats]:
        return self.stats_sampler.latest if self.stats_sampler else None
