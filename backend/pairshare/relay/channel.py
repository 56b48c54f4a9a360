"""릴레이 채널 클라이언트.

시그널링 서버(/ws)와의 WebSocket 연결을 유지하며 이벤트를 주고받습니다.
연결이 끊기면 지수 백오프(1, 2, 4, 8, 16초)로 최대 5회 재연결을 시도하고,
모두 실패하면 reconnect-failed 이벤트를 발생시킨 뒤 종료합니다.

주요 기능:
    - 이벤트 핸들러 등록/해제 (on()이 해제 함수를 반환)
    - {"type", "data"} envelope 직렬화
    - 수신 순서 보장 (메시지 하나씩 핸들러를 순서대로 await)
    - connect / disconnect / reconnect-failed 로컬 이벤트

Examples:
    >>> channel = RelayChannel("ws://localhost:8000/ws")
    >>> unsubscribe = channel.on("room-joined", on_room_joined)
    >>> await channel.connect()
    >>> await channel.emit("join-room", {"roomId": "X7Q2", "displayName": "Alice"})
    >>> unsubscribe()
    >>> await channel.close()
"""
import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

import websockets
from websockets.exceptions import WebSocketException

from ..resilience import ReconnectBackoff
from ..signaling.events import ChannelEvents, make_message

logger = logging.getLogger(__name__)

Handler = Callable[[dict], Any]


class RelayChannel:
    """시그널링 서버와의 순서 보장 양방향 메시지 채널.

    Attributes:
        url (str): 서버 WebSocket URL
        backoff (ReconnectBackoff): 재연결 정책
    """

    def __init__(
        self,
        url: str,
        *,
        backoff: Optional[ReconnectBackoff] = None,
        connect: Callable[[str], Any] = websockets.connect,
    ):
        self.url = url
        self.backoff = backoff or ReconnectBackoff()
        self._connect = connect
        self._handlers: Dict[str, List[Handler]] = {}
        self._ws = None
        self._task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def connected(self) -> bool:
        return self._ws is not None

    @property
    def closed(self) -> bool:
        return self._closed

    def on(self, event: str, handler: Handler) -> Callable[[], None]:
        """이벤트 핸들러를 등록합니다.

        Returns:
            Callable[[], None]: 호출하면 핸들러가 해제되는 함수 (여러 번 호출해도 안전)
        """
        self._handlers.setdefault(event, []).append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers.get(event, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    async def emit(self, event: str, data: Optional[dict] = None) -> bool:
        """서버로 이벤트를 전송합니다. 연결되어 있지 않으면 버리고 False를 반환합니다."""
        ws = self._ws
        if ws is None:
            logger.warning(f"[Relay] 연결 끊김 상태 - {event} 전송 생략")
            return False
        try:
            await ws.send(json.dumps(make_message(event, data)))
            return True
        except (OSError, WebSocketException) as e:
            logger.warning(f"[Relay] {event} 전송 실패: {e}")
            return False

    async def connect(self) -> None:
        """백그라운드 수신 루프를 시작합니다. 연결 결과는 connect 이벤트로 알립니다."""
        if self._task is not None and not self._task.done():
            return
        self._closed = False
        self.backoff.reset()
        self._task = asyncio.create_task(self._run())

    async def close(self) -> None:
        """채널을 닫습니다. 대기 중인 재연결도 즉시 취소됩니다."""
        self._closed = True
        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except (OSError, WebSocketException) as e:
                logger.debug(f"[Relay] 종료 중 오류 무시: {e}")

        task, self._task = self._task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("[Relay] 채널 종료")

    async def wait_closed(self) -> None:
        """수신 루프가 끝날 때까지 대기합니다."""
        if self._task is not None:
            await asyncio.shield(self._task)

    async def _run(self) -> None:
        while not self._closed:
            try:
                async with self._connect(self.url) as ws:
                    self._ws = ws
                    self.backoff.reset()
                    logger.info(f"[Relay] 서버 연결됨: {self.url}")
                    await self._dispatch(ChannelEvents.CONNECT, {})

                    async for raw in ws:
                        await self._handle_raw(raw)
            except (OSError, asyncio.TimeoutError, WebSocketException) as e:
                logger.warning(f"[Relay] 연결 오류: {e}")
            finally:
                self._ws = None

            if self._closed:
                break

            await self._dispatch(ChannelEvents.DISCONNECT, {})

            delay = self.backoff.next_delay()
            if delay is None:
                logger.error(f"[Relay] 재연결 {self.backoff.max_attempts}회 실패 - 채널 종료")
                self._closed = True
                await self._dispatch(ChannelEvents.RECONNECT_FAILED, {})
                break

            logger.info(
                f"[Relay] {delay:.1f}초 후 재연결 시도 "
                f"({self.backoff.attempts}/{self.backoff.max_attempts})"
            )
            await asyncio.sleep(delay)

    async def _handle_raw(self, raw) -> None:
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning(f"[Relay] 잘못된 메시지 무시: {str(raw)[:100]}")
            return

        if not isinstance(message, dict) or "type" not in message:
            logger.warning(f"[Relay] type 없는 메시지 무시: {str(raw)[:100]}")
            return

        data = message.get("data")
        await self._dispatch(message["type"], data if isinstance(data, dict) else {})

    async def _dispatch(self, event: str, data: dict) -> None:
        handlers = list(self._handlers.get(event, []))
        if not handlers:
            logger.debug(f"[Relay] 핸들러 없는 이벤트: {event}")
        for handler in handlers:
            try:
                result = handler(data)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"[Relay] {event} 핸들러 오류: {e}", exc_info=True)
