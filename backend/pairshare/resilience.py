"""네트워크 복구 정책.

릴레이 채널 재연결과 새 협상 재시도에서 공통으로 쓰는 지수 백오프입니다.
기본값은 최대 5회, 1초에서 시작해 2배씩 증가 (1, 2, 4, 8, 16초)입니다.

Classes:
    ReconnectBackoff: 다음 대기 시간 계산기
    NetworkResilience: 백오프에 따라 재시도 작업을 실행하는 스케줄러

Examples:
    >>> backoff = ReconnectBackoff(max_attempts=3)
    >>> [backoff.next_delay() for _ in range(4)]
    [1.0, 2.0, 4.0, None]
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from .errors import PairShareError

logger = logging.getLogger(__name__)


class ReconnectBackoff:
    """유한 지수 백오프.

    Attributes:
        max_attempts (int): 최대 시도 횟수
        initial_delay (float): 첫 대기 시간 (초)
        factor (float): 증가 배수
    """

    def __init__(self, max_attempts: int = 5, initial_delay: float = 1.0, factor: float = 2.0):
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.factor = factor
        self._attempts = 0

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def exhausted(self) -> bool:
        return self._attempts >= self.max_attempts

    def next_delay(self) -> Optional[float]:
        """다음 시도 전 대기 시간을 반환합니다.

        Returns:
            Optional[float]: 대기 시간 (초). 시도 횟수를 모두 쓰면 None
        """
        if self.exhausted:
            return None
        delay = self.initial_delay * (self.factor ** self._attempts)
        self._attempts += 1
        return delay

    def reset(self) -> None:
        """연결 성공 시 시도 횟수를 초기화합니다."""
        self._attempts = 0


class NetworkResilience:
    """백오프 간격으로 복구 작업을 재시도합니다.

    작업이 PairShareError를 던지면 실패로 간주하고 다음 지연 후 다시 시도합니다.
    시도 횟수를 모두 소진하면 on_give_up을 정확히 한 번 호출합니다.
    작업이 예외 없이 끝나도 시도 횟수는 유지되며, 연결이 확인되면 reset()으로 초기화합니다.

    Examples:
        >>> resilience = NetworkResilience(ReconnectBackoff())
        >>> resilience.schedule(renegotiate, on_give_up=show_terminal_notice)
        >>> resilience.cancel()  # 세션 종료 시
    """

    def __init__(self, backoff: Optional[ReconnectBackoff] = None):
        self.backoff = backoff or ReconnectBackoff()
        self._task: Optional[asyncio.Task] = None

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def schedule(
        self,
        attempt: Callable[[], Awaitable[Any]],
        on_give_up: Optional[Callable[[], Any]] = None,
    ) -> asyncio.Task:
        """복구 작업을 예약합니다. 이미 진행 중이면 기존 작업을 유지합니다."""
        if self.pending:
            logger.debug("[Resilience] 복구 작업이 이미 예약되어 있음")
            return self._task
        self._task = asyncio.create_task(self._run(attempt, on_give_up))
        return self._task

    async def _run(self, attempt, on_give_up) -> bool:
        while True:
            delay = self.backoff.next_delay()
            if delay is None:
                logger.error(
                    f"[Resilience] 최대 시도 횟수({self.backoff.max_attempts}) 도달, 복구 포기"
                )
                if on_give_up is not None:
                    result = on_give_up()
                    if asyncio.iscoroutine(result):
                        await result
                return False

            logger.info(
                f"[Resilience] {delay:.1f}초 후 복구 시도 "
                f"({self.backoff.attempts}/{self.backoff.max_attempts})"
            )
            await asyncio.sleep(delay)

            try:
                await attempt()
            except PairShareError as e:
                logger.warning(f"[Resilience] 복구 시도 실패: {e}")
                continue

            logger.info("[Resilience] 복구 시도 완료")
            return True

    def reset(self) -> None:
        """연결이 실제로 복구되었을 때 호출합니다. 다음 장애는 첫 대기 시간부터 다시 시작합니다."""
        self.backoff.reset()

    def cancel(self) -> None:
        """예약된 복구 작업을 즉시 취소하고 백오프를 초기화합니다."""
        task = self._task
        # on_give_up 내부에서 호출되는 경우 자기 자신은 취소하지 않음
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        self._task = None
        self.backoff.reset()
