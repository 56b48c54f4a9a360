"""적응형 화질 조절 모듈.

화면 공유 중 주기적으로 송신 통계를 샘플링하여 비트레이트 상한을 조절합니다.
송신 인코딩 파라미터를 변경하는 유일한 주체입니다.

조절 규칙 (3초마다):
    - 손실률 > 10%: max_bitrate = max(하한, 현재 * 0.8)
    - 손실률 < 2% 이고 상한 미만: max_bitrate = min(상한, 현재 * 1.3)
    - 그 외: 변경 없음

Classes:
    EncodingPolicy: 단일 송신 인코딩 파라미터
    QualitySample: 손실률/처리량 샘플
    OutboundLossSampler: 전송 통계로부터 QualitySample 계산
    AdaptiveQualityController: 주기적 비트레이트 조절기
    CaptureProfile: 캡처 해상도/프레임레이트 프로필
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from .config import QualityConfig, quality_config

logger = logging.getLogger(__name__)


@dataclass
class EncodingPolicy:
    """송신 영상 인코딩 파라미터."""
    max_bitrate: int
    min_bitrate: int
    max_framerate: int = 60
    scale_resolution_down_by: float = 1.0

    @classmethod
    def from_config(cls, config: QualityConfig = quality_config) -> "EncodingPolicy":
        return cls(
            max_bitrate=config.START_BITRATE,
            min_bitrate=config.MIN_BITRATE,
            max_framerate=config.MAX_FRAMERATE,
        )


@dataclass(frozen=True)
class QualitySample:
    loss_ratio: float
    throughput_bps: float = 0.0


@dataclass(frozen=True)
class CaptureProfile:
    """화면 캡처 제약 조건."""
    name: str
    width: int
    height: int
    framerate: int

    @property
    def video_size(self) -> str:
        return f"{self.width}x{self.height}"


CAPTURE_PROFILES: Dict[str, CaptureProfile] = {
    "high": CaptureProfile("high", 1920, 1080, 60),
    "medium": CaptureProfile("medium", 1280, 720, 30),
    "low": CaptureProfile("low", 854, 480, 24),
}


def select_capture_profile(grade: Optional[str]) -> CaptureProfile:
    """연결 품질 등급에 맞는 캡처 프로필을 선택합니다.

    Examples:
        >>> select_capture_profile("fair").name
        'medium'
    """
    if grade == "poor":
        return CAPTURE_PROFILES["low"]
    if grade == "fair":
        return CAPTURE_PROFILES["medium"]
    return CAPTURE_PROFILES["high"]


def _stat(report, name: str, default=None):
    if isinstance(report, dict):
        return report.get(name, default)
    return getattr(report, name, default)


def _iter_reports(stats):
    if stats is None:
        return []
    if hasattr(stats, "values"):
        return list(stats.values())
    return list(stats)


class OutboundLossSampler:
    """전송 통계에서 송신 영상의 손실률과 처리량을 계산합니다.

    outbound-rtp(video)의 packetsSent/bytesSent와 remote-inbound-rtp(video)의
    packetsLost를 이전 샘플과 비교합니다. 구간 송신 패킷이 없으면 fractionLost를 사용합니다.
    """

    def __init__(self, get_stats: Callable[[], Awaitable[Any]], clock: Callable[[], float] = time.monotonic):
        self._get_stats = get_stats
        self._clock = clock
        self._previous: Optional[Dict[str, float]] = None

    async def __call__(self) -> Optional[QualitySample]:
        stats = await self._get_stats()
        outbound = remote = None
        for report in _iter_reports(stats):
            kind = _stat(report, "kind")
            if kind not in (None, "video"):
                continue
            report_type = _stat(report, "type")
            if report_type == "outbound-rtp" and outbound is None:
                outbound = report
            elif report_type == "remote-inbound-rtp" and remote is None:
                remote = report

        if outbound is None:
            return None

        current = {
            "time": self._clock(),
            "sent": float(_stat(outbound, "packetsSent", 0) or 0),
            "bytes": float(_stat(outbound, "bytesSent", 0) or 0),
            "lost": float(_stat(remote, "packetsLost", 0) or 0) if remote is not None else 0.0,
        }
        previous, self._previous = self._previous, current

        fraction_lost = float(_stat(remote, "fractionLost", 0) or 0) if remote is not None else 0.0
        if previous is None:
            return QualitySample(loss_ratio=fraction_lost)

        sent_delta = current["sent"] - previous["sent"]
        lost_delta = max(0.0, current["lost"] - previous["lost"])
        elapsed = current["time"] - previous["time"]

        loss_ratio = lost_delta / sent_delta if sent_delta > 0 else fraction_lost
        throughput = (current["bytes"] - previous["bytes"]) * 8 / elapsed if elapsed > 0 else 0.0
        return QualitySample(loss_ratio=min(1.0, loss_ratio), throughput_bps=max(0.0, throughput))


class AdaptiveQualityController:
    """손실률에 따라 송신 비트레이트 상한을 조절합니다.

    Args:
        sample: QualitySample을 반환하는 코루틴 함수. 연결되지 않은 상태면 None을 반환
        apply: 변경된 EncodingPolicy를 실제 인코딩에 적용하는 동기 함수
        config: 조절 임계값/배수 설정

    Examples:
        >>> controller = AdaptiveQualityController(sampler, apply_policy)
        >>> controller.start()
        >>> await controller.stop()
    """

    def __init__(
        self,
        sample: Callable[[], Awaitable[Optional[QualitySample]]],
        apply: Callable[[EncodingPolicy], Any],
        config: QualityConfig = quality_config,
    ):
        self._sample = sample
        self._apply = apply
        self.config = config
        self.policy = EncodingPolicy.from_config(config)
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def evaluate(self, loss_ratio: float) -> int:
        """손실률에 따른 다음 비트레이트 상한을 계산합니다 (상태 변경 없음)."""
        current = self.policy.max_bitrate
        if loss_ratio > self.config.HIGH_LOSS_THRESHOLD:
            return round(max(self.config.MIN_BITRATE, current * self.config.DECREASE_FACTOR))
        if loss_ratio < self.config.LOW_LOSS_THRESHOLD and current < self.config.MAX_BITRATE:
            return round(min(self.config.MAX_BITRATE, current * self.config.INCREASE_FACTOR))
        return current

    async def tick(self) -> Optional[int]:
        """한 번 샘플링하고 필요하면 비트레이트를 조절합니다.

        Returns:
            Optional[int]: 변경된 비트레이트. 변경이 없으면 None
        """
        sample = await self._sample()
        if sample is None:
            return None

        new_bitrate = self.evaluate(sample.loss_ratio)
        if new_bitrate == self.policy.max_bitrate:
            return None

        logger.info(
            f"[Quality] 손실률 {sample.loss_ratio:.1%} → 비트레이트 "
            f"{self.policy.max_bitrate // 1000} → {new_bitrate // 1000} kbps"
        )
        self.policy.max_bitrate = new_bitrate
        self._apply(self.policy)
        return new_bitrate

    def start(self) -> None:
        """조절 루프를 시작합니다. 현재 정책을 즉시 한 번 적용합니다."""
        if self.running:
            return
        self._apply_initial()
        self._task = asyncio.create_task(self._loop())
        logger.info(f"[Quality] 적응형 화질 조절 시작 ({self.config.TICK_INTERVAL}초 주기)")

    async def stop(self) -> None:
        """조절 루프를 중지합니다. 여러 번 호출해도 안전합니다."""
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        if task is not asyncio.current_task():
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("[Quality] 적응형 화질 조절 중지")

    def _apply_initial(self) -> None:
        try:
            self._apply(self.policy)
        except Exception as e:
            logger.warning(f"[Quality] 초기 인코딩 적용 실패: {e}")

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.TICK_INTERVAL)
            try:
                await self.tick()
            except Exception as e:
                logger.warning(f"[Quality] 화질 조절 중 오류: {e}")
