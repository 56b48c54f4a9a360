"""연결 통계 수집 모듈.

전송 계층의 getStats() 결과를 주기적으로 읽어 비트레이트, 패킷 손실, 지연,
연결 품질 등급을 계산합니다. 읽기 전용이며 인코딩 파라미터를 변경하지 않습니다.

품질 등급 기준:
    - excellent: 지연 < 50ms, 손실 < 0.5%, 대역폭 > 4Mbps
    - good: 지연 < 150ms, 손실 < 2%, 대역폭 > 2Mbps
    - fair: 지연 < 300ms, 손실 < 5%, 대역폭 > 1Mbps
    - poor: 그 외
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .config import stats_config

logger = logging.getLogger(__name__)


def grade_connection(latency_ms: float, loss_pct: float, bandwidth_mbps: float) -> str:
    """연결 품질 등급을 계산합니다.

    Examples:
        >>> grade_connection(30, 0.1, 6.0)
        'excellent'
        >>> grade_connection(400, 0.1, 6.0)
        'poor'
    """
    if latency_ms < 50 and loss_pct < 0.5 and bandwidth_mbps > 4:
        return "excellent"
    if latency_ms < 150 and loss_pct < 2 and bandwidth_mbps > 2:
        return "good"
    if latency_ms < 300 and loss_pct < 5 and bandwidth_mbps > 1:
        return "fair"
    return "poor"


def format_bitrate(bps: float) -> str:
    """비트레이트를 사람이 읽기 쉬운 문자열로 변환합니다.

    Examples:
        >>> format_bitrate(2_500_000)
        '2.5 Mbps'
        >>> format_bitrate(640_000)
        '640 Kbps'
    """
    if bps >= 1_000_000:
        return f"{bps / 1_000_000:.1f} Mbps"
    if bps >= 1_000:
        return f"{bps / 1_000:.0f} Kbps"
    return f"{bps:.0f} bps"


@dataclass
class StreamStats:
    """한 번의 샘플링 결과."""
    inbound_bitrate: float = 0.0
    outbound_bitrate: float = 0.0
    rtt_ms: float = 0.0
    packet_loss_pct: float = 0.0
    jitter: float = 0.0
    bandwidth_mbps: float = 0.0
    grade: str = "poor"
    sampled_at: float = 0.0

    def to_dict(self) -> dict:
        return {
            "inboundBitrate": format_bitrate(self.inbound_bitrate),
            "outboundBitrate": format_bitrate(self.outbound_bitrate),
            "rttMs": round(self.rtt_ms, 1),
            "packetLossPct": round(self.packet_loss_pct, 2),
            "jitter": self.jitter,
            "bandwidthMbps": round(self.bandwidth_mbps, 2),
            "grade": self.grade,
        }


def _stat(report, name: str, default=None):
    if isinstance(report, dict):
        return report.get(name, default)
    return getattr(report, name, default)


class StatsSampler:
    """주기적으로 연결 통계를 수집하고 구독자에게 전달합니다.

    리포트 ID별 이전 값을 보관하여 구간 차이(delta)로 비트레이트와 손실률을 계산합니다.
    재협상으로 리포트가 바뀌어도 기록을 초기화하지 않습니다.

    Attributes:
        interval (float): 수집 주기 (초)
        latest (Optional[StreamStats]): 마지막 수집 결과
    """

    def __init__(
        self,
        get_stats: Callable[[], Awaitable[Any]],
        interval: float = stats_config.POLL_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._get_stats = get_stats
        self.interval = interval
        self._clock = clock
        self._history: Dict[str, Dict[str, float]] = {}
        self._subscribers: List[Callable[[StreamStats], Any]] = []
        self._task: Optional[asyncio.Task] = None
        self.latest: Optional[StreamStats] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def subscribe(self, callback: Callable[[StreamStats], Any]) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _delta(self, report_id: str, now: float, **values: float) -> Optional[Dict[str, float]]:
        """이전 값과의 차이를 반환하고 현재 값을 기록합니다. 첫 샘플이면 None."""
        previous = self._history.get(report_id)
        self._history[report_id] = dict(values, time=now)
        if previous is None:
            return None
        return {key: values[key] - previous.get(key, 0.0) for key in values} | {"time": now - previous["time"]}

    async def sample(self) -> StreamStats:
        """통계를 한 번 수집합니다."""
        stats = await self._get_stats()
        reports = list(stats.values()) if hasattr(stats, "values") else list(stats or [])
        now = self._clock()

        result = StreamStats(sampled_at=now)
        lost_total = received_total = 0.0
        rtt_seconds: Optional[float] = None

        for report in reports:
            report_type = _stat(report, "type")
            report_id = str(_stat(report, "id", report_type))

            if report_type == "inbound-rtp":
                delta = self._delta(
                    report_id, now,
                    lost=float(_stat(report, "packetsLost", 0) or 0),
                    received=float(_stat(report, "packetsReceived", 0) or 0),
                )
                if delta is not None:
                    lost_total += max(0.0, delta["lost"])
                    received_total += max(0.0, delta["received"])
                if _stat(report, "kind") in (None, "video"):
                    result.jitter = float(_stat(report, "jitter", 0) or 0)

            elif report_type == "remote-inbound-rtp":
                rtt = _stat(report, "roundTripTime")
                if rtt is not None:
                    rtt_seconds = float(rtt)

            elif report_type == "candidate-pair" and _stat(report, "state") == "succeeded":
                rtt = _stat(report, "currentRoundTripTime")
                if rtt is not None and rtt_seconds is None:
                    rtt_seconds = float(rtt)

            elif report_type == "transport":
                delta = self._delta(
                    report_id, now,
                    received=float(_stat(report, "bytesReceived", 0) or 0),
                    sent=float(_stat(report, "bytesSent", 0) or 0),
                )
                if delta is not None and delta["time"] > 0:
                    result.inbound_bitrate += max(0.0, delta["received"]) * 8 / delta["time"]
                    result.outbound_bitrate += max(0.0, delta["sent"]) * 8 / delta["time"]

        if lost_total + received_total > 0:
            result.packet_loss_pct = lost_total / (lost_total + received_total) * 100
        if rtt_seconds is not None:
            result.rtt_ms = rtt_seconds * 1000
        result.bandwidth_mbps = result.inbound_bitrate / 1_000_000
        result.grade = grade_connection(result.rtt_ms, result.packet_loss_pct, result.bandwidth_mbps)

        self.latest = result
        return result

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())
        logger.debug(f"[Stats] 통계 수집 시작 ({self.interval}초 주기)")

    async def stop(self) -> None:
        """수집 루프를 중지합니다. 여러 번 호출해도 안전합니다."""
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        if task is not asyncio.current_task():
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.debug("[Stats] 통계 수집 중지")

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                stats = await self.sample()
            except Exception as e:
                logger.warning(f"[Stats] 통계 수집 실패: {e}")
                continue
            for callback in list(self._subscribers):
                try:
                    callback(stats)
                except Exception as e:
                    logger.warning(f"[Stats] 구독자 콜백 오류: {e}")
