import pytest

from pairshare.webrtc.quality import (
    AdaptiveQualityController,
    OutboundLossSampler,
    QualitySample,
    select_capture_profile,
)


class ScriptedSamples:
    def __init__(self, *samples) -> None:
        self.samples = list(samples)

    async def __call__(self):
        return self.samples.pop(0) if self.samples else None


def _controller(*samples):
    applied = []
    controller = AdaptiveQualityController(
        ScriptedSamples(*samples),
        lambda policy: applied.append(policy.max_bitrate),
    )
    return controller, applied


@pytest.mark.asyncio
async def test_high_loss_steps_bitrate_down_to_floor():
    controller, applied = _controller(*[QualitySample(loss_ratio=0.15)] * 5)

    results = [await controller.tick() for _ in range(5)]

    assert results == [4_800_000, 3_840_000, 3_072_000, 3_000_000, None]
    assert applied == [4_800_000, 3_840_000, 3_072_000, 3_000_000]
    assert controller.policy.max_bitrate == 3_000_000


@pytest.mark.asyncio
async def test_low_loss_steps_bitrate_up_to_ceiling():
    controller, applied = _controller(*[QualitySample(loss_ratio=0.005)] * 3)

    results = [await controller.tick() for _ in range(3)]

    assert results == [7_800_000, 8_000_000, None]
    assert applied == [7_800_000, 8_000_000]


@pytest.mark.asyncio
async def test_moderate_loss_keeps_bitrate():
    controller, applied = _controller(QualitySample(loss_ratio=0.05), QualitySample(loss_ratio=0.10))

    assert await controller.tick() is None
    assert await controller.tick() is None
    assert applied == []
    assert controller.policy.max_bitrate == 6_000_000


@pytest.mark.asyncio
async def test_missing_sample_is_skipped():
    controller, applied = _controller()
    assert await controller.tick() is None
    assert applied == []


@pytest.mark.asyncio
async def test_start_applies_initial_policy_and_stop_is_idempotent():
    controller, applied = _controller()

    controller.start()
    controller.start()
    assert controller.running
    assert applied == [6_000_000]

    await controller.stop()
    await controller.stop()
    assert not controller.running


@pytest.mark.asyncio
async def test_outbound_loss_sampler_uses_deltas():
    now = [0.0]
    reports = {}

    async def get_stats():
        return reports

    sampler = OutboundLossSampler(get_stats, clock=lambda: now[0])

    reports.update({
        "audio": {"type": "outbound-rtp", "kind": "audio", "packetsSent": 999, "bytesSent": 999},
        "out": {"type": "outbound-rtp", "kind": "video", "packetsSent": 100, "bytesSent": 100_000},
        "remote": {"type": "remote-inbound-rtp", "kind": "video", "packetsLost": 2, "fractionLost": 0.02},
    })
    first = await sampler()
    assert first.loss_ratio == pytest.approx(0.02)

    now[0] = 2.0
    reports["out"] = {"type": "outbound-rtp", "kind": "video", "packetsSent": 300, "bytesSent": 600_000}
    reports["remote"] = {"type": "remote-inbound-rtp", "kind": "video", "packetsLost": 32, "fractionLost": 0.5}
    second = await sampler()

    assert second.loss_ratio == pytest.approx(0.15)
    assert second.throughput_bps == pytest.approx(2_000_000)

    now[0] = 4.0
    third = await sampler()
    # no packets sent in the interval falls back to fractionLost
    assert third.loss_ratio == pytest.approx(0.5)


@pytest.mark.asyncio
async def test_outbound_loss_sampler_without_outbound_report():
    async def get_stats():
        return {"in": {"type": "inbound-rtp", "kind": "video"}}

    assert await OutboundLossSampler(get_stats)() is None


def test_capture_profile_follows_connection_grade():
    assert select_capture_profile("poor").name == "low"
    assert select_capture_profile("fair").name == "medium"
    assert select_capture_profile("good").name == "high"
    assert select_capture_profile(None).video_size == "1920x1080"
