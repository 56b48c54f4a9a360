import pytest

from conftest import FakeTrack
from pairshare.errors import CapturePermissionDenied, CaptureSourceUnavailable
from pairshare.webrtc.capture import ScreenCapture
from pairshare.webrtc.quality import CAPTURE_PROFILES


class FakePlayer:
    def __init__(self, video=None, audio=None) -> None:
        self.video = video
        self.audio = audio


def _raising(error):
    def factory(*args, **kwargs):
        raise error
    return factory


def test_open_passes_profile_options_and_returns_tracks():
    calls = []
    video = FakeTrack()

    def factory(device, format=None, options=None):
        calls.append((device, format, options))
        return FakePlayer(video=video)

    capture = ScreenCapture(device=":1", format="x11grab", player_factory=factory)
    tracks = capture.open(CAPTURE_PROFILES["medium"])

    assert tracks == (video, None)
    assert calls == [(":1", "x11grab", {"video_size": "1280x720", "framerate": "30"})]

    capture.close()
    capture.close()
    assert video.stopped


def test_permission_error_maps_to_capture_permission_denied():
    capture = ScreenCapture(device=":1", format="x11grab", player_factory=_raising(PermissionError("denied")))
    with pytest.raises(CapturePermissionDenied):
        capture.open()


def test_missing_device_maps_to_capture_source_unavailable():
    capture = ScreenCapture(device=":9", format="x11grab", player_factory=_raising(OSError("no display")))
    with pytest.raises(CaptureSourceUnavailable):
        capture.open()


def test_player_without_video_is_unavailable():
    audio = FakeTrack("audio")
    capture = ScreenCapture(device=":1", format="x11grab", player_factory=lambda *a, **k: FakePlayer(audio=audio))
    with pytest.raises(CaptureSourceUnavailable):
        capture.open()
    assert audio.stopped
