"""화면 캡처 모듈.

aiortc의 MediaPlayer(ffmpeg)로 데스크톱 화면을 캡처하여 송신용 트랙을 생성합니다.

플랫폼별 기본 입력:
    - Linux: x11grab ($DISPLAY)
    - macOS: avfoundation
    - Windows: gdigrab (desktop)
"""
import logging
import os
import sys
from typing import Callable, Optional, Tuple

from aiortc.contrib.media import MediaPlayer

from ..errors import CapturePermissionDenied, CaptureSourceUnavailable
from .quality import CaptureProfile, CAPTURE_PROFILES

logger = logging.getLogger(__name__)


def default_capture_source() -> Tuple[str, str]:
    """현재 플랫폼의 (device, format) 기본값."""
    if sys.platform.startswith("linux"):
        return os.getenv("DISPLAY", ":0.0"), "x11grab"
    if sys.platform == "darwin":
        return "1:none", "avfoundation"
    if sys.platform.startswith("win"):
        return "desktop", "gdigrab"
    raise CaptureSourceUnavailable(f"Unsupported platform for screen capture: {sys.platform}")


class ScreenCapture:
    """화면 캡처 트랙 생성기.

    Args:
        device: ffmpeg 입력 장치 (기본값: 플랫폼별)
        format: ffmpeg 입력 포맷 (기본값: 플랫폼별)
        player_factory: MediaPlayer 생성 함수 (테스트용 주입)
    """

    def __init__(
        self,
        device: Optional[str] = None,
        format: Optional[str] = None,
        player_factory: Callable[..., MediaPlayer] = MediaPlayer,
    ):
        if device is None or format is None:
            default_device, default_format = default_capture_source()
            device = device or default_device
            format = format or default_format
        self.device = device
        self.format = format
        self._player_factory = player_factory
        self._player = None

    def open(self, profile: CaptureProfile = CAPTURE_PROFILES["high"]):
        """캡처를 시작하고 (video_track, audio_track)을 반환합니다.

        Raises:
            CapturePermissionDenied: 화면 캡처 권한이 없을 때
            CaptureSourceUnavailable: 캡처 장치를 열 수 없을 때
        """
        options = {
            "video_size": profile.video_size,
            "framerate": str(profile.framerate),
        }
        try:
            self._player = self._player_factory(self.device, format=self.format, options=options)
        except PermissionError as e:
            logger.warning(f"[Capture] 화면 캡처 권한 거부: {e}")
            raise CapturePermissionDenied(str(e)) from e
        except OSError as e:
            logger.warning(f"[Capture] 캡처 소스 열기 실패 ({self.format} {self.device}): {e}")
            raise CaptureSourceUnavailable(str(e)) from e

        logger.info(
            f"[Capture] 화면 캡처 시작 - {self.format} {self.device} "
            f"{profile.video_size}@{profile.framerate}"
        )
        if self._player.video is None:
            self.close()
            raise CaptureSourceUnavailable(f"No video stream in {self.format} {self.device}")
        return self._player.video, self._player.audio

    def close(self) -> None:
        player, self._player = self._player, None
        if player is None:
            return
        for track in (player.video, player.audio):
            if track is not None:
                track.stop()
        logger.info("[Capture] 화면 캡처 종료")
