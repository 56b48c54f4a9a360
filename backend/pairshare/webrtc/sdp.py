"""SDP 후처리 모듈.

offer SDP를 파싱된 구조(세션 라인 + 미디어 섹션)로 다룬 뒤, 화면 공유에 맞게
대역폭/코덱/프레임레이트 설정을 조정합니다. 문자열 치환 대신 m= 섹션 단위로
수정하므로 candidate 등 다른 라인은 순서 그대로 보존됩니다.

적용 내용 (video 섹션만):
    - 기존 b=AS / b=CT / b=TIAS 제거 후 b=AS, b=TIAS 한 쌍 추가
    - 선호 코덱(VP9 → H264)의 payload type을 m= 라인 앞쪽으로 재배치 (RTX 포함)
    - 코덱 fmtp에 x-google-{min,max,start}-bitrate, max-fr/max-fs 또는 max-fps 추가

같은 설정으로 두 번 적용해도 결과가 같습니다.

Examples:
    >>> tuning = SdpTuning(max_bitrate_kbps=8000, max_framerate=60)
    >>> tuned = apply_sdp_tuning(offer.sdp, tuning)
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from aiortc import RTCSessionDescription

from .config import QualityConfig, quality_config

logger = logging.getLogger(__name__)

CRLF = "\r\n"

# fmtp 파라미터를 조정할 실제 영상 코덱 (rtx/red/ulpfec 제외)
VIDEO_CODECS = ("VP8", "VP9", "H264", "AV1")

# 최대 프레임 크기 (매크로블록 수, 3840x2176)
MAX_FRAME_SIZE = 8160


@dataclass(frozen=True)
class SdpTuning:
    """SDP 조정 값."""
    max_bitrate_kbps: int = 8000
    min_bitrate_kbps: int = 3000
    start_bitrate_kbps: int = 6000
    max_framerate: int = 60
    codec_preference: Tuple[str, ...] = ("VP9", "H264")

    @classmethod
    def from_quality_config(cls, config: QualityConfig = quality_config) -> "SdpTuning":
        return cls(
            max_bitrate_kbps=config.MAX_BITRATE // 1000,
            min_bitrate_kbps=config.MIN_BITRATE // 1000,
            start_bitrate_kbps=config.START_BITRATE // 1000,
            max_framerate=config.MAX_FRAMERATE,
        )


@dataclass
class MediaSection:
    """m= 라인과 그에 속한 라인들."""
    kind: str
    port: str
    proto: str
    formats: List[str]
    lines: List[str] = field(default_factory=list)

    @classmethod
    def from_media_line(cls, line: str) -> "MediaSection":
        parts = line[2:].split()
        return cls(kind=parts[0], port=parts[1], proto=parts[2], formats=parts[3:])

    @property
    def media_line(self) -> str:
        return " ".join([f"m={self.kind}", self.port, self.proto] + self.formats)

    @property
    def mid(self) -> Optional[str]:
        for line in self.lines:
            if line.startswith("a=mid:"):
                return line[len("a=mid:"):]
        return None

    def rtpmap(self) -> Dict[str, str]:
        """payload type → 코덱 이름 (대문자)."""
        codecs = {}
        for line in self.lines:
            if line.startswith("a=rtpmap:"):
                pt, _, encoding = line[len("a=rtpmap:"):].partition(" ")
                codecs[pt] = encoding.split("/")[0].upper()
        return codecs

    def fmtp_index(self, pt: str) -> Optional[int]:
        prefix = f"a=fmtp:{pt} "
        for i, line in enumerate(self.lines):
            if line.startswith(prefix):
                return i
        return None

    def rtx_payloads(self) -> Dict[str, List[str]]:
        """원본 payload type → 해당 RTX payload type 목록."""
        codecs = self.rtpmap()
        mapping: Dict[str, List[str]] = {}
        for pt, name in codecs.items():
            if name != "RTX":
                continue
            index = self.fmtp_index(pt)
            if index is None:
                continue
            params = parse_fmtp_params(self.lines[index].split(" ", 1)[1])
            apt = params.get("apt")
            if apt:
                mapping.setdefault(apt, []).append(pt)
        return mapping

    def to_lines(self) -> List[str]:
        return [self.media_line] + self.lines


@dataclass
class SessionDescriptionModel:
    """파싱된 SDP."""
    session_lines: List[str]
    media: List[MediaSection]

    @classmethod
    def parse(cls, sdp: str) -> "SessionDescriptionModel":
        session_lines: List[str] = []
        media: List[MediaSection] = []
        for line in sdp.replace("\r\n", "\n").split("\n"):
            line = line.strip("\r")
            if not line:
                continue
            if line.startswith("m="):
                media.append(MediaSection.from_media_line(line))
            elif media:
                media[-1].lines.append(line)
            else:
                session_lines.append(line)
        return cls(session_lines=session_lines, media=media)

    def serialize(self) -> str:
        lines = list(self.session_lines)
        for section in self.media:
            lines.extend(section.to_lines())
        return CRLF.join(lines) + CRLF


def parse_fmtp_params(value: str) -> Dict[str, Optional[str]]:
    """'a=b;c=d' 형식의 fmtp 파라미터를 순서를 유지하며 파싱합니다."""
    params: Dict[str, Optional[str]] = {}
    for item in value.split(";"):
        item = item.strip()
        if not item:
            continue
        key, sep, val = item.partition("=")
        params[key.strip()] = val.strip() if sep else None
    return params


def format_fmtp_params(params: Dict[str, Optional[str]]) -> str:
    return ";".join(key if val is None else f"{key}={val}" for key, val in params.items())


def _strip_bandwidth(lines: List[str]) -> List[str]:
    return [line for line in lines if not line.startswith("b=")]


def _insert_bandwidth(section: MediaSection, tuning: SdpTuning) -> None:
    # b= goes after i= / c= per RFC 4566 line order
    insert_at = 0
    for i, line in enumerate(section.lines):
        if line.startswith(("i=", "c=")):
            insert_at = i + 1
        else:
            break
    section.lines[insert_at:insert_at] = [
        f"b=AS:{tuning.max_bitrate_kbps}",
        f"b=TIAS:{tuning.max_bitrate_kbps * 1000}",
    ]


def _prefer_codecs(section: MediaSection, preference: Tuple[str, ...]) -> None:
    codecs = section.rtpmap()
    rtx = section.rtx_payloads()
    ordered: List[str] = []
    for name in preference:
        for pt in section.formats:
            if codecs.get(pt) != name.upper() or pt in ordered:
                continue
            ordered.append(pt)
            for rtx_pt in rtx.get(pt, []):
                if rtx_pt in section.formats and rtx_pt not in ordered:
                    ordered.append(rtx_pt)
    ordered.extend(pt for pt in section.formats if pt not in ordered)
    section.formats = ordered


def _tune_fmtp(section: MediaSection, tuning: SdpTuning) -> None:
    codecs = section.rtpmap()
    for pt in section.formats:
        name = codecs.get(pt)
        if name not in VIDEO_CODECS:
            continue

        index = section.fmtp_index(pt)
        params = parse_fmtp_params(section.lines[index].split(" ", 1)[1]) if index is not None else {}

        params["x-google-min-bitrate"] = str(tuning.min_bitrate_kbps)
        params["x-google-max-bitrate"] = str(tuning.max_bitrate_kbps)
        params["x-google-start-bitrate"] = str(tuning.start_bitrate_kbps)
        if name in ("VP8", "VP9"):
            params["max-fr"] = str(tuning.max_framerate)
            params["max-fs"] = str(MAX_FRAME_SIZE)
        elif name == "H264":
            # frames per 100 seconds
            params["max-fps"] = str(tuning.max_framerate * 100)

        line = f"a=fmtp:{pt} {format_fmtp_params(params)}"
        if index is not None:
            section.lines[index] = line
            continue

        rtpmap_prefix = f"a=rtpmap:{pt} "
        for i, existing in enumerate(section.lines):
            if existing.startswith(rtpmap_prefix):
                section.lines.insert(i + 1, line)
                break
        else:
            section.lines.append(line)


def apply_sdp_tuning(sdp: str, tuning: Optional[SdpTuning] = None) -> str:
    """화면 공유용 SDP 조정을 적용합니다.

    Args:
        sdp (str): 원본 SDP
        tuning (SdpTuning): 조정 값 (기본값: QualityConfig 기반)

    Returns:
        str: 조정된 SDP (CRLF 줄바꿈)
    """
    tuning = tuning or SdpTuning.from_quality_config()
    model = SessionDescriptionModel.parse(sdp)
    model.session_lines = _strip_bandwidth(model.session_lines)

    for section in model.media:
        section.lines = _strip_bandwidth(section.lines)
        if section.kind != "video":
            continue
        _insert_bandwidth(section, tuning)
        _prefer_codecs(section, tuning.codec_preference)
        _tune_fmtp(section, tuning)

    return model.serialize()


def tune_description(description: RTCSessionDescription, tuning: Optional[SdpTuning] = None) -> RTCSessionDescription:
    """RTCSessionDescription에 SDP 조정을 적용한 새 객체를 반환합니다."""
    return RTCSessionDescription(sdp=apply_sdp_tuning(description.sdp, tuning), type=description.type)
