"""FFmpeg command building for pipe-to-pipe streaming transcodes."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, Literal

import logging


log = logging.getLogger(__name__)

VideoMode = Literal["reencode", "copy"]

# Fragmented MP4: playable while still being written, no index at end of file
_MOVFLAGS = "frag_keyframe+empty_moov+default_base_moof"

# Quality presets -> CRF values (lower = higher quality)
_QUALITY_CRF: dict[str, int] = {"high": 20, "medium": 26, "low": 32}

_X264_PRESETS = (
    "ultrafast",
    "superfast",
    "veryfast",
    "faster",
    "fast",
    "medium",
    "slow",
    "slower",
    "veryslow",
)
_AUDIO_SAMPLE_RATES = (44100, 48000)
_GOP_SIZE = 60

# Module state
_load_settings: Callable[[], dict[str, Any]] = dict


def init(load_settings: Callable[[], dict[str, Any]]) -> None:
    """Initialize module with settings loader."""
    global _load_settings
    _load_settings = load_settings


def get_settings() -> dict[str, Any]:
    """Get current settings."""
    return _load_settings()


# ===========================================================================
# Argument Builders
# ===========================================================================


def _build_video_args(*, video_mode: VideoMode, quality: str, preset: str) -> list[str]:
    """Build video codec args."""
    if video_mode == "copy":
        return ["-c:v", "copy"]
    if preset not in _X264_PRESETS:
        log.warning("Unknown x264 preset %r, using veryfast", preset)
        preset = "veryfast"
    crf = _QUALITY_CRF.get(quality, _QUALITY_CRF["high"])
    return [
        "-c:v",
        "libx264",
        "-preset",
        preset,
        "-crf",
        str(crf),
        "-pix_fmt",
        "yuv420p",
        "-g",
        str(_GOP_SIZE),
    ]


def _build_audio_args(*, codec: str, bitrate: str, channels: int, sample_rate: int) -> list[str]:
    """Build audio codec args (applied to every mapped audio track)."""
    if codec == "copy":
        return ["-c:a", "copy"]
    rate = str(sample_rate) if sample_rate in _AUDIO_SAMPLE_RATES else "48000"
    args = ["-c:a", codec, "-b:a", bitrate]
    if channels > 0:
        args.extend(["-ac", str(channels)])
    args.extend(["-ar", rate])
    return args


def build_pipe_ffmpeg_cmd(
    ffmpeg_path: str = "ffmpeg",
    video_mode: VideoMode = "reencode",
    quality: str = "high",
    preset: str = "veryfast",
    audio_codec: str = "aac",
    audio_bitrate: str = "192k",
    audio_channels: int = 2,
    audio_sample_rate: int = 48000,
    start_offset: float = 0.0,
    all_audio: bool = True,
    loglevel: str = "error",
) -> list[str]:
    """Build ffmpeg command reading stdin and writing fragmented MP4 to stdout."""
    cmd = [
        ffmpeg_path,
        "-hide_banner",
        "-loglevel",
        loglevel,
        "-fflags",
        "+genpts",
    ]
    if start_offset > 0:
        cmd.extend(["-ss", f"{start_offset:g}"])
    cmd.extend(["-i", "pipe:0"])

    # First video stream, plus every audio track (or just the first)
    cmd.extend(["-map", "0:v:0", "-map", "0:a?" if all_audio else "0:a:0?"])
    cmd.extend(_build_video_args(video_mode=video_mode, quality=quality, preset=preset))
    cmd.extend(
        _build_audio_args(
            codec=audio_codec,
            bitrate=audio_bitrate,
            channels=audio_channels,
            sample_rate=audio_sample_rate,
        )
    )

    cmd.extend(["-movflags", _MOVFLAGS, "-f", "mp4", "pipe:1"])
    return cmd


def get_transcode_cmd() -> list[str]:
    """Build the deployment's transcode command from current settings."""
    settings = get_settings()
    video_mode = settings.get("video_mode", "reencode")
    if video_mode not in ("reencode", "copy"):
        log.warning("Unknown video_mode %r, using reencode", video_mode)
        video_mode = "reencode"
    return build_pipe_ffmpeg_cmd(
        ffmpeg_path=settings.get("ffmpeg_path") or "ffmpeg",
        video_mode=video_mode,
        quality=settings.get("quality", "high"),
        preset=settings.get("x264_preset", "veryfast"),
        audio_codec=settings.get("audio_codec", "aac"),
        audio_bitrate=settings.get("audio_bitrate", "192k"),
        audio_channels=int(settings.get("audio_channels", 2)),
        audio_sample_rate=int(settings.get("audio_sample_rate", 48000)),
        start_offset=float(settings.get("start_offset", 0.0)),
        all_audio=bool(settings.get("all_audio", True)),
        loglevel=settings.get("ffmpeg_loglevel", "error"),
    )
