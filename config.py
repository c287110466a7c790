"""Server settings: defaults, settings file, environment overrides."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import json
import logging
import os
import pathlib


log = logging.getLogger(__name__)

APP_DIR = pathlib.Path(__file__).parent
CACHE_DIR = APP_DIR / ".cache"
SERVER_SETTINGS_FILE = CACHE_DIR / "server_settings.json"

DEFAULT_SETTINGS: dict[str, Any] = {
    # Content source
    "torrent": str(APP_DIR / "movie.torrent"),
    "download_dir": str(CACHE_DIR / "downloads"),
    "listen_interfaces": "0.0.0.0:6881,[::]:6881",
    # HTTP server
    "host": "0.0.0.0",
    "port": 3000,
    "log_level": "info",
    # Transcoder
    "ffmpeg_path": "ffmpeg",
    "ffmpeg_loglevel": "error",
    "video_mode": "reencode",
    "quality": "high",
    "x264_preset": "veryfast",
    "audio_codec": "aac",
    "audio_bitrate": "192k",
    "audio_channels": 2,
    "audio_sample_rate": 48000,
    "all_audio": True,
    "start_offset": 0.0,
    # Pipeline
    "chunk_size": 64 * 1024,
}

# env var -> (settings key, parser)
_ENV_OVERRIDES: dict[str, tuple[str, Callable[[str], Any]]] = {
    "TORRENTCAST_TORRENT": ("torrent", str),
    "TORRENTCAST_DOWNLOAD_DIR": ("download_dir", str),
    "TORRENTCAST_HOST": ("host", str),
    "TORRENTCAST_PORT": ("port", int),
    "TORRENTCAST_LOG_LEVEL": ("log_level", str),
    "TORRENTCAST_FFMPEG": ("ffmpeg_path", str),
    "TORRENTCAST_VIDEO_MODE": ("video_mode", str),
    "TORRENTCAST_START_OFFSET": ("start_offset", float),
}


def _read_settings_file() -> dict[str, Any]:
    if not SERVER_SETTINGS_FILE.exists():
        return {}
    try:
        data = json.loads(SERVER_SETTINGS_FILE.read_text())
    except (OSError, json.JSONDecodeError) as e:
        log.warning("Ignoring unreadable settings file %s: %s", SERVER_SETTINGS_FILE, e)
        return {}
    if not isinstance(data, dict):
        log.warning("Ignoring settings file %s: not a JSON object", SERVER_SETTINGS_FILE)
        return {}
    return data


def load_settings() -> dict[str, Any]:
    """Defaults, overlaid by the settings file, overlaid by environment."""
    settings = dict(DEFAULT_SETTINGS)
    settings.update(_read_settings_file())
    for env, (key, parse) in _ENV_OVERRIDES.items():
        value = os.environ.get(env)
        if not value:
            continue
        try:
            settings[key] = parse(value)
        except ValueError:
            log.warning("Ignoring invalid %s=%r", env, value)
    return settings
