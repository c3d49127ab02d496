"""Streamer configuration.

認証情報・サーバーURL・topic などは固定文字列ではなく、CLI引数と環境変数
(SENTINEL_*) から組み立てて起動時に一括で検証する。
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlparse

from .error_codes import ErrorCode
from .exceptions import StreamerError
from .models import MediaKind

_DEFAULT_SERVER_URL = "http://127.0.0.1:8080"
_DEFAULT_TOPIC = "sentinel_stream_1"
_DEFAULT_FFMPEG = "ffmpeg"
_DEFAULT_AUDIO_BITRATE = "64k"
_DEFAULT_REGISTER_TIMEOUT_SEC = 5.0
_DEFAULT_SHUTDOWN_TIMEOUT_SEC = 3.0

SSRC_FORMATS = ("unsigned", "signed")
URL_SCHEMES = ("rtp", "udp")


class ConfigurationError(StreamerError):
    """Raised when configuration is missing or invalid (before any I/O)."""

    error_code = ErrorCode.CONFIG_INVALID_VALUE


@dataclass
class StreamerConfig:
    """Capture-to-RTP streamer settings."""

    device_id: str = ""
    device_token: str = ""
    server_url: str = _DEFAULT_SERVER_URL
    topic: str = _DEFAULT_TOPIC
    media_kind: MediaKind = MediaKind.AUDIO
    send_media_type: bool = True
    input_device: str | None = None
    source_file: Path | None = None
    register: bool = True
    rtp_host: str | None = None
    rtp_port: int | None = None
    ssrc: int | None = None
    ssrc_format: str = "unsigned"
    url_scheme: str = "rtp"
    ssrc_in_url: bool = False
    ffmpeg_binary: str = _DEFAULT_FFMPEG
    audio_bitrate: str = _DEFAULT_AUDIO_BITRATE
    register_timeout_sec: float = _DEFAULT_REGISTER_TIMEOUT_SEC
    shutdown_timeout_sec: float = _DEFAULT_SHUTDOWN_TIMEOUT_SEC
    status_path: Path | None = None
    dry_run: bool = False

    def validate(self) -> None:
        if self.register:
            if not self.device_id or not self.device_token:
                raise ConfigurationError(
                    "Please set the device id and device token "
                    "(--device-id/--device-token or SENTINEL_DEVICE_ID/SENTINEL_DEVICE_TOKEN)",
                    error_code=ErrorCode.CONFIG_MISSING_CREDENTIALS,
                )
            if not self.topic or not self.topic.strip():
                raise ConfigurationError("topic must be non-empty")
            parsed = urlparse(self.server_url or "")
            if parsed.scheme not in {"http", "https"} or not parsed.hostname:
                raise ConfigurationError(f"Invalid server_url: {self.server_url!r}")
        else:
            if self.rtp_port is None:
                raise ConfigurationError("rtp_port is required when registration is disabled")
        if self.rtp_port is not None and not 1024 <= self.rtp_port <= 65535:
            raise ConfigurationError(f"Invalid rtp_port: {self.rtp_port}")
        if self.ssrc is not None and not 0 <= self.ssrc <= 0xFFFFFFFF:
            raise ConfigurationError(f"Invalid ssrc: {self.ssrc}")
        if self.media_kind is MediaKind.VIDEO and self.source_file is None:
            # ライブ映像キャプチャは非対応。映像はファイル入力のみ
            raise ConfigurationError("video streaming requires --source-file")
        if self.ssrc_format not in SSRC_FORMATS:
            raise ConfigurationError(f"Unsupported ssrc_format: {self.ssrc_format}")
        if self.url_scheme not in URL_SCHEMES:
            raise ConfigurationError(f"Unsupported url_scheme: {self.url_scheme}")
        if not self.ffmpeg_binary:
            raise ConfigurationError("ffmpeg_binary must be set")
        if self.register_timeout_sec <= 0:
            raise ConfigurationError(
                f"Invalid register_timeout_sec: {self.register_timeout_sec}"
            )
        if self.shutdown_timeout_sec <= 0:
            raise ConfigurationError(
                f"Invalid shutdown_timeout_sec: {self.shutdown_timeout_sec}"
            )

    def resolved_rtp_host(self) -> str:
        """RTP destination host; defaults to the control-plane host."""
        if self.rtp_host:
            return self.rtp_host
        host = urlparse(self.server_url or "").hostname
        return host or "127.0.0.1"


def _env_int(name: str, default: int | None) -> int | None:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_str(name: str, default: str) -> str:
    return os.getenv(name, default)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_path(name: str, default: Path | None) -> Path | None:
    raw = os.getenv(name)
    if raw is None:
        return default
    raw = raw.strip()
    if not raw:
        return None
    return Path(raw)
