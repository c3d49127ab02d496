#!/usr/bin/env python3
"""Capture-to-RTP streamer (device client).

動作フロー:
1. コントロールサーバーに stream を登録し SSRC / RTP ポートを取得
2. 入力デバイス（またはファイル）を開き、デバイス本来のサンプルレートを採用
3. ffmpeg を起動し、20ms ごとの s16le mono PCM を stdin へ書き込む
4. Ctrl+C / SIGTERM / 入力終了 / ffmpeg 終了で停止し、必ず ffmpeg を片付ける

Examples:
    SENTINEL_DEVICE_ID=dev1 SENTINEL_DEVICE_TOKEN=secret \\
        python -m sentinel_stream --server-url http://192.168.1.10:8080

    python -m sentinel_stream --no-register --rtp-host 127.0.0.1 --rtp-port 5004
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Any, List

from pydantic import ValidationError

from .capture import (
    DeviceCaptureSource,
    FileCaptureSource,
    list_input_devices,
    probe_sample_rate,
)
from .config import (
    SSRC_FORMATS,
    URL_SCHEMES,
    ConfigurationError,
    StreamerConfig,
    _env_bool,
    _env_float,
    _env_int,
    _env_path,
    _env_str,
)
from .encoder import (
    EncoderInvocation,
    EncoderProcessManager,
    build_ffmpeg_command,
    command_to_string,
    profile_for,
)
from .error_codes import EXIT_OK
from .exceptions import StreamerError
from .models import MediaKind, StreamRegistration
from .pipeline import Registrar, StreamingPipeline
from .registration import RegistrationClient

logger = logging.getLogger("sentinel_stream")

_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"


def _setup_logging(verbose: bool = False) -> None:
    level_name = "DEBUG" if verbose else os.getenv("LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    log_file = os.getenv("LOG_FILE")

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        log_dir = os.path.dirname(log_file)
        try:
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            handlers.append(logging.FileHandler(log_file))
        except OSError as e:
            print(f"Warning: Could not open log file {log_file}: {e}", file=sys.stderr)
            print("Logging to stdout only", file=sys.stderr)

    logging.basicConfig(level=level, format=_LOG_FORMAT, handlers=handlers)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sentinel-stream",
        description="Stream a local audio input to a media server over RTP",
    )
    parser.add_argument(
        "--device-id", default=_env_str("SENTINEL_DEVICE_ID", "")
    )
    parser.add_argument(
        "--device-token", default=_env_str("SENTINEL_DEVICE_TOKEN", "")
    )
    parser.add_argument(
        "--server-url",
        default=_env_str("SENTINEL_SERVER_URL", StreamerConfig.server_url),
        help="Control-plane base URL (registration endpoint host)",
    )
    parser.add_argument(
        "--topic", default=_env_str("SENTINEL_TOPIC", StreamerConfig.topic)
    )
    parser.add_argument(
        "--media-type",
        choices=[kind.value for kind in MediaKind],
        default=_env_str("SENTINEL_MEDIA_TYPE", MediaKind.AUDIO.value),
    )
    parser.add_argument(
        "--no-media-type",
        dest="send_media_type",
        action="store_false",
        default=_env_bool("SENTINEL_SEND_MEDIA_TYPE", True),
        help="Omit media_type from the registration request",
    )
    parser.add_argument(
        "--input-device",
        default=_env_str("SENTINEL_INPUT_DEVICE", "") or None,
        help="Input device index or name substring (default: system default)",
    )
    parser.add_argument(
        "--source-file",
        type=Path,
        default=_env_path("SENTINEL_SOURCE_FILE", None),
        help="Stream a media file instead of a live input device",
    )
    parser.add_argument(
        "--no-register",
        dest="register",
        action="store_false",
        default=_env_bool("SENTINEL_REGISTER", True),
        help="Skip registration and send to --rtp-host/--rtp-port",
    )
    parser.add_argument(
        "--rtp-host",
        default=_env_str("SENTINEL_RTP_HOST", "") or None,
        help="RTP destination host (default: server URL host)",
    )
    parser.add_argument(
        "--rtp-port", type=int, default=_env_int("SENTINEL_RTP_PORT", None)
    )
    parser.add_argument("--ssrc", type=int, default=_env_int("SENTINEL_SSRC", None))
    parser.add_argument(
        "--ssrc-format",
        choices=list(SSRC_FORMATS),
        default=_env_str("SENTINEL_SSRC_FORMAT", "unsigned"),
    )
    parser.add_argument(
        "--url-scheme",
        choices=list(URL_SCHEMES),
        default=_env_str("SENTINEL_URL_SCHEME", "rtp"),
    )
    parser.add_argument(
        "--ssrc-in-url",
        action="store_true",
        default=_env_bool("SENTINEL_SSRC_IN_URL", False),
        help="Append ?ssrc=<ssrc> to the destination URL",
    )
    parser.add_argument(
        "--ffmpeg",
        dest="ffmpeg_binary",
        default=_env_str("SENTINEL_FFMPEG", StreamerConfig.ffmpeg_binary),
    )
    parser.add_argument(
        "--audio-bitrate",
        default=_env_str("SENTINEL_AUDIO_BITRATE", StreamerConfig.audio_bitrate),
    )
    parser.add_argument(
        "--register-timeout",
        dest="register_timeout_sec",
        type=float,
        default=_env_float(
            "SENTINEL_REGISTER_TIMEOUT_SEC", StreamerConfig.register_timeout_sec
        ),
    )
    parser.add_argument(
        "--shutdown-timeout",
        dest="shutdown_timeout_sec",
        type=float,
        default=_env_float(
            "SENTINEL_SHUTDOWN_TIMEOUT_SEC", StreamerConfig.shutdown_timeout_sec
        ),
        help="Seconds to wait for ffmpeg after closing its input before killing it",
    )
    parser.add_argument(
        "--status-path",
        type=Path,
        default=_env_path("SENTINEL_STATUS_PATH", None),
        help="Write session status JSON to this path",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        default=_env_bool("SENTINEL_DRY_RUN", False),
        help="Print the ffmpeg command and exit",
    )
    parser.add_argument(
        "--list-devices",
        action="store_true",
        help="List input devices and exit",
    )
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser


def _parse_args(argv: list[str] | None = None) -> tuple[StreamerConfig, argparse.Namespace]:
    parser = _build_parser()
    args = parser.parse_args(argv)
    try:
        media_kind = MediaKind(args.media_type)
    except ValueError:
        parser.error(f"invalid media type: {args.media_type!r}")
    cfg = StreamerConfig(
        device_id=args.device_id,
        device_token=args.device_token,
        server_url=args.server_url,
        topic=args.topic,
        media_kind=media_kind,
        send_media_type=args.send_media_type,
        input_device=args.input_device,
        source_file=args.source_file,
        register=args.register,
        rtp_host=args.rtp_host,
        rtp_port=args.rtp_port,
        ssrc=args.ssrc,
        ssrc_format=args.ssrc_format,
        url_scheme=args.url_scheme,
        ssrc_in_url=args.ssrc_in_url,
        ffmpeg_binary=args.ffmpeg_binary,
        audio_bitrate=args.audio_bitrate,
        register_timeout_sec=args.register_timeout_sec,
        shutdown_timeout_sec=args.shutdown_timeout_sec,
        status_path=args.status_path,
        dry_run=args.dry_run,
    )
    return cfg, args


def build_invocation(
    cfg: StreamerConfig, registration: StreamRegistration, sample_rate: float | None
) -> EncoderInvocation:
    """Encoder invocation for one negotiated stream."""
    profile = profile_for(cfg.media_kind)
    if cfg.media_kind is MediaKind.AUDIO:
        profile = profile.with_bitrate(cfg.audio_bitrate or None)
    return EncoderInvocation(
        media_kind=cfg.media_kind,
        ssrc=registration.ssrc,
        rtp_host=cfg.resolved_rtp_host(),
        rtp_port=registration.rtp_port,
        sample_rate=int(round(sample_rate)) if sample_rate else None,
        # 映像はffmpegが直接ファイルを読む（音声ファイルはPCMとしてパイプ経由）
        input_path=cfg.source_file if cfg.media_kind is MediaKind.VIDEO else None,
        realtime_input=cfg.source_file is not None,
        url_scheme=cfg.url_scheme,
        ssrc_in_url=cfg.ssrc_in_url,
        ssrc_format=cfg.ssrc_format,
        profile=profile,
        binary=cfg.ffmpeg_binary,
    )


def _static_registration(cfg: StreamerConfig) -> StreamRegistration:
    # ssrc=0 は ffmpeg 側でランダムに決まる
    try:
        return StreamRegistration(ssrc=cfg.ssrc or 0, rtp_port=cfg.rtp_port)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid static destination: {exc}") from exc


def _build_registrar(cfg: StreamerConfig) -> Registrar:
    if not cfg.register:
        return lambda: _static_registration(cfg)

    client = RegistrationClient(
        server_url=cfg.server_url,
        device_id=cfg.device_id,
        device_token=cfg.device_token,
        timeout_sec=cfg.register_timeout_sec,
    )
    media_kind = cfg.media_kind if cfg.send_media_type else None
    return lambda: client.register(cfg.topic, media_kind)


def _build_capture(cfg: StreamerConfig) -> DeviceCaptureSource | FileCaptureSource | None:
    if cfg.media_kind is MediaKind.VIDEO:
        return None
    if cfg.source_file is not None:
        return FileCaptureSource(cfg.source_file)
    return DeviceCaptureSource()


def _persist_status(path: Path, payload: dict[str, Any]) -> None:
    """外部監視用にセッション状態をJSONで書き出す."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(payload))
    except OSError as exc:
        # 書き込みに失敗しても送出自体は継続する
        logger.warning("Could not write status file %s: %s", path, exc)


def _handle_sigterm(signum: int, frame: Any) -> None:
    # Ctrl+C と同じ停止経路に乗せる
    raise KeyboardInterrupt


def _print_devices() -> None:
    for dev in list_input_devices():
        print(
            f"{dev['index']:>3}: {dev['name']} "
            f"({dev['max_input_channels']} ch, {dev['default_samplerate']:.0f} Hz)"
        )


def _dry_run(cfg: StreamerConfig, registrar: Registrar) -> None:
    registration = registrar()
    sample_rate = None
    if cfg.media_kind is MediaKind.AUDIO:
        sample_rate = probe_sample_rate(cfg.input_device, cfg.source_file)
    args: List[str] = build_ffmpeg_command(build_invocation(cfg, registration, sample_rate))
    print(command_to_string(args))


def main(argv: list[str] | None = None) -> int:
    cfg, args = _parse_args(argv)
    _setup_logging(args.verbose)

    try:
        if args.list_devices:
            _print_devices()
            return EXIT_OK

        cfg.validate()
        registrar = _build_registrar(cfg)
        if cfg.dry_run:
            _dry_run(cfg, registrar)
            return EXIT_OK

        status_callback = None
        if cfg.status_path is not None:
            status_path = cfg.status_path
            status_callback = lambda payload: _persist_status(status_path, payload)  # noqa: E731

        pipeline = StreamingPipeline(
            registrar=registrar,
            encoder=EncoderProcessManager(shutdown_timeout_sec=cfg.shutdown_timeout_sec),
            invocation_factory=lambda reg, rate: build_invocation(cfg, reg, rate),
            capture=_build_capture(cfg),
            preferred_device=cfg.input_device,
            status_callback=status_callback,
        )
        signal.signal(signal.SIGTERM, _handle_sigterm)
        result = pipeline.run()
    except StreamerError as exc:
        logger.error("%s error (%s): %s", exc.category, exc.title, exc)
        return exc.exit_code
    except KeyboardInterrupt:
        logger.info("Interrupted before streaming started")
        return EXIT_OK

    if result.error is not None:
        logger.error("Session ended with %s", result.error)
    return result.exit_code


def run() -> None:
    """Console-script entry point."""
    sys.exit(main())


if __name__ == "__main__":
    run()
