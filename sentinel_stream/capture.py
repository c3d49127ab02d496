"""Capture sources: where raw int16 mono frames come from.

- DeviceCaptureSource: live input via PortAudio (sounddevice)
- FileCaptureSource: decoded audio file via soundfile

どちらもデバイス/ファイル本来のサンプルレートをそのまま採用し、リサンプルはしない。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

import numpy as np
import soundfile as sf

from .error_codes import ErrorCode
from .exceptions import StreamerError
from .pcm import frame_size_for_rate, mix_to_mono

logger = logging.getLogger(__name__)

CHANNELS = 1
_DTYPE = "int16"


class CaptureError(StreamerError):
    """Base class for capture errors."""

    error_code = ErrorCode.CAPTURE_READ_FAILED


class CaptureOpenError(CaptureError):
    """Raised when the input device or file cannot be opened."""

    error_code = ErrorCode.CAPTURE_OPEN_FAILED


class CaptureReadError(CaptureError):
    """Raised on a non-recoverable read failure."""

    error_code = ErrorCode.CAPTURE_READ_FAILED


class EndOfInput(Exception):
    """Raised by sources with a finite input when nothing is left."""


@dataclass(frozen=True)
class FrameRead:
    """One next_frame() result."""

    samples: np.ndarray
    overflowed: bool = False


class CaptureSource(Protocol):
    """Frame producer driven by the streaming loop."""

    def open(self, preferred_device: str | None = None) -> tuple[float, int]: ...

    def next_frame(self) -> FrameRead: ...

    def close(self) -> None: ...


def _import_sounddevice() -> Any:
    """PortAudio が無い環境（CI等）でも import だけは通るよう遅延import."""
    try:
        import sounddevice  # type: ignore

        return sounddevice
    except (ImportError, OSError) as exc:
        raise CaptureOpenError(f"PortAudio is not available: {exc}") from exc


def _device_arg(device: str | None) -> int | str | None:
    """Device index as int, name substring as str, empty -> default device."""
    if device is None:
        return None
    device = device.strip()
    if not device:
        return None
    if device.isdigit():
        return int(device)
    return device


class DeviceCaptureSource:
    """Blocking capture from a PortAudio input device."""

    def __init__(self) -> None:
        self._sd: Any = None
        self._stream: Any = None
        self.sample_rate: float | None = None
        self.frame_size: int | None = None

    def open(self, preferred_device: str | None = None) -> tuple[float, int]:
        sd = _import_sounddevice()
        device = _device_arg(preferred_device)
        try:
            info = sd.query_devices(device, kind="input")
        except (ValueError, sd.PortAudioError) as exc:
            raise CaptureOpenError(
                f"Input device {preferred_device or '(default)'} not found: {exc}"
            ) from exc

        sample_rate = float(info["default_samplerate"])
        frame_size = frame_size_for_rate(sample_rate)
        logger.info(
            "Using input device %r, sample rate: %.0f Hz, frame: %d samples",
            info.get("name"),
            sample_rate,
            frame_size,
        )
        try:
            stream = sd.InputStream(
                device=device,
                channels=CHANNELS,
                samplerate=sample_rate,
                blocksize=frame_size,
                dtype=_DTYPE,
            )
        except (ValueError, sd.PortAudioError) as exc:
            raise CaptureOpenError(f"Failed to open input stream: {exc}") from exc
        try:
            stream.start()
        except BaseException as exc:
            try:
                stream.close()
            except Exception as close_exc:  # noqa: BLE001
                logger.debug("input stream close failed: %s", close_exc)
            if isinstance(exc, (ValueError, sd.PortAudioError)):
                raise CaptureOpenError(f"Failed to start input stream: {exc}") from exc
            raise

        self._sd = sd
        self._stream = stream
        self.sample_rate = sample_rate
        self.frame_size = frame_size
        return sample_rate, frame_size

    def next_frame(self) -> FrameRead:
        if self._stream is None or self.frame_size is None:
            raise CaptureReadError("capture source is not open")
        try:
            data, overflowed = self._stream.read(self.frame_size)
        except self._sd.PortAudioError as exc:
            raise CaptureReadError(f"stream read error: {exc}") from exc
        return FrameRead(samples=mix_to_mono(np.asarray(data)), overflowed=bool(overflowed))

    def close(self) -> None:
        stream = self._stream
        self._stream = None
        if stream is None:
            return
        try:
            stream.stop()
        except Exception as exc:  # noqa: BLE001
            logger.debug("input stream stop failed: %s", exc)
        try:
            stream.close()
        except Exception as exc:  # noqa: BLE001
            logger.debug("input stream close failed: %s", exc)


class FileCaptureSource:
    """Frames decoded from an audio file (bulk read, finite)."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._file: sf.SoundFile | None = None
        self.sample_rate: float | None = None
        self.frame_size: int | None = None

    def open(self, preferred_device: str | None = None) -> tuple[float, int]:
        # preferred_device はファイル入力では無視する
        try:
            handle = sf.SoundFile(str(self.path))
        except (RuntimeError, OSError) as exc:
            raise CaptureOpenError(f"Failed to open {self.path}: {exc}") from exc
        sample_rate = float(handle.samplerate)
        try:
            frame_size = frame_size_for_rate(sample_rate)
        except ValueError as exc:
            handle.close()
            raise CaptureOpenError(str(exc)) from exc
        logger.info(
            "Using source file %s, sample rate: %.0f Hz, channels: %d",
            self.path,
            sample_rate,
            handle.channels,
        )
        self._file = handle
        self.sample_rate = sample_rate
        self.frame_size = frame_size
        return sample_rate, frame_size

    def next_frame(self) -> FrameRead:
        if self._file is None or self.frame_size is None:
            raise CaptureReadError("capture source is not open")
        try:
            block = self._file.read(self.frame_size, dtype=_DTYPE, always_2d=True)
        except (RuntimeError, OSError) as exc:
            raise CaptureReadError(f"file read error: {exc}") from exc
        if len(block) == 0:
            raise EndOfInput(str(self.path))
        samples = mix_to_mono(block)
        if len(samples) < self.frame_size:
            # 最終フレームは無音で埋めてフレーム長を一定に保つ
            samples = np.pad(samples, (0, self.frame_size - len(samples)))
        return FrameRead(samples=samples)

    def close(self) -> None:
        handle = self._file
        self._file = None
        if handle is not None:
            handle.close()


def list_input_devices() -> list[dict[str, Any]]:
    """Input-capable devices as reported by PortAudio."""
    sd = _import_sounddevice()
    devices = []
    for index, info in enumerate(sd.query_devices()):
        if int(info.get("max_input_channels", 0)) <= 0:
            continue
        devices.append(
            {
                "index": index,
                "name": info.get("name"),
                "default_samplerate": float(info.get("default_samplerate", 0.0)),
                "max_input_channels": int(info.get("max_input_channels", 0)),
            }
        )
    return devices


def probe_sample_rate(
    preferred_device: str | None = None, source_file: Path | None = None
) -> float:
    """Sample rate the capture would adopt, without opening a stream."""
    if source_file is not None:
        try:
            return float(sf.info(str(source_file)).samplerate)
        except (RuntimeError, OSError) as exc:
            raise CaptureOpenError(f"Failed to probe {source_file}: {exc}") from exc
    sd = _import_sounddevice()
    try:
        info = sd.query_devices(_device_arg(preferred_device), kind="input")
    except (ValueError, sd.PortAudioError) as exc:
        raise CaptureOpenError(
            f"Input device {preferred_device or '(default)'} not found: {exc}"
        ) from exc
    return float(info["default_samplerate"])
