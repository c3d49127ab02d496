"""ffmpeg encoder/packetizer subprocess.

ネゴシエーション済みの SSRC / RTP ポートから ffmpeg の引数配列を組み立て、
stdin パイプに生PCM (s16le mono) を書き込む。RTP 化・Opus/H.264 エンコードは
すべて ffmpeg 側に任せ、ここでは起動・書き込み・停止（kill の保証）のみを扱う。
"""

from __future__ import annotations

import logging
import subprocess
import threading
from dataclasses import dataclass, replace
from pathlib import Path
from typing import IO, Any, Callable, List, Protocol, Sequence

from .error_codes import ErrorCode
from .exceptions import StreamerError
from .models import MediaKind

logger = logging.getLogger(__name__)
ffmpeg_logger = logging.getLogger("sentinel_stream.ffmpeg")

DEFAULT_BINARY = "ffmpeg"
DEFAULT_SHUTDOWN_TIMEOUT_SEC = 3.0
_STDERR_JOIN_TIMEOUT_SEC = 1.0

# メディア種別ごとに固定の RTP payload type
AUDIO_PAYLOAD_TYPE = 96
VIDEO_PAYLOAD_TYPE = 102


@dataclass(frozen=True)
class LatencyProfile:
    """Low-latency flags (nobuffer / low_delay / zero mux delay)."""

    nobuffer: bool = True
    low_delay: bool = True
    flush_packets: bool = True
    probesize: int = 32
    analyzeduration: int = 0
    muxdelay: int = 0

    def input_args(self) -> List[str]:
        args: List[str] = []
        if self.nobuffer:
            args += ["-fflags", "nobuffer"]
        args += [
            "-probesize",
            str(self.probesize),
            "-analyzeduration",
            str(self.analyzeduration),
        ]
        return args

    def output_args(self) -> List[str]:
        args: List[str] = []
        if self.low_delay:
            args += ["-flags", "low_delay"]
        if self.flush_packets:
            args += ["-flush_packets", "1"]
        args += ["-muxdelay", str(self.muxdelay)]
        return args


@dataclass(frozen=True)
class EncoderProfile:
    """Codec / bitrate / latency settings for one media kind."""

    codec: str
    payload_type: int
    bitrate: str | None = None
    codec_args: tuple[str, ...] = ()
    latency: LatencyProfile | None = None

    def with_bitrate(self, bitrate: str | None) -> "EncoderProfile":
        return replace(self, bitrate=bitrate)


AUDIO_PROFILE = EncoderProfile(
    codec="libopus",
    payload_type=AUDIO_PAYLOAD_TYPE,
    bitrate="64k",
    codec_args=("-vbr", "on", "-compression_level", "10"),
    latency=LatencyProfile(),
)

VIDEO_PROFILE = EncoderProfile(
    codec="libx264",
    payload_type=VIDEO_PAYLOAD_TYPE,
    codec_args=(
        "-pix_fmt",
        "yuv420p",
        "-preset",
        "ultrafast",
        "-tune",
        "zerolatency",
    ),
)

_PROFILES: dict[MediaKind, EncoderProfile] = {
    MediaKind.AUDIO: AUDIO_PROFILE,
    MediaKind.VIDEO: VIDEO_PROFILE,
}


def profile_for(media_kind: MediaKind) -> EncoderProfile:
    return _PROFILES[media_kind]


@dataclass(frozen=True)
class EncoderInvocation:
    """Everything needed to build one ffmpeg command line."""

    media_kind: MediaKind
    ssrc: int
    rtp_host: str
    rtp_port: int
    sample_rate: int | None = None
    channels: int = 1
    input_path: Path | None = None
    realtime_input: bool = False
    url_scheme: str = "rtp"
    ssrc_in_url: bool = False
    ssrc_format: str = "unsigned"
    profile: EncoderProfile | None = None
    binary: str = DEFAULT_BINARY

    def validate(self) -> None:
        if not 0 <= self.ssrc <= 0xFFFFFFFF:
            raise ValueError(f"Invalid ssrc: {self.ssrc}")
        if self.rtp_port <= 0 or self.rtp_port > 65535:
            raise ValueError(f"Invalid rtp_port: {self.rtp_port}")
        if not self.rtp_host:
            raise ValueError("rtp_host must be set")
        if self.channels != 1:
            raise ValueError(f"Only mono input is supported: channels={self.channels}")
        if self.reads_stdin:
            if self.media_kind is not MediaKind.AUDIO:
                raise ValueError("stdin input is raw PCM; video needs input_path")
            if self.sample_rate is None or self.sample_rate <= 0:
                raise ValueError(f"Invalid sample_rate: {self.sample_rate}")
        if self.url_scheme not in {"rtp", "udp"}:
            raise ValueError(f"Unsupported url_scheme: {self.url_scheme}")
        if self.ssrc_format not in {"unsigned", "signed"}:
            raise ValueError(f"Unsupported ssrc_format: {self.ssrc_format}")

    @property
    def reads_stdin(self) -> bool:
        return self.input_path is None

    @property
    def resolved_profile(self) -> EncoderProfile:
        return self.profile or profile_for(self.media_kind)

    def ssrc_arg(self) -> str:
        """SSRC as passed to ffmpeg.

        unsigned: 32bit 値をそのまま 10進表記
        signed: ffmpeg の -ssrc (int) に合わせて int32 として再解釈
        """
        if self.ssrc_format == "signed" and self.ssrc >= 0x80000000:
            return str(self.ssrc - 0x100000000)
        return str(self.ssrc)

    def destination_url(self) -> str:
        host = self.rtp_host
        if ":" in host and not host.startswith("["):
            host = f"[{host}]"
        url = f"{self.url_scheme}://{host}:{self.rtp_port}"
        if self.ssrc_in_url:
            url += f"?ssrc={self.ssrc_arg()}"
        return url


def build_ffmpeg_command(invocation: EncoderInvocation) -> List[str]:
    """Build the ffmpeg argument list for an invocation."""
    invocation.validate()
    profile = invocation.resolved_profile
    audio = invocation.media_kind is MediaKind.AUDIO

    args: List[str] = [invocation.binary, "-hide_banner", "-nostats"]
    if invocation.realtime_input:
        args.append("-re")

    if invocation.reads_stdin:
        if profile.latency is not None:
            args += profile.latency.input_args()
        args += [
            "-f",
            "s16le",
            "-ar",
            str(invocation.sample_rate),
            "-ac",
            str(invocation.channels),
            "-i",
            "pipe:0",
        ]
    else:
        args += ["-i", str(invocation.input_path)]

    if audio:
        args.append("-vn")
        if not invocation.reads_stdin:
            args += ["-map", "0:a:0"]
        args += ["-c:a", profile.codec]
        if profile.bitrate:
            args += ["-b:a", profile.bitrate]
    else:
        args += ["-an", "-map", "0:v:0", "-c:v", profile.codec]
        if profile.bitrate:
            args += ["-b:v", profile.bitrate]
    args += list(profile.codec_args)
    args += ["-payload_type", str(profile.payload_type)]
    if profile.latency is not None:
        args += profile.latency.output_args()
    args += [
        "-ssrc",
        invocation.ssrc_arg(),
        "-f",
        "rtp",
        invocation.destination_url(),
    ]
    return args


def command_to_string(args: Sequence[str]) -> str:
    """配列をスペース区切りの文字列に整形（ログ用）."""
    return " ".join(args)


class EncoderError(StreamerError):
    """Base class for encoder errors."""

    error_code = ErrorCode.ENCODER_EXITED


class EncoderSpawnError(EncoderError):
    """Raised when the encoder process cannot be started."""

    error_code = ErrorCode.ENCODER_SPAWN_FAILED


class EncoderWriteError(EncoderError):
    """Raised when writing to the encoder stdin fails (end of stream)."""

    error_code = ErrorCode.ENCODER_WRITE_FAILED


ProcessRunner = Callable[[Sequence[str], bool], Any]


def _default_process_runner(cmd: Sequence[str], stdin_pipe: bool) -> subprocess.Popen:
    # bufsize=0: 1フレームずつそのままパイプへ（順序とバックプレッシャーを維持）
    return subprocess.Popen(
        list(cmd),
        stdin=subprocess.PIPE if stdin_pipe else subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.PIPE,
        bufsize=0,
    )


def _forward_stderr(stream: IO[bytes], sink: logging.Logger) -> None:
    try:
        for raw in iter(stream.readline, b""):
            line = raw.decode("utf-8", errors="replace").rstrip()
            if line:
                sink.info("%s", line)
    except (OSError, ValueError) as exc:
        sink.debug("stderr forwarding stopped: %s", exc)
    finally:
        try:
            stream.close()
        except OSError:
            pass


@dataclass
class EncoderSession:
    """A running encoder process and its stdin sink."""

    process: Any
    command: List[str]
    stdin: IO[bytes] | None = None
    stderr_thread: threading.Thread | None = None
    closed: bool = False
    returncode: int | None = None
    kill_issued: bool = False

    @property
    def pid(self) -> int | None:
        return getattr(self.process, "pid", None)


class EncoderBackend(Protocol):
    """spawn / write / wait / shutdown capability used by the pipeline."""

    def spawn(self, invocation: EncoderInvocation) -> EncoderSession: ...

    def write_samples(self, session: EncoderSession, data: bytes) -> None: ...

    def wait(self, session: EncoderSession) -> int: ...

    def shutdown(self, session: EncoderSession) -> int | None: ...


class EncoderProcessManager:
    """Lifecycle of the external ffmpeg process."""

    def __init__(
        self,
        process_runner: ProcessRunner | None = None,
        *,
        shutdown_timeout_sec: float = DEFAULT_SHUTDOWN_TIMEOUT_SEC,
        stderr_logger: logging.Logger | None = None,
    ) -> None:
        self._runner: ProcessRunner = process_runner or _default_process_runner
        self._shutdown_timeout = max(0.1, float(shutdown_timeout_sec))
        self._stderr_logger = stderr_logger or ffmpeg_logger

    def spawn(self, invocation: EncoderInvocation) -> EncoderSession:
        try:
            cmd = build_ffmpeg_command(invocation)
        except ValueError as exc:
            raise EncoderSpawnError(f"Invalid encoder invocation: {exc}") from exc

        logger.info(
            "Starting encoder to %s:\n%s",
            invocation.destination_url(),
            command_to_string(cmd),
        )
        try:
            proc = self._runner(cmd, invocation.reads_stdin)
        except OSError as exc:
            raise EncoderSpawnError(f"Failed to start {cmd[0]}: {exc}") from exc

        session = EncoderSession(
            process=proc,
            command=cmd,
            stdin=getattr(proc, "stdin", None) if invocation.reads_stdin else None,
        )
        stderr = getattr(proc, "stderr", None)
        if stderr is not None:
            thread = threading.Thread(
                target=_forward_stderr,
                args=(stderr, self._stderr_logger),
                name="encoder_stderr",
                daemon=True,
            )
            thread.start()
            session.stderr_thread = thread
        logger.info("Encoder started pid=%s", session.pid)
        return session

    def write_samples(self, session: EncoderSession, data: bytes) -> None:
        """Write the whole buffer to the encoder stdin (blocks on a full pipe)."""
        if session.closed or session.stdin is None:
            raise EncoderWriteError("encoder input is closed")
        view = memoryview(data)
        try:
            while view:
                written = session.stdin.write(view)
                if not written:
                    raise EncoderWriteError("stdin write made no progress")
                view = view[written:]
        except (BrokenPipeError, ValueError, OSError) as exc:
            raise EncoderWriteError(f"stdin write error: {exc}") from exc

    def wait(self, session: EncoderSession) -> int:
        """Block until the encoder exits on its own (passthrough input)."""
        rc = session.process.wait()
        session.returncode = rc
        return rc

    def shutdown(self, session: EncoderSession) -> int | None:
        """Close stdin, wait, and kill if a clean exit was not confirmed.

        Runs at most once per session; later calls return the recorded code.
        """
        if session.closed:
            return session.returncode
        session.closed = True
        proc = session.process
        confirmed = False
        try:
            self._close_stdin(session)
            try:
                session.returncode = proc.wait(timeout=self._shutdown_timeout)
                confirmed = True
            except subprocess.TimeoutExpired:
                logger.warning(
                    "Encoder pid=%s did not exit within %.1fs; killing",
                    session.pid,
                    self._shutdown_timeout,
                )
        finally:
            if not confirmed:
                self._kill(session)
            self._join_stderr(session)

        if session.returncode:
            logger.warning(
                "ffmpeg command finished with error: exit %s", session.returncode
            )
        else:
            logger.info("Encoder exited rc=%s", session.returncode)
        return session.returncode

    @staticmethod
    def _close_stdin(session: EncoderSession) -> None:
        stdin = session.stdin
        session.stdin = None
        if stdin is None:
            return
        try:
            stdin.close()
        except (BrokenPipeError, OSError, ValueError) as exc:
            # プロセスが先に終了している場合など。停止処理は続行する
            logger.debug("encoder stdin close failed: %s", exc)

    def _kill(self, session: EncoderSession) -> None:
        proc = session.process
        session.kill_issued = True
        try:
            proc.kill()
        except (ProcessLookupError, OSError) as exc:
            logger.debug("encoder kill failed (already exited?): %s", exc)
        try:
            session.returncode = proc.wait(timeout=self._shutdown_timeout)
        except subprocess.TimeoutExpired:
            logger.error("Encoder pid=%s did not exit after kill", session.pid)

    @staticmethod
    def _join_stderr(session: EncoderSession) -> None:
        thread = session.stderr_thread
        if thread is not None and thread.is_alive():
            thread.join(timeout=_STDERR_JOIN_TIMEOUT_SEC)
