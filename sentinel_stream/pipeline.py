"""Streaming loop: registration -> capture -> encoder stdin, then teardown.

状態遷移: IDLE -> REGISTERING -> CAPTURING -> TERMINATING -> CLOSED
（どの状態からでもエラー時は CLOSED へ直行。再訪はしない）

Teardown always runs in the same order: stop capturing, close the capture
source, shut down the encoder session. Each resource is released once.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from .capture import CaptureError, CaptureSource, EndOfInput
from .encoder import (
    EncoderBackend,
    EncoderInvocation,
    EncoderSession,
    EncoderWriteError,
)
from .error_codes import EXIT_CAPTURE, EXIT_ENCODER, EXIT_OK
from .models import StreamRegistration
from .pcm import serialize_frame

logger = logging.getLogger(__name__)

Registrar = Callable[[], StreamRegistration]
InvocationFactory = Callable[[StreamRegistration, "float | None"], EncoderInvocation]
StatusCallback = Callable[[dict[str, Any]], None]

DEFAULT_OVERFLOW_LOG_INTERVAL_SEC = 5.0


class PipelineState(str, Enum):
    IDLE = "idle"
    REGISTERING = "registering"
    CAPTURING = "capturing"
    TERMINATING = "terminating"
    CLOSED = "closed"


_ALLOWED_TRANSITIONS: dict[PipelineState, set[PipelineState]] = {
    PipelineState.IDLE: {PipelineState.REGISTERING, PipelineState.CLOSED},
    PipelineState.REGISTERING: {PipelineState.CAPTURING, PipelineState.CLOSED},
    PipelineState.CAPTURING: {PipelineState.TERMINATING, PipelineState.CLOSED},
    PipelineState.TERMINATING: {PipelineState.CLOSED},
    PipelineState.CLOSED: set(),
}


class SessionOutcome(str, Enum):
    """Why the capturing state was left."""

    END_OF_INPUT = "end_of_input"
    INTERRUPTED = "interrupted"
    STOPPED = "stopped"
    CAPTURE_FAILED = "capture_failed"
    ENCODER_CLOSED = "encoder_closed"


@dataclass
class SessionResult:
    outcome: SessionOutcome
    registration: StreamRegistration | None = None
    sample_rate: float | None = None
    frames_written: int = 0
    overflows: int = 0
    encoder_returncode: int | None = None
    error: Exception | None = None

    @property
    def exit_code(self) -> int:
        if self.outcome is SessionOutcome.CAPTURE_FAILED:
            return EXIT_CAPTURE
        if self.outcome is SessionOutcome.ENCODER_CLOSED:
            return EXIT_ENCODER
        if self.outcome is SessionOutcome.END_OF_INPUT and self.encoder_returncode:
            return EXIT_ENCODER
        return EXIT_OK


class StreamingPipeline:
    """Single-shot capture-to-encoder session."""

    def __init__(
        self,
        *,
        registrar: Registrar,
        encoder: EncoderBackend,
        invocation_factory: InvocationFactory,
        capture: CaptureSource | None = None,
        preferred_device: str | None = None,
        status_callback: StatusCallback | None = None,
        overflow_log_interval_sec: float = DEFAULT_OVERFLOW_LOG_INTERVAL_SEC,
    ) -> None:
        self._registrar = registrar
        self._encoder = encoder
        self._invocation_factory = invocation_factory
        self._capture = capture
        self._preferred_device = preferred_device
        self._status_callback = status_callback
        self._overflow_log_interval = max(0.0, overflow_log_interval_sec)
        self._overflow_log_next_ts = 0.0
        self._capture_open = False
        self._stop = threading.Event()
        self._state = PipelineState.IDLE
        self.transitions: list[PipelineState] = [PipelineState.IDLE]

    @property
    def state(self) -> PipelineState:
        return self._state

    def request_stop(self) -> None:
        """Leave the capturing loop after the current frame."""
        self._stop.set()

    def _transition(self, new_state: PipelineState) -> None:
        if new_state not in _ALLOWED_TRANSITIONS[self._state]:
            raise RuntimeError(
                f"invalid pipeline transition {self._state.value} -> {new_state.value}"
            )
        logger.debug("pipeline %s -> %s", self._state.value, new_state.value)
        self._state = new_state
        self.transitions.append(new_state)

    def run(self) -> SessionResult:
        """Register, start capture and encoder, stream until termination.

        Startup failures (registration, capture open, encoder spawn) are
        raised after the pipeline moved straight to CLOSED; nothing that was
        acquired is left open.
        """
        self._transition(PipelineState.REGISTERING)
        try:
            registration = self._registrar()
            sample_rate, session = self._start(registration)
        except BaseException:
            self._transition(PipelineState.CLOSED)
            raise

        result = SessionResult(
            outcome=SessionOutcome.STOPPED,
            registration=registration,
            sample_rate=sample_rate,
        )
        self._transition(PipelineState.CAPTURING)
        self._publish(result, running=True)
        try:
            if self._capture is None:
                self._wait_encoder(session, result)
            else:
                self._stream_frames(self._capture, session, result)
        except KeyboardInterrupt:
            logger.info("Interrupted; shutting down")
            result.outcome = SessionOutcome.INTERRUPTED
        finally:
            self._teardown(session, result)
        return result

    def _start(
        self, registration: StreamRegistration
    ) -> tuple[float | None, EncoderSession]:
        sample_rate: float | None = None
        if self._capture is not None:
            sample_rate, _frame_size = self._capture.open(self._preferred_device)
            self._capture_open = True
        try:
            invocation = self._invocation_factory(registration, sample_rate)
            session = self._encoder.spawn(invocation)
        except BaseException:
            self._close_capture()
            raise
        return sample_rate, session

    def _stream_frames(
        self, capture: CaptureSource, session: EncoderSession, result: SessionResult
    ) -> None:
        logger.info("Streaming... Press Ctrl+C to stop.")
        while not self._stop.is_set():
            try:
                frame = capture.next_frame()
            except EndOfInput:
                logger.info("Capture source reached end of input")
                result.outcome = SessionOutcome.END_OF_INPUT
                return
            except CaptureError as exc:
                logger.error("%s", exc)
                result.outcome = SessionOutcome.CAPTURE_FAILED
                result.error = exc
                return

            if frame.overflowed:
                # 取りこぼしたフレームは書かずに次へ（停止もリトライもしない）
                result.overflows += 1
                self._warn_overflow(result.overflows)
                continue

            try:
                self._encoder.write_samples(session, serialize_frame(frame.samples))
            except EncoderWriteError as exc:
                logger.error("%s", exc)
                result.outcome = SessionOutcome.ENCODER_CLOSED
                result.error = exc
                return
            result.frames_written += 1
        result.outcome = SessionOutcome.STOPPED

    def _wait_encoder(self, session: EncoderSession, result: SessionResult) -> None:
        """Passthrough input: the encoder reads its own file; wait for it."""
        rc = self._encoder.wait(session)
        result.encoder_returncode = rc
        if rc == 0:
            result.outcome = SessionOutcome.END_OF_INPUT
        else:
            logger.error("Encoder exited with rc=%s", rc)
            result.outcome = SessionOutcome.ENCODER_CLOSED

    def _warn_overflow(self, count: int) -> None:
        now = time.monotonic()
        if now < self._overflow_log_next_ts:
            return
        self._overflow_log_next_ts = now + self._overflow_log_interval
        logger.warning("Input overflowed; frame skipped (total skipped: %d)", count)

    def _close_capture(self) -> None:
        if not self._capture_open or self._capture is None:
            return
        self._capture_open = False
        try:
            self._capture.close()
        except Exception as exc:  # noqa: BLE001
            logger.warning("capture close failed: %s", exc)

    def _teardown(self, session: EncoderSession, result: SessionResult) -> None:
        self._transition(PipelineState.TERMINATING)
        self._stop.set()
        rc: int | None = None
        try:
            self._close_capture()
        finally:
            try:
                rc = self._encoder.shutdown(session)
            except Exception as exc:  # noqa: BLE001
                logger.warning("encoder shutdown failed: %s", exc)
        if result.encoder_returncode is None:
            result.encoder_returncode = rc
        self._transition(PipelineState.CLOSED)
        self._publish(result, running=False)
        logger.info(
            "Session closed outcome=%s frames=%d overflows=%d encoder_rc=%s",
            result.outcome.value,
            result.frames_written,
            result.overflows,
            result.encoder_returncode,
        )

    def _publish(self, result: SessionResult, *, running: bool) -> None:
        if self._status_callback is None:
            return
        registration = result.registration
        payload: dict[str, Any] = {
            "running": running,
            "state": self._state.value,
            "ssrc": registration.ssrc if registration else None,
            "rtp_port": registration.rtp_port if registration else None,
            "sample_rate": result.sample_rate,
            "frames_written": result.frames_written,
            "overflows": result.overflows,
            "outcome": None if running else result.outcome.value,
            "encoder_returncode": result.encoder_returncode,
            "updated_at_unix_ms": int(time.time() * 1000),
        }
        try:
            self._status_callback(payload)
        except Exception as exc:  # noqa: BLE001
            logger.warning("status callback failed: %s", exc)
