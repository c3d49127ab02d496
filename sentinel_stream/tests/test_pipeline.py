from __future__ import annotations

import numpy as np
import pytest

from sentinel_stream.capture import CaptureOpenError, CaptureReadError, EndOfInput, FrameRead
from sentinel_stream.encoder import (
    EncoderInvocation,
    EncoderSession,
    EncoderSpawnError,
    EncoderWriteError,
)
from sentinel_stream.error_codes import EXIT_CAPTURE, EXIT_ENCODER, EXIT_OK
from sentinel_stream.models import MediaKind, StreamRegistration
from sentinel_stream.pcm import serialize_frame
from sentinel_stream.pipeline import (
    PipelineState,
    SessionOutcome,
    StreamingPipeline,
)
from sentinel_stream.registration import RegistrationRejectedError

FRAME_SIZE = 160
REGISTRATION = StreamRegistration(ssrc=12345, rtp_port=6004)


def _frame(value: int) -> np.ndarray:
    return np.full(FRAME_SIZE, value, dtype=np.int16)


class FakeCapture:
    """Scripted capture: each item is a FrameRead or an exception to raise."""

    def __init__(self, script, sample_rate: float = 8000.0, open_error=None) -> None:
        self._script = list(script)
        self.sample_rate = sample_rate
        self.open_error = open_error
        self.open_calls: list[object] = []
        self.close_calls = 0

    def open(self, preferred_device=None):
        self.open_calls.append(preferred_device)
        if self.open_error is not None:
            raise self.open_error
        return self.sample_rate, FRAME_SIZE

    def next_frame(self) -> FrameRead:
        if not self._script:
            raise EndOfInput("script exhausted")
        item = self._script.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    def close(self) -> None:
        self.close_calls += 1


class FakeEncoder:
    def __init__(self, spawn_error=None, write_error_after=None, wait_rc=0) -> None:
        self.spawn_error = spawn_error
        self.write_error_after = write_error_after
        self.wait_rc = wait_rc
        self.invocations: list[EncoderInvocation] = []
        self.writes: list[bytes] = []
        self.shutdown_calls = 0
        self.wait_calls = 0

    def spawn(self, invocation: EncoderInvocation) -> EncoderSession:
        self.invocations.append(invocation)
        if self.spawn_error is not None:
            raise self.spawn_error
        return EncoderSession(process=object(), command=["ffmpeg"])

    def write_samples(self, session: EncoderSession, data: bytes) -> None:
        if self.write_error_after is not None and len(self.writes) >= self.write_error_after:
            raise EncoderWriteError("stdin write error: Broken pipe")
        self.writes.append(data)

    def wait(self, session: EncoderSession) -> int:
        self.wait_calls += 1
        return self.wait_rc

    def shutdown(self, session: EncoderSession) -> int | None:
        self.shutdown_calls += 1
        return 0


def _factory(registration: StreamRegistration, sample_rate):
    return EncoderInvocation(
        media_kind=MediaKind.AUDIO,
        ssrc=registration.ssrc,
        rtp_host="127.0.0.1",
        rtp_port=registration.rtp_port,
        sample_rate=int(sample_rate) if sample_rate else None,
    )


def _pipeline(capture, encoder, registrar=lambda: REGISTRATION, **kwargs):
    return StreamingPipeline(
        registrar=registrar,
        encoder=encoder,
        invocation_factory=_factory,
        capture=capture,
        **kwargs,
    )


def test_frames_written_in_capture_order() -> None:
    capture = FakeCapture([FrameRead(_frame(i)) for i in range(5)])
    encoder = FakeEncoder()
    pipeline = _pipeline(capture, encoder, preferred_device="USB")

    result = pipeline.run()

    assert result.outcome is SessionOutcome.END_OF_INPUT
    assert result.frames_written == 5
    assert encoder.writes == [serialize_frame(_frame(i)) for i in range(5)]
    assert all(len(w) == 2 * FRAME_SIZE for w in encoder.writes)
    assert capture.open_calls == ["USB"]
    assert capture.close_calls == 1
    assert encoder.shutdown_calls == 1
    assert result.exit_code == EXIT_OK
    assert pipeline.transitions == [
        PipelineState.IDLE,
        PipelineState.REGISTERING,
        PipelineState.CAPTURING,
        PipelineState.TERMINATING,
        PipelineState.CLOSED,
    ]


def test_registration_feeds_invocation() -> None:
    encoder = FakeEncoder()
    _pipeline(FakeCapture([]), encoder).run()
    inv = encoder.invocations[0]
    assert inv.rtp_port == 6004
    assert inv.ssrc == 12345
    assert inv.sample_rate == 8000


def test_ten_consecutive_overflows_are_skipped() -> None:
    script = [FrameRead(_frame(1), overflowed=True) for _ in range(10)]
    script.append(FrameRead(_frame(2)))
    encoder = FakeEncoder()

    result = _pipeline(FakeCapture(script), encoder).run()

    assert result.overflows == 10
    assert result.frames_written == 1
    assert encoder.writes == [serialize_frame(_frame(2))]
    assert result.outcome is SessionOutcome.END_OF_INPUT


def test_overflow_does_not_alter_next_frame() -> None:
    clean = FakeEncoder()
    _pipeline(FakeCapture([FrameRead(_frame(7)), FrameRead(_frame(9))]), clean).run()

    skipped = FakeEncoder()
    _pipeline(
        FakeCapture(
            [FrameRead(_frame(7)), FrameRead(_frame(8), overflowed=True), FrameRead(_frame(9))]
        ),
        skipped,
    ).run()

    assert skipped.writes == clean.writes


def test_overflow_warning_is_throttled(caplog) -> None:
    script = [FrameRead(_frame(0), overflowed=True) for _ in range(5)]
    with caplog.at_level("WARNING", logger="sentinel_stream.pipeline"):
        _pipeline(FakeCapture(script), FakeEncoder(), overflow_log_interval_sec=60).run()
    warnings = [r for r in caplog.records if "overflowed" in r.getMessage()]
    assert len(warnings) == 1


def test_capture_read_error_tears_down() -> None:
    capture = FakeCapture([FrameRead(_frame(1)), CaptureReadError("device gone")])
    encoder = FakeEncoder()

    result = _pipeline(capture, encoder).run()

    assert result.outcome is SessionOutcome.CAPTURE_FAILED
    assert isinstance(result.error, CaptureReadError)
    assert result.exit_code == EXIT_CAPTURE
    assert capture.close_calls == 1
    assert encoder.shutdown_calls == 1


def test_encoder_write_error_tears_down() -> None:
    capture = FakeCapture([FrameRead(_frame(i)) for i in range(5)])
    encoder = FakeEncoder(write_error_after=2)

    result = _pipeline(capture, encoder).run()

    assert result.outcome is SessionOutcome.ENCODER_CLOSED
    assert result.frames_written == 2
    assert result.exit_code == EXIT_ENCODER
    assert capture.close_calls == 1
    assert encoder.shutdown_calls == 1


def test_interrupt_tears_down_cleanly() -> None:
    capture = FakeCapture([FrameRead(_frame(1)), KeyboardInterrupt()])
    encoder = FakeEncoder()
    pipeline = _pipeline(capture, encoder)

    result = pipeline.run()

    assert result.outcome is SessionOutcome.INTERRUPTED
    assert result.exit_code == EXIT_OK
    assert capture.close_calls == 1
    assert encoder.shutdown_calls == 1
    assert pipeline.state is PipelineState.CLOSED


def test_request_stop_ends_loop() -> None:
    encoder = FakeEncoder()
    holder: dict[str, StreamingPipeline] = {}

    class _StoppingCapture(FakeCapture):
        def next_frame(self) -> FrameRead:
            holder["pipeline"].request_stop()
            return FrameRead(_frame(3))

    capture = _StoppingCapture([])
    holder["pipeline"] = _pipeline(capture, encoder)

    result = holder["pipeline"].run()

    assert result.outcome is SessionOutcome.STOPPED
    assert result.frames_written == 1
    assert capture.close_calls == 1


def test_registration_failure_never_opens_capture() -> None:
    def _rejecting():
        raise RegistrationRejectedError(400, "Bad Request", "invalid topic")

    capture = FakeCapture([FrameRead(_frame(1))])
    encoder = FakeEncoder()
    pipeline = _pipeline(capture, encoder, registrar=_rejecting)

    with pytest.raises(RegistrationRejectedError) as excinfo:
        pipeline.run()

    assert "invalid topic" in str(excinfo.value)
    assert capture.open_calls == []
    assert encoder.invocations == []
    assert pipeline.transitions == [
        PipelineState.IDLE,
        PipelineState.REGISTERING,
        PipelineState.CLOSED,
    ]


def test_capture_open_failure_never_spawns_encoder() -> None:
    capture = FakeCapture([], open_error=CaptureOpenError("no device"))
    encoder = FakeEncoder()

    with pytest.raises(CaptureOpenError):
        _pipeline(capture, encoder).run()

    assert encoder.invocations == []
    assert capture.close_calls == 0


def test_spawn_failure_closes_capture() -> None:
    capture = FakeCapture([FrameRead(_frame(1))])
    encoder = FakeEncoder(spawn_error=EncoderSpawnError("ffmpeg not found"))
    pipeline = _pipeline(capture, encoder)

    with pytest.raises(EncoderSpawnError):
        pipeline.run()

    assert capture.close_calls == 1
    assert encoder.shutdown_calls == 0
    assert pipeline.state is PipelineState.CLOSED


def test_passthrough_waits_for_encoder() -> None:
    encoder = FakeEncoder(wait_rc=0)
    result = _pipeline(None, encoder).run()
    assert encoder.wait_calls == 1
    assert encoder.invocations[0].sample_rate is None
    assert result.outcome is SessionOutcome.END_OF_INPUT
    assert encoder.shutdown_calls == 1


def test_passthrough_nonzero_exit_is_encoder_failure() -> None:
    result = _pipeline(None, FakeEncoder(wait_rc=1)).run()
    assert result.outcome is SessionOutcome.ENCODER_CLOSED
    assert result.encoder_returncode == 1
    assert result.exit_code == EXIT_ENCODER


def test_status_callback_sees_start_and_end() -> None:
    updates: list[dict] = []
    capture = FakeCapture([FrameRead(_frame(1)), FrameRead(_frame(1), overflowed=True)])
    _pipeline(capture, FakeEncoder(), status_callback=updates.append).run()

    assert [u["running"] for u in updates] == [True, False]
    assert updates[0]["ssrc"] == 12345
    assert updates[0]["rtp_port"] == 6004
    assert updates[0]["sample_rate"] == 8000.0
    assert updates[-1]["frames_written"] == 1
    assert updates[-1]["overflows"] == 1
    assert updates[-1]["outcome"] == "end_of_input"
    assert updates[-1]["state"] == "closed"


def test_teardown_errors_are_suppressed() -> None:
    class _BadClose(FakeCapture):
        def close(self) -> None:
            super().close()
            raise RuntimeError("close failed")

    class _BadShutdown(FakeEncoder):
        def shutdown(self, session):
            super().shutdown(session)
            raise OSError("already gone")

    capture = _BadClose([FrameRead(_frame(1))])
    encoder = _BadShutdown()

    result = _pipeline(capture, encoder).run()

    assert result.outcome is SessionOutcome.END_OF_INPUT
    assert capture.close_calls == 1
    assert encoder.shutdown_calls == 1


def test_interrupt_while_closing_capture_still_shuts_down_encoder() -> None:
    class _InterruptedClose(FakeCapture):
        def close(self) -> None:
            super().close()
            raise KeyboardInterrupt()

    capture = _InterruptedClose([FrameRead(_frame(1))])
    encoder = FakeEncoder()

    with pytest.raises(KeyboardInterrupt):
        _pipeline(capture, encoder).run()

    assert capture.close_calls == 1
    assert encoder.shutdown_calls == 1
