"""Tests for inspection.main: wiring of flow, executor, camera and state machine."""

import time
from concurrent.futures import Future
from unittest.mock import MagicMock

import pytest

from conftest import BLUE, RED, make_score, png_bytes
from config import Config
from inspection.embeddings import EmbeddingStore
from inspection.errors import FrameError, LoadError
from inspection.executor import ExecutorHandle
from inspection.main import InspectionPipeline
from inspection.state_machine import DetectionPhase
from shared.schemas import CaptureResponse, InspectionStep, SessionResponse

TIMEOUT = 5


def done(value=None, error=None) -> Future:
    future = Future()
    if error is not None:
        future.set_exception(error)
    else:
        future.set_result(value)
    return future


def wait_for(predicate, timeout=TIMEOUT):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


def step(step_id="step-1", label="a radiator", number=1, negatives=("a person", "a wall")):
    return InspectionStep(
        step_id=step_id,
        step_number=number,
        total_steps=2,
        target_object={"label": label},
        negative_labels=[{"label": n} for n in negatives],
        detection_threshold=0.5,
        countdown_seconds=1,
    )


@pytest.fixture
def cfg(tmp_path):
    return Config(embeddings_path=str(tmp_path / "missing.json"), isolation="thread")


@pytest.fixture
def store(label_embeddings):
    return EmbeddingStore(label_embeddings)


@pytest.fixture
def client():
    c = MagicMock()
    c.get_session.return_value = SessionResponse(
        session_id="abc", status="active", current_step=step(),
    )
    return c


@pytest.fixture
def camera():
    cam = MagicMock()
    cam.capture_full_resolution_frame.return_value = b"full-res"
    return cam


@pytest.fixture
def executor():
    ex = MagicMock()
    ex.initialize.return_value = done()
    ex.set_active_labels.return_value = done()
    return ex


@pytest.fixture
def pipeline(cfg, executor, camera, client, store, clock, timers):
    return InspectionPipeline(
        cfg, "abc", executor=executor, camera=camera, client=client,
        store=store, clock=clock, timer_factory=timers,
    )


# ─── Preparation ─────────────────────────────────────────────────


class TestPrepare:
    def test_loads_model_and_installs_step(self, pipeline, executor, cfg):
        config = pipeline.prepare()
        assert config.target_label == "a radiator"

        kwargs = executor.initialize.call_args.kwargs
        assert kwargs["model_id"] == cfg.vision_model_id
        assert kwargs["labels"] == ["a radiator", "a person", "a wall"]
        assert set(kwargs["label_embeddings"]) == {"a radiator", "a person", "a wall"}
        executor.set_active_labels.assert_called_once_with(config)
        assert pipeline.machine.config is config
        assert pipeline.machine.phase is DetectionPhase.IDLE

    def test_completed_session_runs_nothing(self, pipeline, client, executor):
        client.get_session.return_value = SessionResponse(session_id="abc", status="completed")
        assert pipeline.run() == 0
        executor.initialize.assert_not_called()

    def test_load_failure_exits_nonzero(self, pipeline, executor):
        executor.initialize.return_value = done(error=LoadError("no weights"))
        assert pipeline.run() == 1
        executor.shutdown.assert_called_once()


# ─── Frame routing ───────────────────────────────────────────────


class TestFrameRouting:
    def test_frames_ignored_before_start(self, pipeline, executor):
        pipeline.prepare()
        pipeline.process_frame(b"frame")
        executor.classify_frame.assert_not_called()

    def test_dropped_frame(self, pipeline, executor):
        pipeline.prepare()
        pipeline.machine.start()
        executor.classify_frame.return_value = None
        pipeline.process_frame(b"frame")
        assert pipeline.machine.last_score is None

    def test_score_feeds_machine(self, pipeline, executor):
        pipeline.prepare()
        pipeline.machine.start()
        executor.classify_frame.return_value = done(make_score(0.9))
        pipeline.process_frame(b"frame")
        assert pipeline.machine.phase is DetectionPhase.SUSTAINING

    def test_frame_error_skips(self, pipeline, executor):
        pipeline.prepare()
        pipeline.machine.start()
        executor.classify_frame.return_value = done(error=FrameError("bad jpeg"))
        pipeline.process_frame(b"frame")
        assert pipeline.machine.phase is DetectionPhase.DETECTING
        assert pipeline.machine.last_score is None

    def test_load_error_fails_machine(self, pipeline, executor):
        pipeline.prepare()
        pipeline.machine.start()
        executor.classify_frame.return_value = done(error=LoadError("worker exited"))
        pipeline.process_frame(b"frame")
        assert pipeline.machine.phase is DetectionPhase.ERROR

    def test_result_from_previous_label_set_ignored(self, pipeline, client, executor):
        # Consecutive steps share the target label; only the negatives change
        pipeline.prepare()
        pipeline.machine.start()
        pending = Future()
        executor.classify_frame.return_value = pending
        pipeline.process_frame(b"frame")

        client.capture_step.return_value = CaptureResponse(
            success=True, image_id="img-1",
            next_step=step("step-2", "a radiator", 2, negatives=("a floor",)),
        )
        assert pipeline._on_capture(b"full-res", 0.9) is not None

        pending.set_result(make_score(0.9))
        assert pipeline.machine.phase is DetectionPhase.DETECTING
        assert pipeline.machine.last_score is None

    def test_result_after_label_swap_accepted(self, pipeline, client, executor):
        pipeline.prepare()
        pipeline.machine.start()
        client.capture_step.return_value = CaptureResponse(
            success=True, image_id="img-1",
            next_step=step("step-2", "a radiator", 2, negatives=("a floor",)),
        )
        pipeline._on_capture(b"full-res", 0.9)

        executor.classify_frame.return_value = done(make_score(0.9))
        pipeline.process_frame(b"frame")
        assert pipeline.machine.phase is DetectionPhase.SUSTAINING


# ─── Capture hand-off ────────────────────────────────────────────


class TestCaptureHandOff:
    def test_next_step_labels_installed(self, pipeline, client, executor):
        pipeline.prepare()
        client.capture_step.return_value = CaptureResponse(
            success=True, image_id="img-1", next_step=step("step-2", "a floor", 2),
        )
        next_config = pipeline._on_capture(b"full-res", 0.9)
        assert next_config.target_label == "a floor"
        executor.set_active_labels.assert_called_with(next_config)

    def test_label_swap_failure_is_fatal(self, pipeline, client, executor):
        pipeline.prepare()
        client.capture_step.return_value = CaptureResponse(
            success=True, image_id="img-1", next_step=step("step-2", "a floor", 2),
        )
        executor.set_active_labels.return_value = done(error=LoadError("worker exited"))
        assert pipeline._on_capture(b"full-res", 0.9) is None
        assert pipeline.machine.phase is DetectionPhase.ERROR

    def test_unknown_next_step_label_is_fatal(self, pipeline, client, executor, clock, timers):
        pipeline.prepare()
        pipeline.machine.start()
        client.capture_step.return_value = CaptureResponse(
            success=True, image_id="img-1", next_step=step("step-2", "a boiler", 2),
        )
        executor.classify_frame.return_value = done(make_score(0.9))

        pipeline.process_frame(b"frame")
        clock.advance(1000)
        pipeline.process_frame(b"frame")
        assert pipeline.machine.phase is DetectionPhase.COUNTDOWN
        timers.fire()
        timers.fire()

        assert pipeline.machine.phase is DetectionPhase.ERROR
        assert "a boiler" in pipeline.machine.error
        assert client.capture_step.call_count == 1
        # No further frames are classified against the old step
        executor.classify_frame.reset_mock()
        pipeline.process_frame(b"frame")
        executor.classify_frame.assert_not_called()

    def test_rejected_upload_resumes_same_step(self, pipeline, client, clock, timers, executor):
        pipeline.prepare()
        pipeline.machine.start()
        client.capture_step.return_value = CaptureResponse(
            success=False, image_id="", message="Image too dark",
        )
        executor.classify_frame.return_value = done(make_score(0.9))

        pipeline.process_frame(b"frame")
        clock.advance(1000)
        pipeline.process_frame(b"frame")
        timers.fire()
        timers.fire()

        assert pipeline.machine.phase is DetectionPhase.DETECTING
        assert pipeline.machine.config.target_label == "a radiator"
        assert pipeline.flow.current_step.step_id == "step-1"


# ─── End to end (thread-isolated worker, fake encoder) ───────────


class TestEndToEnd:
    def test_two_step_session(self, cfg, camera, client, store, clock, timers, encoder_factory):
        second = step("step-2", "a wall", 2, negatives=("a radiator", "a person"))
        client.capture_step.side_effect = [
            CaptureResponse(success=True, image_id="img-1", next_step=second),
            CaptureResponse(success=True, image_id="img-2"),
        ]
        executor = ExecutorHandle(isolation="thread", encoder_factory=encoder_factory)
        pipeline = InspectionPipeline(
            cfg, "abc", executor=executor, camera=camera, client=client,
            store=store, clock=clock, timer_factory=timers,
        )
        machine = pipeline.machine

        def classify(frame):
            previous = machine.last_score
            pipeline.process_frame(frame)
            assert wait_for(lambda: machine.last_score is not previous)

        try:
            pipeline.prepare()
            machine.start()

            # Step 1: the radiator (red frames)
            classify(png_bytes(RED))
            assert machine.phase is DetectionPhase.SUSTAINING
            clock.advance(1000)
            classify(png_bytes(RED))
            assert machine.phase is DetectionPhase.COUNTDOWN
            timers.fire()
            timers.fire()
            assert machine.phase is DetectionPhase.DETECTING
            assert machine.config.target_label == "a wall"

            # Step 2: the wall (blue frames); red no longer matches
            classify(png_bytes(RED))
            assert machine.phase is DetectionPhase.DETECTING
            classify(png_bytes(BLUE))
            clock.advance(1000)
            classify(png_bytes(BLUE))
            timers.fire()
            timers.fire()
            assert machine.phase is DetectionPhase.COMPLETE
        finally:
            executor.shutdown(timeout=2)

        assert client.capture_step.call_count == 2
        assert pipeline.flow.captured_steps == ["step-1", "step-2"]
        assert encoder_factory.calls == 1
