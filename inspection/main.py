# =============================================================================
# Zero-Shot Inspection - Detector Orchestrator
# =============================================================================
# Entry point for the on-device detector.  Orchestrates the session flow,
# the isolated inference executor, camera capture and the detection state
# machine.  Images never leave the device except for the one full-resolution
# capture per step that is uploaded to the session server.
#
# Flow:
#   1. Fetch the session and build the DetectionConfig for the current step
#   2. Start the inference worker and load CLIP once
#   3. Install the step's target/negative labels
#   4. Classify downscaled camera frames (at most one in flight)
#   5. Feed scores into the state machine: sustain -> countdown -> capture
#   6. Upload the capture, install the next step's labels, repeat
# =============================================================================

import argparse
import logging
import os
import sys
import threading
from concurrent.futures import Future
from typing import Optional

from config import get_config
from inspection.capture import CameraCapture
from inspection.client import SessionClient
from inspection.embeddings import EmbeddingStore
from inspection.errors import FrameError, InspectionError, SetupError
from inspection.executor import ExecutorHandle, LoadingState
from inspection.session import InspectionFlow
from inspection.similarity import DetectionConfig, DetectionScore
from inspection.state_machine import DetectionPhase, DetectionStateMachine, PhaseTransition

logger = logging.getLogger(__name__)

# Phases in which camera frames are classified
_CLASSIFYING_PHASES = (
    DetectionPhase.DETECTING,
    DetectionPhase.SUSTAINING,
    DetectionPhase.COUNTDOWN,
)


def _initial_label_set(config: DetectionConfig):
    vectors = [config.target, *config.negatives]
    return [v.label for v in vectors], {v.label: v.vector.tolist() for v in vectors}


class InspectionPipeline:
    """
    Orchestrator tying together the session flow, inference executor,
    camera and detection state machine.

    Collaborators can be injected; by default they are built from ``config``.

    Args:
        config:     The global Config instance.
        session_id: Inspection session to run.
        executor:   ExecutorHandle owning the inference worker.
        camera:     Frame source with ``start``/``stop``/``open``/``release``
                    and ``capture_full_resolution_frame``.
        client:     SessionClient for the inspection backend.
        store:      EmbeddingStore for labels without inline embeddings.
    """

    def __init__(
        self,
        config,
        session_id: str,
        executor: Optional[ExecutorHandle] = None,
        camera=None,
        client: Optional[SessionClient] = None,
        store: Optional[EmbeddingStore] = None,
        clock=None,
        timer_factory=None,
    ):
        self._config = config
        self._session_id = session_id

        if store is None and os.path.exists(config.embeddings_path):
            store = EmbeddingStore.load(config.embeddings_path)
        elif store is None:
            logger.warning(
                "No label embeddings at %s; steps must carry inline embeddings",
                config.embeddings_path,
            )
        self._store = store

        self._executor = executor or ExecutorHandle(
            isolation=config.isolation,
            logit_scale=config.logit_scale,
            top_k=config.top_k,
        )
        self._camera = camera or CameraCapture(
            camera_index=config.camera_index,
            capture_interval=config.frame_interval_seconds,
            max_width=config.frame_max_width,
            min_size=config.frame_min_size,
        )
        self._client = client or SessionClient(
            server_url=config.server_url,
            timeout=config.request_timeout_seconds,
            max_retries=config.upload_max_retries,
        )
        self._flow = InspectionFlow(
            self._client,
            session_id,
            store=store,
            sustained_ms=config.sustained_ms,
            default_threshold=config.default_threshold,
            default_countdown_seconds=config.countdown_seconds,
        )
        self._machine = DetectionStateMachine(
            frame_source=self._camera,
            capture_handler=self._on_capture,
            clock=clock,
            timer_factory=timer_factory,
            capture_quality=config.capture_quality,
        )
        self._machine.add_listener(self._on_phase_change)
        self._machine.add_countdown_listener(self._on_countdown)
        self._executor.add_progress_listener(self._on_loading_state)

        self._finished = threading.Event()
        # Bumped before every label swap; results from older frames are stale
        self._label_generation = 0

    @property
    def machine(self) -> DetectionStateMachine:
        return self._machine

    @property
    def flow(self) -> InspectionFlow:
        return self._flow

    # -----------------------------------------------------------------
    # Observers
    # -----------------------------------------------------------------

    def _on_loading_state(self, state: LoadingState) -> None:
        if state.error:
            logger.error("Model loading: %s (%s)", state.status, state.error)
        else:
            logger.info("Model loading: %s (%.0f%%)", state.status, state.progress)

    def _on_phase_change(self, transition: PhaseTransition) -> None:
        if transition.current in (DetectionPhase.COMPLETE, DetectionPhase.ERROR):
            self._finished.set()

    def _on_countdown(self, value: int) -> None:
        if value > 0:
            logger.info("Capturing in %d...", value)

    # -----------------------------------------------------------------
    # Frame processing
    # -----------------------------------------------------------------

    def process_frame(self, frame: bytes) -> None:
        """
        Submit one downscaled camera frame for classification.

        Frames arriving outside the detecting phases, or while another
        classification is in flight, are dropped.
        """
        if self._machine.phase not in _CLASSIFYING_PHASES:
            return
        generation = self._label_generation
        future = self._executor.classify_frame(frame)
        if future is None:
            return
        future.add_done_callback(lambda f: self._on_classified(f, generation))

    def _on_classified(self, future: Future, generation: int) -> None:
        try:
            outcome = future.result()
        except FrameError as exc:
            logger.warning("Frame skipped: %s", exc)
            return
        except InspectionError as exc:
            self._machine.fail(str(exc))
            return

        if not isinstance(outcome, DetectionScore):
            logger.debug("Ignoring generic classification result")
            return
        if generation != self._label_generation:
            logger.debug("Ignoring result computed against a previous label set")
            return
        self._machine.on_score(outcome)

    def _on_capture(self, image: bytes, score: float) -> Optional[DetectionConfig]:
        try:
            next_config = self._flow.handle_capture(image, score)
        except SetupError as exc:
            # The server has moved on; resuming the old step would misfile captures
            self._machine.fail(f"Could not configure next step: {exc}")
            return None
        if next_config is None:
            return None
        self._label_generation += 1
        try:
            self._executor.set_active_labels(next_config).result(
                timeout=self._config.request_timeout_seconds
            )
        except Exception as exc:
            # The upload already succeeded, so the old step cannot be resumed
            self._machine.fail(f"Could not configure next step: {exc}")
            return None
        return next_config

    # -----------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------

    def prepare(self) -> Optional[DetectionConfig]:
        """
        Fetch the session, load the model and install the first step.

        Returns:
            The first step's config, or None if the session is already done.

        Raises:
            InspectionError: On setup or load failure.
        """
        step_config = self._flow.start()
        if step_config is None:
            return None

        labels, embeddings = _initial_label_set(step_config)
        self._executor.initialize(
            model_id=self._config.vision_model_id,
            device=self._config.device,
            labels=labels,
            label_embeddings=embeddings,
            dtype=self._config.torch_dtype_str,
        ).result()
        self._executor.set_active_labels(step_config).result(
            timeout=self._config.request_timeout_seconds
        )
        self._machine.configure(step_config)
        return step_config

    def run(self) -> int:
        """
        Run the session to completion.

        Blocks until every step is captured, a fatal error occurs, or the
        user presses Ctrl+C.

        Returns:
            Process exit code.
        """
        print("\n" + "=" * 60)
        print("  Zero-Shot Inspection - On-Device Detector")
        print("=" * 60)
        print(f"  Session     : {self._session_id}")
        print(f"  Interval    : {self._config.frame_interval_seconds}s")
        print(f"  Camera      : {self._config.camera_index}")
        print(f"  Vision model: {self._config.vision_model_id}")
        print(f"  Device      : {self._config.device}")
        print(f"  Isolation   : {self._config.isolation}")
        print(f"  Server      : {self._config.server_url}")
        print("=" * 60 + "\n")

        try:
            if self.prepare() is None:
                logger.info("Nothing to inspect.")
                return 0
        except Exception as exc:
            logger.error("Setup failed: %s", exc)
            self.stop()
            return 1

        if not self._camera.open():
            logger.error("Camera not available. Exiting.")
            self.stop()
            return 1

        logger.info("Starting detection - press Ctrl+C to stop.")
        self._machine.start()
        self._camera.start(callback=self.process_frame)

        try:
            self._finished.wait()
        except KeyboardInterrupt:
            logger.info("Keyboard interrupt received. Shutting down...")

        final_phase, error = self._machine.phase, self._machine.error
        self.stop()

        if final_phase is DetectionPhase.COMPLETE:
            logger.info("Inspection complete: %d step(s) captured.", len(self._flow.captured_steps))
            return 0
        if final_phase is DetectionPhase.ERROR:
            logger.error("Inspection stopped: %s", error)
            return 1
        return 130

    def stop(self) -> None:
        """Stop capture, the state machine's timers and the worker."""
        self._camera.stop()
        self._camera.release()
        self._machine.reset()
        self._executor.shutdown()
        self._client.close()
        logger.info("Inspection pipeline stopped.")


def main():
    """CLI entry point for the on-device detector."""
    parser = argparse.ArgumentParser(
        description="Zero-Shot Inspection - On-Device Detector",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "--session", type=str, required=True,
        help="Inspection session identifier",
    )
    parser.add_argument(
        "--interval", type=float, default=None,
        help="Seconds between classified frames (overrides config)",
    )
    parser.add_argument(
        "--camera", type=int, default=None,
        help="OpenCV camera index",
    )
    parser.add_argument(
        "--server-url", type=str, default=None,
        help="Session server base URL (e.g., http://127.0.0.1:8000)",
    )
    parser.add_argument(
        "--isolation", choices=["process", "thread"], default=None,
        help="Run the inference worker in a child process or a thread",
    )
    parser.add_argument(
        "--verbose", action="store_true",
        help="Log per-frame scores",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    config = get_config()
    if args.interval is not None:
        config.frame_interval_seconds = args.interval
    if args.camera is not None:
        config.camera_index = args.camera
    if args.server_url is not None:
        config.server_url = args.server_url
    if args.isolation is not None:
        config.isolation = args.isolation

    pipeline = InspectionPipeline(config, session_id=args.session)
    sys.exit(pipeline.run())


if __name__ == "__main__":
    main()
