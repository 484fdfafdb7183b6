# =============================================================================
# Zero-Shot Inspection - Detection State Machine
# =============================================================================
# Turns the per-frame DetectionScore stream into phase transitions:
#
#   idle -> detecting -> sustaining -> countdown -> capturing -> detecting
#                                                            \-> complete
#   (any) -> error  (terminal until reset)
#
# Sustained detection is wall-clock based so dropped frames do not matter:
# the streak starts at the first detected frame and the countdown begins
# once a later detected frame arrives at least ``sustained_ms`` after it.
# Any undetected frame while sustaining or counting down returns to
# ``detecting``.
#
# Exactly one timer is active per machine at any time.  Every phase change
# bumps an epoch, and timer callbacks carrying an older epoch are ignored.
# The full-resolution capture and the session hand-off run on the timer
# thread, outside the lock.
# =============================================================================

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Protocol

from inspection.similarity import DetectionConfig, DetectionScore

logger = logging.getLogger(__name__)

COUNTDOWN_TICK_SECONDS = 1.0


class DetectionPhase(str, Enum):
    IDLE = "idle"
    DETECTING = "detecting"
    SUSTAINING = "sustaining"
    COUNTDOWN = "countdown"
    CAPTURING = "capturing"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass(frozen=True)
class PhaseTransition:
    previous: DetectionPhase
    current: DetectionPhase
    at_ms: float
    reason: str = ""


class FullResolutionSource(Protocol):
    def capture_full_resolution_frame(self, quality: float) -> Optional[bytes]:
        ...


# Receives (image, score); returns the next step's config, or None when done
CaptureHandler = Callable[[bytes, float], Optional[DetectionConfig]]


def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


def _default_timer(delay: float, callback: Callable[[], None]):
    timer = threading.Timer(delay, callback)
    timer.daemon = True
    return timer


class DetectionStateMachine:
    """
    Sustained-detection, countdown and capture controller for one step at a time.

    Args:
        frame_source:    Provides ``capture_full_resolution_frame(quality)``.
        capture_handler: Receives the captured image and the score recorded
                         when sustained detection completed.  Returns the
                         next DetectionConfig, or None when there are no
                         more steps.  Raising sends the machine back to
                         ``detecting`` on the same step.
        clock:           Milliseconds clock (monotonic by default).
        timer_factory:   ``(delay_seconds, callback) -> timer`` with
                         ``start()``/``cancel()``; threading.Timer by default.
        capture_quality: JPEG quality passed to the frame source.
    """

    def __init__(
        self,
        frame_source: FullResolutionSource,
        capture_handler: CaptureHandler,
        clock: Optional[Callable[[], float]] = None,
        timer_factory: Optional[Callable[[float, Callable[[], None]], object]] = None,
        capture_quality: float = 0.92,
    ):
        self._frame_source = frame_source
        self._capture_handler = capture_handler
        self._clock = clock or _monotonic_ms
        self._timer_factory = timer_factory or _default_timer
        self._capture_quality = capture_quality

        self._lock = threading.RLock()
        self._phase = DetectionPhase.IDLE
        self._epoch = 0
        self._timer = None

        self._config: Optional[DetectionConfig] = None
        self._sustaining_since: Optional[float] = None
        self._countdown_value = 0
        self._last_score: Optional[DetectionScore] = None
        self._captured_score = 0.0
        self._error: Optional[str] = None

        self._listeners: List[Callable[[PhaseTransition], None]] = []
        self._countdown_listeners: List[Callable[[int], None]] = []

    # -----------------------------------------------------------------
    # Observability
    # -----------------------------------------------------------------

    @property
    def phase(self) -> DetectionPhase:
        return self._phase

    @property
    def config(self) -> Optional[DetectionConfig]:
        return self._config

    @property
    def countdown_value(self) -> int:
        return self._countdown_value

    @property
    def sustaining_since(self) -> Optional[float]:
        return self._sustaining_since

    @property
    def last_score(self) -> Optional[DetectionScore]:
        return self._last_score

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def has_active_timer(self) -> bool:
        return self._timer is not None

    def add_listener(self, listener: Callable[[PhaseTransition], None]) -> None:
        self._listeners.append(listener)

    def add_countdown_listener(self, listener: Callable[[int], None]) -> None:
        self._countdown_listeners.append(listener)

    # -----------------------------------------------------------------
    # Internals
    # -----------------------------------------------------------------

    def _notify(self, listeners, value) -> None:
        for listener in list(listeners):
            try:
                listener(value)
            except Exception:
                logger.exception("State machine listener failed")

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _schedule(self, delay: float, callback: Callable[[int], None]) -> None:
        self._cancel_timer()
        epoch = self._epoch

        def _fire():
            callback(epoch)

        self._timer = self._timer_factory(delay, _fire)
        self._timer.start()

    def _set_phase(self, phase: DetectionPhase, reason: str = "") -> None:
        """Switch phase, clearing any timer owned by the previous phase."""
        previous = self._phase
        self._cancel_timer()
        self._epoch += 1
        self._phase = phase
        if phase is not DetectionPhase.SUSTAINING and phase is not DetectionPhase.COUNTDOWN:
            self._sustaining_since = None
        if previous is not phase:
            logger.info("Phase %s -> %s%s", previous.value, phase.value,
                        f" ({reason})" if reason else "")
            self._notify(self._listeners, PhaseTransition(previous, phase, self._clock(), reason))

    # -----------------------------------------------------------------
    # Step control
    # -----------------------------------------------------------------

    def configure(self, config: DetectionConfig) -> None:
        """
        Install the config for a new step and return to ``idle``.

        Any sustaining streak or countdown in progress is discarded.
        Ignored in ``error``; call reset() first.
        """
        with self._lock:
            if self._phase is DetectionPhase.ERROR:
                logger.warning("Ignoring configure() while in error state")
                return
            self._config = config
            self._last_score = None
            self._set_phase(DetectionPhase.IDLE, f"configured '{config.target_label}'")

    def start(self) -> None:
        """Begin detecting: the executor is ready and frame capture is enabled."""
        with self._lock:
            if self._config is None:
                raise RuntimeError("start() called before configure()")
            if self._phase is DetectionPhase.IDLE:
                self._set_phase(DetectionPhase.DETECTING, "started")

    def fail(self, reason: str) -> None:
        """Enter the absorbing ``error`` state (fatal executor or host failure)."""
        with self._lock:
            self._error = reason
            logger.error("Detection failed: %s", reason)
            self._set_phase(DetectionPhase.ERROR, reason)

    def reset(self) -> None:
        """Clear everything, including errors, and return to ``idle``."""
        with self._lock:
            self._error = None
            self._last_score = None
            self._countdown_value = 0
            self._set_phase(DetectionPhase.IDLE, "reset")

    # -----------------------------------------------------------------
    # Score stream
    # -----------------------------------------------------------------

    def on_score(self, score: DetectionScore) -> DetectionPhase:
        """
        Feed one classified frame into the machine.

        Skipped frames (dropped, frame errors) are simply never fed.

        Returns:
            The phase after processing the frame.
        """
        with self._lock:
            phase = self._phase
            now = self._clock()

            logger.debug(
                "Frame score=%.3f detected=%s phase=%s",
                score.target_score, score.is_detected, phase.value,
            )

            if phase is DetectionPhase.DETECTING:
                if score.is_detected:
                    self._set_phase(DetectionPhase.SUSTAINING, "target detected")
                    self._sustaining_since = now

            elif phase is DetectionPhase.SUSTAINING:
                if not score.is_detected:
                    self._set_phase(DetectionPhase.DETECTING, "detection lost")
                elif now - self._sustaining_since >= self._config.sustained_ms:
                    self._captured_score = score.target_score
                    self._start_countdown()

            elif phase is DetectionPhase.COUNTDOWN:
                if not score.is_detected:
                    self._set_phase(DetectionPhase.DETECTING, "countdown cancelled")

            # Published last so observers see the phase this score produced
            self._last_score = score
            return self._phase

    # -----------------------------------------------------------------
    # Countdown and capture (timer thread)
    # -----------------------------------------------------------------

    def _start_countdown(self) -> None:
        sustaining_since = self._sustaining_since
        self._set_phase(DetectionPhase.COUNTDOWN, "sustained detection")
        self._sustaining_since = sustaining_since
        self._countdown_value = self._config.countdown_seconds
        self._notify(self._countdown_listeners, self._countdown_value)
        if self._countdown_value <= 0:
            self._begin_capture()
        else:
            self._schedule(COUNTDOWN_TICK_SECONDS, self._tick)

    def _tick(self, epoch: int) -> None:
        with self._lock:
            if epoch != self._epoch or self._phase is not DetectionPhase.COUNTDOWN:
                return
            self._timer = None
            self._countdown_value -= 1
            self._notify(self._countdown_listeners, self._countdown_value)
            if self._countdown_value <= 0:
                self._begin_capture()
            else:
                self._schedule(COUNTDOWN_TICK_SECONDS, self._tick)

    def _begin_capture(self) -> None:
        self._set_phase(DetectionPhase.CAPTURING, "countdown complete")
        self._schedule(0.0, self._capture)

    def _capture(self, epoch: int) -> None:
        with self._lock:
            if epoch != self._epoch or self._phase is not DetectionPhase.CAPTURING:
                return
            self._timer = None
            score = self._captured_score

        try:
            image = self._frame_source.capture_full_resolution_frame(self._capture_quality)
        except Exception:
            logger.exception("Full-resolution capture raised")
            image = None

        if image is None:
            with self._lock:
                if epoch == self._epoch:
                    self._set_phase(DetectionPhase.DETECTING, "capture failed")
            return

        try:
            next_config = self._capture_handler(image, score)
        except Exception as exc:
            logger.warning("Capture hand-off failed: %s", exc)
            with self._lock:
                if epoch == self._epoch:
                    self._set_phase(DetectionPhase.DETECTING, "upload failed")
            return

        with self._lock:
            if epoch != self._epoch:
                return
            if next_config is None:
                self._set_phase(DetectionPhase.COMPLETE, "all steps captured")
            else:
                self._config = next_config
                self._last_score = None
                self._set_phase(DetectionPhase.DETECTING, f"next step '{next_config.target_label}'")
