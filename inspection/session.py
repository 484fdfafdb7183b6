# =============================================================================
# Zero-Shot Inspection - Session Flow
# =============================================================================
# Bridges the inspection backend and the detector.  Each InspectionStep is
# turned into a DetectionConfig: inline embeddings are used when the server
# provides them, otherwise labels are resolved from the local EmbeddingStore.
# A step without a threshold or countdown uses the detector's defaults.
# A captured image is uploaded for the current step and the next step's
# config (or None when the session is finished) is handed back.
# =============================================================================

import logging
from typing import List, Optional

from inspection.client import SessionClient
from inspection.embeddings import EmbeddingStore, LabelVector, normalize_label_vector
from inspection.errors import SetupError, UploadError, UsageError
from inspection.similarity import DetectionConfig
from shared.schemas import InspectionStep, SessionResponse

logger = logging.getLogger(__name__)


def _resolve_label(
    label: str, embedding: Optional[List[float]], store: Optional[EmbeddingStore]
) -> LabelVector:
    if embedding is not None:
        return normalize_label_vector(label, embedding)
    if store is None:
        raise SetupError(f"No embedding for label '{label}' and no embedding store loaded")
    return store.get(label)


def step_to_config(
    step: InspectionStep,
    store: Optional[EmbeddingStore] = None,
    sustained_ms: int = 1000,
    default_threshold: float = 0.5,
    default_countdown_seconds: int = 3,
) -> DetectionConfig:
    """
    Build the DetectionConfig for one inspection step.

    Args:
        step:                      Step as returned by the session API.
        store:                     Precomputed label embeddings, used for
                                   labels without an inline embedding.
        sustained_ms:              Sustained-detection window for the step.
        default_threshold:         Used when the step carries no threshold.
        default_countdown_seconds: Used when the step carries no countdown.

    Raises:
        SetupError: If a label has no embedding or dimensions disagree.
    """
    target = _resolve_label(step.target_object.label, step.target_object.embedding, store)
    negatives = tuple(
        _resolve_label(n.label, n.embedding, store) for n in step.negative_labels
    )
    for negative in negatives:
        if negative.dimension != target.dimension:
            raise SetupError(
                f"Negative '{negative.label}' has dimension {negative.dimension}, "
                f"target has {target.dimension}"
            )

    threshold = step.detection_threshold
    if threshold is None:
        threshold = default_threshold
    countdown_seconds = step.countdown_seconds
    if countdown_seconds is None:
        countdown_seconds = default_countdown_seconds

    return DetectionConfig(
        target=target,
        negatives=negatives,
        threshold=threshold,
        sustained_ms=sustained_ms,
        countdown_seconds=countdown_seconds,
    )


class InspectionFlow:
    """
    Walks an inspection session step by step.

    Args:
        client:                    SessionClient for the inspection backend.
        session_id:                Session to run.
        store:                     Optional EmbeddingStore for label lookup.
        sustained_ms:              Sustained-detection window for every step.
        default_threshold:         Threshold for steps that carry none.
        default_countdown_seconds: Countdown for steps that carry none.
    """

    def __init__(
        self,
        client: SessionClient,
        session_id: str,
        store: Optional[EmbeddingStore] = None,
        sustained_ms: int = 1000,
        default_threshold: float = 0.5,
        default_countdown_seconds: int = 3,
    ):
        self._client = client
        self._session_id = session_id
        self._store = store
        self._sustained_ms = sustained_ms
        self._default_threshold = default_threshold
        self._default_countdown_seconds = default_countdown_seconds

        self._session: Optional[SessionResponse] = None
        self._current_step: Optional[InspectionStep] = None
        self._captured: List[str] = []

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def current_step(self) -> Optional[InspectionStep]:
        return self._current_step

    @property
    def captured_steps(self) -> List[str]:
        return list(self._captured)

    @property
    def is_complete(self) -> bool:
        return self._session is not None and self._current_step is None

    def config_for(self, step: InspectionStep) -> DetectionConfig:
        return step_to_config(
            step,
            self._store,
            sustained_ms=self._sustained_ms,
            default_threshold=self._default_threshold,
            default_countdown_seconds=self._default_countdown_seconds,
        )

    def start(self) -> Optional[DetectionConfig]:
        """
        Fetch the session and return the config for its current step.

        Returns:
            The DetectionConfig to run, or None if the session is already
            completed.

        Raises:
            SetupError: If the session has expired or the step cannot be
                configured.
        """
        session = self._client.get_session(self._session_id)
        if session.status == "expired":
            raise SetupError(f"Session {self._session_id} has expired")

        self._session = session
        self._captured = [s.step_id for s in session.completed_steps]
        self._current_step = session.current_step if session.status == "active" else None

        if self._current_step is None:
            logger.info("Session %s has no remaining steps", self._session_id)
            return None

        config = self.config_for(self._current_step)
        self._log_step(self._current_step, config)
        return config

    def handle_capture(self, image: bytes, detected_score: float) -> Optional[DetectionConfig]:
        """
        Upload a capture for the current step and advance.

        Once the server has accepted the capture the flow follows it to the
        next step even if that step cannot be configured locally, so a
        SetupError from this method means the run cannot continue.

        Returns:
            Config for the next step, or None when the session is finished.

        Raises:
            UsageError:  If there is no current step.
            UploadError: If the server rejected the capture.
            SetupError:  If the capture was accepted but the next step has a
                label with no embedding.
            requests.exceptions.RequestException: If the upload failed.
        """
        step = self._current_step
        if step is None:
            raise UsageError("No current step to capture")

        response = self._client.capture_step(
            self._session_id, step.step_id, image, detected_score,
        )
        if not response.success:
            raise UploadError(response.message or f"Capture for step {step.step_id} rejected")

        self._captured.append(step.step_id)
        self._current_step = response.next_step

        if response.next_step is None:
            logger.info("Session %s complete (%d captures)", self._session_id, len(self._captured))
            return None

        config = self.config_for(response.next_step)
        self._log_step(response.next_step, config)
        return config

    @staticmethod
    def _log_step(step: InspectionStep, config: DetectionConfig) -> None:
        logger.info(
            "Step %d/%d: show '%s' (threshold=%.2f, negatives=%d)",
            step.step_number,
            step.total_steps,
            step.target_object.display_name or step.target_object.label,
            config.threshold,
            len(config.negatives),
        )
