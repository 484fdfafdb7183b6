# =============================================================================
# Zero-Shot Inspection - Shared Schemas
# =============================================================================
# Pydantic models defining two data contracts:
#
#   1. The worker boundary.  Every request sent to the inference worker and
#      every reply it sends back is a tagged model discriminated on ``type``.
#      Requests and replies carry the ``request_id`` of the request they
#      belong to, so the caller can route each reply to the right waiter.
#
#   2. The session server HTTP API (camelCase JSON on the wire).  Steps,
#      captures and the session envelope returned by the inspection backend.
# =============================================================================

from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel


# ---------------------------------------------------------------------------
# Worker boundary: shared payload types
# ---------------------------------------------------------------------------


class LabelScore(BaseModel):
    """A single label with its softmax probability."""

    label: str
    score: float


class LabelEmbedding(BaseModel):
    """A label and its text embedding, as sent across the worker boundary."""

    label: str
    embedding: List[float]


# ---------------------------------------------------------------------------
# Worker boundary: requests (caller -> worker)
# ---------------------------------------------------------------------------


class InitRequest(BaseModel):
    """
    Load the vision encoder and install an initial label set.

    Attributes:
        model_id:         HuggingFace model identifier of the CLIP checkpoint.
        device:           Opaque compute device string ("cuda", "mps", "cpu").
        dtype:            Torch dtype name for the model weights.
        labels:           Labels to classify against, in order.
        label_embeddings: Mapping of label -> text embedding.  Labels missing
                          from this mapping are skipped.
    """

    type: Literal["init"] = "init"
    request_id: int = 0
    model_id: str
    device: str
    dtype: str = "float32"
    labels: List[str]
    label_embeddings: Dict[str, List[float]]


class UpdateLabelsRequest(BaseModel):
    """Switch the worker into single-target mode with a new label set."""

    type: Literal["updateLabels"] = "updateLabels"
    request_id: int = 0
    target_label: str
    target_embedding: List[float]
    negative_labels: List[LabelEmbedding] = Field(default_factory=list)
    threshold: float = Field(..., ge=0.0, le=1.0)


class ClassifyRequest(BaseModel):
    """Classify one encoded (JPEG/PNG) frame."""

    type: Literal["classify"] = "classify"
    request_id: int = 0
    image: bytes


class ShutdownRequest(BaseModel):
    type: Literal["shutdown"] = "shutdown"
    request_id: int = 0


WorkerRequest = Annotated[
    Union[InitRequest, UpdateLabelsRequest, ClassifyRequest, ShutdownRequest],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Worker boundary: replies (worker -> caller)
# ---------------------------------------------------------------------------


class ProgressUpdate(BaseModel):
    """
    Observational model-loading status.  Zero or more precede ``ready``.

    Attributes:
        status:   One of "initiate", "download", "progress", "done", "ready".
        file:     File or component currently being fetched.
        progress: Percentage in [0, 100] when known.
        loaded:   Bytes loaded so far when known.
        total:    Total bytes when known.
    """

    type: Literal["progress"] = "progress"
    request_id: int = 0
    status: str
    file: Optional[str] = None
    progress: Optional[float] = None
    loaded: Optional[int] = None
    total: Optional[int] = None


class ReadyResponse(BaseModel):
    type: Literal["ready"] = "ready"
    request_id: int = 0


class ErrorResponse(BaseModel):
    """
    Terminal failure of a request.

    ``kind`` is "load" for model/backend failures during init (terminal for
    the worker), "setup" for bad label configuration and "usage" for calls
    made in the wrong executor state.
    """

    type: Literal["error"] = "error"
    request_id: int = 0
    kind: Literal["load", "setup", "usage"] = "load"
    reason: str


class LabelsUpdatedResponse(BaseModel):
    type: Literal["labelsUpdated"] = "labelsUpdated"
    request_id: int = 0


class ResultResponse(BaseModel):
    """Generic top-k classification (no target configured)."""

    type: Literal["result"] = "result"
    request_id: int = 0
    ranked_scores: List[LabelScore]


class DetectionResponse(BaseModel):
    """Single-target detection for one frame."""

    type: Literal["detection"] = "detection"
    request_id: int = 0
    target_label: str
    target_score: float
    is_detected: bool
    ranked_scores: List[LabelScore]


class FrameErrorResponse(BaseModel):
    """Recoverable per-frame failure; the frame is treated as skipped."""

    type: Literal["frameError"] = "frameError"
    request_id: int = 0
    reason: str
    degenerate: bool = False


class AckResponse(BaseModel):
    type: Literal["ack"] = "ack"
    request_id: int = 0


WorkerResponse = Annotated[
    Union[
        ProgressUpdate,
        ReadyResponse,
        ErrorResponse,
        LabelsUpdatedResponse,
        ResultResponse,
        DetectionResponse,
        FrameErrorResponse,
        AckResponse,
    ],
    Field(discriminator="type"),
]

request_adapter = TypeAdapter(WorkerRequest)
response_adapter = TypeAdapter(WorkerResponse)


# ---------------------------------------------------------------------------
# Session server API (camelCase on the wire)
# ---------------------------------------------------------------------------


class _ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TargetObject(_ApiModel):
    """
    The object the user must show to the camera for a step.

    Attributes:
        label:        Exact label text, also the key into the embedding store.
        embedding:    Optional inline text embedding.  When absent the label
                      is resolved from the local embedding store.
        display_name: Human-readable name shown to the user.
        description:  Instructions shown to the user.
    """

    label: str
    embedding: Optional[List[float]] = None
    display_name: str = ""
    description: str = ""


class NegativeLabel(_ApiModel):
    label: str
    embedding: Optional[List[float]] = None


class InspectionStep(_ApiModel):
    step_id: str
    step_number: int
    total_steps: int
    target_object: TargetObject
    negative_labels: List[NegativeLabel] = Field(default_factory=list)
    # Omitted values fall back to the detector's configured defaults
    detection_threshold: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    countdown_seconds: Optional[int] = Field(default=None, ge=0)


class CompletedStep(_ApiModel):
    step_id: str
    image_url: str
    captured_at: str
    detected_score: float


class SessionResponse(_ApiModel):
    """
    Session envelope returned by ``GET /api/sessions/{session_id}``.

    Attributes:
        session_id:      Identifier of the inspection session.
        status:          "active", "completed" or "expired".
        current_step:    Step to perform next, or None when finished.
        completed_steps: Steps already captured.
    """

    session_id: str
    status: Literal["active", "completed", "expired"]
    current_step: Optional[InspectionStep] = None
    completed_steps: List[CompletedStep] = Field(default_factory=list)


class CaptureRequest(_ApiModel):
    image_data: str = Field(..., description="Base64 JPEG data URL")
    detected_score: float
    captured_at: str = Field(..., description="ISO 8601 capture timestamp")


class CaptureResponse(_ApiModel):
    success: bool
    image_id: str
    next_step: Optional[InspectionStep] = None
    message: Optional[str] = None
