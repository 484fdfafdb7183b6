# =============================================================================
# Zero-Shot Inspection - Inference Worker
# =============================================================================
# The isolated side of the executor.  Runs in a child process (or a thread
# for lightweight deployments and tests), owns the vision encoder and the
# active label matrix, and serves requests received over a pipe:
#
#   init          -> progress* -> ready | error
#   updateLabels  -> labelsUpdated | error
#   classify      -> detection | result | frameError | error
#   shutdown      -> ack
#
# All mutable state lives here and is only changed by requests, so the
# caller never observes a half-built label matrix.
#
# Usage (normally started by ExecutorHandle):
#   run_worker(conn, encoder_factory=None, logit_scale=100.0, top_k=5)
# =============================================================================

import io
import logging
import sys
from typing import Any, Callable, List, Optional

from PIL import Image, UnidentifiedImageError
from pydantic import BaseModel, ValidationError

from inspection.embeddings import normalize_label_vector
from inspection.errors import DegenerateEmbedding, FrameError, SetupError
from inspection.similarity import (
    DEFAULT_LOGIT_SCALE,
    DEFAULT_TOP_K,
    EmbeddingMatrix,
    classify,
    rank_labels,
)
from shared.schemas import (
    AckResponse,
    ClassifyRequest,
    DetectionResponse,
    ErrorResponse,
    FrameErrorResponse,
    InitRequest,
    LabelScore,
    LabelsUpdatedResponse,
    ProgressUpdate,
    ReadyResponse,
    ResultResponse,
    ShutdownRequest,
    UpdateLabelsRequest,
    request_adapter,
)

logger = logging.getLogger(__name__)

# Callable(model_id, device, dtype, progress_callback) -> encoder with .encode(image)
EncoderFactory = Callable[..., Any]


def _default_encoder_factory() -> EncoderFactory:
    # Imported lazily so the worker module stays importable without a GPU stack
    from inspection.vision import load_vision_encoder

    return load_vision_encoder


def decode_image(data: bytes) -> Image.Image:
    """
    Decode an encoded frame (JPEG/PNG bytes) into a PIL RGB image.

    Raises:
        FrameError: If the bytes are not a readable image.
    """
    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        raise FrameError(f"Malformed image: {exc}") from exc
    return image.convert("RGB")


def _to_label_scores(ranked) -> List[LabelScore]:
    return [LabelScore(label=label, score=score) for label, score in ranked]


class InferenceWorker:
    """
    Request handler owning the encoder and the active EmbeddingMatrix.

    Args:
        emit:            Callable that delivers a reply model to the caller.
        encoder_factory: Callable building the vision encoder.  Called at most
                         once per worker.
        logit_scale:     Softmax temperature for the similarity engine.
        top_k:           Number of ranked labels to return per frame.
    """

    def __init__(
        self,
        emit: Callable[[BaseModel], None],
        encoder_factory: Optional[EncoderFactory] = None,
        logit_scale: float = DEFAULT_LOGIT_SCALE,
        top_k: int = DEFAULT_TOP_K,
    ):
        self._emit = emit
        self._encoder_factory = encoder_factory or _default_encoder_factory()
        self._logit_scale = logit_scale
        self._top_k = top_k

        self._encoder = None
        self._matrix: Optional[EmbeddingMatrix] = None
        self._threshold = 0.0
        self._load_error: Optional[str] = None
        self.load_count = 0

    @property
    def is_ready(self) -> bool:
        return self._encoder is not None and self._matrix is not None

    # -----------------------------------------------------------------
    # Dispatch
    # -----------------------------------------------------------------

    def handle(self, request: BaseModel) -> bool:
        """
        Serve one request.

        Returns:
            False when the worker should stop, True otherwise.
        """
        if isinstance(request, InitRequest):
            self._initialize(request)
        elif isinstance(request, UpdateLabelsRequest):
            self._update_labels(request)
        elif isinstance(request, ClassifyRequest):
            self._classify(request)
        elif isinstance(request, ShutdownRequest):
            self._emit(AckResponse(request_id=request.request_id))
            logger.info("Received shutdown signal")
            return False
        return True

    # -----------------------------------------------------------------
    # init
    # -----------------------------------------------------------------

    def _initialize(self, request: InitRequest) -> None:
        rid = request.request_id

        if self.is_ready:
            self._emit(ReadyResponse(request_id=rid))
            return
        if self._load_error is not None:
            # Load failures are terminal for this worker
            self._emit(ErrorResponse(request_id=rid, kind="load", reason=self._load_error))
            return

        try:
            matrix = self._build_generic_matrix(request)
        except SetupError as exc:
            self._emit(ErrorResponse(request_id=rid, kind="setup", reason=str(exc)))
            return

        def report_progress(status: str, file: Optional[str] = None, progress=None,
                            loaded=None, total=None, **_):
            self._emit(ProgressUpdate(
                request_id=rid, status=status, file=file,
                progress=progress, loaded=loaded, total=total,
            ))

        if self._encoder is None:
            report_progress(status="initiate", file=request.model_id)
            self.load_count += 1
            try:
                self._encoder = self._encoder_factory(
                    model_id=request.model_id,
                    device=request.device,
                    dtype=request.dtype,
                    progress_callback=report_progress,
                )
            except Exception as exc:
                self._load_error = f"Failed to load model '{request.model_id}': {exc}"
                logger.exception("Model load failed")
                self._emit(ErrorResponse(request_id=rid, kind="load", reason=self._load_error))
                return

        # A label/model mismatch is the caller's to fix; the encoder stays loaded
        encoder_dim = getattr(self._encoder, "dimension", None)
        if encoder_dim is not None and encoder_dim != matrix.dimension:
            reason = (
                f"Model '{request.model_id}' produces {encoder_dim}-dim embeddings, "
                f"labels have {matrix.dimension}"
            )
            logger.error(reason)
            self._emit(ErrorResponse(request_id=rid, kind="setup", reason=reason))
            return

        self._matrix = matrix
        logger.info(
            "Worker ready: model=%s device=%s labels=%d",
            request.model_id, request.device, len(matrix),
        )
        report_progress(status="ready", progress=100.0)
        self._emit(ReadyResponse(request_id=rid))

    @staticmethod
    def _build_generic_matrix(request: InitRequest) -> EmbeddingMatrix:
        vectors = []
        for label in request.labels:
            values = request.label_embeddings.get(label)
            if values is None:
                logger.warning("No embedding for label '%s', skipping", label)
                continue
            vectors.append(normalize_label_vector(label, values))
        if not vectors:
            raise SetupError("None of the requested labels has an embedding")
        return EmbeddingMatrix.from_vectors(vectors)

    # -----------------------------------------------------------------
    # updateLabels
    # -----------------------------------------------------------------

    def _update_labels(self, request: UpdateLabelsRequest) -> None:
        rid = request.request_id
        if not self.is_ready:
            self._emit(ErrorResponse(
                request_id=rid, kind="usage",
                reason="updateLabels called before the model is ready",
            ))
            return

        try:
            target = normalize_label_vector(request.target_label, request.target_embedding)
            negatives = [
                normalize_label_vector(n.label, n.embedding) for n in request.negative_labels
            ]
            matrix = EmbeddingMatrix.for_target(target, negatives)
            if self._matrix is not None and matrix.dimension != self._matrix.dimension:
                raise SetupError(
                    f"Label embeddings have dimension {matrix.dimension}, "
                    f"model expects {self._matrix.dimension}"
                )
        except SetupError as exc:
            self._emit(ErrorResponse(request_id=rid, kind="setup", reason=str(exc)))
            return

        # Swap in the new matrix wholesale; the old one is discarded
        self._matrix = matrix
        self._threshold = request.threshold
        logger.info(
            "Active labels: target='%s' negatives=%d threshold=%.2f",
            request.target_label, len(negatives), request.threshold,
        )
        self._emit(LabelsUpdatedResponse(request_id=rid))

    # -----------------------------------------------------------------
    # classify
    # -----------------------------------------------------------------

    def _classify(self, request: ClassifyRequest) -> None:
        rid = request.request_id
        if not self.is_ready or self._matrix is None:
            self._emit(ErrorResponse(
                request_id=rid, kind="usage", reason="classify called before the model is ready",
            ))
            return

        matrix = self._matrix
        try:
            image = decode_image(request.image)
            embedding = self._encoder.encode(image)
            if matrix.has_target:
                score = classify(
                    embedding, matrix, self._threshold,
                    logit_scale=self._logit_scale, top_k=self._top_k,
                )
                reply = DetectionResponse(
                    request_id=rid,
                    target_label=score.target_label,
                    target_score=score.target_score,
                    is_detected=score.is_detected,
                    ranked_scores=_to_label_scores(score.ranked_scores),
                )
            else:
                ranked = rank_labels(
                    embedding, matrix, logit_scale=self._logit_scale, top_k=self._top_k,
                )
                reply = ResultResponse(request_id=rid, ranked_scores=_to_label_scores(ranked))
        except SetupError as exc:
            logger.error("Classification setup error: %s", exc)
            reply = ErrorResponse(request_id=rid, kind="setup", reason=str(exc))
        except DegenerateEmbedding as exc:
            reply = FrameErrorResponse(request_id=rid, reason=str(exc), degenerate=True)
        except FrameError as exc:
            reply = FrameErrorResponse(request_id=rid, reason=str(exc))
        except Exception as exc:
            logger.exception("Inference error")
            reply = FrameErrorResponse(request_id=rid, reason=f"Inference error: {exc}")
        self._emit(reply)


def run_worker(
    conn,
    encoder_factory: Optional[EncoderFactory] = None,
    logit_scale: float = DEFAULT_LOGIT_SCALE,
    top_k: int = DEFAULT_TOP_K,
    configure_logging: bool = False,
) -> int:
    """
    Worker main loop: receive request dicts, reply with response dicts.

    Args:
        conn:              Worker end of a multiprocessing Pipe.
        encoder_factory:   Encoder factory, or None for the CLIP default.
        logit_scale:       Softmax temperature.
        top_k:             Ranked labels per frame.
        configure_logging: Set up logging (needed in a spawned process).

    Returns:
        Exit code (0 for clean shutdown).
    """
    if configure_logging:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
            datefmt="%H:%M:%S",
            stream=sys.stderr,
        )

    def emit(reply: BaseModel) -> None:
        conn.send(reply.model_dump())

    worker = InferenceWorker(
        emit, encoder_factory=encoder_factory, logit_scale=logit_scale, top_k=top_k,
    )
    logger.info("Inference worker started")

    try:
        while True:
            try:
                message = conn.recv()
            except (EOFError, OSError):
                logger.info("Caller closed the channel")
                break

            try:
                request = request_adapter.validate_python(message)
            except ValidationError as exc:
                logger.warning("Invalid worker request: %s", exc)
                request_id = message.get("request_id", 0) if isinstance(message, dict) else 0
                emit(ErrorResponse(
                    request_id=request_id if isinstance(request_id, int) else 0,
                    kind="usage",
                    reason=f"Invalid request: {exc.error_count()} validation error(s)",
                ))
                continue

            try:
                if not worker.handle(request):
                    break
            except OSError:
                logger.info("Caller went away before reply '%s'", request.type)
                break
    finally:
        conn.close()
        logger.info("Worker shutdown complete")

    return 0
