# =============================================================================
# Zero-Shot Inspection - Inference Executor Handle
# =============================================================================
# ExecutorHandle is the single owned entry point to the inference worker.
# The host application constructs exactly one and passes it to every
# consumer; there is no module-level worker or flag.
#
#   - initialize() starts the worker once and loads the model once.
#     Concurrent and late callers share the same in-flight future, so all
#     of them observe the same ready/error outcome.
#   - set_active_labels() swaps in a new target/negatives matrix without
#     reloading the model.
#   - classify_frame() keeps at most one classification in flight; a frame
#     submitted while another is running is dropped (returns None).
#
# Isolation levels:
#   "process" - worker runs in a spawned child process (default)
#   "thread"  - worker runs in a daemon thread of this process
# =============================================================================

import logging
import multiprocessing
import threading
from concurrent.futures import Future
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, List, Mapping, Optional, Sequence, Union

from pydantic import BaseModel

from inspection.channel import WorkerChannel
from inspection.errors import (
    DegenerateEmbedding,
    FrameError,
    LoadError,
    SetupError,
    UsageError,
)
from inspection.similarity import (
    DEFAULT_LOGIT_SCALE,
    DEFAULT_TOP_K,
    DetectionConfig,
    DetectionScore,
    RankedScore,
)
from inspection.worker import EncoderFactory, run_worker
from shared.schemas import (
    ClassifyRequest,
    DetectionResponse,
    ErrorResponse,
    FrameErrorResponse,
    InitRequest,
    LabelEmbedding,
    LabelsUpdatedResponse,
    ProgressUpdate,
    ReadyResponse,
    ResultResponse,
    ShutdownRequest,
    UpdateLabelsRequest,
)

logger = logging.getLogger(__name__)

ClassifyOutcome = Union[DetectionScore, List[RankedScore]]


class ExecutorStatus(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True)
class LoadingState:
    """
    Observable snapshot of model loading, for progress displays.

    Attributes:
        is_loading:   True until ready or failed.
        progress:     Last reported percentage (0-100).
        status:       Human-readable status line.
        current_file: File or component being fetched.
        loaded_bytes: Bytes loaded so far, when reported.
        total_bytes:  Total bytes, when reported.
        error:        Load error message, if any.
    """

    is_loading: bool = False
    progress: float = 0.0
    status: str = "Idle"
    current_file: str = ""
    loaded_bytes: int = 0
    total_bytes: int = 0
    error: Optional[str] = None


def _describe_progress(update: ProgressUpdate, previous: str) -> str:
    name = update.file or "model"
    if update.status == "progress" or update.status == "download":
        return f"Downloading {name}..."
    if update.status == "initiate":
        return f"Starting: {name}"
    if update.status == "done":
        return f"Downloaded: {name}"
    if update.status == "ready":
        return "Model ready!"
    return previous


def _raise_for_error(reply: ErrorResponse) -> None:
    if reply.kind == "usage":
        raise UsageError(reply.reason)
    if reply.kind == "setup":
        raise SetupError(reply.reason)
    raise LoadError(reply.reason)


def _chain(source: Future, transform: Callable[[BaseModel], object]) -> Future:
    """Future resolved with ``transform(source.result())`` or its exception."""
    target: Future = Future()

    def _done(f: Future) -> None:
        try:
            target.set_result(transform(f.result()))
        except Exception as exc:
            target.set_exception(exc)

    source.add_done_callback(_done)
    return target


class ExecutorHandle:
    """
    Owner of the single inference worker for a host application.

    Args:
        isolation:       "process" or "thread".
        encoder_factory: Encoder factory run inside the worker, or None for
                         the CLIP default.  Must be picklable for "process".
        logit_scale:     Softmax temperature.
        top_k:           Ranked labels returned per frame.
    """

    def __init__(
        self,
        isolation: str = "process",
        encoder_factory: Optional[EncoderFactory] = None,
        logit_scale: float = DEFAULT_LOGIT_SCALE,
        top_k: int = DEFAULT_TOP_K,
    ):
        if isolation not in ("process", "thread"):
            raise SetupError(f"Unknown isolation level '{isolation}'")
        self._isolation = isolation
        self._encoder_factory = encoder_factory
        self._logit_scale = logit_scale
        self._top_k = top_k

        self._lock = threading.Lock()
        self._status = ExecutorStatus.UNINITIALIZED
        self._init_future: Optional[Future] = None
        self._inflight: Optional[Future] = None
        self._labels_configured = False
        self._load_count = 0

        self._channel: Optional[WorkerChannel] = None
        self._runner = None

        self._loading_state = LoadingState()
        self._progress_listeners: List[Callable[[LoadingState], None]] = []

    # -----------------------------------------------------------------
    # Observability
    # -----------------------------------------------------------------

    @property
    def status(self) -> ExecutorStatus:
        return self._status

    @property
    def is_ready(self) -> bool:
        return self._status is ExecutorStatus.READY

    @property
    def load_count(self) -> int:
        """Number of model loads requested from the worker."""
        return self._load_count

    @property
    def loading_state(self) -> LoadingState:
        return self._loading_state

    @property
    def labels_configured(self) -> bool:
        return self._labels_configured

    @property
    def is_classifying(self) -> bool:
        return self._inflight is not None

    def add_progress_listener(self, listener: Callable[[LoadingState], None]) -> None:
        self._progress_listeners.append(listener)

    def _set_loading_state(self, **changes) -> None:
        self._loading_state = replace(self._loading_state, **changes)
        for listener in list(self._progress_listeners):
            try:
                listener(self._loading_state)
            except Exception:
                logger.exception("Loading-state listener failed")

    def _on_progress(self, update: ProgressUpdate) -> None:
        state = self._loading_state
        logger.debug("Load progress: %s %s", update.status, update.file or "")
        self._set_loading_state(
            status=_describe_progress(update, state.status),
            progress=update.progress if update.progress is not None else state.progress,
            loaded_bytes=update.loaded if update.loaded is not None else state.loaded_bytes,
            total_bytes=update.total if update.total is not None else state.total_bytes,
            current_file=update.file or state.current_file,
        )

    # -----------------------------------------------------------------
    # Worker lifecycle
    # -----------------------------------------------------------------

    def _start_worker(self) -> None:
        if self._isolation == "process":
            ctx = multiprocessing.get_context("spawn")
            parent_conn, child_conn = ctx.Pipe()
            self._runner = ctx.Process(
                target=run_worker,
                args=(child_conn, self._encoder_factory, self._logit_scale, self._top_k, True),
                name="inference-worker",
                daemon=True,
            )
        else:
            parent_conn, child_conn = multiprocessing.Pipe()
            self._runner = threading.Thread(
                target=run_worker,
                args=(child_conn, self._encoder_factory, self._logit_scale, self._top_k),
                name="inference-worker",
                daemon=True,
            )
        self._runner.start()
        self._channel = WorkerChannel(parent_conn, on_progress=self._on_progress)
        logger.info("Inference worker started (isolation=%s)", self._isolation)

    def shutdown(self, timeout: float = 5.0) -> None:
        """Stop the worker and release the channel."""
        with self._lock:
            channel, runner = self._channel, self._runner
            self._channel = None
            self._runner = None
        if channel is None:
            return
        try:
            channel.request(ShutdownRequest()).result(timeout=timeout)
        except Exception:
            logger.debug("Worker did not acknowledge shutdown", exc_info=True)
        channel.close()
        if runner is not None:
            runner.join(timeout=timeout)
        logger.info("Inference worker stopped.")

    # -----------------------------------------------------------------
    # initialize
    # -----------------------------------------------------------------

    def initialize(
        self,
        model_id: str,
        device: str,
        labels: Sequence[str],
        label_embeddings: Mapping[str, Sequence[float]],
        dtype: str = "float32",
    ) -> Future:
        """
        Load the model (once) and install an initial generic label set.

        Idempotent: while initializing or ready every caller receives the
        same future.  After a load failure the same failed future is
        returned; recovery needs a new ExecutorHandle.

        Returns:
            Future resolving to None when ready, or raising LoadError /
            SetupError.
        """
        with self._lock:
            if self._init_future is not None:
                return self._init_future

            if self._channel is None:
                self._start_worker()

            self._status = ExecutorStatus.INITIALIZING
            self._load_count += 1
            init_future: Future = Future()
            self._init_future = init_future
            channel = self._channel

        self._set_loading_state(is_loading=True, status="Initializing...", error=None)
        logger.info("Initializing model %s on %s", model_id, device)
        reply_future = channel.request(InitRequest(
            model_id=model_id,
            device=device,
            dtype=dtype,
            labels=list(labels),
            label_embeddings={k: list(map(float, v)) for k, v in label_embeddings.items()},
        ))
        reply_future.add_done_callback(lambda f: self._finish_initialize(f, init_future))
        return init_future

    def _finish_initialize(self, reply_future: Future, init_future: Future) -> None:
        try:
            reply = reply_future.result()
            if isinstance(reply, ErrorResponse):
                _raise_for_error(reply)
            if not isinstance(reply, ReadyResponse):
                raise LoadError(f"Unexpected init reply '{reply.type}'")
        except SetupError as exc:
            with self._lock:
                # Bad labels do not consume the executor; allow a retry
                self._status = ExecutorStatus.UNINITIALIZED
                self._init_future = None
            logger.error("Executor setup failed: %s", exc)
            self._set_loading_state(is_loading=False, status="Setup error", error=str(exc))
            init_future.set_exception(exc)
            return
        except Exception as exc:
            error = exc if isinstance(exc, LoadError) else LoadError(str(exc))
            with self._lock:
                self._status = ExecutorStatus.FAILED
            logger.error("Model load failed: %s", error)
            self._set_loading_state(is_loading=False, status="Error loading model", error=str(error))
            init_future.set_exception(error)
            return

        with self._lock:
            self._status = ExecutorStatus.READY
        logger.info("Executor ready.")
        self._set_loading_state(is_loading=False, progress=100.0, status="Model ready!")
        init_future.set_result(None)

    # -----------------------------------------------------------------
    # setActiveLabels
    # -----------------------------------------------------------------

    def set_active_labels(self, config: DetectionConfig) -> Future:
        """
        Replace the active label set with ``config``'s target and negatives.

        The model is not reloaded.  Classification switches to single-target
        detection mode.

        Raises:
            UsageError: If called before the executor is ready.

        Returns:
            Future resolving to None once the worker has acknowledged.
        """
        with self._lock:
            if self._status is not ExecutorStatus.READY or self._channel is None:
                raise UsageError(
                    f"set_active_labels requires a ready executor (status={self._status.value})"
                )
            self._labels_configured = False
            reply_future = self._channel.request(UpdateLabelsRequest(
                target_label=config.target_label,
                target_embedding=config.target.vector.tolist(),
                negative_labels=[
                    LabelEmbedding(label=n.label, embedding=n.vector.tolist())
                    for n in config.negatives
                ],
                threshold=config.threshold,
            ))

        def _acknowledged(reply: BaseModel) -> None:
            if isinstance(reply, ErrorResponse):
                _raise_for_error(reply)
            if not isinstance(reply, LabelsUpdatedResponse):
                raise LoadError(f"Unexpected updateLabels reply '{reply.type}'")
            self._labels_configured = True
            logger.info(
                "Labels updated: target='%s' negatives=%d",
                config.target_label, len(config.negatives),
            )
            return None

        return _chain(reply_future, _acknowledged)

    # -----------------------------------------------------------------
    # classifyFrame
    # -----------------------------------------------------------------

    def classify_frame(self, image: bytes) -> Optional[Future]:
        """
        Submit one encoded frame for classification.

        Returns:
            None when another classification is still in flight (the frame
            is dropped, which is not a negative detection).  Otherwise a
            future resolving to a DetectionScore (single-target mode) or a
            list of RankedScore (generic mode), or raising FrameError /
            DegenerateEmbedding for a skipped frame.

        Raises:
            UsageError: If called before the executor is ready.
        """
        with self._lock:
            if self._status is not ExecutorStatus.READY or self._channel is None:
                raise UsageError(
                    f"classify_frame requires a ready executor (status={self._status.value})"
                )
            if self._inflight is not None:
                logger.debug("Classification in flight, dropping frame")
                return None
            reply_future = self._channel.request(ClassifyRequest(image=image))
            self._inflight = reply_future

        def _release(_: Future) -> None:
            with self._lock:
                if self._inflight is reply_future:
                    self._inflight = None

        # Registered first so the slot is free before the caller's callbacks run
        reply_future.add_done_callback(_release)
        return _chain(reply_future, _to_outcome)


def _to_outcome(reply: BaseModel) -> ClassifyOutcome:
    if isinstance(reply, DetectionResponse):
        return DetectionScore(
            target_label=reply.target_label,
            target_score=reply.target_score,
            is_detected=reply.is_detected,
            ranked_scores=tuple(RankedScore(s.label, s.score) for s in reply.ranked_scores),
        )
    if isinstance(reply, ResultResponse):
        return [RankedScore(s.label, s.score) for s in reply.ranked_scores]
    if isinstance(reply, FrameErrorResponse):
        if reply.degenerate:
            raise DegenerateEmbedding(reply.reason)
        raise FrameError(reply.reason)
    if isinstance(reply, ErrorResponse):
        _raise_for_error(reply)
    raise FrameError(f"Unexpected classify reply '{reply.type}'")
