# =============================================================================
# Zero-Shot Inspection - Worker Channel
# =============================================================================
# Typed request/reply channel over the caller end of a multiprocessing Pipe.
#
# Every request gets a fresh ``request_id`` and a concurrent.futures.Future.
# A background reader thread validates each reply against the tagged reply
# union and resolves the future registered for that id.  ``progress`` replies
# are observational and fanned out to a listener instead of resolving
# anything.  If the worker goes away, every pending future fails with
# LoadError.
# =============================================================================

import itertools
import logging
import threading
from concurrent.futures import Future
from typing import Callable, Dict, Optional

from pydantic import BaseModel, ValidationError

from inspection.errors import LoadError
from shared.schemas import ProgressUpdate, response_adapter

logger = logging.getLogger(__name__)


class WorkerChannel:
    """
    Request/reply multiplexer for one worker connection.

    Args:
        conn:        Caller end of a multiprocessing Pipe.
        on_progress: Optional callable receiving every ProgressUpdate.
    """

    def __init__(self, conn, on_progress: Optional[Callable[[ProgressUpdate], None]] = None):
        self._conn = conn
        self._on_progress = on_progress
        self._ids = itertools.count(1)
        self._pending: Dict[int, Future] = {}
        self._lock = threading.Lock()
        self._closed = False

        self._reader = threading.Thread(
            target=self._read_loop, name="worker-channel-reader", daemon=True
        )
        self._reader.start()

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def request(self, message: BaseModel) -> Future:
        """
        Send a request and return a future resolved with its terminal reply.

        Args:
            message: A request model; its ``request_id`` is assigned here.

        Returns:
            Future resolving to the reply model (never a ProgressUpdate).
        """
        future: Future = Future()
        with self._lock:
            if self._closed:
                future.set_exception(LoadError("Worker channel is closed"))
                return future
            request_id = next(self._ids)
            self._pending[request_id] = future
            payload = message.model_copy(update={"request_id": request_id}).model_dump()
            try:
                self._conn.send(payload)
            except (OSError, ValueError) as exc:
                del self._pending[request_id]
                future.set_exception(LoadError(f"Worker is unreachable: {exc}"))
        return future

    def close(self) -> None:
        """Close the connection and fail anything still pending."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        try:
            self._conn.close()
        except OSError:
            logger.debug("Error closing worker connection", exc_info=True)
        self._fail_pending("Worker channel closed")

    def _fail_pending(self, reason: str) -> None:
        with self._lock:
            pending = list(self._pending.values())
            self._pending.clear()
        for future in pending:
            if not future.done():
                future.set_exception(LoadError(reason))

    def _read_loop(self) -> None:
        while True:
            try:
                message = self._conn.recv()
            except (EOFError, OSError):
                break

            try:
                reply = response_adapter.validate_python(message)
            except ValidationError as exc:
                logger.warning("Dropping malformed worker reply: %s", exc)
                continue

            if isinstance(reply, ProgressUpdate):
                if self._on_progress is not None:
                    try:
                        self._on_progress(reply)
                    except Exception:
                        logger.exception("Progress listener failed")
                continue

            with self._lock:
                future = self._pending.pop(reply.request_id, None)
            if future is None:
                logger.warning(
                    "Reply '%s' for unknown request %d", reply.type, reply.request_id
                )
                continue
            future.set_result(reply)

        logger.info("Worker channel reader stopped")
        with self._lock:
            self._closed = True
        self._fail_pending("Worker exited")
