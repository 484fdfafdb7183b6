# =============================================================================
# Zero-Shot Inspection - Session HTTP Client
# =============================================================================
# Provides the SessionClient class for talking to the inspection backend:
#
#   GET  /api/sessions/{session_id}                          -> SessionResponse
#   POST /api/sessions/{session_id}/steps/{step_id}/capture  -> CaptureResponse
#
# Captured images are sent as base64 JPEG data URLs.  Transient failures are
# retried with exponential backoff (1s, 2s, 4s, ...).
# =============================================================================

import base64
import logging
import time
from datetime import datetime, timezone
from typing import Optional

import requests

from shared.schemas import CaptureRequest, CaptureResponse, SessionResponse

logger = logging.getLogger(__name__)


def to_data_url(image_bytes: bytes, mime_type: str = "image/jpeg") -> str:
    """Wrap encoded image bytes in a base64 data URL."""
    encoded = base64.b64encode(image_bytes).decode("ascii")
    return f"data:{mime_type};base64,{encoded}"


def _is_retryable(exc: requests.exceptions.RequestException) -> bool:
    # Client errors will not succeed on retry
    if isinstance(exc, requests.exceptions.HTTPError) and exc.response is not None:
        return exc.response.status_code >= 500
    return True


class SessionClient:
    """
    HTTP client for the inspection session API.

    Args:
        server_url:  Base URL of the server (e.g., "http://127.0.0.1:8000").
        timeout:     Per-request timeout in seconds.
        max_retries: Maximum attempts per request.
    """

    def __init__(self, server_url: str, timeout: float = 30.0, max_retries: int = 3):
        self._server_url = server_url.rstrip("/")
        self._timeout = timeout
        self._max_retries = max(1, max_retries)
        self._session = requests.Session()
        self._session.headers.update({"Content-Type": "application/json"})

    def _request(self, method: str, path: str, payload: Optional[dict] = None) -> dict:
        """
        Send a request with retries and return the decoded JSON body.

        Raises:
            requests.exceptions.RequestException: After all retries exhausted,
                or immediately for a 4xx response.
        """
        url = f"{self._server_url}{path}"
        last_exception = None

        for attempt in range(1, self._max_retries + 1):
            try:
                response = self._session.request(method, url, json=payload, timeout=self._timeout)
                response.raise_for_status()
                return response.json()

            except requests.exceptions.RequestException as exc:
                last_exception = exc
                if not _is_retryable(exc) or attempt == self._max_retries:
                    break
                wait_time = 2 ** (attempt - 1)
                logger.warning(
                    "%s %s failed (attempt %d/%d): %s; retrying in %ds",
                    method, path, attempt, self._max_retries, exc, wait_time,
                )
                time.sleep(wait_time)

        logger.error("%s %s failed: %s", method, path, last_exception)
        raise last_exception

    def get_session(self, session_id: str) -> SessionResponse:
        """
        Fetch the session envelope with its current step.

        Args:
            session_id: Inspection session identifier.

        Returns:
            SessionResponse parsed from the server's JSON.
        """
        data = self._request("GET", f"/api/sessions/{session_id}")
        session = SessionResponse.model_validate(data)
        logger.info(
            "Session %s: status=%s, %d step(s) completed",
            session.session_id, session.status, len(session.completed_steps),
        )
        return session

    def capture_step(
        self,
        session_id: str,
        step_id: str,
        image_bytes: bytes,
        detected_score: float,
        captured_at: Optional[str] = None,
    ) -> CaptureResponse:
        """
        Upload the full-resolution capture for one step.

        Args:
            session_id:     Inspection session identifier.
            step_id:        Step being captured.
            image_bytes:    JPEG bytes of the captured image.
            detected_score: Target score recorded when detection was sustained.
            captured_at:    ISO 8601 timestamp; now (UTC) when omitted.

        Returns:
            CaptureResponse, including the next step when there is one.
        """
        request = CaptureRequest(
            image_data=to_data_url(image_bytes),
            detected_score=detected_score,
            captured_at=captured_at or datetime.now(timezone.utc).isoformat(),
        )
        data = self._request(
            "POST",
            f"/api/sessions/{session_id}/steps/{step_id}/capture",
            payload=request.model_dump(by_alias=True),
        )
        response = CaptureResponse.model_validate(data)
        logger.info(
            "Uploaded step %s (%d KB, score=%.3f) -> image %s",
            step_id, len(image_bytes) // 1024, detected_score, response.image_id,
        )
        return response

    def close(self) -> None:
        self._session.close()
