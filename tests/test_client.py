"""Tests for inspection.client: session API calls with retry/backoff."""

import base64
from unittest.mock import MagicMock, patch

import pytest
import requests

from inspection.client import SessionClient, to_data_url

SESSION_JSON = {
    "sessionId": "abc",
    "status": "active",
    "currentStep": {
        "stepId": "step-1",
        "stepNumber": 1,
        "totalSteps": 3,
        "targetObject": {"label": "a radiator", "displayName": "Radiator"},
        "negativeLabels": [{"label": "a wall"}],
        "detectionThreshold": 0.45,
        "countdownSeconds": 3,
    },
    "completedSteps": [],
}


def response(payload=None, status=200):
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = payload
    if status >= 400:
        error = requests.exceptions.HTTPError(f"HTTP {status}")
        error.response = resp
        resp.raise_for_status.side_effect = error
    return resp


@pytest.fixture
def client():
    c = SessionClient("http://server:8000/", timeout=2.0, max_retries=3)
    c._session = MagicMock()
    return c


@pytest.fixture
def no_sleep():
    with patch("inspection.client.time.sleep") as sleep:
        yield sleep


class TestDataUrl:
    def test_prefix_and_payload(self):
        url = to_data_url(b"\xff\xd8jpeg")
        assert url.startswith("data:image/jpeg;base64,")
        assert base64.b64decode(url.split(",", 1)[1]) == b"\xff\xd8jpeg"


class TestGetSession:
    def test_parses_camel_case(self, client):
        client._session.request.return_value = response(SESSION_JSON)
        session = client.get_session("abc")

        client._session.request.assert_called_once_with(
            "GET", "http://server:8000/api/sessions/abc", json=None, timeout=2.0,
        )
        assert session.session_id == "abc"
        assert session.current_step.target_object.label == "a radiator"
        assert session.current_step.detection_threshold == 0.45
        assert session.current_step.negative_labels[0].embedding is None

    def test_retries_with_backoff(self, client, no_sleep):
        client._session.request.side_effect = [
            requests.exceptions.ConnectionError("refused"),
            response(status=503),
            response(SESSION_JSON),
        ]
        assert client.get_session("abc").status == "active"
        assert [c.args[0] for c in no_sleep.call_args_list] == [1, 2]

    def test_gives_up(self, client, no_sleep):
        client._session.request.side_effect = requests.exceptions.Timeout("slow")
        with pytest.raises(requests.exceptions.Timeout):
            client.get_session("abc")
        assert client._session.request.call_count == 3
        assert no_sleep.call_count == 2

    def test_client_error_not_retried(self, client, no_sleep):
        client._session.request.return_value = response(status=404)
        with pytest.raises(requests.exceptions.HTTPError):
            client.get_session("missing")
        assert client._session.request.call_count == 1
        no_sleep.assert_not_called()


class TestCaptureStep:
    def test_posts_capture(self, client):
        client._session.request.return_value = response({
            "success": True,
            "imageId": "img-1",
            "nextStep": None,
        })
        result = client.capture_step(
            "abc", "step-1", b"jpeg-bytes", 0.91, captured_at="2026-01-01T00:00:00+00:00",
        )

        method, url = client._session.request.call_args.args
        payload = client._session.request.call_args.kwargs["json"]
        assert method == "POST"
        assert url == "http://server:8000/api/sessions/abc/steps/step-1/capture"
        assert payload == {
            "imageData": to_data_url(b"jpeg-bytes"),
            "detectedScore": 0.91,
            "capturedAt": "2026-01-01T00:00:00+00:00",
        }
        assert result.success
        assert result.image_id == "img-1"
        assert result.next_step is None

    def test_default_timestamp(self, client):
        client._session.request.return_value = response({"success": True, "imageId": "img-2"})
        client.capture_step("abc", "step-1", b"jpeg", 0.5)
        payload = client._session.request.call_args.kwargs["json"]
        assert payload["capturedAt"].endswith("+00:00")
