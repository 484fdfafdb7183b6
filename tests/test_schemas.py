"""Tests for shared.schemas: tagged worker messages and camelCase API models."""

import pytest
from pydantic import ValidationError

from shared.schemas import (
    CaptureRequest,
    ClassifyRequest,
    DetectionResponse,
    InspectionStep,
    ProgressUpdate,
    UpdateLabelsRequest,
    request_adapter,
    response_adapter,
)


class TestWorkerMessages:
    def test_request_discriminated_on_type(self):
        message = ClassifyRequest(request_id=4, image=b"\xff\xd8").model_dump()
        parsed = request_adapter.validate_python(message)
        assert isinstance(parsed, ClassifyRequest)
        assert parsed.image == b"\xff\xd8"

    def test_response_discriminated_on_type(self):
        parsed = response_adapter.validate_python({
            "type": "detection",
            "request_id": 2,
            "target_label": "a radiator",
            "target_score": 0.8,
            "is_detected": True,
            "ranked_scores": [{"label": "a radiator", "score": 0.8}],
        })
        assert isinstance(parsed, DetectionResponse)
        assert parsed.ranked_scores[0].label == "a radiator"

    def test_progress_is_a_response(self):
        parsed = response_adapter.validate_python({"type": "progress", "status": "download"})
        assert isinstance(parsed, ProgressUpdate)
        assert parsed.progress is None

    def test_unknown_type_rejected(self):
        with pytest.raises(ValidationError):
            request_adapter.validate_python({"type": "reboot"})

    def test_threshold_bounds(self):
        with pytest.raises(ValidationError):
            UpdateLabelsRequest(target_label="a door", target_embedding=[1.0], threshold=1.5)


class TestApiModels:
    def test_step_from_camel_case(self):
        step = InspectionStep.model_validate({
            "stepId": "s1",
            "stepNumber": 1,
            "totalSteps": 4,
            "targetObject": {"label": "a boiler", "displayName": "Boiler"},
            "detectionThreshold": 0.35,
        })
        assert step.target_object.display_name == "Boiler"
        assert step.negative_labels == []
        assert step.countdown_seconds is None

    def test_step_threshold_optional(self):
        step = InspectionStep.model_validate({
            "stepId": "s1", "stepNumber": 1, "totalSteps": 1,
            "targetObject": {"label": "a boiler"},
        })
        assert step.detection_threshold is None

    def test_capture_request_dumps_camel_case(self):
        request = CaptureRequest(
            image_data="data:image/jpeg;base64,AAAA",
            detected_score=0.7,
            captured_at="2026-01-01T00:00:00Z",
        )
        assert set(request.model_dump(by_alias=True)) == {"imageData", "detectedScore", "capturedAt"}
