import json

import pytest

from mileage_rewards.core.errors import ExternalServiceError
from mileage_rewards.services.cache import ExternalServiceCache, InMemoryCacheBackend
from mileage_rewards.services.vision import (
    VisionImage,
    VisionProvider,
    VisionValidator,
    extract_json,
    parse_analysis,
    parse_detection,
    parse_validation,
    sanitize_confidence,
    sanitize_image_quality,
    sanitize_vehicle_type,
)


class ScriptedVisionProvider(VisionProvider):
    name = "scripted"

    def __init__(self, analysis=None, detection=None, validation=None):
        self.responses = {"analysis": analysis, "detection": detection, "validation": validation}
        self.calls = []

    def complete(self, prompt, image_data_url, *, max_tokens=500):
        if prompt.startswith("Validate"):
            kind = "validation"
        elif prompt.startswith("Analyze this vehicle"):
            kind = "detection"
        else:
            kind = "analysis"
        self.calls.append(kind)
        response = self.responses[kind]
        if isinstance(response, Exception):
            raise response
        return response


def _image(loads=None):
    def _loader():
        if loads is not None:
            loads.append(1)
        return b"jpeg-bytes"

    return VisionImage(ref="/media/uploads/odometer/u1/a.jpg", loader=_loader)


def test_extract_json_strips_code_fences():
    text = "Here you go:\n```json\n{\"isValid\": true, \"confidence\": 0.9}\n```"
    assert extract_json(text) == {"isValid": True, "confidence": 0.9}


def test_extract_json_without_object_raises():
    with pytest.raises(ExternalServiceError):
        extract_json("I cannot read this image.")


def test_sanitizers():
    assert sanitize_vehicle_type("SUV") == "suv"
    assert sanitize_vehicle_type("spaceship") == "unknown"
    assert sanitize_image_quality("blurry") == "fair"
    assert sanitize_image_quality("Good") == "good"
    assert sanitize_confidence(0.876) == 0.88
    assert sanitize_confidence(7) == 0.5
    assert sanitize_confidence("n/a") == 0.5


def test_parse_analysis_normalises_fields():
    result = parse_analysis(
        json.dumps(
            {
                "vehicleType": "Sedan",
                "estimatedMake": "Tesla",
                "imageQuality": "excellent",
                "mileageReadable": True,
                "confidenceScore": 0.91,
                "distanceThisTrip": "12 mi",
            }
        )
    )
    assert result["vehicle_type"] == "sedan"
    assert result["estimated_make"] == "Tesla"
    assert result["quality"] == "excellent"
    assert result["confidence"] == 0.91
    assert result["trip"] == {"distanceThisTrip": "12 mi"}


def test_parse_detection_and_validation():
    detection = parse_detection('{"vehicleType": "Sedan", "make": "Tesla", "model": "Model 3", "year": "2021", "confidence": 0.8}')
    assert detection["type"] == "sedan"
    assert detection["year"] == 2021
    assert detection["confidence"] == 0.8

    validation = parse_validation('{"isValid": true, "confidence": 0.9, "suggestedMileage": "45,231", "reasoning": "clear"}')
    assert validation["is_valid"] is True
    assert validation["suggested_mileage"] == 45231

    no_suggestion = parse_validation('{"isValid": false, "confidence": 0.2, "suggestedMileage": null}')
    assert no_suggestion["suggested_mileage"] is None


def test_analysis_degrades_to_default_on_provider_failure():
    provider = ScriptedVisionProvider(analysis=ExternalServiceError("rate limited", provider="openai"))
    result = VisionValidator(provider).analyze(_image())
    assert result["quality"] == "poor"
    assert result["confidence"] == 0.0
    assert result["mileage_readable"] is False


def test_detection_and_validation_failures_propagate():
    provider = ScriptedVisionProvider(
        detection=ExternalServiceError("down", provider="openai"),
        validation="not json at all",
    )
    validator = VisionValidator(provider)
    with pytest.raises(ExternalServiceError):
        validator.detect_vehicle(_image())
    with pytest.raises(ExternalServiceError):
        validator.validate_ocr(_image(), 45231)


def test_cached_results_skip_provider_and_image_load():
    provider = ScriptedVisionProvider(detection='{"vehicleType": "suv", "make": "Kia", "confidence": 0.7}')
    cache = ExternalServiceCache(InMemoryCacheBackend())
    validator = VisionValidator(provider, cache)

    loads = []
    first = validator.detect_vehicle(_image(loads))
    second = validator.detect_vehicle(_image(loads))
    assert first == second
    assert provider.calls == ["detection"]
    assert len(loads) == 1


def test_validation_cache_is_keyed_by_candidate():
    provider = ScriptedVisionProvider(validation='{"isValid": true, "confidence": 0.9}')
    validator = VisionValidator(provider, ExternalServiceCache(InMemoryCacheBackend()))
    validator.validate_ocr(_image(), 45231)
    validator.validate_ocr(_image(), 45231)
    validator.validate_ocr(_image(), 45232)
    assert provider.calls == ["validation", "validation"]
