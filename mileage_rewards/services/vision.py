"""
Vision-model checks on odometer photos.

`VisionValidator` asks a vision provider three questions about an image:
a general analysis (enrichment only), which vehicle it belongs to, and
whether the OCR reading agrees with what the model sees. Every answer is
cached by image reference. A failed analysis degrades to a conservative
default; detection and OCR validation failures propagate because the
pipeline cannot approve an upload without them.
"""

from __future__ import annotations

import base64
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from openai import OpenAI

from ..core.config import settings
from ..core.errors import ExternalServiceError
from .cache import (
    ANALYSIS_NAMESPACE,
    ANALYSIS_TTL_SEC,
    OCR_NAMESPACE,
    OCR_TTL_SEC,
    VEHICLE_NAMESPACE,
    VEHICLE_TTL_SEC,
    ExternalServiceCache,
)


logger = logging.getLogger("vision")

ANALYSIS_VEHICLE_TYPES = {"sedan", "suv", "motorcycle", "scooter", "truck", "van", "other"}
IMAGE_QUALITIES = {"excellent", "good", "fair", "poor"}

ANALYSIS_PROMPT = """Analyze the uploaded image of the vehicle's odometer/dashboard and provide a detailed analysis.

IMPORTANT: Respond ONLY with valid JSON in the following format:

{
  "vehicleType": "sedan|suv|motorcycle|scooter|truck|van|other",
  "estimatedMake": "brand name if visible",
  "estimatedModel": "model name if visible",
  "imageQuality": "excellent|good|fair|poor",
  "mileageReadable": true/false,
  "confidenceScore": 0.0-1.0,
  "additionalInsights": "detailed observations about the image",
  "vehicleFeatures": ["feature1", "feature2"],
  "co2Avoided": "58 kg",
  "distanceThisTrip": "0.0 km",
  "totalDistanceAllTime": "2025 km",
  "batteryRemaining": "49%",
  "vehicleStatus": "Parked",
  "time": "10:35 PM"
}

Rate image clarity, say whether the odometer reading is clearly readable,
estimate make and model from the instruments if visible, and extract any trip
details shown on the dashboard. Do not include any text outside the JSON response."""

DETECTION_PROMPT = """Analyze this vehicle image and identify vehicle details in JSON format:

{
  "vehicleType": "sedan|suv|motorcycle|scooter|truck|van|other",
  "make": "brand name",
  "model": "model name",
  "year": "estimated year if visible",
  "features": ["feature1", "feature2"],
  "confidence": 0.0-1.0
}

Focus on vehicle type, make and model, an estimated year if possible,
distinctive features and your overall confidence in the identification."""

VALIDATION_PROMPT = """Validate this OCR result for an odometer image:

Extracted mileage: {mileage}

Please analyze the image and provide validation in JSON format:

{{
  "isValid": true/false,
  "confidence": 0.0-1.0,
  "suggestedMileage": "corrected mileage if needed",
  "reasoning": "explanation for validation decision"
}}

Consider whether the mileage is reasonable for a vehicle, whether it matches
what you can see, and what the correct reading is if it differs."""


class VisionProvider:
    name = "base"

    def complete(self, prompt: str, image_data_url: str, *, max_tokens: int = 500) -> str:
        raise NotImplementedError


class OpenAIVisionProvider(VisionProvider):
    name = "openai"

    def __init__(self, api_key: str, model: str | None = None, client: OpenAI | None = None):
        self._client = client or OpenAI(api_key=api_key)
        self._model = model or settings.openai_vision_model
        logger.info("OpenAIVisionProvider initialized (model=%s)", self._model)

    def complete(self, prompt: str, image_data_url: str, *, max_tokens: int = 500) -> str:
        try:
            response = self._client.chat.completions.create(
                model=self._model,
                messages=[
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": prompt},
                            {"type": "image_url", "image_url": {"url": image_data_url}},
                        ],
                    }
                ],
                max_tokens=max_tokens,
                temperature=0.1,
            )
        except Exception as exc:
            raise ExternalServiceError(f"OpenAI call failed: {exc}", provider=self.name) from exc
        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise ExternalServiceError("Empty response from OpenAI", provider=self.name)
        return content


class UnavailableVisionProvider(VisionProvider):
    name = "unavailable"

    def __init__(self, reason: str):
        self.reason = reason

    def complete(self, prompt: str, image_data_url: str, *, max_tokens: int = 500) -> str:
        raise ExternalServiceError(f"Vision provider unavailable: {self.reason}", provider=self.name)


def build_vision_provider() -> VisionProvider:
    if not settings.openai_api_key:
        logger.warning("OPENAI_API_KEY not set; vision checks will fail")
        return UnavailableVisionProvider("OPENAI_API_KEY not set")
    return OpenAIVisionProvider(settings.openai_api_key)


@dataclass
class VisionImage:
    """An image reference whose bytes are only fetched on a cache miss."""

    ref: str
    loader: Callable[[], bytes]
    content_type: str = "image/jpeg"
    _data_url: Optional[str] = field(default=None, repr=False)

    def data_url(self) -> str:
        if self.ref.startswith("data:image/"):
            return self.ref
        if self._data_url is None:
            try:
                raw = self.loader()
            except ExternalServiceError:
                raise
            except Exception as exc:
                raise ExternalServiceError(f"Failed to load image for vision check: {exc}", provider="storage") from exc
            encoded = base64.b64encode(raw).decode("ascii")
            self._data_url = f"data:{self.content_type};base64,{encoded}"
        return self._data_url


_FENCE = re.compile(r"```(?:json)?\s*")
_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


def extract_json(text: str) -> dict:
    cleaned = _FENCE.sub("", (text or "").strip())
    match = _JSON_OBJECT.search(cleaned)
    if not match:
        raise ExternalServiceError(f"No JSON found in vision response: {text[:200]!r}", provider="vision")
    try:
        parsed = json.loads(match.group(0))
    except ValueError as exc:
        raise ExternalServiceError(f"Malformed JSON in vision response: {exc}", provider="vision") from exc
    if not isinstance(parsed, dict):
        raise ExternalServiceError("Vision response JSON is not an object", provider="vision")
    return parsed


def sanitize_vehicle_type(value: Any) -> str:
    text = str(value or "").strip().lower()
    return text if text in ANALYSIS_VEHICLE_TYPES else "unknown"


def sanitize_image_quality(value: Any) -> str:
    text = str(value or "").strip().lower()
    return text if text in IMAGE_QUALITIES else "fair"


def sanitize_confidence(value: Any) -> float:
    try:
        num = float(value)
    except (TypeError, ValueError):
        return 0.5
    if num != num or num < 0 or num > 1:
        return 0.5
    return round(num, 2)


def _to_float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _to_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    digits = re.sub(r"[^\d]", "", str(value))
    if not digits:
        return None
    return int(digits)


def default_analysis(insights: str = "") -> dict:
    return {
        "vehicle_type": "unknown",
        "estimated_make": None,
        "estimated_model": None,
        "quality": "poor",
        "mileage_readable": False,
        "confidence": 0.0,
        "insights": insights,
        "features": [],
        "trip": {},
        "analyzed_at": datetime.now(timezone.utc).isoformat(),
    }


def parse_analysis(text: str) -> dict:
    parsed = extract_json(text)
    trip_keys = ("co2Avoided", "distanceThisTrip", "totalDistanceAllTime", "batteryRemaining", "vehicleStatus", "time")
    return {
        "vehicle_type": sanitize_vehicle_type(parsed.get("vehicleType")),
        "estimated_make": parsed.get("estimatedMake") or None,
        "estimated_model": parsed.get("estimatedModel") or None,
        "quality": sanitize_image_quality(parsed.get("imageQuality")),
        "mileage_readable": bool(parsed.get("mileageReadable")),
        "confidence": sanitize_confidence(parsed.get("confidenceScore")),
        "insights": parsed.get("additionalInsights") or "",
        "features": parsed.get("vehicleFeatures") if isinstance(parsed.get("vehicleFeatures"), list) else [],
        "trip": {key: parsed.get(key) for key in trip_keys if parsed.get(key)},
        "analyzed_at": datetime.now(timezone.utc).isoformat(),
    }


def parse_detection(text: str) -> dict:
    parsed = extract_json(text)
    year = _to_int(parsed.get("year"))
    return {
        "type": str(parsed.get("vehicleType") or "unknown").strip().lower(),
        "make": parsed.get("make") or None,
        "model": parsed.get("model") or None,
        "year": year if year and 1900 <= year <= 2100 else None,
        "features": parsed.get("features") if isinstance(parsed.get("features"), list) else [],
        "confidence": _to_float(parsed.get("confidence"), 0.5),
    }


def parse_validation(text: str) -> dict:
    parsed = extract_json(text)
    return {
        "is_valid": bool(parsed.get("isValid")),
        "confidence": _to_float(parsed.get("confidence"), 0.5),
        "suggested_mileage": _to_int(parsed.get("suggestedMileage")),
        "reasoning": parsed.get("reasoning") or "",
    }


class VisionValidator:
    def __init__(self, provider: VisionProvider, cache: ExternalServiceCache | None = None):
        self.provider = provider
        self.cache = cache or ExternalServiceCache(None)

    def analyze(self, image: VisionImage) -> dict:
        cached = self.cache.get(ANALYSIS_NAMESPACE, image.ref)
        if cached is not None:
            logger.debug("Analysis cache hit ref=%s", image.ref)
            return cached
        try:
            text = self.provider.complete(ANALYSIS_PROMPT, image.data_url(), max_tokens=1000)
            result = parse_analysis(text)
        except ExternalServiceError as exc:
            logger.warning("Vision analysis failed, using default: %s", exc)
            return default_analysis(insights="analysis unavailable")
        self.cache.set(ANALYSIS_NAMESPACE, image.ref, result, ANALYSIS_TTL_SEC)
        logger.info("Analysis completed confidence=%s quality=%s", result["confidence"], result["quality"])
        return result

    def detect_vehicle(self, image: VisionImage) -> dict:
        cached = self.cache.get(VEHICLE_NAMESPACE, image.ref)
        if cached is not None:
            logger.debug("Vehicle detection cache hit ref=%s", image.ref)
            return cached
        text = self.provider.complete(DETECTION_PROMPT, image.data_url(), max_tokens=500)
        result = parse_detection(text)
        self.cache.set(VEHICLE_NAMESPACE, image.ref, result, VEHICLE_TTL_SEC)
        logger.info("Vehicle detected type=%s make=%s model=%s confidence=%s", result["type"], result["make"], result["model"], result["confidence"])
        return result

    def validate_ocr(self, image: VisionImage, candidate_mileage: int) -> dict:
        cache_ref = f"{image.ref}|{candidate_mileage}"
        cached = self.cache.get(OCR_NAMESPACE, cache_ref)
        if cached is not None:
            logger.debug("OCR validation cache hit ref=%s", image.ref)
            return cached
        prompt = VALIDATION_PROMPT.format(mileage=candidate_mileage)
        text = self.provider.complete(prompt, image.data_url(), max_tokens=300)
        result = parse_validation(text)
        self.cache.set(OCR_NAMESPACE, cache_ref, result, OCR_TTL_SEC)
        logger.info("OCR validation is_valid=%s confidence=%s suggested=%s", result["is_valid"], result["confidence"], result["suggested_mileage"])
        return result
