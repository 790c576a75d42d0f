"""
Odometer reading extraction from OCR word detections.

The provider returns every word it sees; `OcrExtractor` applies four
heuristics in priority order and picks one reading from the first
heuristic that yields candidates. Confidences are on the provider's 0-100
scale throughout this module.
"""

from __future__ import annotations

import functools
import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional

import boto3

from ..core.config import settings
from ..core.errors import ExternalServiceError, NoReadingFoundError


logger = logging.getLogger("ocr")

ODOMETER_LABELS = ("MILE", "KM", "ODO", "ODOMETER", "TOTAL", "TRIP")
LABEL_DISTANCE = 0.1
MAX_ODOMETER_READING = 999_999

_NON_DIGIT = re.compile(r"[^\d]")


@dataclass
class BoundingBox:
    left: float = 0.0
    top: float = 0.0
    width: float = 0.0
    height: float = 0.0

    def as_dict(self) -> dict:
        return {"left": self.left, "top": self.top, "width": self.width, "height": self.height}


@dataclass
class TextDetection:
    text: str
    confidence: float
    bounding_box: Optional[BoundingBox] = None

    @property
    def digits(self) -> str:
        return _NON_DIGIT.sub("", self.text or "")


@dataclass
class OcrResult:
    mileage: int
    confidence: float
    raw_text: str
    bounding_box: BoundingBox = field(default_factory=BoundingBox)
    method: str = ""


class OcrProvider:
    name = "base"

    def detect_text(self, image_bytes: bytes) -> List[TextDetection]:
        raise NotImplementedError


class TextractOcrProvider(OcrProvider):
    name = "textract"

    def __init__(self, region: str | None = None, client=None):
        self.client = client or boto3.client("textract", region_name=region or settings.aws_region)

    def detect_text(self, image_bytes: bytes) -> List[TextDetection]:
        try:
            response = self.client.detect_document_text(Document={"Bytes": image_bytes})
        except Exception as exc:
            raise ExternalServiceError(f"Textract call failed: {exc}", provider=self.name) from exc
        blocks = response.get("Blocks") or []
        logger.info("Textract processed %s blocks", len(blocks))
        detections: List[TextDetection] = []
        for block in blocks:
            if block.get("BlockType") != "WORD" or not block.get("Text"):
                continue
            bbox = (block.get("Geometry") or {}).get("BoundingBox")
            detections.append(
                TextDetection(
                    text=block["Text"],
                    confidence=float(block.get("Confidence") or 0.0),
                    bounding_box=BoundingBox(
                        left=float(bbox.get("Left") or 0.0),
                        top=float(bbox.get("Top") or 0.0),
                        width=float(bbox.get("Width") or 0.0),
                        height=float(bbox.get("Height") or 0.0),
                    )
                    if bbox
                    else None,
                )
            )
        return detections


class UnavailableOcrProvider(OcrProvider):
    name = "unavailable"

    def __init__(self, reason: str):
        self.reason = reason

    def detect_text(self, image_bytes: bytes) -> List[TextDetection]:
        raise ExternalServiceError(f"OCR provider unavailable: {self.reason}", provider=self.name)


def build_ocr_provider(name: str | None = None) -> OcrProvider:
    name = (name or settings.ocr_provider or "").strip().lower()
    if name == "textract":
        try:
            provider = TextractOcrProvider()
        except Exception as exc:
            logger.warning("Textract client init failed: %s", exc)
            return UnavailableOcrProvider(str(exc))
        logger.info("OCR provider selected: textract region=%s", settings.aws_region)
        return provider
    logger.warning("Unknown OCR_PROVIDER=%s; OCR disabled", name)
    return UnavailableOcrProvider(f"unknown provider {name!r}")


def _has_digits(detection: TextDetection, lo: int, hi: int) -> bool:
    return lo <= len(detection.digits) <= hi


def _pure_numbers(words: List[TextDetection]) -> List[TextDetection]:
    return [w for w in words if _has_digits(w, 5, 7) and w.confidence > 85]


def _is_nearby(a: TextDetection, b: TextDetection, threshold: float) -> bool:
    if a.bounding_box is None or b.bounding_box is None:
        return False
    return (
        abs(a.bounding_box.left - b.bounding_box.left) < threshold
        and abs(a.bounding_box.top - b.bounding_box.top) < threshold
    )


def _labeled_numbers(words: List[TextDetection]) -> List[TextDetection]:
    labels = [w for w in words if any(label in w.text.upper() for label in ODOMETER_LABELS)]
    if not labels:
        return []
    return [
        w
        for w in words
        if _has_digits(w, 4, 7) and w.confidence > 80 and any(_is_nearby(w, label, LABEL_DISTANCE) for label in labels)
    ]


def _positioned_numbers(words: List[TextDetection]) -> List[TextDetection]:
    out = []
    for w in words:
        if w.bounding_box is None or not _has_digits(w, 4, 7) or w.confidence <= 75:
            continue
        bbox = w.bounding_box
        if 0.3 < bbox.left < 0.9 and 0.2 < bbox.top < 0.8:
            out.append(w)
    return out


def _high_confidence_numbers(words: List[TextDetection]) -> List[TextDetection]:
    return [w for w in words if _has_digits(w, 4, 7) and w.confidence > 95]


HEURISTICS: List[tuple[str, Callable[[List[TextDetection]], List[TextDetection]]]] = [
    ("pure_number", _pure_numbers),
    ("labeled_number", _labeled_numbers),
    ("positioned_number", _positioned_numbers),
    ("high_confidence", _high_confidence_numbers),
]


def _compare_candidates(a: TextDetection, b: TextDetection) -> int:
    # Confidence wins when the gap is over 5 points, otherwise the longer reading.
    if abs(a.confidence - b.confidence) > 5:
        return -1 if a.confidence > b.confidence else 1
    return len(b.digits) - len(a.digits)


def select_best(candidates: Iterable[TextDetection], method: str) -> OcrResult:
    ordered = sorted(candidates, key=functools.cmp_to_key(_compare_candidates))
    if not ordered:
        raise NoReadingFoundError("No candidates to select from", provider="ocr")
    best = ordered[0]
    return OcrResult(
        mileage=int(best.digits),
        confidence=best.confidence,
        raw_text=best.text,
        bounding_box=best.bounding_box or BoundingBox(),
        method=method,
    )


def find_odometer_reading(words: List[TextDetection]) -> Optional[OcrResult]:
    for method, heuristic in HEURISTICS:
        candidates = heuristic(words)
        if candidates:
            logger.debug("Found %s %s candidates", len(candidates), method)
            return select_best(candidates, method)
    return None


def is_plausible_reading(mileage: int | None) -> bool:
    """Reject out-of-range readings and ones made of a single repeated digit."""
    if mileage is None or mileage < 0 or mileage > MAX_ODOMETER_READING:
        return False
    text = str(mileage)
    if len(text) >= 3 and len(set(text)) == 1:
        return False
    return True


class OcrExtractor:
    def __init__(self, provider: OcrProvider):
        self.provider = provider

    def extract(self, image_bytes: bytes) -> OcrResult:
        words = [w for w in self.provider.detect_text(image_bytes) if w.text]
        logger.debug("Processing %s word detections", len(words))
        result = find_odometer_reading(words)
        if result is None:
            raise NoReadingFoundError("No valid odometer reading found in image", provider=self.provider.name)
        logger.info(
            "Odometer detected mileage=%s confidence=%.1f method=%s",
            result.mileage,
            result.confidence,
            result.method,
        )
        return result
