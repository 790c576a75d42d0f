"""
Resolve a vision-detected vehicle against a user's registered fleet.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from ..models.vehicle import Vehicle


logger = logging.getLogger("vehicle_matching")

MATCH_THRESHOLD = 0.7
TYPE_WEIGHT = 0.4
MAKE_WEIGHT = 0.3
MODEL_WEIGHT = 0.3

# Vision models describe body styles; the fleet registry stores vehicle classes.
DETECTED_TYPE_ALIASES = {
    "sedan": "car",
    "hatchback": "car",
    "coupe": "car",
}


@dataclass
class VehicleMatch:
    matched_vehicle: Optional[Vehicle] = None
    confidence: float = 0.0
    suggested_new_vehicle: Optional[dict] = None
    requires_user_input: bool = False

    def as_dict(self) -> dict:
        if self.matched_vehicle is not None:
            return {
                "matched_vehicle": {
                    "id": self.matched_vehicle.id,
                    "vehicle_type": self.matched_vehicle.vehicle_type,
                    "make": self.matched_vehicle.make,
                    "model": self.matched_vehicle.model,
                    "confidence": round(self.confidence, 2),
                },
                "requires_user_input": self.requires_user_input,
            }
        return {
            "suggested_new_vehicle": self.suggested_new_vehicle,
            "requires_user_input": self.requires_user_input,
        }


def _norm(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def normalize_detected_type(value: Optional[str]) -> str:
    text = _norm(value)
    return DETECTED_TYPE_ALIASES.get(text, text)


def score_vehicle(vehicle: Vehicle, detection: dict) -> float:
    score = 0.0
    if _norm(vehicle.vehicle_type) and _norm(vehicle.vehicle_type) == normalize_detected_type(detection.get("type")):
        score += TYPE_WEIGHT
    if _norm(vehicle.make) and _norm(vehicle.make) == _norm(detection.get("make")):
        score += MAKE_WEIGHT
    if _norm(vehicle.model) and _norm(vehicle.model) == _norm(detection.get("model")):
        score += MODEL_WEIGHT
    return round(score, 4)


def match_vehicle(
    db: Session,
    user_id: str,
    explicit_vehicle_id: Optional[str],
    detection: dict,
) -> VehicleMatch:
    if explicit_vehicle_id:
        vehicle = (
            db.query(Vehicle)
            .filter(Vehicle.id == explicit_vehicle_id, Vehicle.user_id == user_id)
            .first()
        )
        if vehicle is not None:
            return VehicleMatch(matched_vehicle=vehicle, confidence=1.0)
        logger.warning("Explicit vehicle not found user_id=%s vehicle_id=%s", user_id, explicit_vehicle_id)

    vehicles = (
        db.query(Vehicle)
        .filter(Vehicle.user_id == user_id, Vehicle.is_active.is_(True))
        .order_by(Vehicle.created_at.asc())
        .all()
    )
    best: Optional[Vehicle] = None
    best_score = 0.0
    for vehicle in vehicles:
        score = score_vehicle(vehicle, detection)
        if score > MATCH_THRESHOLD and score > best_score:
            best = vehicle
            best_score = score

    if best is not None:
        logger.info("Vehicle matched user_id=%s vehicle_id=%s score=%.2f", user_id, best.id, best_score)
        return VehicleMatch(matched_vehicle=best, confidence=best_score)

    suggestion = {
        "vehicle_type": normalize_detected_type(detection.get("type")) or "other",
        "make": detection.get("make"),
        "model": detection.get("model"),
        "year": detection.get("year"),
        "confidence": detection.get("confidence"),
    }
    logger.info("No fleet match user_id=%s; suggesting new vehicle", user_id)
    return VehicleMatch(suggested_new_vehicle=suggestion, requires_user_input=True)
