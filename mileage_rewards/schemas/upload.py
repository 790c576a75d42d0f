"""
Pydantic schemas for odometer uploads.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict


class UploadAccepted(BaseModel):
    upload_id: str
    status: str


class AssignVehicleIn(BaseModel):
    vehicle_id: str
    user_id: Optional[str] = None


class UploadOut(BaseModel):
    id: str
    user_id: str
    vehicle_id: Optional[str]
    image_url: str
    thumbnail_url: Optional[str]
    image_hash: str
    status: str
    validation_status: str
    is_approved: bool
    extracted_mileage: Optional[int]
    ocr_confidence: Optional[float]
    ocr_raw_text: Optional[str]
    ocr_method: Optional[str]
    ai_analysis: Optional[dict[str, Any]]
    vehicle_detected: Optional[dict[str, Any]]
    ai_validation: Optional[dict[str, Any]]
    vehicle_match: Optional[dict[str, Any]]
    final_mileage: Optional[int]
    previous_mileage: Optional[int]
    mileage_delta: Optional[float]
    carbon_saved: Optional[float]
    processing_time_ms: Optional[int]
    ocr_time_ms: Optional[int]
    ai_time_ms: Optional[int]
    validation_notes: Optional[str]
    processed_at: Optional[datetime]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class UploadStatsOut(BaseModel):
    total_uploads: int
    approved_uploads: int
    total_mileage: float
    total_carbon_saved: float
    average_confidence: float
    total_vehicles: int
    recent_activity: list[dict[str, Any]]
