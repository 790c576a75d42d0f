"""
Odometer upload pipeline.

`UploadPipeline.ingest` validates and stores the photo, persists an upload in
Processing and hands it to the worker pool. `process_upload` runs the stages
strictly in order (download, OCR, vision analysis and vehicle detection,
vehicle matching, OCR cross-validation, carbon) and always leaves the upload
in a terminal status. Re-running it on an upload still in Processing is safe:
the run that moves the row out of Processing applies vehicle totals and the
reward, an overlapping run backs off. Approval and reward creation commit
together while the vehicle lock is held.
"""

from __future__ import annotations

import hashlib
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.errors import NotFoundError, ValidationError, log_exception
from ..core.states import HistoryEventType, UploadStatus, ValidationStatus
from ..models.odometer_upload import OdometerUpload
from ..models.reward import Reward
from ..models.user import User
from ..models.vehicle import Vehicle
from .audit import AuditSink
from .carbon import compute_carbon, vehicle_lock
from .ocr import OcrExtractor, is_plausible_reading
from .reward_state import amount_str
from .rewards import build_upload_reward
from .storage import StorageProvider, build_image_key
from .vehicle_matching import VehicleMatch, match_vehicle
from .vision import VisionImage, VisionValidator


logger = logging.getLogger("upload_pipeline")


@dataclass
class ProcessingOutcome:
    upload_id: str
    status: str
    validation_status: str
    reward_id: Optional[str] = None


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def _vehicle_name(vehicle: Optional[Vehicle]) -> Optional[str]:
    if vehicle is None:
        return None
    parts = [str(vehicle.year) if vehicle.year else None, vehicle.make, vehicle.model]
    name = " ".join(p for p in parts if p)
    return name or None


class UploadPipeline:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        storage: StorageProvider,
        ocr: OcrExtractor,
        vision: VisionValidator,
        audit: Optional[AuditSink] = None,
        executor=None,
        max_upload_bytes: Optional[int] = None,
        allowed_types: Optional[set[str]] = None,
    ):
        self.session_factory = session_factory
        self.storage = storage
        self.ocr = ocr
        self.vision = vision
        self.audit = audit
        self.executor = executor
        self.max_upload_bytes = max_upload_bytes or settings.max_upload_bytes
        self.allowed_types = allowed_types or settings.allowed_image_type_set

    def validate_file(self, data: bytes, content_type: Optional[str]) -> None:
        ctype = (content_type or "").split(";")[0].strip().lower()
        if ctype not in self.allowed_types:
            raise ValidationError(
                f"Invalid file type {ctype or 'unknown'}. Allowed: {', '.join(sorted(self.allowed_types))}",
                context={"content_type": ctype},
            )
        if not data:
            raise ValidationError("Empty file")
        if len(data) > self.max_upload_bytes:
            raise ValidationError(
                f"File too large. Maximum size is {self.max_upload_bytes} bytes",
                context={"size": len(data)},
            )

    def ingest(
        self,
        db: Session,
        data: bytes,
        *,
        user_id: str,
        content_type: Optional[str],
        vehicle_id: Optional[str] = None,
    ) -> str:
        if not user_id:
            raise ValidationError("user_id is required")
        self.validate_file(data, content_type)
        if db.get(User, user_id) is None:
            raise NotFoundError("User not found", context={"user_id": user_id})
        if vehicle_id:
            vehicle = db.get(Vehicle, vehicle_id)
            if vehicle is None or vehicle.user_id != user_id:
                raise ValidationError("Vehicle does not belong to user", context={"vehicle_id": vehicle_id})

        ctype = (content_type or "").split(";")[0].strip().lower()
        key = build_image_key(user_id, ctype, vehicle_id)
        stored = self.storage.upload(data=data, key=key, content_type=ctype)

        upload = OdometerUpload(
            user_id=user_id,
            vehicle_id=vehicle_id,
            image_url=stored.url,
            thumbnail_url=stored.thumbnail_url,
            storage_key=stored.storage_path,
            image_hash=hashlib.sha256(data).hexdigest(),
            file_size_bytes=len(data),
            content_type=ctype,
            status=UploadStatus.PROCESSING.value,
            validation_status=ValidationStatus.PENDING.value,
        )
        db.add(upload)
        db.commit()
        db.refresh(upload)
        logger.info("Upload stored upload_id=%s user_id=%s size=%s", upload.id, user_id, len(data))
        self.submit(upload.id)
        return upload.id

    def submit(self, upload_id: str) -> None:
        if self.executor is None:
            self.process_upload(upload_id)
            return
        self.executor.submit(self.process_upload, upload_id)

    def process_upload(self, upload_id: str) -> Optional[ProcessingOutcome]:
        start = time.monotonic()
        with self.session_factory() as db:
            upload = db.get(OdometerUpload, upload_id)
            if upload is None:
                logger.warning("Upload not found upload_id=%s", upload_id)
                return None
            if upload.status != UploadStatus.PROCESSING.value:
                logger.info("Upload already terminal upload_id=%s status=%s", upload_id, upload.status)
                return None
            logger.info("Processing upload upload_id=%s", upload_id)
            try:
                outcome, reward = self._run_stages(db, upload, start)
            except Exception as exc:
                db.rollback()
                logger.warning("Upload failed upload_id=%s err=%s", upload_id, exc)
                self._mark_failed(db, upload_id, exc, _elapsed_ms(start))
                return ProcessingOutcome(upload_id, UploadStatus.FAILED.value, ValidationStatus.REJECTED.value)

        if outcome is None:
            return None
        if reward is not None:
            self._record_reward(reward)
        logger.info(
            "Upload processed upload_id=%s validation=%s reward_id=%s",
            upload_id,
            outcome.validation_status,
            outcome.reward_id,
        )
        return outcome

    def _run_stages(self, db: Session, upload: OdometerUpload, start: float) -> tuple[Optional[ProcessingOutcome], Optional[dict]]:
        image_bytes = self.storage.download(upload.storage_key)

        ocr_start = time.monotonic()
        reading = self.ocr.extract(image_bytes)
        ocr_ms = _elapsed_ms(ocr_start)

        image = VisionImage(ref=upload.image_url, loader=lambda: image_bytes, content_type=upload.content_type or "image/jpeg")
        ai_start = time.monotonic()
        analysis = self.vision.analyze(image)
        detection = self.vision.detect_vehicle(image)
        match = match_vehicle(db, upload.user_id, upload.vehicle_id, detection)
        ai_validation = self.vision.validate_ocr(image, reading.mileage)
        ai_ms = _elapsed_ms(ai_start)

        suggested = ai_validation.get("suggested_mileage")
        final_mileage = int(suggested) if suggested is not None else reading.mileage
        ocr_confidence = reading.confidence / 100
        confidence = (ocr_confidence + float(ai_validation.get("confidence") or 0)) / 2

        notes: list[str] = []
        is_valid = bool(ai_validation.get("is_valid"))
        if not is_valid:
            notes.append(ai_validation.get("reasoning") or "Reading rejected by vision check")
        if not is_plausible_reading(final_mileage):
            is_valid = False
            notes.append(f"Implausible odometer reading {final_mileage}")

        if not is_valid:
            validation_status = ValidationStatus.REJECTED.value
        elif match.requires_user_input:
            validation_status = ValidationStatus.FLAGGED.value
            notes.append("Vehicle not recognised; awaiting vehicle selection")
        else:
            validation_status = ValidationStatus.APPROVED.value

        upload.extracted_mileage = reading.mileage
        upload.ocr_confidence = round(ocr_confidence, 4)
        upload.ocr_raw_text = reading.raw_text
        upload.ocr_method = reading.method
        upload.ocr_bounding_box = reading.bounding_box.as_dict()
        upload.ai_analysis = analysis
        upload.vehicle_detected = detection
        upload.ai_validation = {**ai_validation, "combined_confidence": round(confidence, 4)}
        upload.vehicle_match = match.as_dict()
        upload.final_mileage = final_mileage
        upload.ocr_time_ms = ocr_ms
        upload.ai_time_ms = ai_ms

        vehicle_id = match.matched_vehicle.id if match.matched_vehicle is not None else None
        if vehicle_id:
            upload.vehicle_id = vehicle_id

        with vehicle_lock(vehicle_id if validation_status == ValidationStatus.APPROVED.value else None):
            if not self._claim_completion(db, upload.id):
                db.rollback()
                logger.info("Upload completed by an overlapping run upload_id=%s", upload.id)
                return None, None
            reward = None
            if validation_status == ValidationStatus.APPROVED.value:
                reward = self._approve(db, upload, match.matched_vehicle, final_mileage, start)
            else:
                upload.previous_mileage = None
                upload.mileage_delta = 0.0
                upload.carbon_saved = 0.0
                upload.is_approved = False
            upload.validation_status = validation_status
            upload.validation_notes = "; ".join(notes) or None
            upload.status = UploadStatus.COMPLETED.value
            upload.processing_time_ms = _elapsed_ms(start)
            upload.processed_at = datetime.utcnow()
            db.commit()

        reward_info = None
        if reward is not None:
            reward_info = {"id": reward.id, "user_id": reward.user_id, "amount": amount_str(reward.amount), "upload_id": upload.id}
        outcome = ProcessingOutcome(
            upload_id=upload.id,
            status=UploadStatus.COMPLETED.value,
            validation_status=validation_status,
            reward_id=reward_info["id"] if reward_info else None,
        )
        return outcome, reward_info

    @staticmethod
    def _claim_completion(db: Session, upload_id: str) -> bool:
        """Only the run that moves the row out of Processing may apply totals and the reward."""
        result = db.execute(
            update(OdometerUpload)
            .where(OdometerUpload.id == upload_id, OdometerUpload.status == UploadStatus.PROCESSING.value)
            .values(status=UploadStatus.COMPLETED.value, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _approve(self, db: Session, upload: OdometerUpload, vehicle: Optional[Vehicle], final_mileage: int, start: float) -> Optional[Reward]:
        """Apply carbon, running totals and the reward. Caller commits under the vehicle lock."""
        carbon = compute_carbon(db, upload.user_id, vehicle.id if vehicle else None, final_mileage, exclude_upload_id=upload.id)
        upload.previous_mileage = carbon.previous_mileage
        upload.mileage_delta = carbon.mileage_delta
        upload.carbon_saved = carbon.carbon_saved_kg
        upload.is_approved = True

        if vehicle is not None and carbon.mileage_delta > 0:
            db.execute(
                update(Vehicle)
                .where(Vehicle.id == vehicle.id)
                .values(
                    total_mileage=Vehicle.total_mileage + Decimal(str(carbon.mileage_delta)),
                    total_carbon_saved=Vehicle.total_carbon_saved + Decimal(str(carbon.carbon_saved_kg)),
                    updated_at=datetime.utcnow(),
                )
                .execution_options(synchronize_session=False)
            )

        existing = db.query(Reward.id).filter(Reward.upload_id == upload.id).first()
        if existing is not None:
            logger.info("Reward already exists upload_id=%s reward_id=%s", upload.id, existing[0])
            return None
        reward = build_upload_reward(
            user_id=upload.user_id,
            upload_id=upload.id,
            miles=carbon.mileage_delta,
            carbon_grams=Decimal(str(carbon.carbon_saved_kg)) * 1000,
            image_hash=upload.image_hash,
            vehicle_id=vehicle.id if vehicle else None,
            vehicle_name=_vehicle_name(vehicle),
            previous_mileage=carbon.previous_mileage,
            ocr_confidence=upload.ocr_confidence,
            processing_time_ms=_elapsed_ms(start),
        )
        if reward.amount <= 0:
            logger.info("No reward for baseline or zero-delta upload upload_id=%s", upload.id)
            return None
        db.add(reward)
        db.flush()
        return reward

    def _mark_failed(self, db: Session, upload_id: str, exc: Exception, elapsed_ms: int) -> None:
        try:
            db.execute(
                update(OdometerUpload)
                .where(OdometerUpload.id == upload_id, OdometerUpload.status == UploadStatus.PROCESSING.value)
                .values(
                    status=UploadStatus.FAILED.value,
                    validation_status=ValidationStatus.REJECTED.value,
                    is_approved=False,
                    final_mileage=None,
                    validation_notes=f"{type(exc).__name__}: {exc}"[:2000],
                    processing_time_ms=elapsed_ms,
                    processed_at=datetime.utcnow(),
                    updated_at=datetime.utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            db.commit()
        except Exception as persist_exc:
            db.rollback()
            log_exception(logger, "Failed to mark upload as failed", extra={"upload_id": upload_id}, exc=persist_exc)

    def _record_reward(self, reward: dict) -> None:
        if self.audit is None:
            return
        self.audit.record(
            HistoryEventType.REWARD_CREATED.value,
            reward["user_id"],
            {"type": "upload", "amount": reward["amount"], "upload_id": reward["upload_id"]},
            reward_id=reward["id"],
        )

    def assign_vehicle(self, upload_id: str, vehicle_id: str, *, user_id: Optional[str] = None) -> OdometerUpload:
        """Resolve a flagged upload with the vehicle the user picked, then approve it."""
        start = time.monotonic()
        with self.session_factory() as db:
            upload = get_upload_status(db, upload_id, user_id)
            if upload.status != UploadStatus.COMPLETED.value or upload.validation_status != ValidationStatus.FLAGGED.value:
                raise ValidationError(
                    "Only flagged uploads can be assigned a vehicle",
                    context={"upload_id": upload_id, "validation_status": upload.validation_status},
                )
            vehicle = db.get(Vehicle, vehicle_id)
            if vehicle is None or vehicle.user_id != upload.user_id or not vehicle.is_active:
                raise ValidationError("Vehicle does not belong to user", context={"vehicle_id": vehicle_id})

            with vehicle_lock(vehicle.id):
                upload.vehicle_id = vehicle.id
                upload.vehicle_match = VehicleMatch(matched_vehicle=vehicle, confidence=1.0).as_dict()
                reward = self._approve(db, upload, vehicle, int(upload.final_mileage), start)
                upload.validation_status = ValidationStatus.APPROVED.value
                upload.validation_notes = "Vehicle assigned by user"
                db.commit()
                reward_info = None
                if reward is not None:
                    reward_info = {"id": reward.id, "user_id": reward.user_id, "amount": amount_str(reward.amount), "upload_id": upload.id}
            db.refresh(upload)
            db.expunge(upload)

        if reward_info is not None:
            self._record_reward(reward_info)
        logger.info("Vehicle assigned upload_id=%s vehicle_id=%s", upload_id, vehicle_id)
        return upload

    def recover_stuck_uploads(self, older_than_sec: Optional[int] = None) -> list[str]:
        """Re-submit uploads left in Processing past the threshold."""
        threshold = older_than_sec if older_than_sec is not None else settings.stuck_upload_after_sec
        cutoff = datetime.utcnow() - timedelta(seconds=threshold)
        with self.session_factory() as db:
            ids = [
                row[0]
                for row in db.query(OdometerUpload.id)
                .filter(OdometerUpload.status == UploadStatus.PROCESSING.value, OdometerUpload.updated_at < cutoff)
                .order_by(OdometerUpload.created_at.asc())
                .all()
            ]
            if not ids:
                return []
            db.execute(
                update(OdometerUpload)
                .where(OdometerUpload.id.in_(ids))
                .values(updated_at=datetime.utcnow())
                .execution_options(synchronize_session=False)
            )
            db.commit()
        logger.warning("Recovering %s stuck uploads", len(ids))
        for upload_id in ids:
            self.submit(upload_id)
        return ids


def get_upload_status(db: Session, upload_id: str, user_id: Optional[str] = None) -> OdometerUpload:
    query = db.query(OdometerUpload).filter(OdometerUpload.id == upload_id)
    if user_id:
        query = query.filter(OdometerUpload.user_id == user_id)
    upload = query.first()
    if upload is None:
        raise NotFoundError("Upload not found", context={"upload_id": upload_id})
    return upload


def get_user_uploads(db: Session, user_id: str, limit: int = 20, offset: int = 0) -> list[OdometerUpload]:
    return (
        db.query(OdometerUpload)
        .filter(OdometerUpload.user_id == user_id)
        .order_by(OdometerUpload.created_at.desc())
        .offset(max(offset, 0))
        .limit(limit)
        .all()
    )


def get_user_upload_stats(db: Session, user_id: str) -> dict:
    total_uploads = db.query(func.count(OdometerUpload.id)).filter(OdometerUpload.user_id == user_id).scalar() or 0
    approved, total_delta, total_carbon, avg_conf = (
        db.query(
            func.count(OdometerUpload.id),
            func.coalesce(func.sum(OdometerUpload.mileage_delta), 0),
            func.coalesce(func.sum(OdometerUpload.carbon_saved), 0),
            func.avg(OdometerUpload.ocr_confidence),
        )
        .filter(OdometerUpload.user_id == user_id, OdometerUpload.validation_status == ValidationStatus.APPROVED.value)
        .one()
    )
    total_vehicles = (
        db.query(func.count(Vehicle.id)).filter(Vehicle.user_id == user_id, Vehicle.is_active.is_(True)).scalar() or 0
    )
    recent = get_user_uploads(db, user_id, limit=10)
    return {
        "total_uploads": int(total_uploads),
        "approved_uploads": int(approved or 0),
        "total_mileage": float(total_delta or 0),
        "total_carbon_saved": float(total_carbon or 0),
        "average_confidence": round(float(avg_conf), 4) if avg_conf is not None else 0.0,
        "total_vehicles": int(total_vehicles),
        "recent_activity": [
            {
                "upload_id": u.id,
                "status": u.status,
                "validation_status": u.validation_status,
                "final_mileage": u.final_mileage,
                "carbon_saved": u.carbon_saved,
                "created_at": u.created_at,
            }
            for u in recent
        ],
    }
