"""
Carbon savings from the mileage delta against the last approved reading.

Callers that approve uploads must hold `vehicle_lock(vehicle_id)` from the
baseline read until the approval is committed; otherwise two concurrent
uploads for one vehicle can both read the same baseline.
"""

from __future__ import annotations

import logging
import threading
import zlib
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterator, Optional

from sqlalchemy.orm import Session

from ..core.db import is_postgres
from ..core.states import ValidationStatus
from ..models.odometer_upload import OdometerUpload
from ..models.vehicle import Vehicle


logger = logging.getLogger("carbon")

# Vehicles share a fixed pool of locks; two vehicles on one stripe just queue.
LOCK_STRIPES = 64
_vehicle_locks = tuple(threading.Lock() for _ in range(LOCK_STRIPES))


def lock_for_vehicle(vehicle_id: str) -> threading.Lock:
    return _vehicle_locks[zlib.crc32(vehicle_id.encode("utf-8")) % LOCK_STRIPES]


@contextmanager
def vehicle_lock(vehicle_id: Optional[str]) -> Iterator[None]:
    if not vehicle_id:
        yield
        return
    with lock_for_vehicle(vehicle_id):
        yield


@dataclass
class CarbonResult:
    previous_mileage: Optional[int]
    mileage_delta: float
    carbon_saved_kg: float


def previous_approved_mileage(
    db: Session,
    user_id: str,
    vehicle_id: Optional[str],
    *,
    exclude_upload_id: Optional[str] = None,
) -> Optional[int]:
    query = db.query(OdometerUpload).filter(
        OdometerUpload.user_id == user_id,
        OdometerUpload.validation_status == ValidationStatus.APPROVED.value,
        OdometerUpload.final_mileage.is_not(None),
    )
    if vehicle_id:
        query = query.filter(OdometerUpload.vehicle_id == vehicle_id)
    if exclude_upload_id:
        query = query.filter(OdometerUpload.id != exclude_upload_id)
    last = query.order_by(OdometerUpload.created_at.desc()).first()
    return last.final_mileage if last else None


def lock_vehicle_row(db: Session, vehicle_id: str) -> Optional[Vehicle]:
    query = db.query(Vehicle).filter(Vehicle.id == vehicle_id)
    if is_postgres(db):
        query = query.with_for_update()
    return query.first()


def compute_carbon(
    db: Session,
    user_id: str,
    vehicle_id: Optional[str],
    final_mileage: int,
    *,
    exclude_upload_id: Optional[str] = None,
) -> CarbonResult:
    if not vehicle_id:
        return CarbonResult(previous_mileage=None, mileage_delta=0.0, carbon_saved_kg=0.0)
    vehicle = lock_vehicle_row(db, vehicle_id)
    if vehicle is None:
        return CarbonResult(previous_mileage=None, mileage_delta=0.0, carbon_saved_kg=0.0)

    previous = previous_approved_mileage(db, user_id, vehicle_id, exclude_upload_id=exclude_upload_id)
    if previous is None:
        logger.info("Baseline reading user_id=%s vehicle_id=%s mileage=%s", user_id, vehicle_id, final_mileage)
        return CarbonResult(previous_mileage=None, mileage_delta=0.0, carbon_saved_kg=0.0)

    delta = final_mileage - previous
    if delta < 0:
        logger.warning(
            "Negative mileage delta clamped to 0 user_id=%s vehicle_id=%s previous=%s current=%s",
            user_id,
            vehicle_id,
            previous,
            final_mileage,
        )
        delta = 0
    factor = Decimal(str(vehicle.emission_factor if vehicle.emission_factor is not None else "0.2"))
    carbon = Decimal(delta) * factor
    return CarbonResult(previous_mileage=previous, mileage_delta=float(delta), carbon_saved_kg=float(carbon))
