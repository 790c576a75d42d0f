import io
import json
import os

# Lightweight DB setup and no background sweeps
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:////tmp/mileage_rewards_test_api.db")
os.environ.setdefault("AUTO_CREATE_DB", "true")
os.environ.setdefault("ENABLE_SWEEPS", "false")

from decimal import Decimal

from fastapi.testclient import TestClient
from PIL import Image
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from mileage_rewards.core.db import get_db
from mileage_rewards.main import create_app
from mileage_rewards.models import Base
from mileage_rewards.models.reward import Reward
from mileage_rewards.models.user import User
from mileage_rewards.models.vehicle import Vehicle
from mileage_rewards.services.audit import LogAuditSink
from mileage_rewards.services.ledger import LedgerUnavailableClient
from mileage_rewards.services.ocr import BoundingBox, OcrExtractor, OcrProvider, TextDetection
from mileage_rewards.services.scheduler import Runtime
from mileage_rewards.services.storage import LocalStorageProvider
from mileage_rewards.services.upload_pipeline import UploadPipeline
from mileage_rewards.services.vision import VisionProvider, VisionValidator


class StaticOcrProvider(OcrProvider):
    name = "static"

    def detect_text(self, image_bytes):
        return [TextDetection(text="45231", confidence=96, bounding_box=BoundingBox(left=0.5, top=0.5))]


class StaticVisionProvider(VisionProvider):
    name = "static"

    def complete(self, prompt, image_data_url, *, max_tokens=500):
        if prompt.startswith("Validate"):
            return json.dumps({"isValid": True, "confidence": 0.9})
        return json.dumps({"vehicleType": "sedan", "make": "Tesla", "model": "Model 3", "confidence": 0.8})


def _client(tmp_path):
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    pipeline = UploadPipeline(
        factory,
        storage=LocalStorageProvider(tmp_path),
        ocr=OcrExtractor(StaticOcrProvider()),
        vision=VisionValidator(StaticVisionProvider()),
    )
    runtime = Runtime(
        pipeline=pipeline,
        ledger=LedgerUnavailableClient("test"),
        audit=LogAuditSink(),
        pool=None,
        session_factory=factory,
    )
    app = create_app(runtime=runtime, enable_sweeps=False)

    def _get_db():
        db = factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = _get_db
    return TestClient(app), factory


def _seed(factory):
    with factory() as db:
        user = User(email="driver@example.com", wallet_address="0xabc")
        db.add(user)
        db.commit()
        db.add(Vehicle(user_id=user.id, vehicle_type="car", make="Tesla", model="Model 3"))
        db.commit()
        return user.id


def _jpeg() -> bytes:
    out = io.BytesIO()
    Image.new("RGB", (32, 32)).save(out, format="JPEG")
    return out.getvalue()


def _reward(factory, user_id, **overrides):
    values = dict(
        user_id=user_id,
        type="badge",
        status="pending",
        blockchain_status="not_sent",
        amount=Decimal("1.5075005"),
        miles_driven=Decimal("0"),
        carbon_saved=Decimal("0"),
        retry_count=0,
    )
    values.update(overrides)
    with factory() as db:
        reward = Reward(**values)
        db.add(reward)
        db.commit()
        return reward.id


def test_upload_then_poll_status(tmp_path):
    client, factory = _client(tmp_path)
    with client:
        user_id = _seed(factory)
        resp = client.post(
            "/api/v1/uploads",
            files={"file": ("odo.jpg", _jpeg(), "image/jpeg")},
            data={"user_id": user_id},
        )
        assert resp.status_code == 202
        upload_id = resp.json()["upload_id"]

        resp = client.get(f"/api/v1/uploads/{upload_id}")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "completed"
        assert body["validation_status"] == "approved"
        assert body["final_mileage"] == 45231

        resp = client.get(f"/api/v1/users/{user_id}/uploads/stats")
        assert resp.status_code == 200
        assert resp.json()["total_uploads"] == 1


def test_upload_rejects_bad_type_and_unknown_ids(tmp_path):
    client, factory = _client(tmp_path)
    with client:
        user_id = _seed(factory)
        resp = client.post(
            "/api/v1/uploads",
            files={"file": ("odo.gif", b"GIF89a", "image/gif")},
            data={"user_id": user_id},
        )
        assert resp.status_code == 400
        assert client.get("/api/v1/uploads/does-not-exist").status_code == 404


def test_reward_listing_serialises_amounts_as_strings(tmp_path, monkeypatch):
    monkeypatch.setenv("API_MAX_PAGE_SIZE", "2")
    client, factory = _client(tmp_path)
    with client:
        user_id = _seed(factory)
        for _ in range(3):
            _reward(factory, user_id)
        resp = client.get(f"/api/v1/users/{user_id}/rewards?page_size=50")
        assert resp.status_code == 200
        body = resp.json()
        assert body["total"] == 3
        assert body["page_size"] == 2
        assert len(body["items"]) == 2
        assert resp.headers.get("X-Total-Count") == "3"
        item = body["items"][0]
        assert item["amount"] == "1.50750050"
        assert item["formatted_amount"] == "1.50750050 RWD"
        assert item["can_be_cancelled"] is True

        stats = client.get(f"/api/v1/users/{user_id}/rewards/stats").json()
        assert stats["total"] == 3
        assert stats["by_type"] == {"badge": 3}


def test_cancel_and_retry_endpoints(tmp_path):
    client, factory = _client(tmp_path)
    with client:
        user_id = _seed(factory)
        pending_id = _reward(factory, user_id)
        failed_id = _reward(factory, user_id, status="failed", blockchain_status="failed", retry_count=2)
        exhausted_id = _reward(factory, user_id, status="failed", blockchain_status="failed", retry_count=3)

        resp = client.post(f"/api/v1/rewards/{pending_id}/cancel")
        assert resp.status_code == 200
        assert resp.json()["status"] == "cancelled"
        assert client.post(f"/api/v1/rewards/{pending_id}/cancel").status_code == 409

        resp = client.post(f"/api/v1/rewards/{failed_id}/retry")
        assert resp.status_code == 200
        assert resp.json()["status"] == "pending"
        assert client.post(f"/api/v1/rewards/{exhausted_id}/retry").status_code == 409
        assert client.post("/api/v1/rewards/missing/retry").status_code == 404


def test_health(tmp_path):
    client, _ = _client(tmp_path)
    with client:
        resp = client.get("/api/v1/health")
        assert resp.status_code == 200
        assert resp.json()["database"] is True
