from datetime import datetime, timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest

from mileage_rewards.core.errors import RewardStateError
from mileage_rewards.services.reward_state import (
    amount_str,
    can_be_cancelled,
    can_be_retried,
    can_retry,
    derived_fields,
    format_amount,
    format_carbon_kg,
    format_duration,
    format_miles,
    next_state,
)


def test_retry_bound():
    assert can_retry("failed", 3) is False
    assert can_retry("failed", 2) is True
    assert can_retry("sent", 0) is False


def test_retry_and_cancel_eligibility():
    assert can_be_retried("failed", "failed", 0) is True
    assert can_be_retried("failed", "failed", 3) is False
    assert can_be_retried("processing", "sent", 0) is False
    assert can_be_cancelled("pending", "not_sent") is True
    assert can_be_cancelled("processing", "sent") is False


def test_transition_table():
    assert next_state("pending", "not_sent", "claim") == ("processing", "sent")
    assert next_state("processing", "sent", "confirm") == ("completed", "confirmed")
    assert next_state("processing", "sent", "submit_failed") == ("failed", "failed")
    assert next_state("failed", "failed", "retry") == ("pending", "not_sent")
    with pytest.raises(RewardStateError):
        next_state("completed", "confirmed", "retry")
    with pytest.raises(RewardStateError):
        next_state("processing", "sent", "cancel")


def test_amount_formatting_is_half_up_to_eight_places():
    assert amount_str(Decimal("1.5075005")) == "1.50750050"
    assert amount_str(Decimal("0.000000005")) == "0.00000001"
    assert format_amount(Decimal("2")) == "2.00000000 RWD"


def test_unit_formatting():
    assert format_miles(Decimal("150.5")) == "150.5 miles"
    assert format_carbon_kg(Decimal("2500.5")) == "2.500kg CO2"
    assert format_duration(850) == "850ms"
    assert format_duration(2500) == "2.5s"
    assert format_duration(90000) == "1.5m"


def test_derived_fields_from_row_values():
    created = datetime(2026, 1, 1, 12, 0, 0)
    reward = SimpleNamespace(
        status="completed",
        blockchain_status="confirmed",
        retry_count=0,
        amount=Decimal("1.50750050"),
        miles_driven=Decimal("150.5"),
        carbon_saved=Decimal("2500.5"),
        created_at=created,
        processed_at=created + timedelta(seconds=2),
        confirmed_at=created + timedelta(seconds=62),
    )
    fields = derived_fields(reward)
    assert fields["is_completed"] is True
    assert fields["is_blockchain_confirmed"] is True
    assert fields["can_retry"] is False
    assert fields["can_be_cancelled"] is False
    assert fields["processing_time_ms"] == 2000
    assert fields["confirmation_time_ms"] == 60000
    assert fields["total_processing_time_ms"] == 62000
    assert fields["formatted_total_processing_time"] == "1.0m"
    assert fields["carbon_saved_kg"] == pytest.approx(2.5005)
    assert fields["reward_per_mile"] == pytest.approx(1.5075005 / 150.5)
