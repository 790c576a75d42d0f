import logging

from mileage_rewards.core import errors


def test_log_exception_includes_context(caplog):
    logger = logging.getLogger("test_errors")
    caplog.set_level(logging.ERROR)
    try:
        raise RuntimeError("boom")
    except RuntimeError as exc:
        errors.log_exception(logger, "Settle failed", extra={"reward_id": "r1", "tx_ref": None}, exc=exc)

    record = caplog.records[-1]
    assert record.levelno == logging.ERROR
    assert "Settle failed reward_id=r1: boom" in record.message
    assert "tx_ref" not in record.message
    assert record.exc_info is not None


def test_error_hierarchy():
    no_reading = errors.NoReadingFoundError("nothing", provider="textract")
    assert isinstance(no_reading, errors.ExternalServiceError)
    assert isinstance(no_reading, errors.ServiceError)
    assert no_reading.provider == "textract"
    assert no_reading.message == "nothing"

    state = errors.RewardStateError("no", context={"reward_id": "r1"})
    assert state.context == {"reward_id": "r1"}
