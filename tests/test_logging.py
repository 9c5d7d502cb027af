from loguru import logger

from loyalty_api.core.logging import build_log_payload
from loyalty_api.services.errors import EngineErrorCode

METADATA = {"service_name": "loyalty-api", "environment": "test", "version": "0.1.0"}


def _capture():
    captured = []
    handler_id = logger.add(lambda message: captured.append(build_log_payload(message.record, METADATA)))
    return captured, handler_id


def test_payload_groups_loyalty_context_and_error_code() -> None:
    captured, handler_id = _capture()
    try:
        logger.warning(
            "Ledger strategy failed; falling through",
            card_id="card-1",
            transaction_ref="scan-1",
            strategy="primary",
            customer_id=None,
            error_code=EngineErrorCode.POINTS_AWARD_FAILED,
            points=10,
        )
    finally:
        logger.remove(handler_id)

    payload = captured[-1]
    assert payload["level"] == "warning"
    assert payload["service"] == "loyalty-api"
    assert payload["loyalty"] == {"card_id": "card-1", "transaction_ref": "scan-1", "strategy": "primary"}
    assert payload["error_code"] == "POINTS_AWARD_FAILED"
    assert payload["context"] == {"points": 10, "customer_id": None}
    assert "trace_id" not in payload


def test_payload_names_the_exception_type() -> None:
    captured, handler_id = _capture()
    try:
        try:
            raise ValueError("bad ref")
        except ValueError:
            logger.exception("Consistency repair failed")
    finally:
        logger.remove(handler_id)

    payload = captured[-1]
    assert payload["exception"] == "ValueError"
    assert "loyalty" not in payload
    assert "context" not in payload
