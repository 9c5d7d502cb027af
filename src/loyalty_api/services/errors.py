"""Error taxonomy shared by the enrollment, ledger, and consistency services."""

from __future__ import annotations

from enum import Enum


class EngineErrorCode(str, Enum):
    REQUEST_NOT_FOUND = "REQUEST_NOT_FOUND"
    ALREADY_PROCESSED = "ALREADY_PROCESSED"
    REQUEST_EXPIRED = "REQUEST_EXPIRED"
    REQUEST_UPDATE_FAILED = "REQUEST_UPDATE_FAILED"
    ENROLLMENT_CREATION_FAILED = "ENROLLMENT_CREATION_FAILED"
    CARD_CREATION_FAILED = "CARD_CREATION_FAILED"
    CARD_NOT_FOUND = "CARD_NOT_FOUND"
    CARD_INACTIVE = "CARD_INACTIVE"
    INVALID_POINTS = "INVALID_POINTS"
    NOT_ENROLLED = "NOT_ENROLLED"
    POINTS_AWARD_FAILED = "POINTS_AWARD_FAILED"
    NOTIFICATION_FAILED = "NOTIFICATION_FAILED"
    DRIFT_DETECTED = "DRIFT_DETECTED"


# Codes a caller may retry without changing its input.
TRANSIENT_CODES = frozenset(
    {
        EngineErrorCode.REQUEST_UPDATE_FAILED,
        EngineErrorCode.ENROLLMENT_CREATION_FAILED,
        EngineErrorCode.CARD_CREATION_FAILED,
        EngineErrorCode.POINTS_AWARD_FAILED,
    }
)


class EngineError(Exception):
    """Base error carrying a taxonomy code."""

    code: EngineErrorCode = EngineErrorCode.POINTS_AWARD_FAILED

    def __init__(self, message: str, *, code: EngineErrorCode | None = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code


class CardProvisioningError(EngineError):
    code = EngineErrorCode.CARD_CREATION_FAILED


class EnrollmentStepError(EngineError):
    code = EngineErrorCode.ENROLLMENT_CREATION_FAILED


class LedgerValidationError(EngineError):
    """Raised when an award or deduction is rejected before any write."""


class NotificationError(EngineError):
    code = EngineErrorCode.NOTIFICATION_FAILED


__all__ = [
    "CardProvisioningError",
    "EngineError",
    "EngineErrorCode",
    "EnrollmentStepError",
    "LedgerValidationError",
    "NotificationError",
    "TRANSIENT_CODES",
]
