"""API endpoints for awarding and deducting card points."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, model_validator

from loyalty_api.api.dependencies.engine import get_points_ledger
from loyalty_api.models.loyalty import PointsSource
from loyalty_api.services.errors import EngineErrorCode
from loyalty_api.services.ledger import LedgerResult, PointsLedger


router = APIRouter(prefix="/points", tags=["points"])


_ERROR_STATUS = {
    EngineErrorCode.CARD_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    EngineErrorCode.NOT_ENROLLED: status.HTTP_409_CONFLICT,
    EngineErrorCode.CARD_INACTIVE: status.HTTP_409_CONFLICT,
    EngineErrorCode.INVALID_POINTS: status.HTTP_422_UNPROCESSABLE_ENTITY,
    EngineErrorCode.POINTS_AWARD_FAILED: status.HTTP_503_SERVICE_UNAVAILABLE,
}


class PointsMovementRequest(BaseModel):
    cardId: Optional[UUID] = Field(None, description="Card to credit or debit")
    customerId: Optional[UUID] = Field(None, description="Customer owning the card when cardId is omitted")
    businessId: Optional[UUID] = None
    programId: Optional[UUID] = None
    points: int = Field(..., description="Positive number of points")
    source: PointsSource = PointsSource.OTHER
    description: Optional[str] = None
    ref: Optional[str] = Field(None, max_length=255, description="Idempotency key for retries")

    @model_validator(mode="after")
    def validate_target(self) -> "PointsMovementRequest":
        if self.cardId is None and not (self.customerId and self.businessId and self.programId):
            raise ValueError("cardId or customerId, businessId and programId must be provided")
        return self


class PointsMovementResponse(BaseModel):
    success: bool
    cardId: Optional[UUID] = None
    newBalance: Optional[int] = None
    errorCode: Optional[str] = None
    idempotent: bool = False
    strategy: Optional[str] = None
    appliedPoints: int = 0
    transactionRef: Optional[str] = None
    errors: List[str] = Field(default_factory=list)


class CardResponse(BaseModel):
    id: UUID
    customerId: UUID
    businessId: UUID
    programId: UUID
    cardNumber: str
    points: int
    totalPointsEarned: int
    tier: str
    status: str
    isActive: bool
    createdAt: datetime


class ActivityResponse(BaseModel):
    id: UUID
    type: str
    points: int
    source: str
    description: Optional[str]
    transactionRef: str
    createdAt: datetime


def _movement_payload(card_id: UUID | None, result: LedgerResult) -> PointsMovementResponse:
    return PointsMovementResponse(
        success=result.success,
        cardId=card_id,
        newBalance=result.new_balance,
        errorCode=result.error_code.value if result.error_code else None,
        idempotent=result.idempotent,
        strategy=result.strategy,
        appliedPoints=result.applied_points,
        transactionRef=result.transaction_ref,
        errors=list(result.errors),
    )


async def _apply(payload: PointsMovementRequest, ledger: PointsLedger, *, credit: bool) -> PointsMovementResponse:
    card_id = payload.cardId
    if card_id is None:
        card_id, error_code = await ledger.resolve_card_id(payload.customerId, payload.businessId, payload.programId)
        if card_id is None:
            result = LedgerResult(success=False, error_code=error_code, transaction_ref=payload.ref)
            raise HTTPException(
                status_code=_ERROR_STATUS.get(error_code, status.HTTP_400_BAD_REQUEST),
                detail=_movement_payload(None, result).model_dump(mode="json"),
            )

    operation = ledger.award_points if credit else ledger.deduct_points
    result = await operation(card_id, payload.points, payload.source, payload.description, payload.ref)
    body = _movement_payload(card_id, result)
    if not result.success:
        raise HTTPException(
            status_code=_ERROR_STATUS.get(result.error_code, status.HTTP_400_BAD_REQUEST),
            detail=body.model_dump(mode="json"),
        )
    return body


@router.post("/award", response_model=PointsMovementResponse)
async def award_points(
    payload: PointsMovementRequest,
    ledger: PointsLedger = Depends(get_points_ledger),
) -> PointsMovementResponse:
    """Credit points to a card; repeated refs are absorbed."""

    return await _apply(payload, ledger, credit=True)


@router.post("/deduct", response_model=PointsMovementResponse)
async def deduct_points(
    payload: PointsMovementRequest,
    ledger: PointsLedger = Depends(get_points_ledger),
) -> PointsMovementResponse:
    """Debit points from a card, never below zero."""

    return await _apply(payload, ledger, credit=False)


@router.get("/cards/{card_id}", response_model=CardResponse)
async def get_card(
    card_id: UUID,
    ledger: PointsLedger = Depends(get_points_ledger),
) -> CardResponse:
    card = await ledger.get_card(card_id)
    if card is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Card not found")
    return CardResponse(
        id=card.id,
        customerId=card.customer_id,
        businessId=card.business_id,
        programId=card.program_id,
        cardNumber=card.card_number,
        points=card.points,
        totalPointsEarned=card.total_points_earned,
        tier=card.tier.value,
        status=card.status.value,
        isActive=bool(card.is_active),
        createdAt=card.created_at,
    )


@router.get("/cards/{card_id}/activities", response_model=List[ActivityResponse])
async def list_card_activities(
    card_id: UUID,
    limit: int = Query(50, ge=1, le=200),
    ledger: PointsLedger = Depends(get_points_ledger),
) -> List[ActivityResponse]:
    """Most recent ledger entries for a card."""

    activities = await ledger.list_activities(card_id, limit=limit)
    return [
        ActivityResponse(
            id=activity.id,
            type=activity.activity_type.value,
            points=activity.points,
            source=activity.source.value,
            description=activity.description,
            transactionRef=activity.transaction_ref,
            createdAt=activity.created_at,
        )
        for activity in activities
    ]
