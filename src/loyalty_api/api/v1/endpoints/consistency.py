"""Operator endpoints for drift detection and repair."""

from __future__ import annotations

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from loyalty_api.api.dependencies.engine import get_consistency_auditor
from loyalty_api.api.dependencies.security import require_internal_api_key
from loyalty_api.services.consistency import Anomaly, AnomalyKind, ConsistencyAuditor, RepairResult


router = APIRouter(
    prefix="/consistency",
    tags=["consistency"],
    dependencies=[Depends(require_internal_api_key)],
)


class AnomalyPayload(BaseModel):
    kind: AnomalyKind
    customerId: UUID
    programId: UUID
    businessId: Optional[UUID] = None
    cardId: Optional[UUID] = None
    cardIds: List[UUID] = Field(default_factory=list)
    recordedPoints: Optional[int] = None
    ledgerPoints: Optional[int] = None
    requestId: Optional[UUID] = None

    @classmethod
    def from_anomaly(cls, anomaly: Anomaly) -> "AnomalyPayload":
        return cls(
            kind=anomaly.kind,
            customerId=anomaly.customer_id,
            programId=anomaly.program_id,
            businessId=anomaly.business_id,
            cardId=anomaly.card_id,
            cardIds=list(anomaly.card_ids),
            recordedPoints=anomaly.recorded_points,
            ledgerPoints=anomaly.ledger_points,
            requestId=anomaly.request_id,
        )

    def to_anomaly(self) -> Anomaly:
        return Anomaly(
            kind=self.kind,
            customer_id=self.customerId,
            program_id=self.programId,
            business_id=self.businessId,
            card_id=self.cardId,
            card_ids=tuple(self.cardIds),
            recorded_points=self.recordedPoints,
            ledger_points=self.ledgerPoints,
            request_id=self.requestId,
        )


class DriftReportResponse(BaseModel):
    anomalies: List[AnomalyPayload]
    count: int


class RepairResponse(BaseModel):
    kind: AnomalyKind
    action: str
    success: bool
    repaired: bool
    detail: str
    cardId: Optional[UUID] = None
    deactivatedCardIds: List[UUID] = Field(default_factory=list)


class SweepRequest(BaseModel):
    repair: bool = Field(False, description="Apply repairs for every anomaly found")


class SweepResponse(BaseModel):
    anomalies: List[AnomalyPayload]
    repairs: List[RepairResponse]
    repairsApplied: int
    manualReview: int


def _repair_payload(result: RepairResult) -> RepairResponse:
    return RepairResponse(
        kind=result.anomaly.kind,
        action=result.action.value,
        success=result.success,
        repaired=result.repaired,
        detail=result.detail,
        cardId=result.card_id,
        deactivatedCardIds=list(result.deactivated_card_ids),
    )


@router.get("/drift", response_model=DriftReportResponse)
async def scan_for_drift(
    auditor: ConsistencyAuditor = Depends(get_consistency_auditor),
) -> DriftReportResponse:
    """Report invariant violations without changing anything."""

    anomalies = await auditor.scan_for_drift()
    return DriftReportResponse(
        anomalies=[AnomalyPayload.from_anomaly(anomaly) for anomaly in anomalies],
        count=len(anomalies),
    )


@router.post("/repair", response_model=RepairResponse)
async def repair_anomaly(
    payload: AnomalyPayload,
    auditor: ConsistencyAuditor = Depends(get_consistency_auditor),
) -> RepairResponse:
    """Repair one reported anomaly; a no-op when it no longer holds."""

    result = await auditor.repair(payload.to_anomaly())
    return _repair_payload(result)


@router.post("/sweep", response_model=SweepResponse)
async def run_sweep(
    payload: SweepRequest,
    auditor: ConsistencyAuditor = Depends(get_consistency_auditor),
) -> SweepResponse:
    summary = await auditor.run_sweep(repair=payload.repair)
    return SweepResponse(
        anomalies=[AnomalyPayload.from_anomaly(anomaly) for anomaly in summary.anomalies],
        repairs=[_repair_payload(result) for result in summary.repairs],
        repairsApplied=summary.repairs_applied,
        manualReview=summary.manual_review,
    )
