from __future__ import annotations

from typing import Dict, Literal

from fastapi import APIRouter, Depends, Request
from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_api.api.dependencies.engine import get_capabilities
from loyalty_api.core.settings import settings
from loyalty_api.db.capabilities import SchemaCapabilities
from loyalty_api.db.session import get_session


router = APIRouter()


class ComponentStatus(BaseModel):
    status: Literal["ready", "starting", "disabled", "error", "degraded"]
    detail: str | None = Field(default=None, description="Human readable status detail")


class ReadinessPayload(BaseModel):
    status: Literal["ready", "degraded", "error"]
    components: Dict[str, ComponentStatus]
    capabilities: Dict[str, object] = Field(default_factory=dict)


@router.get("/healthz", summary="Service health check")
async def service_health() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz", summary="Service readiness", response_model=ReadinessPayload)
async def service_readiness(
    request: Request,
    session: AsyncSession = Depends(get_session),
    capabilities: SchemaCapabilities = Depends(get_capabilities),
) -> ReadinessPayload:
    components: Dict[str, ComponentStatus] = {}
    status: Literal["ready", "degraded", "error"] = "ready"

    try:
        await session.execute(text("SELECT 1"))
        await session.commit()
    except SQLAlchemyError as exc:
        logger.warning("Readiness database probe failed", error=str(exc))
        components["database"] = ComponentStatus(status="error", detail=str(exc))
        status = "error"
    else:
        components["database"] = ComponentStatus(status="ready", detail=capabilities.dialect)

    if not capabilities.has_relationship_table:
        components["relationships"] = ComponentStatus(
            status="degraded",
            detail="Relationship table missing; approvals skip relationship records",
        )
        status = "degraded" if status != "error" else status
    else:
        components["relationships"] = ComponentStatus(status="ready")

    audit_worker = getattr(request.app.state, "consistency_audit_worker", None)
    if settings.consistency_audit_worker_enabled and audit_worker is not None:
        running = bool(getattr(audit_worker, "is_running", False))
        worker_status: Literal["ready", "starting"] = "ready" if running else "starting"
        detail = None if running else "Consistency audit worker not running"
        if not running:
            status = "degraded" if status != "error" else status
        components["consistency_audit"] = ComponentStatus(status=worker_status, detail=detail)
    else:
        components["consistency_audit"] = ComponentStatus(
            status="disabled",
            detail="Consistency audit worker disabled via settings",
        )

    return ReadinessPayload(status=status, components=components, capabilities=capabilities.as_dict())
