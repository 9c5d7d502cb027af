"""Worker wiring for periodic consistency audit sweeps."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_api.core.settings import settings
from loyalty_api.models.consistency import ConsistencyAuditRun
from loyalty_api.services.consistency import AuditSummary, ConsistencyAuditor
from loyalty_api.services.enrollment import ApprovalRequestStore

SessionFactory = Callable[[], Awaitable[AsyncSession]] | Callable[[], AsyncSession]


class ConsistencyAuditWorker:
    """Periodically scans for drift, optionally repairing what it finds."""

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        interval_seconds: int | None = None,
        auto_repair: bool | None = None,
        trigger_label: str | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.interval_seconds = interval_seconds or settings.consistency_audit_interval_seconds
        self._auto_repair = settings.consistency_audit_auto_repair if auto_repair is None else auto_repair
        self._trigger_label = trigger_label or settings.consistency_audit_trigger_label
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.is_running: bool = False

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        self.is_running = True
        logger.info(
            "Consistency audit worker started",
            interval_seconds=self.interval_seconds,
            auto_repair=self._auto_repair,
        )

    async def stop(self) -> None:
        if not self._task:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        self.is_running = False
        logger.info("Consistency audit worker stopped")

    async def run_once(self, *, triggered_by: str | None = None, repair: bool | None = None) -> Dict[str, int]:
        """Execute one sweep and persist a run record describing it."""

        trigger = triggered_by or self._trigger_label
        apply_repairs = self._auto_repair if repair is None else repair
        summary: Dict[str, int] = {"anomalies": 0, "repaired": 0, "manual_review": 0, "expired_requests": 0}

        session = await self._ensure_session()
        async with session as managed_session:
            run = ConsistencyAuditRun(triggered_by=trigger)
            managed_session.add(run)
            await managed_session.commit()
            await managed_session.refresh(run)
            run_id = run.id

            try:
                expired = await ApprovalRequestStore(managed_session).expire_stale()
                audit = await ConsistencyAuditor(managed_session).run_sweep(repair=apply_repairs)
                summary = {
                    "anomalies": len(audit.anomalies),
                    "repaired": audit.repairs_applied,
                    "manual_review": audit.manual_review,
                    "expired_requests": expired,
                }
                run = await managed_session.get(ConsistencyAuditRun, run_id, populate_existing=True)
                run.status = "completed"
                run.completed_at = datetime.now(timezone.utc)
                run.anomalies_found = summary["anomalies"]
                run.repairs_applied = summary["repaired"]
                run.manual_review = summary["manual_review"]
                run.metadata_json = self._build_run_metadata(trigger, apply_repairs, audit, expired=expired)
                await managed_session.commit()
                logger.info(
                    "Consistency audit sweep completed",
                    run_id=str(run_id),
                    anomalies=summary["anomalies"],
                    repaired=summary["repaired"],
                    manual_review=summary["manual_review"],
                    trigger=trigger,
                )
            except Exception as exc:
                await managed_session.rollback()
                run = await managed_session.get(ConsistencyAuditRun, run_id, populate_existing=True)
                run.status = "failed"
                run.completed_at = datetime.now(timezone.utc)
                run.error_message = str(exc)
                run.metadata_json = self._build_run_metadata(trigger, apply_repairs, None, error=str(exc))
                await managed_session.commit()
                logger.exception(
                    "Consistency audit sweep failed",
                    run_id=str(run_id),
                    error=str(exc),
                )
                raise

        return summary

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as exc:  # pragma: no cover - logged in run_once
                logger.exception("Consistency audit iteration failed", error=str(exc))
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue

    async def _ensure_session(self) -> AsyncSession:
        maybe_session = self._session_factory()
        if isinstance(maybe_session, AsyncSession):
            return maybe_session
        return await maybe_session

    def _build_run_metadata(
        self,
        trigger: str,
        repair: bool,
        audit: AuditSummary | None,
        *,
        expired: int = 0,
        error: str | None = None,
    ) -> Dict[str, object | None]:
        metadata: Dict[str, object | None] = {
            "triggered_by": trigger,
            "auto_repair": repair,
            "expired_requests": expired,
        }
        if audit is not None:
            metadata["by_kind"] = audit.counts_by_kind()
            metadata["repairs"] = [
                {"kind": result.anomaly.kind.value, "action": result.action.value, "detail": result.detail}
                for result in audit.repairs
            ]
        if error:
            metadata["error"] = error
        return metadata


__all__ = ["ConsistencyAuditWorker"]
