"""Run one consistency audit sweep.

Intended usage: schedule via cron or run by hand after an incident to
detect (and optionally repair) enrollment, card, and balance drift.

Example:
    python tooling/scripts/run_consistency_audit.py --trigger cron --repair
"""

from __future__ import annotations

import argparse
import asyncio
import sys

from loguru import logger

from loyalty_api.core.logging import configure_logging
from loyalty_api.core.settings import settings
from loyalty_api.db.session import async_session, engine
from loyalty_api.workers import ConsistencyAuditWorker


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Execute a consistency audit sweep once")
    parser.add_argument(
        "--trigger",
        default="manual",
        help="Label recorded in run metadata to describe the invocation source.",
    )
    parser.add_argument(
        "--repair",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Apply repairs for detected anomalies (defaults to CONSISTENCY_AUDIT_AUTO_REPAIR).",
    )
    return parser.parse_args()


async def _run(trigger: str, repair: bool | None) -> dict[str, int]:
    worker = ConsistencyAuditWorker(
        async_session,  # type: ignore[arg-type]
        interval_seconds=settings.consistency_audit_interval_seconds,
        auto_repair=settings.consistency_audit_auto_repair,
        trigger_label=settings.consistency_audit_trigger_label,
    )
    try:
        return await worker.run_once(triggered_by=trigger, repair=repair)
    finally:
        await engine.dispose()


def main() -> int:
    args = parse_args()
    configure_logging(
        service_name="loyalty-audit",
        environment=settings.environment,
        version="0.1.0",
        level=settings.log_level,
    )
    summary = asyncio.run(_run(args.trigger, args.repair))
    logger.success(
        "Consistency audit run completed",
        anomalies=summary.get("anomalies", 0),
        repaired=summary.get("repaired", 0),
        manual_review=summary.get("manual_review", 0),
        expired_requests=summary.get("expired_requests", 0),
        trigger=args.trigger,
    )
    return 1 if summary.get("manual_review", 0) else 0


if __name__ == "__main__":
    sys.exit(main())
