"""Observability endpoints for engine telemetry and Prometheus metrics."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse

from loyalty_api.api.dependencies.security import require_internal_api_key
from loyalty_api.observability.ledger import get_engine_store


router = APIRouter(prefix="/observability", tags=["Observability"])


@router.get(
    "/ledger",
    dependencies=[Depends(require_internal_api_key)],
    summary="Enrollment, ledger, and consistency telemetry snapshot",
)
async def get_ledger_snapshot() -> dict[str, object]:
    """Retrieve aggregated engine counters (requires internal API key)."""
    return get_engine_store().snapshot().as_dict()


def _format_metric(name: str, description: str, value: int | float, labels: dict[str, str] | None = None) -> list[str]:
    label_fragment = ""
    if labels:
        formatted = ",".join(f'{key}="{val}"' for key, val in sorted(labels.items()))
        label_fragment = f"{{{formatted}}}"
    return [
        f"# HELP {name} {description}",
        f"# TYPE {name} gauge",
        f"{name}{label_fragment} {value}",
    ]


@router.get(
    "/prometheus",
    dependencies=[Depends(require_internal_api_key)],
    summary="Prometheus-formatted engine metrics",
    response_class=PlainTextResponse,
)
async def get_prometheus_metrics() -> PlainTextResponse:
    snapshot = get_engine_store().snapshot()
    lines: list[str] = []

    for outcome, value in sorted(snapshot.approvals.items()):
        lines.extend(
            _format_metric(
                "loyalty_approvals_total",
                "Enrollment approval decisions grouped by outcome",
                value,
                labels={"outcome": outcome},
            )
        )

    for strategy, value in sorted(snapshot.ledger.get("strategies", {}).items()):
        lines.extend(
            _format_metric(
                "loyalty_ledger_writes_total",
                "Ledger writes grouped by the strategy that applied them",
                value,
                labels={"strategy": strategy},
            )
        )

    for code, value in sorted(snapshot.ledger.get("failures", {}).items()):
        lines.extend(
            _format_metric(
                "loyalty_ledger_failures_total",
                "Ledger operations rejected or exhausted, grouped by error code",
                value,
                labels={"code": code},
            )
        )

    totals = snapshot.ledger.get("totals", {})
    for key, value in sorted(totals.items()):
        if key.startswith("fallback:"):
            lines.extend(
                _format_metric(
                    "loyalty_ledger_fallbacks_total",
                    "Ledger operations that fell through a strategy",
                    value,
                    labels={"strategy": key.split(":", 1)[1]},
                )
            )
        else:
            lines.extend(
                _format_metric(
                    "loyalty_ledger_operations_total",
                    "Ledger operations grouped by kind",
                    value,
                    labels={"operation": key},
                )
            )

    for outcome, value in sorted(snapshot.notifications.items()):
        lines.extend(
            _format_metric(
                "loyalty_notifications_total",
                "Notification emissions grouped by outcome",
                value,
                labels={"outcome": outcome},
            )
        )

    for kind, value in sorted(snapshot.consistency.get("anomalies", {}).items()):
        lines.extend(
            _format_metric(
                "loyalty_consistency_anomalies_total",
                "Consistency anomalies detected grouped by kind",
                value,
                labels={"kind": kind},
            )
        )

    for action, value in sorted(snapshot.consistency.get("repairs", {}).items()):
        lines.extend(
            _format_metric(
                "loyalty_consistency_repairs_total",
                "Consistency repair attempts grouped by action",
                value,
                labels={"action": action},
            )
        )

    return PlainTextResponse("\n".join(lines) + "\n")
