from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict


@dataclass
class EngineSnapshot:
    approvals: Dict[str, int]
    ledger: Dict[str, Dict[str, int]]
    notifications: Dict[str, int]
    consistency: Dict[str, Dict[str, int]]

    def as_dict(self) -> Dict[str, object]:
        return {
            "approvals": dict(self.approvals),
            "ledger": {key: dict(value) for key, value in self.ledger.items()},
            "notifications": dict(self.notifications),
            "consistency": {key: dict(value) for key, value in self.consistency.items()},
        }


class EngineObservabilityStore:
    """Collect enrollment, ledger, and auditor telemetry for dashboards and alerting."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._approvals: Dict[str, int] = defaultdict(int)
        self._strategies: Dict[str, int] = defaultdict(int)
        self._ledger_failures: Dict[str, int] = defaultdict(int)
        self._ledger_totals: Dict[str, int] = defaultdict(int)
        self._notifications: Dict[str, int] = defaultdict(int)
        self._anomalies: Dict[str, int] = defaultdict(int)
        self._repairs: Dict[str, int] = defaultdict(int)

    def record_approval(self, outcome: str) -> None:
        with self._lock:
            self._approvals[outcome] += 1

    def record_ledger_write(self, *, strategy: str, operation: str, idempotent: bool = False) -> None:
        with self._lock:
            self._strategies[strategy] += 1
            key = "idempotent" if idempotent else operation
            self._ledger_totals[key] += 1

    def record_ledger_failure(self, code: str) -> None:
        with self._lock:
            self._ledger_failures[code] += 1

    def record_strategy_fallback(self, strategy: str) -> None:
        with self._lock:
            self._ledger_totals[f"fallback:{strategy}"] += 1

    def record_notification(self, outcome: str) -> None:
        with self._lock:
            self._notifications[outcome] += 1

    def record_anomaly(self, kind: str) -> None:
        with self._lock:
            self._anomalies[kind] += 1

    def record_repair(self, action: str) -> None:
        with self._lock:
            self._repairs[action] += 1

    def snapshot(self) -> EngineSnapshot:
        with self._lock:
            approvals = dict(self._approvals)
            ledger = {
                "strategies": dict(self._strategies),
                "failures": dict(self._ledger_failures),
                "totals": dict(self._ledger_totals),
            }
            notifications = dict(self._notifications)
            consistency = {
                "anomalies": dict(self._anomalies),
                "repairs": dict(self._repairs),
            }
        return EngineSnapshot(
            approvals=approvals,
            ledger=ledger,
            notifications=notifications,
            consistency=consistency,
        )

    def reset(self) -> None:
        with self._lock:
            self._approvals.clear()
            self._strategies.clear()
            self._ledger_failures.clear()
            self._ledger_totals.clear()
            self._notifications.clear()
            self._anomalies.clear()
            self._repairs.clear()


_STORE = EngineObservabilityStore()


def get_engine_store() -> EngineObservabilityStore:
    return _STORE


__all__ = ["get_engine_store", "EngineObservabilityStore", "EngineSnapshot"]
