"""Consistency audit exports."""

from .auditor import (  # noqa: F401
    Anomaly,
    AnomalyKind,
    AuditSummary,
    ConsistencyAuditor,
    RepairAction,
    RepairResult,
)
