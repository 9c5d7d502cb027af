"""Background workers supporting async processing."""

from .consistency_audit import ConsistencyAuditWorker

__all__ = [
    "ConsistencyAuditWorker",
]
