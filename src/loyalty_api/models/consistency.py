"""Consistency audit run history."""

from uuid import uuid4

from sqlalchemy import Column, DateTime, Integer, JSON, String, Text, func
from sqlalchemy.dialects.postgresql import UUID

from loyalty_api.db.base import Base
from loyalty_api.models.enrollment import utcnow


class ConsistencyAuditRun(Base):
    __tablename__ = "consistency_audit_runs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    triggered_by = Column(String, nullable=False)
    status = Column(String, nullable=False, server_default="running", default="running")
    anomalies_found = Column(Integer, nullable=False, default=0, server_default="0")
    repairs_applied = Column(Integer, nullable=False, default=0, server_default="0")
    manual_review = Column(Integer, nullable=False, default=0, server_default="0")
    error_message = Column(Text, nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    started_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
