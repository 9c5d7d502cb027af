"""Enrollment request handling exports."""

from .processor import ApprovalResult, EnrollmentProcessor  # noqa: F401
from .requests import ApprovalRequestStore, ensure_aware, is_expired  # noqa: F401
