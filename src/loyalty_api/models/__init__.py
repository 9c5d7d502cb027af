"""SQLAlchemy models package."""

# Import all models
from .consistency import ConsistencyAuditRun  # noqa: F401
from .enrollment import (  # noqa: F401
    ApprovalRequest,
    ApprovalRequestStatus,
    CustomerBusinessRelationship,
    Enrollment,
    EnrollmentStatus,
    LoyaltyProgram,
    RelationshipStatus,
)
from .loyalty import (  # noqa: F401
    ActivityType,
    CardStatus,
    CardTier,
    LoyaltyCard,
    PointsActivity,
    PointsSource,
    PROGRAM_SCOPED_SOURCES,
    tier_for_points,
)
from .notification import (  # noqa: F401
    Notification,
    NotificationState,
    NotificationType,
    RecipientRole,
)
