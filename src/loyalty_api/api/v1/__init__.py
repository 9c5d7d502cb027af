from fastapi import APIRouter

from .endpoints import (
    consistency,
    enrollment,
    health,
    notifications,
    observability,
    points,
)

router = APIRouter()
router.include_router(health.router, tags=["Health"])
router.include_router(enrollment.router)
router.include_router(points.router)
router.include_router(notifications.router)
router.include_router(consistency.router)
router.include_router(observability.router)
