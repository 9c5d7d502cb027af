import os

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("TRACING_ENABLED", "false")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from datetime import datetime, timedelta, timezone  # noqa: E402
from uuid import uuid4  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker  # noqa: E402

import loyalty_api.models  # noqa: E402,F401
from loyalty_api.app import create_app  # noqa: E402
from loyalty_api.db.base import Base  # noqa: E402
from loyalty_api.db.session import build_engine, get_session  # noqa: E402
from loyalty_api.models.enrollment import (  # noqa: E402
    ApprovalRequest,
    ApprovalRequestStatus,
    Enrollment,
    EnrollmentStatus,
    LoyaltyProgram,
)
from loyalty_api.models.loyalty import LoyaltyCard, tier_for_points  # noqa: E402
from loyalty_api.observability.ledger import get_engine_store  # noqa: E402


async def _create_factory(database_url: str, **engine_kwargs):
    engine = build_engine(database_url, **engine_kwargs)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return engine, async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@pytest_asyncio.fixture
async def session_factory():
    engine, factory = await _create_factory("sqlite+aiosqlite:///:memory:")

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    """File-backed database so concurrent sessions get their own connections."""

    engine, factory = await _create_factory(
        f"sqlite+aiosqlite:///{tmp_path / 'loyalty.db'}",
        lock_timeout_seconds=10.0,
    )

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def app_with_db(session_factory):
    app = create_app()

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session

    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def engine_store():
    store = get_engine_store()
    store.reset()
    yield store
    store.reset()


@pytest.fixture
def seed_request():
    """Create a program and a pending approval request; returns the request."""

    async def _seed(
        factory,
        *,
        welcome_points: int = 0,
        program_name: str = "Coffee Club",
        expires_in: timedelta | None = timedelta(days=7),
    ) -> ApprovalRequest:
        business_id = uuid4()
        async with factory() as session:
            program = LoyaltyProgram(business_id=business_id, name=program_name, welcome_points=welcome_points)
            session.add(program)
            await session.flush()
            now = datetime.now(timezone.utc)
            request = ApprovalRequest(
                customer_id=uuid4(),
                business_id=business_id,
                program_id=program.id,
                status=ApprovalRequestStatus.PENDING,
                requested_at=now,
                expires_at=now + expires_in if expires_in is not None else None,
            )
            session.add(request)
            await session.commit()
            return request

    return _seed


@pytest.fixture
def seed_card():
    """Create an enrolled customer holding one active card with ``points``."""

    async def _seed(factory, *, points: int = 0, enrolled: bool = True) -> LoyaltyCard:
        customer_id, business_id, program_id = uuid4(), uuid4(), uuid4()
        async with factory() as session:
            if enrolled:
                session.add(
                    Enrollment(
                        customer_id=customer_id,
                        business_id=business_id,
                        program_id=program_id,
                        status=EnrollmentStatus.ACTIVE,
                        current_points=points,
                    )
                )
            card = LoyaltyCard(
                customer_id=customer_id,
                business_id=business_id,
                program_id=program_id,
                card_number=f"GC-TEST-{uuid4().hex[:8]}",
                points=points,
                total_points_earned=points,
                tier=tier_for_points(points),
            )
            session.add(card)
            await session.commit()
            return card

    return _seed
