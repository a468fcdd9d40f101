"""Shared fixtures: an in-memory SQLite database per test and row factories."""

import os

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("ENVIRONMENT", "test")

from uuid import uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from risk_register.core import Principal
from risk_register.models import (
    ActivePeriod,
    Base,
    Direction,
    IndicatorAssignment,
    IndicatorDefinition,
    IndicatorType,
    LimitDirection,
    Risk,
    RiskStatus,
    ToleranceLimit,
    utcnow,
)


# =============================================================================
# DATABASE
# =============================================================================


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def session(session_factory) -> AsyncSession:
    async with session_factory() as session:
        yield session


# =============================================================================
# PRINCIPALS
# =============================================================================


@pytest.fixture
def org_id():
    return uuid4()


@pytest.fixture
def user_id():
    return uuid4()


@pytest.fixture
def principal(org_id, user_id) -> Principal:
    """A plain organization member."""
    return Principal(user_id=user_id, organization_id=org_id, roles=frozenset({"member"}))


@pytest.fixture
def admin(org_id) -> Principal:
    return Principal(user_id=uuid4(), organization_id=org_id, roles=frozenset({"admin"}))


@pytest.fixture
def cro(org_id) -> Principal:
    """Holds appetite-governance authority without being an admin."""
    return Principal(user_id=uuid4(), organization_id=org_id, roles=frozenset({"cro"}))


# =============================================================================
# ROW FACTORIES
# =============================================================================


@pytest.fixture
def make_risk(session, org_id):
    counter = {"n": 0}

    async def _make(**overrides) -> Risk:
        counter["n"] += 1
        fields = {
            "organization_id": org_id,
            "risk_code": f"R{counter['n']:03d}",
            "title": f"Risk {counter['n']}",
            "status": RiskStatus.IDENTIFIED,
            "is_active": True,
            "likelihood_inherent": 3,
            "impact_inherent": 4,
        }
        fields.update(overrides)
        risk = Risk(**fields)
        session.add(risk)
        await session.flush()
        return risk

    return _make


@pytest.fixture
def make_indicator(session, org_id):
    counter = {"n": 0}

    async def _make(**overrides) -> IndicatorDefinition:
        counter["n"] += 1
        fields = {
            "organization_id": org_id,
            "code": f"KRI-{counter['n']:03d}",
            "indicator_type": IndicatorType.KRI,
            "name": f"Indicator {counter['n']}",
            "unit": "%",
            "threshold_warning": 75.0,
            "threshold_critical": 90.0,
            "direction": Direction.LOWER_IS_BETTER,
        }
        fields.update(overrides)
        indicator = IndicatorDefinition(**fields)
        session.add(indicator)
        await session.flush()
        return indicator

    return _make


@pytest.fixture
def make_assignment(session, org_id):
    async def _make(risk: Risk, indicator: IndicatorDefinition, **overrides) -> IndicatorAssignment:
        fields = {
            "organization_id": org_id,
            "risk_id": risk.id,
            "indicator_id": indicator.id,
            "indicator": indicator,
        }
        fields.update(overrides)
        assignment = IndicatorAssignment(**fields)
        session.add(assignment)
        await session.flush()
        return assignment

    return _make


@pytest.fixture
def make_limit(session, org_id):
    async def _make(**overrides) -> ToleranceLimit:
        fields = {
            "organization_id": org_id,
            "name": "Operational loss appetite",
            "tolerance_metric": "Monthly operational losses",
            "direction": LimitDirection.ABOVE,
            "soft_limit": 80.0,
            "hard_limit": 100.0,
            "soft_notify_roles": ["risk_manager"],
            "hard_notify_roles": ["cro"],
            "is_active": True,
        }
        fields.update(overrides)
        limit = ToleranceLimit(**fields)
        session.add(limit)
        await session.flush()
        return limit

    return _make


@pytest.fixture
async def working_quarter(session, org_id) -> ActivePeriod:
    """Pin the organization's active period to Q1 2025 instead of today's quarter."""
    active = ActivePeriod(
        organization_id=org_id,
        current_period_year=2025,
        current_period_quarter=1,
        period_started_at=utcnow(),
    )
    session.add(active)
    await session.commit()
    return active
