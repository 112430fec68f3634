"""
conftest.py — Shared pytest fixtures for the roofing pricing backend test suite.

Pure-computation tests (formula, takeoff, resolver) need no fixtures beyond the
import path.  Service and API tests run against an in-memory SQLite database
(aiosqlite + StaticPool so every session shares one connection), created
fresh for each test from the ORM metadata.

Import-path bootstrapping:
    The ``backend/`` directory is inserted into sys.path so that all
    ``app.*`` imports resolve correctly regardless of where pytest is invoked.
"""

import sys
import os
from decimal import Decimal
from types import SimpleNamespace

import pytest
import pytest_asyncio

# ---------------------------------------------------------------------------
# Ensure ``backend/`` is on the import path before any app imports occur.
# ---------------------------------------------------------------------------
_BACKEND_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND_DIR not in sys.path:
    sys.path.insert(0, _BACKEND_DIR)

# The app module is shared across tests; keep its per-IP rate limiter out of the way.
os.environ.setdefault("RATE_LIMIT_PER_MIN", "100000")
os.environ.setdefault("RATE_LIMIT_COMPUTE_PER_MIN", "100000")


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def db_engine():
    """Fresh in-memory schema per test."""
    from sqlalchemy.ext.asyncio import create_async_engine
    from sqlalchemy.pool import StaticPool
    from app.db import Base
    from app.models import orm_models  # noqa: F401

    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture
async def seeded(session_factory):
    """
    Two tenants; the first owns an active Estimating_Manager user and one estimate.

    Returns a namespace of ids: tenant_id, other_tenant_id, user_id, role_id, estimate_id.
    """
    from app.models.orm_models import Estimate, Role, Tenant, User, gen_uuid

    ids = SimpleNamespace(
        tenant_id=gen_uuid(),
        other_tenant_id=gen_uuid(),
        user_id=gen_uuid(),
        role_id=1,
        estimate_id=gen_uuid(),
    )
    async with session_factory() as session:
        session.add_all([
            Tenant(id=ids.tenant_id, name="Acme Roofing", slug="acme"),
            Tenant(id=ids.other_tenant_id, name="Other Roofing", slug="other"),
            Role(id=ids.role_id, name="Estimating_Manager"),
        ])
        await session.flush()
        session.add_all([
            User(
                id=ids.user_id,
                tenant_id=ids.tenant_id,
                email="estimator@acme.test",
                full_name="Sam Estimator",
                role_id=ids.role_id,
                is_active=True,
            ),
            Estimate(id=ids.estimate_id, tenant_id=ids.tenant_id, name="12 Oak St re-roof"),
        ])
        await session.commit()
    return ids


# ---------------------------------------------------------------------------
# Template fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def shingle_items():
    """
    Two-line template used across service and API tests.

    With {"roof_area_sqft": 2500, "ridge_lf": 40}:
      Shingles:  2500/100 * 1.10 = 27.5 SQ  x 120.00 = 3300.00
      Ridge cap: 40/20          = 2 BDL     x  55.00 =  110.00
    """
    return [
        {
            "name": "Architectural Shingles",
            "unit": "SQ",
            "waste_pct": Decimal("0.10"),
            "unit_cost": Decimal("120.00"),
            "formula": "Roof_Area_SqFt / 100",
            "sort_order": 1,
        },
        {
            "name": "Ridge Cap",
            "unit": "BDL",
            "waste_pct": Decimal("0"),
            "unit_cost": Decimal("55.00"),
            "formula": "ridge_lf / 20",
            "sort_order": 2,
        },
    ]


@pytest.fixture
def labor_config():
    """2500 sq ft = 25 squares; 25 x 80.00 x 1.10 = 2200.00."""
    return {
        "rate_per_square": "80.00",
        "complexity": {"pitch_factor": "1.10", "stories_factor": "1.0"},
    }


@pytest.fixture
def overhead_config():
    return {"type": "percent", "percent": "0.10", "fixed": "0"}


@pytest_asyncio.fixture
async def priced_setup(session_factory, seeded, shingle_items, labor_config, overhead_config):
    """
    Seeded estimate with the shingle template bound and measurements ingested.

    materials 3410.00 + labor 2200.00 = 5610.00, overhead 10% = 561.00,
    cost_pre_profit = 6171.00.
    """
    from app.services import estimate_pricing_service as pricing

    async with session_factory() as session:
        template = await pricing.create_template(
            session, seeded.tenant_id, "Standard shingle re-roof",
            labor=labor_config, overhead=overhead_config,
        )
        await pricing.upsert_template_items(session, seeded.tenant_id, template.id, shingle_items)
        await pricing.bind_template(
            session, seeded.tenant_id, seeded.estimate_id, template.id, bound_by=seeded.user_id
        )
        await pricing.ingest_measurements(
            session, seeded.tenant_id, seeded.estimate_id,
            {"roof_area_sqft": 2500, "ridge_lf": 40},
        )
        await session.commit()
    seeded.template_id = template.id
    return seeded
