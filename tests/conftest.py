"""
Shared fixtures: a file-backed SQLite database per test, a controllable
clock and a seeded tenant (hours every day, three tables).
"""

import os
import sys
import uuid
from datetime import datetime, time, timedelta

import pytest
from sqlalchemy.orm import sessionmaker

# Settings are read at import time
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("SWEEPER_ENABLED", "false")
os.environ.setdefault("DATABASE_URL", "sqlite:///./test_tablehold.db")

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.database import Base, build_engine
from app import models  # noqa: F401
from app.models.tenant import Tenant, BusinessHours, RestaurantTable

# Monday
START = datetime(2030, 6, 3, 12, 0, 0)


class FakeClock:
    """Naive UTC clock the test moves by hand"""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'tablehold.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return FakeClock()


def seed_tenant(
    db,
    open_time=time(17, 0),
    close_time=time(23, 0),
    capacities=(2, 4, 6),
    closed_days=(),
    **overrides,
) -> Tenant:
    """Tenant open every day with one table per capacity (T1, T2, ...)"""
    slug = overrides.pop("slug", f"resto-{uuid.uuid4().hex[:8]}")
    tenant = Tenant(
        slug=slug,
        name=overrides.pop("name", "Chez Test"),
        timezone=overrides.pop("timezone", "UTC"),
        seating_duration_minutes=overrides.pop("seating_duration_minutes", 120),
        slot_interval_minutes=overrides.pop("slot_interval_minutes", 30),
        **overrides,
    )
    db.add(tenant)
    db.flush()

    for day in range(7):
        db.add(BusinessHours(
            tenant_id=tenant.id,
            day_of_week=day,
            open_time=open_time,
            close_time=close_time,
            is_closed=day in closed_days,
        ))

    for index, capacity in enumerate(capacities, start=1):
        db.add(RestaurantTable(
            tenant_id=tenant.id,
            name=f"T{index}",
            capacity=capacity,
            priority=index * 10,
        ))

    db.commit()
    db.refresh(tenant)
    return tenant


def table_named(db, tenant, name) -> RestaurantTable:
    return db.query(RestaurantTable).filter(
        RestaurantTable.tenant_id == tenant.id,
        RestaurantTable.name == name,
    ).one()


@pytest.fixture
def tenant(db):
    return seed_tenant(db)


@pytest.fixture
def guest():
    return {
        "first_name": "Ada",
        "last_name": "Lovelace",
        "email": "ada@example.com",
        "phone": "+44 20 7946 0958",
        "special_requests": "Window seat please",
    }
