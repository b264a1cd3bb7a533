"""
Tenant Configuration Models

Tenants, their business hours and tables are provisioned by external
systems. The reservation core only reads them:
- Tenant: isolation boundary plus per-restaurant booking policy
- BusinessHours: weekly opening hours in the tenant's local time
- RestaurantTable: physical tables with seat capacity
"""

import uuid
from datetime import datetime
from sqlalchemy import (
    Column, String, Integer, Boolean, DateTime, Time, ForeignKey, Index, UniqueConstraint
)
from sqlalchemy.orm import relationship
from ..database import Base
import enum


class AllocationPreference(str, enum.Enum):
    """How candidate slots are ranked for a search"""
    BEST_FIT = "best_fit"              # Smallest table that seats the party
    EARLIEST = "earliest"              # Earliest time first
    TABLE_PRIORITY = "table_priority"  # Tables the restaurant prefers to fill first


class Tenant(Base):
    __tablename__ = "tenants"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    slug = Column(String(100), nullable=False, unique=True)
    name = Column(String(200), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    # IANA timezone used to interpret business hours
    timezone = Column(String(64), default="UTC", nullable=False)

    # Booking policy
    auto_confirm = Column(Boolean, default=False, nullable=False)  # False = pending moderation
    seating_duration_minutes = Column(Integer, default=120, nullable=False)
    slot_interval_minutes = Column(Integer, default=15, nullable=False)
    hold_ttl_seconds = Column(Integer, nullable=True)  # Overrides HOLD_TTL_SECONDS
    max_covers_per_slot = Column(Integer, nullable=True)  # None = sum of table capacities
    allocation_preference = Column(String(30), nullable=True)
    min_lead_minutes = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    business_hours = relationship("BusinessHours", back_populates="tenant", cascade="all, delete-orphan")
    tables = relationship("RestaurantTable", back_populates="tenant", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Tenant {self.slug}>"


class BusinessHours(Base):
    """
    Opening hours for one weekday (0 = Monday).

    close_time <= open_time means the service runs past midnight.
    """
    __tablename__ = "business_hours"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    day_of_week = Column(Integer, nullable=False)
    open_time = Column(Time, nullable=True)
    close_time = Column(Time, nullable=True)
    is_closed = Column(Boolean, default=False, nullable=False)

    tenant = relationship("Tenant", back_populates="business_hours")

    __table_args__ = (
        UniqueConstraint("tenant_id", "day_of_week", name="uq_business_hours_tenant_day"),
    )

    def __repr__(self):
        return f"<BusinessHours {self.tenant_id} day={self.day_of_week}>"


class RestaurantTable(Base):
    __tablename__ = "restaurant_tables"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(50), nullable=False)
    capacity = Column(Integer, nullable=False)
    min_capacity = Column(Integer, default=1, nullable=False)
    priority = Column(Integer, default=100, nullable=False)  # Lower = filled first
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)

    tenant = relationship("Tenant", back_populates="tables")

    __table_args__ = (
        Index("ix_restaurant_tables_tenant_active", "tenant_id", "is_active"),
    )

    def seats(self, party_size: int) -> bool:
        return self.min_capacity <= party_size <= self.capacity

    def __repr__(self):
        return f"<RestaurantTable {self.name} ({self.capacity})>"
