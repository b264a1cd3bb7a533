"""
Alembic environment for table-hold-service

The connection string comes from DATABASE_URL, then the libpq PG* variables,
then the application settings (local SQLite).
"""

import os
import sys
from logging.config import fileConfig

from sqlalchemy import pool
from sqlalchemy import create_engine

from alembic import context

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.config import settings
from app.database import Base, normalize_database_url
from app.models import (  # noqa: F401
    Tenant, BusinessHours, RestaurantTable,
    BookingHold, Booking, BookingStatusEvent,
    IdempotencyRecord, NotificationOutbox,
)

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata

# Partial indexes whose WHERE clause autogenerate cannot compare reliably
PARTIAL_INDEXES = {"uq_booking_holds_active_table_slot"}


def url_from_pg_env() -> str:
    host = os.environ.get("PGHOST")
    user = os.environ.get("PGUSER") or os.environ.get("POSTGRES_USER")
    password = os.environ.get("PGPASSWORD") or os.environ.get("POSTGRES_PASSWORD")
    database = os.environ.get("PGDATABASE") or os.environ.get("POSTGRES_DB")
    if not (host and user and password and database):
        return ""
    port = os.environ.get("PGPORT", "5432")
    return f"postgresql://{user}:{password}@{host}:{port}/{database}"


def get_database_url() -> str:
    database_url = os.environ.get("DATABASE_URL") or url_from_pg_env() or settings.database_url
    return normalize_database_url(database_url)


def include_object(obj, name, type_, reflected, compare_to):
    """Keep autogenerate from re-emitting the hold partial index on every run"""
    if type_ == "index" and name in PARTIAL_INDEXES and reflected:
        return False
    return True


def run_migrations_offline() -> None:
    """Emit SQL for the configured URL without connecting."""
    context.configure(
        url=get_database_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
        include_object=include_object,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    url = get_database_url()
    is_sqlite = url.startswith("sqlite")

    connectable = create_engine(
        url,
        poolclass=pool.NullPool,
        connect_args={"check_same_thread": False} if is_sqlite else {},
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            include_object=include_object,
            # SQLite cannot ALTER most constraints in place
            render_as_batch=is_sqlite,
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
