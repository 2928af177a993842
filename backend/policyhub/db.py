import logging
import os
from contextlib import contextmanager
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Iterator, Optional, Union

from sqlalchemy import (
    Boolean,
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
)
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError

from .errors import StorageError
from .logging_config import log_event


# --- Config ---
ROOT_DIR = Path(__file__).resolve().parents[2]
DEFAULT_DB_URL = os.getenv("DATABASE_URL", f"sqlite:///{ROOT_DIR}/backend/policyhub.db")

engine = create_engine(DEFAULT_DB_URL, future=True, pool_pre_ping=True)
metadata = MetaData()


if DEFAULT_DB_URL.startswith("sqlite"):
    @event.listens_for(engine, "connect")
    def _sqlite_connect(dbapi_conn, _record):
        # pysqlite only opens transactions for DML; take over BEGIN so reads share one
        dbapi_conn.isolation_level = None
        cur = dbapi_conn.cursor()
        cur.execute("PRAGMA foreign_keys=ON")
        cur.close()

    @event.listens_for(engine, "begin")
    def _sqlite_begin(conn):
        conn.exec_driver_sql("BEGIN")


organizations_table = Table(
    "organizations",
    metadata,
    Column("id", String, primary_key=True),
    Column("name", String, nullable=False),
    Column("created_at", String, nullable=False),
)

users_table = Table(
    "users",
    metadata,
    Column("id", String, primary_key=True),
    Column("organization_id", String, ForeignKey("organizations.id"), nullable=False),
    Column("display_name", String, nullable=False),
    Column("email", String),
    Column("role", String, nullable=False),
    Column("created_at", String, nullable=False),
)

policies_table = Table(
    "policies",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("organization_id", String, ForeignKey("organizations.id"), nullable=False, index=True),
    Column("title", String, nullable=False),
    Column("content", Text),
    Column("status", String, nullable=False),
    Column("department", String),
    Column("category", String),
    Column("effective_date", String),
    Column("review_date", String),
    Column("expiration_date", String),
    Column("author_id", String, nullable=False),
    Column("reviewed_by", String),
    Column("created_at", String, nullable=False, index=True),
    Column("updated_at", String, nullable=False),
)

policy_tags_table = Table(
    "policy_tags",
    metadata,
    Column("policy_id", Integer, ForeignKey("policies.id", ondelete="CASCADE"), primary_key=True),
    Column("tag", String, primary_key=True),
)

portals_table = Table(
    "portals",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("organization_id", String, ForeignKey("organizations.id"), nullable=True),
    Column("name", String, nullable=False),
    Column("slug", String, nullable=False),
    Column("access_type", String, nullable=False),
    Column("password_hash", String),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("requires_acknowledgment", Boolean, nullable=False, default=False),
    Column("created_at", String, nullable=False),
    UniqueConstraint("organization_id", "slug", name="uq_portals_org_slug"),
)

policy_portal_assignments_table = Table(
    "policy_portal_assignments",
    metadata,
    Column("policy_id", Integer, ForeignKey("policies.id", ondelete="CASCADE"), primary_key=True),
    Column("portal_id", Integer, ForeignKey("portals.id", ondelete="CASCADE"), primary_key=True, index=True),
)

policy_assignments_table = Table(
    "policy_assignments",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("policy_id", Integer, ForeignKey("policies.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("user_id", String, nullable=False),
    Column("organization_id", String, nullable=False),
    Column("due_date", String),
    Column("created_at", String, nullable=False),
    UniqueConstraint("policy_id", "user_id", name="uq_policy_assignments_policy_user"),
)

policy_acknowledgments_table = Table(
    "policy_acknowledgments",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("policy_id", Integer, ForeignKey("policies.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("user_id", String, nullable=False),
    Column("acknowledged_at", String, nullable=False),
)


def init_db():
    metadata.create_all(engine)


# Fixed-width so that lexical order equals chronological order on every dialect.
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S"


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None, microsecond=0)


def to_db_timestamp(value: Union[datetime, date, None]) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value.strftime(TIMESTAMP_FORMAT)
    return datetime(value.year, value.month, value.day).strftime(TIMESTAMP_FORMAT)


def parse_db_timestamp(value) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.replace(tzinfo=None) if value.tzinfo is None else value.astimezone(timezone.utc).replace(tzinfo=None)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    text_value = str(value).replace(" ", "T")
    try:
        parsed = datetime.fromisoformat(text_value)
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


@contextmanager
def read_snapshot(bind=None) -> Iterator[Connection]:
    """One connection, one transaction: every query of a request sees the same data.

    PostgreSQL is asked for REPEATABLE READ so the page query and the count
    query share a snapshot; SQLite transactions already serialize. Any
    SQLAlchemy failure inside the block surfaces as ``StorageError``.
    """
    bind = bind or engine
    try:
        with bind.connect() as conn:
            if conn.dialect.name == "postgresql":
                conn = conn.execution_options(isolation_level="REPEATABLE READ")
            with conn.begin():
                yield conn
    except SQLAlchemyError as exc:
        log_event("storage_error", level=logging.ERROR, error=str(exc), error_type=exc.__class__.__name__)
        raise StorageError("Storage backend failure", {"error_type": exc.__class__.__name__}) from exc
