"""Database models and helpers for outing, registration, and team management."""

from __future__ import annotations

import logging
import os
from datetime import date, datetime, timezone
from typing import Iterator

from sqlalchemy import JSON, Column, DateTime, Index, UniqueConstraint, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlmodel import Field, Session, SQLModel, create_engine

from .errors import StoreUnavailable

DEFAULT_SQLITE_PATH = "sqlite:///./outings.db"

OUTING_STATUSES = ("draft", "open", "closed", "waitlist", "completed")
REGISTRATION_STATUSES = ("registered", "waitlisted", "cancelled")
PAYMENT_STATUSES = ("unpaid", "pending", "paid", "refunded")
TEAM_STATUSES = ("active", "incomplete", "cancelled")
MEMBER_STATUSES = ("active", "cancelled")
WAITLIST_STATUSES = ("active", "converted", "cancelled")

# Every signup mode except member_guest is enabled unless an admin says otherwise.
DEFAULT_ALLOWED_MODES = [
    "single",
    "seeking_partner",
    "seeking_team",
    "partial_team",
    "full_team",
    "captain",
    "join_team",
]

NULLABLE_OUTING_FIELDS = frozenset(
    {
        "signup_open_at",
        "signup_close_at",
        "team_size_exact",
        "max_teams",
        "max_players",
        "handicap_min_index",
        "handicap_max_index",
        "entry_fee",
    }
)

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Return an aware UTC datetime; naive values are taken to already be UTC.

    SQLite hands timestamps back without their offset, so everything stored
    goes through here before it is compared.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _build_engine_url() -> str:
    """Return the configured database URL or fall back to SQLite."""
    return os.environ.get("DATABASE_URL", DEFAULT_SQLITE_PATH)


def _build_engine(url: str | None = None) -> Engine:
    url = url or _build_engine_url()
    engine_kwargs = {}
    if url.startswith("sqlite"):
        # SQLite needs check_same_thread disabled for FastAPI concurrency,
        # but passing this flag to other drivers (e.g., psycopg2) raises errors.
        engine_kwargs["connect_args"] = {"check_same_thread": False}
    return create_engine(url, **engine_kwargs)


engine = _build_engine()


def _active_only_index(name: str) -> Index:
    """Unique (outing, email) index that only covers active rows."""
    return Index(
        name,
        "outing_id",
        "email_key",
        unique=True,
        sqlite_where=text("status = 'active'"),
        postgresql_where=text("status = 'active'"),
    )


class Outing(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("start_date", "name", name="uq_outing_start_name"),)

    id: int | None = Field(default=None, primary_key=True)
    name: str = Field(nullable=False, max_length=140)
    format_type: str = Field(nullable=False, max_length=80)
    start_date: date = Field(nullable=False)
    end_date: date = Field(nullable=False)
    signup_open_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))
    signup_close_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))
    status: str = Field(default="draft", nullable=False, index=True)

    team_size_min: int = Field(default=1, nullable=False)
    team_size_max: int = Field(default=4, nullable=False)
    team_size_exact: int | None = Field(default=None)
    require_partner: bool = Field(default=False, nullable=False)

    max_teams: int | None = Field(default=None)
    max_players: int | None = Field(default=None)

    allowed_modes: list[str] = Field(
        default_factory=lambda: list(DEFAULT_ALLOWED_MODES),
        sa_column=Column(JSON, nullable=False),
    )
    allow_guests: bool = Field(default=False, nullable=False)
    member_only: bool = Field(default=True, nullable=False)

    handicap_required: bool = Field(default=False, nullable=False)
    handicap_min_index: float | None = Field(default=None)
    handicap_max_index: float | None = Field(default=None)

    flights: str = Field(default="", max_length=280)
    entry_fee: float | None = Field(default=None)
    registration_notes: str = Field(default="", max_length=4000)
    cancellation_policy: str = Field(default="", max_length=4000)

    auto_waitlist: bool = Field(default=True, nullable=False)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True), nullable=False)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True), nullable=False)


class Registration(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    outing_id: int = Field(foreign_key="outing.id", nullable=False, index=True)
    mode: str = Field(nullable=False, max_length=40)
    status: str = Field(default="registered", nullable=False, index=True)
    team_id: int | None = Field(default=None, foreign_key="team.id", index=True)
    submitted_by_name: str = Field(nullable=False, max_length=80)
    submitted_by_email: str = Field(nullable=False, max_length=180, index=True)
    submitted_by_phone: str = Field(default="", max_length=40)
    notes: str = Field(default="", max_length=2000)
    payment_status: str = Field(default="unpaid", nullable=False)
    cancelled_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True), nullable=False)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True), nullable=False)


class Team(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("outing_id", "name", name="uq_team_outing_name"),)

    id: int | None = Field(default=None, primary_key=True)
    outing_id: int = Field(foreign_key="outing.id", nullable=False, index=True)
    name: str = Field(nullable=False, max_length=120)
    captain_name: str | None = Field(default=None, max_length=80)
    captain_email: str | None = Field(default=None, max_length=180)
    target_size: int | None = Field(default=None)
    status: str = Field(default="active", nullable=False, index=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True), nullable=False)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True), nullable=False)


class TeamMember(SQLModel, table=True):
    __tablename__ = "team_member"
    __table_args__ = (_active_only_index("uq_team_member_active_email"),)

    id: int | None = Field(default=None, primary_key=True)
    outing_id: int = Field(foreign_key="outing.id", nullable=False, index=True)
    team_id: int | None = Field(default=None, foreign_key="team.id", index=True)
    registration_id: int = Field(foreign_key="registration.id", nullable=False, index=True)
    name: str = Field(nullable=False, max_length=80)
    email: str = Field(nullable=False, max_length=180)
    email_key: str = Field(nullable=False, max_length=180)
    phone: str = Field(default="", max_length=40)
    is_guest: bool = Field(default=False, nullable=False)
    handicap_index: float | None = Field(default=None)
    is_captain: bool = Field(default=False, nullable=False)
    status: str = Field(default="active", nullable=False, index=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True), nullable=False)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True), nullable=False)


class WaitlistEntry(SQLModel, table=True):
    __tablename__ = "waitlist_entry"
    __table_args__ = (_active_only_index("uq_waitlist_active_email"),)

    id: int | None = Field(default=None, primary_key=True)
    outing_id: int = Field(foreign_key="outing.id", nullable=False, index=True)
    name: str = Field(nullable=False, max_length=80)
    email: str = Field(nullable=False, max_length=180)
    email_key: str = Field(nullable=False, max_length=180)
    phone: str = Field(default="", max_length=40)
    mode: str = Field(default="single", max_length=40)
    notes: str = Field(default="", max_length=1500)
    status: str = Field(default="active", nullable=False, index=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True), nullable=False)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True), nullable=False)


def init_db() -> None:
    """Create tables if they don't already exist."""
    try:
        SQLModel.metadata.create_all(engine)
    except OperationalError as exc:
        logger.error("Unable to initialise database at %s: %s", engine.url, exc)
        raise StoreUnavailable("Outing database is unavailable") from exc


def get_session() -> Iterator[Session]:
    """Yield a SQLModel session for dependency injection."""
    with Session(engine) as session:
        yield session
