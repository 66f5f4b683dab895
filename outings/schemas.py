"""Request bodies accepted by the outing API."""

from __future__ import annotations

from datetime import date, datetime

from sqlmodel import Field, SQLModel


class PlayerPayload(SQLModel):
    name: str = Field(default="", max_length=80)
    email: str = Field(default="", max_length=180)
    phone: str = Field(default="", max_length=40)
    is_guest: bool = False
    # Left loose so a non-numeric value reaches the handicap rule and is reported per player.
    handicap_index: float | str | None = None
    is_captain: bool = False


class RegisterRequest(SQLModel):
    mode: str = Field(default="", max_length=40)
    players: list[PlayerPayload] = Field(default_factory=list)
    team_name: str | None = Field(default=None, max_length=120)
    team_id: int | None = None
    notes: str = Field(default="", max_length=2000)


class EditRegistrationRequest(SQLModel):
    requester_email: str = Field(default="", max_length=180)
    remove_member_ids: list[int] = Field(default_factory=list)
    add_players: list[PlayerPayload] = Field(default_factory=list)
    notes: str | None = Field(default=None, max_length=2000)


class WaitlistRequest(SQLModel):
    name: str = Field(default="", max_length=80)
    email: str = Field(default="", max_length=180)
    phone: str = Field(default="", max_length=40)
    mode: str = Field(default="single", max_length=40)
    notes: str = Field(default="", max_length=1500)


class OutingPayload(SQLModel):
    """Administrative create/update body; unset fields keep their current value."""

    name: str | None = Field(default=None, max_length=140)
    format_type: str | None = Field(default=None, max_length=80)
    start_date: date | None = None
    end_date: date | None = None
    signup_open_at: datetime | None = None
    signup_close_at: datetime | None = None
    status: str | None = None
    team_size_min: int | None = None
    team_size_max: int | None = None
    team_size_exact: int | None = None
    require_partner: bool | None = None
    max_teams: int | None = None
    max_players: int | None = None
    allowed_modes: list[str] | None = None
    allow_guests: bool | None = None
    member_only: bool | None = None
    handicap_required: bool | None = None
    handicap_min_index: float | None = None
    handicap_max_index: float | None = None
    flights: str | None = Field(default=None, max_length=280)
    entry_fee: float | None = Field(default=None, ge=0)
    registration_notes: str | None = Field(default=None, max_length=4000)
    cancellation_policy: str | None = Field(default=None, max_length=4000)
    auto_waitlist: bool | None = None
