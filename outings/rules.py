"""Signup rule checks for outings.

Everything here is pure: functions receive an outing (anything exposing the
``Outing`` attributes) plus the submitted roster and return ``None`` when the
request is admissible or a message naming the first rule it breaks.
"""

from __future__ import annotations

import math
from datetime import date, datetime
from typing import Iterable, List, Mapping, Sequence, TypedDict

from .database import OUTING_STATUSES, as_utc, utcnow

MODES = (
    "single",
    "seeking_partner",
    "seeking_team",
    "partial_team",
    "full_team",
    "member_guest",
    "captain",
    "join_team",
)
SINGLE_PLAYER_MODES = frozenset({"single", "seeking_partner", "seeking_team", "captain"})
TEAM_CREATE_MODES = frozenset({"partial_team", "full_team", "member_guest", "captain"})
INCOMPLETE_ON_CREATE_MODES = frozenset({"partial_team", "captain"})

MODE_LABELS = {
    "single": "Singles",
    "seeking_partner": "Seeking partner",
    "seeking_team": "Seeking team",
    "partial_team": "Partial team",
    "full_team": "Full team",
    "member_guest": "Member + guest",
    "captain": "Captain",
    "join_team": "Join existing team",
}

FALLBACK_TEAM_SIZE = 4


class PlayerInput(TypedDict):
    name: str
    email: str
    phone: str
    is_guest: bool
    handicap_index: float | None
    is_captain: bool


def normalize_email(value: object) -> str:
    """Return the lowercase, trimmed form used as the uniqueness key."""
    return str(value or "").strip().lower()


def parse_number(value: object) -> float | None:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def normalize_players(entries: Iterable[Mapping[str, object]] | None) -> List[PlayerInput]:
    """Clean raw player rows, ignoring rows with neither a name nor an email."""
    players: List[PlayerInput] = []
    for entry in entries or []:
        entry = entry or {}
        player = PlayerInput(
            name=str(entry.get("name") or "").strip(),
            email=normalize_email(entry.get("email")),
            phone=str(entry.get("phone") or "").strip(),
            is_guest=bool(entry.get("is_guest")),
            handicap_index=parse_number(entry.get("handicap_index")),
            is_captain=bool(entry.get("is_captain")),
        )
        if player["name"] or player["email"]:
            players.append(player)
    return players


def validate_players_shape(players: Sequence[PlayerInput]) -> str | None:
    if not players:
        return "At least one player is required"
    seen: set[str] = set()
    for player in players:
        if not player["name"]:
            return "Each player requires a name"
        if not player["email"]:
            return "Each player requires an email"
        if player["email"] in seen:
            return f"Duplicate email in signup payload: {player['email']}"
        seen.add(player["email"])
    return None


def check_mode_allowed(outing, mode: str) -> str | None:
    if mode not in MODES or mode not in set(outing.allowed_modes or ()):
        return f"Signup mode '{mode}' is not allowed for this event"
    return None


def check_signup_window(outing, now: datetime | None = None) -> str | None:
    now = as_utc(now) or utcnow()
    opens = as_utc(outing.signup_open_at)
    closes = as_utc(outing.signup_close_at)
    if outing.status != "open":
        return "Signup is not open for this event"
    if opens and now < opens:
        return "Signup has not opened yet"
    if closes and now > closes:
        return "Signup deadline has passed"
    return None


def _size_bounds(outing) -> tuple[int, int, int]:
    exact = int(outing.team_size_exact or 0)
    minimum = int(outing.team_size_min or 1)
    maximum = int(outing.team_size_max or max(minimum, 1))
    return exact, minimum, maximum


def _check_roster_shape(outing, mode: str, players: Sequence[PlayerInput], existing_team_size: int) -> str | None:
    exact, minimum, maximum = _size_bounds(outing)
    count = len(players)

    if mode == "captain" and count != 1:
        return "Captain signup starts with one captain player"
    if mode in SINGLE_PLAYER_MODES and count != 1:
        return "Single/partner/team-seeker modes require exactly one player"

    if mode == "full_team":
        if exact and count != exact:
            return f"This event requires exactly {exact} players for full-team signup"
        if not exact and count < minimum:
            return f"This event requires at least {minimum} players for team signup"

    if mode == "partial_team" and exact and count >= exact:
        return f"Partial-team signup must be smaller than {exact} players"

    if mode == "join_team":
        projected = existing_team_size + count
        if exact and projected > exact:
            return f"Team cannot exceed exact size {exact}"
        if not exact and projected > maximum:
            return f"Team cannot exceed max size {maximum}"
    return None


def _check_guests(outing, mode: str, players: Sequence[PlayerInput]) -> str | None:
    guests = sum(1 for player in players if player["is_guest"])
    if mode == "member_guest" and (not guests or guests == len(players)):
        return "Member + Guest signup requires at least one member and one guest"
    if guests and outing.member_only:
        return "This is a member-only event"
    if guests and not outing.allow_guests:
        return "Guests are not allowed for this event"
    return None


def _check_handicaps(outing, players: Sequence[PlayerInput]) -> str | None:
    if not outing.handicap_required:
        return None
    low = outing.handicap_min_index
    high = outing.handicap_max_index
    for player in players:
        index = player["handicap_index"]
        if index is None:
            return f"Handicap is required for {player['name']}"
        if low is not None and index < low:
            return f"Handicap for {player['name']} must be at least {low:g}"
        if high is not None and index > high:
            return f"Handicap for {player['name']} cannot exceed {high:g}"
    return None


def check_rule_constraints(
    outing,
    mode: str,
    players: Sequence[PlayerInput],
    existing_team_size: int = 0,
) -> str | None:
    """Roster shape, partner, guest, then handicap rules, in that order."""
    error = _check_roster_shape(outing, mode, players, existing_team_size)
    if error:
        return error
    if outing.require_partner and mode == "single":
        return "This event requires a partner (use Find a Partner)"
    return _check_guests(outing, mode, players) or _check_handicaps(outing, players)


def evaluate_signup(
    outing,
    mode: str,
    players: Sequence[PlayerInput],
    existing_team_size: int = 0,
    now: datetime | None = None,
) -> str | None:
    return (
        check_mode_allowed(outing, mode)
        or check_signup_window(outing, now)
        or validate_players_shape(players)
        or check_rule_constraints(outing, mode, players, existing_team_size)
    )


def default_target_size(outing, player_count: int = 0) -> int:
    return int(outing.team_size_exact or outing.team_size_max or player_count or FALLBACK_TEAM_SIZE)


def effective_threshold(outing, target_size: int | None = None) -> int:
    """Active member count at which a team counts as complete."""
    return int(outing.team_size_exact or outing.team_size_max or target_size or FALLBACK_TEAM_SIZE)


def validate_outing_config(values: Mapping[str, object]) -> str | None:
    minimum = values.get("team_size_min")
    maximum = values.get("team_size_max")
    exact = values.get("team_size_exact")
    for label, size in (("team_size_min", minimum), ("team_size_max", maximum), ("team_size_exact", exact)):
        if size is not None and not 1 <= size <= 8:
            return f"{label} must be between 1 and 8"
    if minimum is not None and maximum is not None and minimum > maximum:
        return "team_size_min cannot exceed team_size_max"
    if exact is not None:
        if minimum is not None and exact < minimum:
            return "team_size_exact cannot be below team_size_min"
        if maximum is not None and exact > maximum:
            return "team_size_exact cannot exceed team_size_max"

    low = values.get("handicap_min_index")
    high = values.get("handicap_max_index")
    if low is not None and high is not None and low > high:
        return "handicap_min_index cannot exceed handicap_max_index"

    start = values.get("start_date")
    end = values.get("end_date")
    if start and end and start > end:
        return "start_date cannot be after end_date"
    opens = as_utc(values.get("signup_open_at"))
    closes = as_utc(values.get("signup_close_at"))
    if opens and closes and opens > closes:
        return "signup_open_at cannot be after signup_close_at"

    status = values.get("status")
    if status is not None and status not in OUTING_STATUSES:
        return f"Unknown outing status '{status}'"
    modes = values.get("allowed_modes")
    if modes is not None:
        unknown = sorted(set(modes) - set(MODES))
        if unknown:
            return f"Unknown signup mode(s): {', '.join(unknown)}"
    for label in ("max_teams", "max_players"):
        ceiling = values.get(label)
        if ceiling is not None and ceiling < 1:
            return f"{label} must be at least 1"
    return None


def format_date_range(start: date, end: date) -> str:
    def label(value: date) -> str:
        return f"{value.month}/{value.day}/{value.year}"

    if start == end:
        return label(start)
    return f"{label(start)} - {label(end)}"


def build_rule_summary(outing) -> str:
    parts: list[str] = []
    exact = int(outing.team_size_exact or 0)
    if exact:
        parts.append(f"Exact team size: {exact}")
    else:
        parts.append(f"Team size: {outing.team_size_min}-{outing.team_size_max}")

    if outing.member_only:
        parts.append("Member-only event")
    elif outing.allow_guests:
        parts.append("Guests allowed")
    else:
        parts.append("No guests")

    enabled = [MODE_LABELS[mode] for mode in MODES if mode in set(outing.allowed_modes or ())]
    parts.append("Signup: " + (", ".join(enabled) if enabled else "closed to all modes"))

    if outing.handicap_required:
        low = outing.handicap_min_index
        high = outing.handicap_max_index
        if low is not None and high is not None:
            parts.append(f"Handicap required ({low:g}-{high:g})")
        elif high is not None:
            parts.append(f"Handicap required (max {high:g})")
        elif low is not None:
            parts.append(f"Handicap required (min {low:g})")
        else:
            parts.append("Handicap required")
    return " | ".join(parts)


