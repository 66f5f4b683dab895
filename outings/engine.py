"""Registration, team formation, and waitlist handling for outings.

Every public operation runs as a single unit of work on the given session:
reads and checks first, then writes, then one commit. Duplicate and capacity
checks are advisory; the partial unique indexes on ``team_member`` and
``waitlist_entry`` are what actually prevent a double booking, so an
``IntegrityError`` at commit time is reported as a conflict.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Sequence, TypedDict

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlmodel import Session, func, select

from .database import (
    NULLABLE_OUTING_FIELDS,
    Outing,
    Registration,
    Team,
    TeamMember,
    WaitlistEntry,
    as_utc,
    utcnow,
)
from .errors import (
    CapacityExceeded,
    InvalidOutingConfig,
    NotAuthorized,
    NotFound,
    RegistrationConflict,
    SignupRejected,
    StoreUnavailable,
    TeamAllocationError,
)
from .rules import (
    INCOMPLETE_ON_CREATE_MODES,
    MODES,
    TEAM_CREATE_MODES,
    PlayerInput,
    build_rule_summary,
    check_mode_allowed,
    check_rule_constraints,
    check_signup_window,
    default_target_size,
    effective_threshold,
    format_date_range,
    normalize_email,
    normalize_players,
    validate_outing_config,
    validate_players_shape,
)
from .schemas import EditRegistrationRequest, OutingPayload, RegisterRequest, WaitlistRequest

TEAM_NAME_ATTEMPTS = 3
LIVE_TEAM_STATUSES = ("active", "incomplete")
PLAYER_CONFLICT_MESSAGE = "A player is already registered for this event"

logger = logging.getLogger(__name__)


class OutingMetrics(TypedDict):
    registrations: int
    teams: int
    players: int
    waitlist: int


@contextmanager
def _unit_of_work(session: Session, conflict_message: str) -> Iterator[None]:
    try:
        yield
    except IntegrityError as exc:
        session.rollback()
        logger.warning("Store rejected write (%s): %s", conflict_message, exc.orig)
        raise RegistrationConflict(conflict_message) from exc
    except OperationalError as exc:
        session.rollback()
        logger.error("Outing database unavailable: %s", exc)
        raise StoreUnavailable("Outing database is unavailable") from exc
    except Exception:
        session.rollback()
        raise


def _touch(record) -> None:
    record.updated_at = utcnow()


def get_outing(session: Session, outing_id: int) -> Outing:
    outing = session.get(Outing, outing_id)
    if not outing:
        raise NotFound("Event not found")
    return outing


# Duplicate guard


def find_active_duplicates(session: Session, outing_id: int, emails: Sequence[str]) -> list[str]:
    """Return the email keys that already hold an active seat in the outing."""
    if not emails:
        return []
    rows = session.exec(
        select(TeamMember.email_key).where(
            (TeamMember.outing_id == outing_id)
            & (TeamMember.status == "active")
            & (TeamMember.email_key.in_(list(emails)))
        )
    ).all()
    return sorted(set(rows))


def ensure_players_not_registered(session: Session, outing_id: int, players: Sequence[PlayerInput]) -> None:
    dupes = find_active_duplicates(session, outing_id, [player["email"] for player in players])
    if dupes:
        raise SignupRejected(f"Player already registered for this event: {', '.join(dupes)}")


# Capacity accounting


def _count(session: Session, model, *criteria) -> int:
    return session.exec(select(func.count()).select_from(model).where(*criteria)).one()


def get_metrics(session: Session, outing_id: int) -> OutingMetrics:
    """Count live registrations, teams, players, and waitlist entries from the store."""
    return OutingMetrics(
        registrations=_count(
            session, Registration, Registration.outing_id == outing_id, Registration.status == "registered"
        ),
        teams=_count(session, Team, Team.outing_id == outing_id, Team.status.in_(LIVE_TEAM_STATUSES)),
        players=_count(session, TeamMember, TeamMember.outing_id == outing_id, TeamMember.status == "active"),
        waitlist=_count(
            session, WaitlistEntry, WaitlistEntry.outing_id == outing_id, WaitlistEntry.status == "active"
        ),
    )


def check_capacity(
    outing: Outing,
    metrics: OutingMetrics,
    mode: str,
    incoming: int,
    *,
    full_message: str = "Event is full",
) -> None:
    can_join_waitlist = bool(outing.auto_waitlist or outing.status == "waitlist")
    if mode in TEAM_CREATE_MODES and outing.max_teams and metrics["teams"] >= outing.max_teams:
        raise CapacityExceeded("Event has reached max teams", can_join_waitlist=can_join_waitlist)
    if outing.max_players and metrics["players"] + incoming > outing.max_players:
        raise CapacityExceeded(full_message, can_join_waitlist=can_join_waitlist)


# Team allocation


def count_active_members(session: Session, team_id: int) -> int:
    return _count(session, TeamMember, TeamMember.team_id == team_id, TeamMember.status == "active")


def find_joinable_team(session: Session, outing: Outing, team_id: int | None) -> Team:
    if not team_id:
        raise SignupRejected("team_id is required when joining an existing team")
    team = session.get(Team, team_id)
    if not team or team.outing_id != outing.id or team.status not in LIVE_TEAM_STATUSES:
        raise SignupRejected("Target team not found")
    return team


def create_team(
    session: Session,
    outing: Outing,
    mode: str,
    players: Sequence[PlayerInput],
    team_name: str | None = None,
) -> Team:
    """Insert a team, renaming on a (outing, name) collision.

    Must be the first write of the unit of work: a collision rolls the
    session back before the next name is tried.
    """
    outing_id = outing.id
    captain = players[0]
    base_name = (team_name or "").strip() or f"{captain['name']} Team"
    target_size = default_target_size(outing, len(players))
    status = "incomplete" if mode in INCOMPLETE_ON_CREATE_MODES else "active"

    candidate = base_name
    for attempt in range(1, TEAM_NAME_ATTEMPTS + 1):
        team = Team(
            outing_id=outing_id,
            name=candidate,
            captain_name=captain["name"],
            captain_email=captain["email"],
            target_size=target_size,
            status=status,
        )
        session.add(team)
        try:
            session.flush()
        except IntegrityError:
            session.rollback()
            logger.warning("Team name %r taken for outing %s (attempt %s)", candidate, outing_id, attempt)
            candidate = f"{base_name} ({attempt + 1})"
            continue
        return team

    raise TeamAllocationError("Unable to create team")


def recompute_team_status(session: Session, outing: Outing, team: Team) -> Team:
    """Mark the team active once it reaches its size threshold, incomplete otherwise."""
    if team.status == "cancelled":
        return team
    active = count_active_members(session, team.id)
    if active == 0:
        return team
    threshold = effective_threshold(outing, team.target_size)
    status = "active" if active >= threshold else "incomplete"
    if team.status != status:
        team.status = status
        _touch(team)
        session.add(team)
    return team


def _seat(outing_id: int, team: Team | None, registration: Registration, player: PlayerInput, is_captain: bool) -> TeamMember:
    return TeamMember(
        outing_id=outing_id,
        team_id=team.id if team else None,
        registration_id=registration.id,
        name=player["name"],
        email=player["email"],
        email_key=player["email"],
        phone=player["phone"],
        is_guest=player["is_guest"],
        handicap_index=player["handicap_index"],
        is_captain=is_captain,
        status="active",
    )


# Enrichment


def _dump(record) -> dict[str, object]:
    return record.model_dump()


def build_outing_view(outing: Outing, metrics: OutingMetrics) -> dict[str, object]:
    payload = _dump(outing)
    enabled = set(outing.allowed_modes or ())
    payload["allowed_modes"] = [mode for mode in MODES if mode in enabled]
    payload["date_label"] = format_date_range(outing.start_date, outing.end_date)
    payload["rule_summary"] = build_rule_summary(outing)
    payload["metrics"] = dict(metrics)
    payload["spots_remaining_players"] = (
        max(0, outing.max_players - metrics["players"]) if outing.max_players else None
    )
    payload["spots_remaining_teams"] = max(0, outing.max_teams - metrics["teams"]) if outing.max_teams else None
    return payload


def _team_payload(outing: Outing, team: Team, members: list[TeamMember]) -> dict[str, object]:
    size = len(members)
    exact = int(outing.team_size_exact or 0)
    target = exact or int(outing.team_size_max or team.target_size or 4)
    payload = _dump(team)
    payload["member_count"] = size
    payload["spots_open"] = max(0, target - size)
    payload["can_join"] = "join_team" in set(outing.allowed_modes or ()) and size < target
    payload["members"] = [_dump(member) for member in members]
    return payload


def build_outing_detail(session: Session, outing: Outing, *, include_registrations: bool = False) -> dict[str, object]:
    """Enriched outing plus its live teams, and registrations/waitlist for admins."""
    session.refresh(outing)
    detail = build_outing_view(outing, get_metrics(session, outing.id))

    teams = session.exec(
        select(Team)
        .where((Team.outing_id == outing.id) & (Team.status.in_(LIVE_TEAM_STATUSES)))
        .order_by(Team.name)
    ).all()
    members_by_team: dict[int, list[TeamMember]] = {team.id: [] for team in teams}
    if teams:
        members = session.exec(
            select(TeamMember)
            .where((TeamMember.team_id.in_(list(members_by_team))) & (TeamMember.status == "active"))
            .order_by(TeamMember.id)
        ).all()
        for member in members:
            members_by_team[member.team_id].append(member)
    detail["teams"] = [_team_payload(outing, team, members_by_team[team.id]) for team in teams]

    if include_registrations:
        registrations = session.exec(
            select(Registration)
            .where(Registration.outing_id == outing.id)
            .order_by(Registration.created_at.desc(), Registration.id.desc())
        ).all()
        waitlist = session.exec(
            select(WaitlistEntry)
            .where(WaitlistEntry.outing_id == outing.id)
            .order_by(WaitlistEntry.created_at.desc(), WaitlistEntry.id.desc())
        ).all()
        detail["registrations"] = [_dump(registration) for registration in registrations]
        detail["waitlist"] = [_dump(entry) for entry in waitlist]
    return detail


def list_outings(session: Session, *, include_registrations: bool = False) -> list[dict[str, object]]:
    outings = session.exec(select(Outing).order_by(Outing.start_date, Outing.id)).all()
    if include_registrations:
        return [build_outing_detail(session, outing, include_registrations=True) for outing in outings]
    return [build_outing_view(outing, get_metrics(session, outing.id)) for outing in outings]


# Registration orchestration


def _require_owner(registration: Registration, requester_email: str | None, action: str) -> None:
    email = normalize_email(requester_email)
    if not email or email != registration.submitted_by_email:
        raise NotAuthorized(f"Only the registration owner can {action} this signup")


def register(
    session: Session,
    outing_id: int,
    request: RegisterRequest,
    *,
    now: datetime | None = None,
) -> dict[str, object]:
    """Admit a signup, creating its team and seats, and return the updated outing."""
    with _unit_of_work(session, PLAYER_CONFLICT_MESSAGE):
        outing = get_outing(session, outing_id)
        mode = (request.mode or "").strip()
        players = normalize_players(player.model_dump() for player in request.players)

        error = check_mode_allowed(outing, mode) or check_signup_window(outing, now) or validate_players_shape(players)
        if error:
            logger.debug("Signup rejected for outing %s: %s", outing_id, error)
            raise SignupRejected(error)

        target_team = find_joinable_team(session, outing, request.team_id) if mode == "join_team" else None

        ensure_players_not_registered(session, outing.id, players)
        metrics = get_metrics(session, outing.id)
        try:
            check_capacity(outing, metrics, mode, len(players))
        except CapacityExceeded as exc:
            logger.warning("Outing %s at capacity: %s", outing_id, exc.detail)
            raise

        existing_team_size = count_active_members(session, target_team.id) if target_team else 0
        error = check_rule_constraints(outing, mode, players, existing_team_size)
        if error:
            logger.debug("Signup rejected for outing %s: %s", outing_id, error)
            raise SignupRejected(error)

        team = target_team
        if mode in TEAM_CREATE_MODES:
            team = create_team(session, outing, mode, players, request.team_name)

        submitter = players[0]
        registration = Registration(
            outing_id=outing_id,
            mode=mode,
            status="registered",
            team_id=team.id if team else None,
            submitted_by_name=submitter["name"],
            submitted_by_email=submitter["email"],
            submitted_by_phone=submitter["phone"],
            notes=(request.notes or "").strip(),
        )
        session.add(registration)
        session.flush()

        for index, player in enumerate(players):
            session.add(_seat(outing_id, team, registration, player, player["is_captain"] or index == 0))
        session.flush()

        if team:
            recompute_team_status(session, outing, team)
        session.commit()

        session.refresh(registration)
        logger.info(
            "Registration %s (%s, %d players) created for outing %s",
            registration.id,
            mode,
            len(players),
            outing_id,
        )
        return {
            "registration": _dump(registration),
            "event": build_outing_detail(session, outing),
        }


def edit_registration(
    session: Session,
    outing_id: int,
    registration_id: int,
    request: EditRegistrationRequest,
) -> dict[str, object]:
    """Let the submitter drop and/or add players on their team registration."""
    with _unit_of_work(session, PLAYER_CONFLICT_MESSAGE):
        outing = get_outing(session, outing_id)
        registration = session.exec(
            select(Registration).where(
                (Registration.id == registration_id)
                & (Registration.outing_id == outing.id)
                & (Registration.status == "registered")
            )
        ).first()
        if not registration:
            raise NotFound("Registration not found")
        _require_owner(registration, request.requester_email, "edit")

        if not registration.team_id:
            raise SignupRejected("This registration is not a team/captain registration")
        team = session.get(Team, registration.team_id)
        if not team or team.status == "cancelled":
            raise SignupRejected("Team is not available for updates")

        if request.remove_member_ids:
            removed = session.exec(
                select(TeamMember).where(
                    (TeamMember.id.in_(request.remove_member_ids))
                    & (TeamMember.registration_id == registration.id)
                    & (TeamMember.team_id == team.id)
                    & (TeamMember.status == "active")
                )
            ).all()
            for member in removed:
                member.status = "cancelled"
                _touch(member)
                session.add(member)
            session.flush()

        add_players = normalize_players(player.model_dump() for player in request.add_players)
        if add_players:
            error = validate_players_shape(add_players)
            if error:
                raise SignupRejected(error)
            ensure_players_not_registered(session, outing.id, add_players)
            check_capacity(
                outing,
                get_metrics(session, outing.id),
                "join_team",
                len(add_players),
                full_message="Not enough open player spots for this update",
            )
            error = check_rule_constraints(outing, "join_team", add_players, count_active_members(session, team.id))
            if error:
                raise SignupRejected(error)
            for player in add_players:
                session.add(_seat(outing.id, team, registration, player, False))
            session.flush()

        remaining = _count(
            session,
            TeamMember,
            TeamMember.registration_id == registration.id,
            TeamMember.status == "active",
        )
        if not remaining:
            raise SignupRejected("A registration must keep at least one player; cancel it instead")

        if request.notes is not None:
            registration.notes = request.notes.strip()
        _touch(registration)
        session.add(registration)

        recompute_team_status(session, outing, team)
        session.commit()
        logger.info(
            "Registration %s edited (%d removed, %d added)",
            registration_id,
            len(request.remove_member_ids),
            len(add_players),
        )
        return {"event": build_outing_detail(session, outing)}


def cancel_registration(
    session: Session,
    outing_id: int,
    registration_id: int,
    requester_email: str | None,
) -> dict[str, object]:
    """Cancel a registration and its seats; repeated calls are a no-op."""
    with _unit_of_work(session, PLAYER_CONFLICT_MESSAGE):
        outing = get_outing(session, outing_id)
        registration = session.exec(
            select(Registration).where((Registration.id == registration_id) & (Registration.outing_id == outing.id))
        ).first()
        if not registration:
            raise NotFound("Registration not found")
        _require_owner(registration, requester_email, "cancel")

        if registration.status == "cancelled":
            return {"event": build_outing_detail(session, outing)}

        registration.status = "cancelled"
        registration.cancelled_at = utcnow()
        _touch(registration)
        session.add(registration)

        members = session.exec(
            select(TeamMember).where(
                (TeamMember.registration_id == registration.id) & (TeamMember.status == "active")
            )
        ).all()
        for member in members:
            member.status = "cancelled"
            _touch(member)
            session.add(member)
        session.flush()

        if registration.team_id:
            team = session.get(Team, registration.team_id)
            if team and team.status != "cancelled":
                if count_active_members(session, team.id) == 0:
                    team.status = "cancelled"
                    _touch(team)
                    session.add(team)
                else:
                    recompute_team_status(session, outing, team)
        session.commit()
        logger.info("Registration %s cancelled (%d seats released)", registration_id, len(members))
        return {"event": build_outing_detail(session, outing)}


# Waitlist and status lookups


def join_waitlist(session: Session, outing_id: int, request: WaitlistRequest) -> dict[str, object]:
    """Record interest in a full or closed outing; no team or capacity effects."""
    with _unit_of_work(session, "This email is already on the waitlist for this event"):
        outing = get_outing(session, outing_id)
        name = (request.name or "").strip()
        email = normalize_email(request.email)
        if not name or not email:
            raise SignupRejected("name and email are required")

        seated = session.exec(
            select(TeamMember).where(
                (TeamMember.outing_id == outing.id)
                & (TeamMember.email_key == email)
                & (TeamMember.status == "active")
            )
        ).first()
        if seated:
            raise SignupRejected("Player is already registered for this event")

        entry = WaitlistEntry(
            outing_id=outing.id,
            name=name,
            email=email,
            email_key=email,
            phone=(request.phone or "").strip(),
            mode=(request.mode or "single").strip() or "single",
            notes=(request.notes or "").strip(),
            status="active",
        )
        session.add(entry)
        session.commit()
        session.refresh(entry)
        logger.info("Waitlist entry %s added for outing %s", entry.id, outing_id)
        return _dump(entry)


def registration_status(session: Session, outing_id: int, email: str | None) -> dict[str, object]:
    email = normalize_email(email)
    if not email:
        raise SignupRejected("email is required")
    outing = get_outing(session, outing_id)

    seat = session.exec(
        select(TeamMember).where(
            (TeamMember.outing_id == outing.id) & (TeamMember.email_key == email) & (TeamMember.status == "active")
        )
    ).first()
    registration = None
    if seat:
        registration = session.get(Registration, seat.registration_id)
    if not registration or registration.status != "registered":
        registration = session.exec(
            select(Registration).where(
                (Registration.outing_id == outing.id)
                & (Registration.submitted_by_email == email)
                & (Registration.status == "registered")
            )
        ).first()
    waitlist = session.exec(
        select(WaitlistEntry).where(
            (WaitlistEntry.outing_id == outing.id)
            & (WaitlistEntry.email_key == email)
            & (WaitlistEntry.status == "active")
        )
    ).first()
    return {
        "is_registered": bool(seat or registration),
        "is_waitlisted": bool(waitlist),
        "registration": _dump(registration) if registration else None,
        "waitlist": _dump(waitlist) if waitlist else None,
    }


# Outing administration


def _outing_values(payload: OutingPayload) -> dict[str, object]:
    values = payload.model_dump(exclude_unset=True)
    for key in list(values):
        if values[key] is None and key not in NULLABLE_OUTING_FIELDS:
            del values[key]
    for key in ("name", "format_type", "flights", "registration_notes", "cancellation_policy"):
        if isinstance(values.get(key), str):
            values[key] = values[key].strip()
    for key in ("signup_open_at", "signup_close_at"):
        if values.get(key) is not None:
            values[key] = as_utc(values[key])
    if isinstance(values.get("status"), str):
        values["status"] = values["status"].strip().lower()
    if "allowed_modes" in values:
        requested = [str(mode).strip() for mode in values["allowed_modes"]]
        unknown = sorted(set(requested) - set(MODES))
        values["allowed_modes"] = [mode for mode in MODES if mode in requested] + unknown
    return values


def _validated(outing: Outing) -> Outing:
    error = validate_outing_config(outing.model_dump())
    if error:
        raise InvalidOutingConfig(error)
    return outing


def create_outing(session: Session, payload: OutingPayload) -> dict[str, object]:
    with _unit_of_work(session, "Event with this name/date already exists"):
        values = _outing_values(payload)
        if not all(values.get(key) for key in ("name", "format_type", "start_date", "end_date")):
            raise InvalidOutingConfig("name, format_type, start_date, and end_date are required")
        outing = _validated(Outing(**values))
        session.add(outing)
        session.commit()
        logger.info("Outing %s created: %s", outing.id, outing.name)
        return build_outing_detail(session, outing, include_registrations=True)


def update_outing(session: Session, outing_id: int, payload: OutingPayload) -> dict[str, object]:
    with _unit_of_work(session, "Event with this name/date already exists"):
        outing = get_outing(session, outing_id)
        values = _outing_values(payload)
        for key, value in values.items():
            setattr(outing, key, value)
        if not outing.name or not outing.format_type:
            raise InvalidOutingConfig("name and format_type cannot be blank")
        _validated(outing)
        _touch(outing)
        session.add(outing)
        session.commit()
        logger.info("Outing %s updated (%s)", outing_id, ", ".join(sorted(values)) or "no changes")
        return build_outing_detail(session, outing, include_registrations=True)
