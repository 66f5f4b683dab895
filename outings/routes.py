from __future__ import annotations

import hmac
import logging
import os

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError
from sqlmodel import Session

from . import engine as outings
from .database import get_session
from .errors import NotAuthorized, OutingError
from .schemas import EditRegistrationRequest, OutingPayload, RegisterRequest, WaitlistRequest

ADMIN_CODE = os.getenv("ADMIN_CODE", "")
ADMIN_CODE_HEADER = "x-admin-code"

router = APIRouter(prefix="/api/outings", tags=["outings"])

logger = logging.getLogger(__name__)


def _is_admin(request: Request) -> bool:
    supplied = request.headers.get(ADMIN_CODE_HEADER) or request.query_params.get("code") or ""
    return bool(ADMIN_CODE and supplied and hmac.compare_digest(supplied, ADMIN_CODE))


def require_admin(request: Request) -> None:
    if not _is_admin(request):
        raise NotAuthorized("Admin code required")


async def outing_error_handler(request: Request, exc: OutingError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.detail)
    return JSONResponse(exc.payload(), status_code=exc.status_code)


async def store_error_handler(request: Request, exc: OperationalError) -> JSONResponse:
    logger.error("%s %s could not reach the database: %s", request.method, request.url.path, exc)
    return JSONResponse({"error": "Outing database is unavailable"}, status_code=503)


@router.get("/admin/events", name="admin_list_outings", dependencies=[Depends(require_admin)])
async def admin_list_outings(session: Session = Depends(get_session)):
    return outings.list_outings(session, include_registrations=True)


@router.post(
    "/admin/events",
    name="admin_create_outing",
    status_code=201,
    dependencies=[Depends(require_admin)],
)
async def admin_create_outing(payload: OutingPayload, session: Session = Depends(get_session)):
    return outings.create_outing(session, payload)


@router.put("/admin/events/{outing_id}", name="admin_update_outing", dependencies=[Depends(require_admin)])
async def admin_update_outing(outing_id: int, payload: OutingPayload, session: Session = Depends(get_session)):
    return outings.update_outing(session, outing_id, payload)


@router.get("", name="list_outings")
async def list_outings(session: Session = Depends(get_session)):
    return outings.list_outings(session)


@router.get("/{outing_id}", name="outing_detail")
async def outing_detail(outing_id: int, request: Request, session: Session = Depends(get_session)):
    outing = outings.get_outing(session, outing_id)
    return outings.build_outing_detail(session, outing, include_registrations=_is_admin(request))


@router.get("/{outing_id}/status", name="registration_status")
async def registration_status(
    outing_id: int,
    email: str = Query(default="", max_length=180),
    session: Session = Depends(get_session),
):
    # No per-user auth for outings, so status lookup is email-based.
    return outings.registration_status(session, outing_id, email)


@router.post("/{outing_id}/register", name="register", status_code=201)
async def register(outing_id: int, payload: RegisterRequest, session: Session = Depends(get_session)):
    result = outings.register(session, outing_id, payload)
    return {"ok": True, **result}


@router.put("/{outing_id}/registrations/{registration_id}", name="edit_registration")
async def edit_registration(
    outing_id: int,
    registration_id: int,
    payload: EditRegistrationRequest,
    session: Session = Depends(get_session),
):
    result = outings.edit_registration(session, outing_id, registration_id, payload)
    return {"ok": True, **result}


@router.delete("/{outing_id}/registrations/{registration_id}", name="cancel_registration")
async def cancel_registration(
    outing_id: int,
    registration_id: int,
    requester_email: str = Query(default="", max_length=180),
    session: Session = Depends(get_session),
):
    result = outings.cancel_registration(session, outing_id, registration_id, requester_email)
    return {"ok": True, **result}


@router.post("/{outing_id}/waitlist", name="join_waitlist", status_code=201)
async def join_waitlist(outing_id: int, payload: WaitlistRequest, session: Session = Depends(get_session)):
    return outings.join_waitlist(session, outing_id, payload)
