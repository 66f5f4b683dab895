"""Exceptions raised by the registration engine and mapped to HTTP responses by the router."""

from __future__ import annotations


class OutingError(Exception):
    status_code = 500

    def __init__(self, detail: str, **extra: object) -> None:
        super().__init__(detail)
        self.detail = detail
        self.extra = extra

    def payload(self) -> dict[str, object]:
        return {"error": self.detail, **self.extra}


class SignupRejected(OutingError):
    """A named signup rule was violated; the client must change the request."""

    status_code = 400


class CapacityExceeded(OutingError):
    """The outing is full but the caller may still be offered the waitlist."""

    status_code = 409

    def __init__(self, detail: str, *, can_join_waitlist: bool = True) -> None:
        super().__init__(detail, can_join_waitlist=can_join_waitlist)
        self.can_join_waitlist = can_join_waitlist


class RegistrationConflict(OutingError):
    """The store rejected a write because of a uniqueness constraint."""

    status_code = 409


class NotAuthorized(OutingError):
    status_code = 403


class NotFound(OutingError):
    status_code = 404


class TeamAllocationError(OutingError):
    status_code = 500


class StoreUnavailable(OutingError):
    status_code = 503


class InvalidOutingConfig(OutingError):
    status_code = 400
