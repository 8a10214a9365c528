from __future__ import annotations

from typing import Any


class ClinicError(Exception):
    """Base error of the core: carries the HTTP status and an optional payload for the caller."""

    status_code = 500

    def __init__(self, message: str, payload: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.payload = payload or {}

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.message, **self.payload}


class InvalidRequest(ClinicError):
    status_code = 400


class Unauthorized(ClinicError):
    status_code = 401


class Forbidden(ClinicError):
    status_code = 403


class NotFound(ClinicError):
    status_code = 404


class Conflict(ClinicError):
    """Scheduling overlap, blackout day or duplicate pet: the conflicting entity travels in the payload."""

    status_code = 409


class StoreError(ClinicError):
    """Store unavailable or write contention not resolved: safe to retry."""

    status_code = 500
