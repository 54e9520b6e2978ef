"""
Typed domain errors for the dispatch engine.

Each error maps to a specific HTTP status code so the calling
transport layer can convert ``DispatchError`` subtypes into responses
without embedding dispatch rules in its route handlers.  Every error
leaves the job in a valid, inspectable state.
"""
from __future__ import annotations


class DispatchError(Exception):
    """Base class for all dispatch domain errors."""

    status_code: int = 500

    def __init__(self, detail: str = "Internal error"):
        self.detail = detail
        super().__init__(detail)


class NotFoundError(DispatchError):
    """Job or technician id unknown (404). Never retried internally."""

    status_code = 404


class InvalidStateError(DispatchError):
    """Operation against a job/candidate in the wrong status (409)."""

    status_code = 409


class NoCapacityError(DispatchError):
    """
    No technicians up to the maximum radius, or the maximum radius is
    already reached (503).  Terminal for automatic search: an operator
    must follow up.
    """

    status_code = 503

    def __init__(self, detail: str = "No technicians available", *, radius_km: float | None = None):
        self.radius_km = radius_km
        super().__init__(detail)
