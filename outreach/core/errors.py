# outreach/core/errors.py
"""
Typed errors for the dispatch engine.

Each error maps to an HTTP status code. The ops transport catches
``DispatchEngineError`` subtypes and converts them to ``HTTPException``
without embedding business logic in the route handlers.

Row-level errors (``DispatchError`` and subclasses) never leave the
dispatch loop: they are recorded on the row and counted in run metrics.
"""
from __future__ import annotations


class DispatchEngineError(Exception):
    """Base class for all dispatch engine errors."""

    status_code: int = 500

    def __init__(self, detail: str = "Internal error"):
        self.detail = detail
        super().__init__(detail)


class RunNotFoundError(DispatchEngineError):
    """Run does not exist or belongs to another organization (404)."""

    status_code = 404


class OrganizationNotFoundError(DispatchEngineError):
    """Run-fatal: the run's organization could not be loaded."""

    status_code = 404


class CampaignNotFoundError(DispatchEngineError):
    """Run-fatal: the run's campaign (or its agent) could not be loaded."""

    status_code = 404


class InvalidScheduleError(DispatchEngineError):
    """Unparseable or naive schedule time (400)."""

    status_code = 400


class RunStateError(DispatchEngineError):
    """Transition not allowed from the run's current status (409)."""

    status_code = 409


class DispatchError(DispatchEngineError):
    """A single call could not be placed; the row goes down the retry path."""

    status_code = 502


class MissingPhoneNumberError(DispatchError):
    """Row variables carry no usable phone number."""

    status_code = 422

    def __init__(self, detail: str = "No phone number found in row data"):
        super().__init__(detail)
