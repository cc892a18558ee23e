"""Error taxonomy shared by the extraction core and the supplier matcher.

ParseError never leaves the response parser (it resolves to an empty item
list) and PartialFailure is a diagnostic record, not an exception: both
exist so that degraded work can be described without aborting a job.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel


class TakeoffError(Exception):
    """Base exception for application errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(TakeoffError):
    """Malformed schema, agent definition or request input."""


class NotFoundError(TakeoffError):
    """Schema, job, data layer, result or supplier does not exist."""


class ConflictError(TakeoffError):
    """Duplicate version, identifier exhaustion or a selection race."""


class TransientExternalError(TakeoffError):
    """LLM/render/storage timeout or upstream 5xx. Safe for the caller to retry."""


class ExternalTimeoutError(TransientExternalError):
    """An external call exceeded its timeout window."""


class ParseError(TakeoffError):
    """Model output could not be turned into JSON, even after repair."""


class PartialFailure(BaseModel):
    """One failed page, agent or layer inside an otherwise successful job."""

    scope: Literal["page", "agent", "layer"]
    target: str
    message: str
