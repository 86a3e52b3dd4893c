"""Structured logging helpers. Context carries identifiers only, never message content or secrets."""

from typing import Any
from uuid import UUID


def build_log_context(
    *,
    org_id: UUID | str | None = None,
    channel_id: UUID | str | None = None,
    provider: str | None = None,
    job_id: UUID | str | None = None,
    job_type: str | None = None,
    route: str | None = None,
    method: str | None = None,
) -> dict[str, Any]:
    """Return a `logging` extra dict with the identifiers that are set."""
    context: dict[str, Any] = {}
    for key, value in (
        ("org_id", org_id),
        ("channel_id", channel_id),
        ("provider", provider),
        ("job_id", job_id),
        ("job_type", job_type),
        ("route", route),
        ("method", method),
    ):
        if value:
            context[key] = str(value)
    return context
