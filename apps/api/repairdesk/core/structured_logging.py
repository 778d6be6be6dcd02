"""Structured logging helpers (PII-safe)."""

from typing import Any


def mask_line_user_id(line_user_id: str | None) -> str | None:
    """Keep only the tail of a LINE user id so logs can correlate without leaking it."""
    if not line_user_id:
        return None
    if len(line_user_id) <= 6:
        return "***"
    return f"***{line_user_id[-6:]}"


def build_log_context(
    *,
    user_id: int | str | None = None,
    ticket_code: str | None = None,
    line_user_id: str | None = None,
    event_type: str | None = None,
    route: str | None = None,
    method: str | None = None,
) -> dict[str, Any]:
    """Return a PII-safe log context dict."""
    context: dict[str, Any] = {}
    if user_id:
        context["user_id"] = str(user_id)
    if ticket_code:
        context["ticket_code"] = ticket_code
    if line_user_id:
        context["line_user"] = mask_line_user_id(line_user_id)
    if event_type:
        context["event_type"] = event_type
    if route:
        context["route"] = route
    if method:
        context["method"] = method
    return context
