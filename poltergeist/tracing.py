"""Immutable tracing context carrying request and correlation identifiers."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any

UNKNOWN_REQUEST = "unknown-request"
UNKNOWN_CORRELATION = "unknown-correlation"
ANONYMOUS_USER = "anonymous"
UNKNOWN_OPERATION = "unknown-operation"


@dataclass(frozen=True)
class TraceContext:
    """Tracing values; each ``with_*`` helper returns a new context."""

    request_id: str | None = None
    correlation_id: str | None = None
    user_id: str | None = None
    operation: str | None = None
    start_time: datetime | None = None


def _base(parent: TraceContext | None) -> TraceContext:
    return parent if parent is not None else TraceContext()


def _now(tz=timezone.utc) -> datetime:
    return datetime.now(tz)


def generate_request_id() -> str:
    """Return a new unique request ID."""
    return "req_" + str(uuid.uuid4())


def generate_correlation_id() -> str:
    """Return a new unique correlation ID."""
    return "cor_" + str(uuid.uuid4())


def with_request_id(parent: TraceContext | None, request_id: str) -> TraceContext:
    """Attach a request ID, generating one when it is empty."""
    return replace(_base(parent), request_id=request_id or generate_request_id())


def get_request_id(ctx: TraceContext | None) -> str:
    return (ctx and ctx.request_id) or UNKNOWN_REQUEST


def with_correlation_id(
    parent: TraceContext | None, correlation_id: str
) -> TraceContext:
    """Attach a correlation ID, generating one when it is empty."""
    return replace(
        _base(parent), correlation_id=correlation_id or generate_correlation_id()
    )


def get_correlation_id(ctx: TraceContext | None) -> str:
    return (ctx and ctx.correlation_id) or UNKNOWN_CORRELATION


def with_user_id(parent: TraceContext | None, user_id: str) -> TraceContext:
    return replace(_base(parent), user_id=user_id)


def get_user_id(ctx: TraceContext | None) -> str:
    return (ctx and ctx.user_id) or ANONYMOUS_USER


def with_operation(parent: TraceContext | None, operation: str) -> TraceContext:
    return replace(_base(parent), operation=operation)


def get_operation(ctx: TraceContext | None) -> str:
    return (ctx and ctx.operation) or UNKNOWN_OPERATION


def with_start_time(parent: TraceContext | None, start_time: datetime) -> TraceContext:
    return replace(_base(parent), start_time=start_time)


def get_start_time(ctx: TraceContext | None) -> datetime:
    """Return the recorded start time, or the current time when none is set."""
    if ctx is not None and ctx.start_time is not None:
        return ctx.start_time
    return _now()


def get_duration(ctx: TraceContext | None) -> timedelta:
    """Time elapsed since the context's start time."""
    start = get_start_time(ctx)
    return datetime.now(start.tzinfo) - start


def enrich_context(parent: TraceContext | None) -> TraceContext:
    """Fill in missing request and correlation IDs and reset the start time."""
    ctx = _base(parent)
    if get_request_id(ctx) == UNKNOWN_REQUEST:
        ctx = with_request_id(ctx, generate_request_id())
    if get_correlation_id(ctx) == UNKNOWN_CORRELATION:
        ctx = with_correlation_id(ctx, generate_correlation_id())
    return with_start_time(ctx, _now())


def tracing_fields(ctx: TraceContext | None) -> dict[str, Any]:
    """Common tracing fields for structured logging."""
    return {
        "request_id": get_request_id(ctx),
        "correlation_id": get_correlation_id(ctx),
        "user_id": get_user_id(ctx),
        "operation": get_operation(ctx),
        "duration_ms": int(get_duration(ctx) / timedelta(milliseconds=1)),
    }