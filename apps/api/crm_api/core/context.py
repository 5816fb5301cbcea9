"""Per-request state shared by middleware, logging, audit and error envelopes."""

from __future__ import annotations

import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass

CORRELATION_HEADER = "x-correlation-id"
REQUEST_ID_HEADER = "x-request-id"

_correlation_id: ContextVar[str | None] = ContextVar("crm_correlation_id", default=None)


@dataclass
class RequestContext:
    correlation_id: str
    user_id: int | None = None


def new_correlation_id() -> str:
    return str(uuid.uuid4())


def get_correlation_id() -> str | None:
    return _correlation_id.get()


@contextmanager
def correlation_scope(correlation_id: str) -> Iterator[str]:
    token = _correlation_id.set(correlation_id)
    try:
        yield correlation_id
    finally:
        _correlation_id.reset(token)
