"""Run, session and event identifiers attached to every log record.

`run_id` is fixed for the life of the process, `session_id` changes with every
socket session and `event_type` is set while the dispatcher delivers one
event. They are held in a context variable, so tasks created inside a
session (the socket.io reader, the dispatcher) log under that session.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import asdict, dataclass, replace

__all__ = ["LogContext", "bound", "current", "new_run_id", "new_session_id"]


@dataclass(frozen=True, slots=True)
class LogContext:
    run_id: str | None = None
    session_id: str | None = None
    event_type: str | None = None

    def fields(self) -> dict[str, str]:
        """The identifiers that are set, by name."""
        return {k: v for k, v in asdict(self).items() if v is not None}

    @property
    def tag(self) -> str:
        """Short form for console lines: the session id, else the run id."""
        ident = self.session_id or (self.run_id[:8] if self.run_id else "-")
        return f"{ident} {self.event_type}" if self.event_type else ident


_context: ContextVar[LogContext] = ContextVar("homely2mqtt_log_context", default=LogContext())


def current() -> LogContext:
    return _context.get()


def new_run_id() -> str:
    return uuid.uuid4().hex[:12]


def new_session_id(attempt: int) -> str:
    """'s<attempt>-<8 hex>', so the attempt number is readable in the log."""
    return f"s{attempt}-{uuid.uuid4().hex[:8]}"


@contextmanager
def bound(**fields: str) -> Iterator[LogContext]:
    """Override some identifiers until the block exits.

    Example:
        with bound(session_id=new_session_id(3)):
            logger.info("dialing")

    """
    ctx = replace(_context.get(), **fields)
    token = _context.set(ctx)
    try:
        yield ctx
    finally:
        _context.reset(token)
