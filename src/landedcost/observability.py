"""Turn-scoped logging context for quoting conversations.

A turn binds its id together with the session it belongs to. Log records
emitted anywhere while the turn is active (engine, tariff client, HTTP layer)
carry both through ``TurnContextFilter``, so one conversation can be followed
across components.
"""

from __future__ import annotations

import logging
import re
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Dict, Iterator, Mapping, Optional

logger = logging.getLogger(__name__)

LOG_FORMAT = "[%(levelname)s] %(name)s turn=%(turn_id)s session=%(session_id)s: %(message)s"

_SECRET_FIELD_RE = re.compile(r"pass|secret|token|key|cookie|auth", re.IGNORECASE)


@dataclass(frozen=True)
class TurnContext:
    turn_id: str
    session_id: Optional[str] = None


_turn_ctx: ContextVar[Optional[TurnContext]] = ContextVar("landedcost_turn", default=None)


def new_turn_id() -> str:
    return uuid.uuid4().hex


def current_turn() -> Optional[TurnContext]:
    return _turn_ctx.get()


def current_turn_id() -> Optional[str]:
    context = _turn_ctx.get()
    return context.turn_id if context else None


@contextmanager
def turn_scope(session_id: Optional[str] = None, turn_id: Optional[str] = None) -> Iterator[TurnContext]:
    """Bind a turn for the duration of the block.

    Values not given are inherited from an enclosing turn, so the HTTP
    middleware and the engine log one request under a single turn id.
    """

    outer = _turn_ctx.get()
    context = TurnContext(
        turn_id=turn_id or (outer.turn_id if outer else new_turn_id()),
        session_id=session_id or (outer.session_id if outer else None),
    )
    token = _turn_ctx.set(context)
    try:
        yield context
    finally:
        _turn_ctx.reset(token)


class TurnContextFilter(logging.Filter):
    """Stamps ``turn_id`` and ``session_id`` ("-" outside a turn) on each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = _turn_ctx.get()
        record.turn_id = context.turn_id if context else "-"
        record.session_id = (context.session_id if context else None) or "-"
        return True


def configure_logging(level: int = logging.WARNING) -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, TurnContextFilter) for f in handler.filters):
            handler.addFilter(TurnContextFilter())


def redact_secret(raw: Optional[str]) -> str:
    """Keep the first four characters of a credential and mask the rest."""

    if not raw:
        return "<missing>"
    if len(raw) <= 3:
        return "***"
    return f"{raw[:4]}***"


def redact_fields(fields: Mapping[str, object]) -> Dict[str, object]:
    """Copy of form fields or headers with passwords, keys and cookies masked."""

    return {
        name: redact_secret(str(value)) if _SECRET_FIELD_RE.search(name) else value
        for name, value in fields.items()
    }


def log_event(message: str, **extra: object) -> None:
    context = _turn_ctx.get()
    payload = {
        "turn_id": context.turn_id if context else None,
        "session_id": context.session_id if context else None,
        **extra,
    }
    logger.info(message, extra={"payload": payload})
