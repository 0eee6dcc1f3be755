"""Shared helpers: clock and id generation."""

from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import UTC, datetime

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(UTC)


def gen_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex}"
