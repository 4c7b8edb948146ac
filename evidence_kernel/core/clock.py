"""
Clock and identifier providers.
Injected everywhere a timestamp or id is minted so hashes and retention dates are reproducible.
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock:
    """Clock frozen at a given instant; advance() moves it forward."""

    def __init__(self, at: Optional[datetime] = None):
        at = at or datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc)
        if at.tzinfo is None:
            at = at.replace(tzinfo=timezone.utc)
        self._now = at

    def now(self) -> datetime:
        return self._now

    def advance(self, **kwargs) -> datetime:
        self._now = self._now + timedelta(**kwargs)
        return self._now


class UuidProvider:
    """Random opaque identifiers."""

    def new_id(self, prefix: str = "") -> str:
        value = str(uuid.uuid4())
        return f"{prefix}_{value}" if prefix else value


class SequentialIdProvider:
    """Deterministic identifiers for tests: draft_000001, evd_000002, ..."""

    def __init__(self):
        self._counter = 0

    def new_id(self, prefix: str = "") -> str:
        self._counter += 1
        value = f"{self._counter:06d}"
        return f"{prefix}_{value}" if prefix else value
