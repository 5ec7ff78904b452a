"""Deadlines and cancellation for storage calls."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field


class CancellationToken:
    """A flag another thread can set to abandon an in-flight call."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass(frozen=True)
class Deadline:
    """A point in monotonic time after which a call should give up.

    ``expires_at`` None means no time limit; a token may still cancel.
    """

    expires_at: float | None = None
    token: CancellationToken | None = field(default=None, compare=False)

    @classmethod
    def after(cls, seconds: float | None, token: CancellationToken | None = None) -> Deadline:
        """Create a deadline ``seconds`` from now (None for no limit)."""
        if seconds is not None and seconds < 0:
            raise ValueError(f"Deadline seconds must be non-negative, got {seconds}")
        expires_at = None if seconds is None else time.monotonic() + seconds
        return cls(expires_at, token)

    def expired(self) -> bool:
        return self.expires_at is not None and time.monotonic() >= self.expires_at

    def cancelled(self) -> bool:
        return self.token is not None and self.token.cancelled

    def remaining(self) -> float | None:
        """Seconds left, floored at zero; None when there is no limit."""
        if self.expires_at is None:
            return None
        return max(0.0, self.expires_at - time.monotonic())
