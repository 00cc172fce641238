import threading
import time

from authcore.core.errors import Cancelled, Timeout


class Deadline:
    """Request-scoped cancellation handle handed to stores and the IdP client."""

    def __init__(self, seconds: float | None = None, *, clock=time.monotonic):
        self._clock = clock
        self._started = clock()
        self._expires_at = None if seconds is None else self._started + seconds
        self._cancelled = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def expired(self) -> bool:
        return self._expires_at is not None and self._clock() >= self._expires_at

    def cancel(self) -> None:
        self._cancelled.set()

    def elapsed(self) -> float:
        return self._clock() - self._started

    def remaining(self) -> float | None:
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock())

    def check(self) -> None:
        if self.cancelled:
            raise Cancelled()
        if self.expired:
            raise Timeout(detail=f"deadline exceeded after {self.elapsed():.3f}s")


def checkpoint(deadline: Deadline | None) -> None:
    if deadline is not None:
        deadline.check()
