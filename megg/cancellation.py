"""Request-scoped cancellation for report generation."""

from __future__ import annotations

import time


class OperationCancelled(RuntimeError):
    """Raised when a report request was abandoned or ran past its deadline."""


class CancellationToken:
    """Cooperative cancellation signal shared by the report pipeline.

    One token is created per request.  The fetcher checks it between pages,
    the aggregator between records and the exporters before each image fetch,
    so an abandoned request stops doing work at the next checkpoint instead of
    running to completion.
    """

    def __init__(self, timeout: float | None = None, *, clock=time.monotonic):
        self._clock = clock
        self._deadline = clock() + timeout if timeout else None
        self._cancelled = False
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._cancelled:
            self._cancelled = True
            self.reason = reason

    @property
    def cancelled(self) -> bool:
        if not self._cancelled and self._deadline is not None:
            if self._clock() >= self._deadline:
                self.cancel("deadline exceeded")
        return self._cancelled

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise OperationCancelled(f"Report request {self.reason}")


def check(token: CancellationToken | None) -> None:
    """Raise :class:`OperationCancelled` when ``token`` has been cancelled."""

    if token is not None:
        token.raise_if_cancelled()


def current_token() -> CancellationToken | None:
    """Return the token opened for the active request, if any."""

    from flask import g, has_request_context

    if not has_request_context():
        return None
    return g.get("cancel_token")
