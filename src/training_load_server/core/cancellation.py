"""Cooperative cancellation for long chunked operations."""

import asyncio


class OperationCancelledError(Exception):
    """Raised at a unit boundary when the operation's token was cancelled."""


class CancelToken:
    """Cancellation flag passed explicitly through long-running work.

    Work checks the token between units (one day, one activity), so anything
    committed before cancellation stays consistent.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        """Request cancellation."""
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        """Raise OperationCancelledError if cancellation was requested."""
        if self._event.is_set():
            raise OperationCancelledError(self.reason or "cancelled")

    async def wait(self) -> None:
        """Block until cancellation is requested."""
        await self._event.wait()
