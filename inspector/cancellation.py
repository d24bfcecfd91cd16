"""Set-once cancellation shared by every task of a research run."""

from __future__ import annotations

import asyncio
from typing import Callable

import structlog

logger = structlog.get_logger(__name__)


class CancellationToken:
    """A one-way flag plus an abort notification.

    ``cancel`` may be called any number of times from any task; only the first
    call has an effect and its ``reason`` is kept. Work that can be aborted
    midway (network I/O) awaits :meth:`wait` or registers a callback through
    :meth:`add_callback`; everything else polls :attr:`cancelled` at its
    checkpoints.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None
        self._callbacks: list[Callable[[str | None], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> bool:
        """Set the flag. Returns ``True`` only for the call that set it."""
        if self._event.is_set():
            return False
        self._reason = reason
        self._event.set()
        logger.info("cancellation requested", reason=reason)
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback(reason)
            except Exception as exc:  # noqa: BLE001
                logger.warning("cancellation callback failed", error=str(exc))
        return True

    def add_callback(self, callback: Callable[[str | None], None]) -> None:
        """Call ``callback(reason)`` on cancellation (immediately if already set)."""
        if self._event.is_set():
            callback(self._reason)
            return
        self._callbacks.append(callback)

    async def wait(self) -> str | None:
        """Suspend until cancelled and return the reason."""
        await self._event.wait()
        return self._reason

    def __repr__(self) -> str:  # pragma: no cover - debugging helper
        state = f"cancelled reason={self._reason!r}" if self.cancelled else "active"
        return f"<CancellationToken {state}>"
