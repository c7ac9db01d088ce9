"""Host-wide cooperative cancellation."""

import logging
from asyncio import CancelledError
from collections.abc import Callable

logger = logging.getLogger(__name__)


class CancellationToken:
    """Shutdown signal shared by the host's background loops.

    The host creates one token. Shutdown cancels it with a reason; the
    scheduler loop, the IPC watcher and the collaboration watcher notice on
    their next poll or wake early through on_cancel() callbacks.

    Example:
        token = CancellationToken()

        async def poll_loop():
            while not token.is_cancelled:
                await scan_once()
                await sleep_unless_cancelled(clock, 1.0, token)

        token.cancel("SIGTERM")
    """

    def __init__(self) -> None:
        self._reason: str | None = None
        self._callbacks: list[Callable[[], None]] = []

    @property
    def is_cancelled(self) -> bool:
        return self._reason is not None

    @property
    def reason(self) -> str | None:
        """Why the token was cancelled, or None while still live."""
        return self._reason

    def cancel(self, reason: str = "host shutdown") -> None:
        """Cancel once; later calls keep the first reason and run nothing."""
        if self._reason is not None:
            return
        self._reason = reason
        logger.debug("Cancellation requested: %s", reason)
        for callback in list(self._callbacks):
            self._run(callback)

    def on_cancel(self, callback: Callable[[], None]) -> None:
        """Register callback; it runs immediately if already cancelled."""
        self._callbacks.append(callback)
        if self._reason is not None:
            self._run(callback)

    def remove_callback(self, callback: Callable[[], None]) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def raise_if_cancelled(self) -> None:
        """Raise asyncio.CancelledError carrying the reason once cancelled."""
        if self._reason is not None:
            raise CancelledError(f"Cancelled: {self._reason}")

    @staticmethod
    def _run(callback: Callable[[], None]) -> None:
        # Callbacks wake sleepers; one failing must not stop the rest
        try:
            callback()
        except Exception:
            logger.exception("Cancellation callback %r failed", callback)
