"""Cooperative cancellation signal for a single turn."""

import asyncio
import logging
import signal
from typing import Callable

_log = logging.getLogger(__name__)


class CancelSignal:
    """Raised by the caller (Ctrl+C, ESC, a UI button) to stop an active turn.

    Cancellation is cooperative: the coordinator and tool engine observe the
    signal at their suspension points. Must be created and used on one event loop.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._callbacks: list[Callable[[], None]] = []
        self._signal_loop = None
        self._original_signal_handler = None
        self._fallback_installed = False

    def is_cancelled(self) -> bool:
        """Check if cancellation was requested."""
        return self._event.is_set()

    def cancel(self) -> None:
        """Request cancellation and run registered callbacks once."""
        if self._event.is_set():
            return
        self._event.set()
        for callback in list(self._callbacks):
            try:
                callback()
            except Exception:
                _log.exception("Cancel callback %r failed", callback)

    def clear(self) -> None:
        """Clear the cancellation flag so the signal can be reused."""
        self._event.clear()

    async def wait(self) -> None:
        """Suspend until cancellation is requested."""
        await self._event.wait()

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Add a callback to be called on cancel."""
        self._callbacks.append(callback)

    def remove_callback(self, callback: Callable[[], None]) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def setup_signal_handler(self, loop: asyncio.AbstractEventLoop | None = None) -> bool:
        """Route SIGINT (Ctrl+C) to cancel().

        Prefers the loop's own signal support and falls back to signal.signal
        where the loop has none (e.g. on Windows).

        Returns:
            False when no handler could be installed, e.g. outside the main thread.
        """
        loop = loop or asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, self.cancel)
        except (NotImplementedError, RuntimeError):
            pass
        else:
            self._signal_loop = loop
            return True

        def _signal_handler(signum, frame):
            loop.call_soon_threadsafe(self.cancel)

        try:
            self._original_signal_handler = signal.signal(signal.SIGINT, _signal_handler)
        except ValueError:
            return False
        self._fallback_installed = True
        return True

    def restore_signal_handler(self) -> None:
        """Remove the SIGINT handler installed by setup_signal_handler()."""
        loop = self._signal_loop
        if loop is not None:
            loop.remove_signal_handler(signal.SIGINT)
            self._signal_loop = None
        if self._fallback_installed:
            signal.signal(signal.SIGINT, self._original_signal_handler or signal.default_int_handler)
            self._original_signal_handler = None
            self._fallback_installed = False
