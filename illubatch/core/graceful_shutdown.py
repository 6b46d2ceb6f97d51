"""Signal-aware shutdown helper."""

from __future__ import annotations

import asyncio
import signal
from typing import Callable, Iterable, List


class GracefulShutdown:
    """Turns SIGINT/SIGTERM into an event plus optional callbacks.

    Callbacks run once, on the event loop, the first time the shutdown is
    triggered.
    """

    def __init__(self, *, logger=None) -> None:
        self.logger = logger
        self._event = asyncio.Event()
        self._callbacks: List[Callable[[], None]] = []
        self._signals: List[int] = []

    def install(self, signals: Iterable[int] | None = None) -> None:
        if self._signals:
            return
        loop = asyncio.get_running_loop()
        targets = list(signals) if signals is not None else [signal.SIGINT, signal.SIGTERM]
        for sig in targets:
            try:
                loop.add_signal_handler(sig, self.trigger)
            except NotImplementedError:  # pragma: no cover - windows fallback
                signal.signal(sig, lambda *_: loop.call_soon_threadsafe(self.trigger))
            self._signals.append(sig)

    def uninstall(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        for sig in self._signals:
            if loop is None:
                break
            try:
                loop.remove_signal_handler(sig)
            except NotImplementedError:  # pragma: no cover - windows fallback
                signal.signal(sig, signal.SIG_DFL)
        self._signals.clear()

    def add_callback(self, callback: Callable[[], None]) -> None:
        self._callbacks.append(callback)

    def trigger(self) -> None:
        if self._event.is_set():
            return
        self._event.set()
        if self.logger is not None:
            self.logger.warning("Shutdown requested; cancelling outstanding work.")
        for callback in self._callbacks:
            callback()

    @property
    def event(self) -> asyncio.Event:
        return self._event

    def is_triggered(self) -> bool:
        return self._event.is_set()


__all__ = ["GracefulShutdown"]
