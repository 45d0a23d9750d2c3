"""Named-signal dispatch.

Supervisors announce what happens to their workers through named signals
("status", "event", "output", "error", "exit", ...). Listeners run
synchronously, in registration order, before emit() returns.

A failing listener is logged and skipped so that one broken observer cannot
break the supervisor that emitted the signal.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Callable

__all__ = ["SignalEmitter", "Listener"]

logger = logging.getLogger(__name__)

Listener = Callable[..., Any]


class SignalEmitter:
    """Base class providing on/once/off/emit.

    Example:
        supervisor.on("event", lambda event: print(event.type))
        supervisor.once("exit", on_exit)
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = defaultdict(list)

    def on(self, signal: str, listener: Listener) -> Listener:
        """Register a listener; returns it so it can be removed later."""
        self._listeners[signal].append(listener)
        return listener

    def once(self, signal: str, listener: Listener) -> Listener:
        """Register a listener that is removed after its first call."""

        def wrapper(*args: Any) -> Any:
            self.off(signal, wrapper)
            return listener(*args)

        return self.on(signal, wrapper)

    def off(self, signal: str, listener: Listener) -> None:
        """Remove a listener; unknown listeners are ignored."""
        listeners = self._listeners.get(signal)
        if listeners and listener in listeners:
            listeners.remove(listener)

    def remove_all_listeners(self, signal: str | None = None) -> None:
        if signal is None:
            self._listeners.clear()
        else:
            self._listeners.pop(signal, None)

    def listener_count(self, signal: str) -> int:
        return len(self._listeners.get(signal, ()))

    def emit(self, signal: str, *args: Any) -> bool:
        """Call every listener of ``signal``.

        Returns:
            True if at least one listener was registered
        """
        listeners = list(self._listeners.get(signal, ()))
        for listener in listeners:
            try:
                listener(*args)
            except Exception as e:
                logger.warning(f"Error in {signal!r} listener {listener!r}: {e}")
        return bool(listeners)
