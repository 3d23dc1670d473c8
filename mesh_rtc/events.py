"""Peer lifecycle notifications delivered to the embedding application."""

import logging
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)

# Event names
PEER_JOINED = "peer-joined"
PEER_LEFT = "peer-left"
PEER_UPDATED = "peer-updated"

EVENT_NAMES = (PEER_JOINED, PEER_LEFT, PEER_UPDATED)


class EventBus:
    """Named-callback registry with one handler per event name.

    Registering a handler for a name replaces the previous one. Handlers
    are called synchronously from ``emit``; exceptions they raise propagate
    to the emitter.
    """

    def __init__(self):
        self._handlers: Dict[str, Callable[..., Any]] = {}

    def on(self, name: str, handler: Callable[..., Any]) -> None:
        """Register ``handler`` for ``name``, replacing any existing handler.

        Raises:
            TypeError: If ``name`` is not a string or ``handler`` is not callable.
        """
        if not isinstance(name, str):
            raise TypeError(f"Event name must be a string, got {type(name).__name__}")
        if not callable(handler):
            raise TypeError(f"Handler for '{name}' is not callable")
        if name not in EVENT_NAMES:
            logger.debug(f"Registering handler for unrecognized event '{name}'")
        self._handlers[name] = handler

    def off(self, name: str) -> Optional[Callable[..., Any]]:
        """Remove and return the handler for ``name``, if any."""
        return self._handlers.pop(name, None)

    def emit(self, name: str, *args: Any) -> None:
        """Invoke the handler registered for ``name``; no-op if there is none."""
        handler = self._handlers.get(name)
        if handler is not None:
            handler(*args)
