"""Event dispatch for the connection manager.

Two ways to listen:

- ``on(on_message=..., on_error=...)`` sets one named handler per kind.
  Later calls merge; a handler for the same key replaces the earlier one,
  and passing None removes it.
- ``subscribe(kind, callback)`` adds any number of listeners for a kind and
  returns a function that removes the listener again.

Handlers run synchronously in registration order. A handler that raises is
logged and does not stop delivery to the others.
"""

import logging
from typing import Any, Callable, Optional

from .types import EventKind

logger = logging.getLogger("office_messaging")

HANDLER_KEYS: dict[str, EventKind] = {
    "on_message": EventKind.MESSAGE,
    "on_message_status": EventKind.MESSAGE_STATUS,
    "on_typing_indicator": EventKind.TYPING_INDICATOR,
    "on_reaction": EventKind.REACTION,
    "on_message_pinned": EventKind.MESSAGE_PINNED,
    "on_connection_state_change": EventKind.CONNECTION_STATE_CHANGE,
    "on_error": EventKind.ERROR,
}

Handler = Callable[[Any], None]


class EventBus:
    def __init__(self):
        self._handlers: dict[EventKind, Handler] = {}
        self._listeners: dict[EventKind, list[Handler]] = {kind: [] for kind in EventKind}

    def on(self, **handlers: Optional[Handler]) -> None:
        for key, callback in handlers.items():
            kind = HANDLER_KEYS.get(key)
            if kind is None:
                raise TypeError(f"Unknown event handler: {key}")
            if callback is None:
                self._handlers.pop(kind, None)
            else:
                self._handlers[kind] = callback

    def handler(self, kind: EventKind) -> Optional[Handler]:
        return self._handlers.get(kind)

    def subscribe(self, kind: EventKind, callback: Handler) -> Callable[[], None]:
        listeners = self._listeners[kind]
        listeners.append(callback)

        def unsubscribe() -> None:
            if callback in listeners:
                listeners.remove(callback)

        return unsubscribe

    def has_listeners(self, kind: EventKind) -> bool:
        return kind in self._handlers or bool(self._listeners[kind])

    def emit(self, kind: EventKind, event: Any) -> None:
        callbacks = []
        if kind in self._handlers:
            callbacks.append(self._handlers[kind])
        callbacks.extend(self._listeners[kind])

        for callback in callbacks:
            try:
                callback(event)
            except Exception:
                logger.exception(f"Error in {kind.value} handler")
