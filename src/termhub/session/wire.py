"""Wire protocol — decouples the terminal backend from its consumers.

Events flow from the session pumps to whatever renders them (a UI bridge,
the CLI, tests). Consumers either subscribe a queue or register a listener
callback. Delivery is best-effort: a failing consumer never fails the
publisher.
"""

from __future__ import annotations

import enum
import logging
import queue
import threading
from dataclasses import dataclass, field
from typing import Any, Callable

from termhub.pty.events import TerminalExit, TerminalOutput

logger = logging.getLogger(__name__)


class EventType(enum.Enum):
    TERMINAL_OUTPUT = "terminal-output"
    TERMINAL_EXIT = "terminal-exit"


@dataclass
class WireEvent:
    """An event on the wire."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)


Listener = Callable[[WireEvent], None]


class Wire:
    """Thread-safe broadcast bus: pumps -> subscribers.

    Multi-producer (one pump thread per session), multi-consumer.
    """

    def __init__(self) -> None:
        self._subscribers: list[queue.Queue[WireEvent | None]] = []
        self._listeners: list[Listener] = []
        self._lock = threading.Lock()
        self._closed: bool = False

    def send(self, event: WireEvent) -> None:
        """Send an event to all subscribers and listeners.

        Silently drops events after ``close()`` has been called.
        """
        with self._lock:
            if self._closed:
                return
            subscribers = list(self._subscribers)
            listeners = list(self._listeners)
        for q in subscribers:
            q.put_nowait(event)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.warning(
                    "Listener %r failed on %s event", listener, event.type.value,
                    exc_info=True,
                )

    def publish(self, topic: str, payload: dict[str, Any]) -> None:
        """Publish by topic name (e.g. ``"terminal-output"``)."""
        self.send(WireEvent(type=EventType(topic), data=payload))

    def send_terminal_output(self, session_id: int, data: str) -> None:
        payload = TerminalOutput(session_id=session_id, data=data)
        self.send(
            WireEvent(type=EventType.TERMINAL_OUTPUT, data=payload.model_dump())
        )

    def send_terminal_exit(self, session_id: int, exit_code: int | None) -> None:
        payload = TerminalExit(session_id=session_id, exit_code=exit_code)
        self.send(WireEvent(type=EventType.TERMINAL_EXIT, data=payload.model_dump()))

    def subscribe(self) -> queue.Queue[WireEvent | None]:
        """Subscribe to events. Returns a queue to read from."""
        q: queue.Queue[WireEvent | None] = queue.Queue()
        with self._lock:
            self._subscribers.append(q)
        return q

    def unsubscribe(self, q: queue.Queue) -> None:
        """Unsubscribe from events."""
        with self._lock:
            if q in self._subscribers:
                self._subscribers.remove(q)

    def add_listener(self, listener: Listener) -> None:
        """Register a callback invoked on the publishing thread."""
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def close(self) -> None:
        """Signal all subscribers that the wire is closing."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            subscribers = list(self._subscribers)
        for q in subscribers:
            q.put_nowait(None)

    @property
    def closed(self) -> bool:
        return self._closed
