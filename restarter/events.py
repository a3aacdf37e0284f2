from __future__ import annotations

import logging
from collections import deque
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from threading import Lock

logger = logging.getLogger("restarter")

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(frozen=True)
class Event:
    ts: str
    level: str
    message: str
    namespace: str | None = None
    pod: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


class EventLog:
    """Bounded, process-local record of recent controller events."""

    def __init__(self, maxlen: int = 200) -> None:
        self.lock = Lock()
        self._events: deque[Event] = deque(maxlen=maxlen)

    def append(self, event: Event) -> None:
        with self.lock:
            self._events.append(event)

    def recent(self, limit: int = 20) -> list[Event]:
        """Newest first."""
        with self.lock:
            items = list(self._events)
        items.reverse()
        return items[: max(0, int(limit))]

    def clear(self) -> None:
        with self.lock:
            self._events.clear()


event_log = EventLog()


def log_event(level: str, message: str, namespace: str | None = None, pod: str | None = None) -> None:
    lvl = level.upper()
    levelno = _LEVELS.get(lvl, logging.INFO)
    if namespace and pod:
        logger.log(levelno, "[%s/%s] %s", namespace, pod, message)
    else:
        logger.log(levelno, "%s", message)
    if levelno >= logging.INFO:
        event_log.append(Event(ts=utc_now(), level=logging.getLevelName(levelno), message=message, namespace=namespace, pod=pod))
