from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List


logger = logging.getLogger(__name__)


class EventType(Enum):
    PROGRESS = "progress"
    FINISHED = "finished"


@dataclass(frozen=True)
class BackupEvent:
    type: EventType
    count: int
    estimated_total: int


Listener = Callable[[BackupEvent], None]


class EventBus:
    """Synchronous fan-out of progress events to subscribed listeners."""

    def __init__(self):
        self._lock = threading.Lock()
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def post(self, event: BackupEvent) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            # A failing listener must not abort the backup it observes
            try:
                listener(event)
            except Exception:
                logger.exception("Backup event listener failed for %s", event)


class CancellationSignal:
    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def is_canceled(self) -> bool:
        return self._event.is_set()


class _NeverCanceled(CancellationSignal):
    def cancel(self) -> None:
        raise RuntimeError("NEVER_CANCELED cannot be canceled")


NEVER_CANCELED = _NeverCanceled()
