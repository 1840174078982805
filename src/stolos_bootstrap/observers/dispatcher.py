# src/stolos_bootstrap/observers/dispatcher.py
from __future__ import annotations
import logging
from typing import List, Optional
from .events import BaseEvent

log = logging.getLogger("stolos")


class EventBus:
    def __init__(self, observers: Optional[List] = None):
        self._observers = observers or []

    def subscribe(self, observer) -> None:
        self._observers.append(observer)

    def emit(self, event: BaseEvent) -> None:
        for ob in self._observers:
            try:
                ob.notify(event)
            except Exception:
                # observers must not break the bootstrap run
                log.debug("observer %r failed on %s", ob, type(event).__name__, exc_info=True)
