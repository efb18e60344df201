#!/usr/bin/env python3
"""
Listener plumbing shared by the engine, the audio channels and the chats
"Hi, Super Nintendo Chalmers!" - Ralph Wiggum
"""

import inspect
import logging
from typing import Callable, Dict, List

logger = logging.getLogger(__name__)


class EventEmitter:
    """Fan events out to sync or async listeners; a failing listener never breaks the caller"""

    def __init__(self):
        self.listeners: List[Callable] = []

    def add_listener(self, callback: Callable):
        """Add event listener for real-time updates"""
        self.listeners.append(callback)

    def remove_listener(self, callback: Callable):
        """Remove event listener"""
        if callback in self.listeners:
            self.listeners.remove(callback)

    def _event_context(self) -> Dict:
        return {}

    async def _notify(self, event_type: str, data: Dict = None):
        """Notify all listeners of an event"""
        event = {"event": event_type, **self._event_context(), **(data or {})}
        for listener in list(self.listeners):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Listener notification failed: {e}")
