#!/usr/bin/env python3
"""
Error taxonomy for the arena
"I bent my Wookie." - Ralph Wiggum
"""

from typing import Optional


class ArenaError(Exception):
    """Base class for every error raised by the arena"""


class ValidationError(ArenaError):
    """Bad user input: missing topic, wrong persona count, empty chat prompt"""


class BackendError(ArenaError):
    """Network, auth, rate-limit or malformed-response failure from a hosted backend"""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class PlaybackError(ArenaError):
    """Audio could not be decoded or started"""
