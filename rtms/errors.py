"""
Named errors of the streaming protocol client.

Transport failures are not wrapped here: they surface as the ``websockets``
ConnectionClosed family (or OSError / TimeoutError when opening) and are
turned into channel FAILED transitions by the channel itself.
"""
from __future__ import annotations

from typing import Optional


class RtmsError(Exception):
    """Base class for all errors raised by the rtms package."""


class DecodeError(RtmsError):
    """Incoming frame is not a valid protocol message (bad JSON, unknown tag, missing field)."""


class ChannelStateError(RtmsError):
    """Operation or transition is not allowed in the channel's current state."""


class HandshakeError(RtmsError):
    """Provider refused the handshake, or accepted it without the data we need."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class DuplicateSessionError(RtmsError):
    """A session with this id is already live; the existing one is left untouched."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} is already active")
        self.session_id = session_id
