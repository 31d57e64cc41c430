from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass


def sign(message: str, secret: str) -> str:
    """HMAC-SHA256 of message keyed by secret, as 64 lowercase hex chars."""
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


@dataclass(frozen=True)
class StreamSigner:
    """
    Signs handshake requests for one streaming app.

    Both handshakes (signaling and media) carry the same signature over
    "{client_id},{session_id},{stream_id}".
    """
    client_id: str
    client_secret: str

    def __post_init__(self) -> None:
        if not self.client_id or not self.client_secret:
            raise ValueError("Client id and client secret are required to sign handshakes")

    def __repr__(self) -> str:
        return f"StreamSigner(client_id={self.client_id!r})"

    def sign(self, message: str) -> str:
        return sign(message, self.client_secret)

    def for_stream(self, session_id: str, stream_id: str) -> str:
        return self.sign(f"{self.client_id},{session_id},{stream_id}")
