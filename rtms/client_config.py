from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from config import (
    HANDSHAKE_TIMEOUT_S,
    RTMS_MEDIA_TYPES,
    RTMS_OPEN_TIMEOUT_S,
    TRANSCRIPT_THRESHOLD,
    TRANSCRIPT_THRESHOLD_UNIT,
    WS_PING_INTERVAL_S,
    WS_PING_TIMEOUT_S,
    ZM_RTMS_CLIENT,
    ZM_RTMS_SECRET,
)
from rtms.protocol import ContentType, parse_content_types
from rtms.signature import StreamSigner

THRESHOLD_UNITS = ("chars", "words")


@dataclass(frozen=True)
class RtmsClientConfig:
    """
    Configuration of the streaming protocol client.

    Credentials are required. Everything else defaults to config.py values
    and can be overridden per instance (tests do that a lot).
    """
    client_id: str
    client_secret: str

    # Which media the media channel subscribes to, fixed for the channel lifetime.
    content_types: ContentType = parse_content_types(RTMS_MEDIA_TYPES)

    # Dispatch to the classifier once the buffer is strictly larger than this.
    transcript_threshold: int = TRANSCRIPT_THRESHOLD
    threshold_unit: str = TRANSCRIPT_THRESHOLD_UNIT

    # None / 0 disables the handshake timeout.
    handshake_timeout_s: Optional[float] = HANDSHAKE_TIMEOUT_S
    open_timeout_s: float = RTMS_OPEN_TIMEOUT_S
    ping_interval_s: Optional[float] = WS_PING_INTERVAL_S
    ping_timeout_s: Optional[float] = WS_PING_TIMEOUT_S

    def __post_init__(self) -> None:
        if not self.client_id or not self.client_secret:
            raise ValueError("ZM_RTMS_CLIENT and ZM_RTMS_SECRET are required")
        if not self.content_types:
            raise ValueError("At least one content type must be subscribed")
        if self.transcript_threshold <= 0:
            raise ValueError(f"transcript_threshold must be positive, got {self.transcript_threshold}")
        if self.threshold_unit not in THRESHOLD_UNITS:
            raise ValueError(f"threshold_unit must be one of {THRESHOLD_UNITS}, got {self.threshold_unit!r}")
        if self.open_timeout_s <= 0:
            raise ValueError(f"open_timeout_s must be positive, got {self.open_timeout_s}")

    def __repr__(self) -> str:
        # never print the secret
        return (
            f"RtmsClientConfig(client_id={self.client_id!r}, content_types={self.content_types!r}, "
            f"transcript_threshold={self.transcript_threshold}, threshold_unit={self.threshold_unit!r}, "
            f"handshake_timeout_s={self.handshake_timeout_s})"
        )

    @classmethod
    def from_env(cls) -> "RtmsClientConfig":
        return cls(client_id=ZM_RTMS_CLIENT, client_secret=ZM_RTMS_SECRET)

    def signer(self) -> StreamSigner:
        return StreamSigner(self.client_id, self.client_secret)
