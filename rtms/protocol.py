"""
Message codec for the real-time media streaming (RTMS) protocol.

Every frame on both channels is a JSON text message with an integer
``msg_type`` tag. The tags are provider defined and must not change:

    1  HANDSHAKE_REQUEST        client -> signaling
    2  HANDSHAKE_RESPONSE       signaling -> client
    3  DATA_HANDSHAKE_REQUEST   client -> media
    4  DATA_HANDSHAKE_RESPONSE  media -> client
    7  CLIENT_READY_ACK         client -> signaling
    12 KEEP_ALIVE_REQUEST       server -> client (either channel)
    13 KEEP_ALIVE_RESPONSE/ACK  client -> server (same channel as the request)
    14 AUDIO_CONTENT            media -> client
    17 TRANSCRIPT_CONTENT       media -> client

The codec is stateless and symmetric: every kind can be encoded and decoded,
so a fake server in the tests speaks the same language as the client.
Anything that does not parse raises DecodeError; channels log and drop it.
"""
from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field
from enum import Enum, IntEnum, IntFlag
from json import loads, dumps, JSONDecodeError
from typing import Any, Callable, ClassVar, Dict, Optional, Union

from rtms.errors import DecodeError


STATUS_OK = 0
PROTOCOL_VERSION = 1


class MsgType(IntEnum):
    HANDSHAKE_REQUEST = 1
    HANDSHAKE_RESPONSE = 2
    DATA_HANDSHAKE_REQUEST = 3
    DATA_HANDSHAKE_RESPONSE = 4
    CLIENT_READY_ACK = 7
    KEEP_ALIVE_REQUEST = 12
    # Named KEEP_ALIVE_ACK on the media channel, same tag. See rtms/keep_alive.py.
    KEEP_ALIVE_RESPONSE = 13
    AUDIO_CONTENT = 14
    TRANSCRIPT_CONTENT = 17


class ContentType(IntFlag):
    """Media kinds a media channel subscribes to (``media_type`` on the wire)."""
    AUDIO = 1
    VIDEO = 2
    TRANSCRIPT = 8


ALL_CONTENT_TYPES = ContentType.AUDIO | ContentType.VIDEO | ContentType.TRANSCRIPT


class ChannelRole(str, Enum):
    SIGNALING = "signaling"
    MEDIA = "media"


def parse_content_types(value: Union[str, int]) -> ContentType:
    """
    Parse a content type mask from config.

    Accepts comma separated names ("audio,transcript", case-insensitive)
    or an integer bitmask ("9" / 9).
    """
    if isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            value = int(text)
        else:
            mask = ContentType(0)
            for name in filter(None, (part.strip() for part in text.split(","))):
                try:
                    mask |= ContentType[name.upper()]
                except KeyError:
                    raise ValueError(f"Unknown content type: {name!r}") from None
            value = int(mask)

    if value & ~int(ALL_CONTENT_TYPES):
        raise ValueError(f"Content type mask {value} has unsupported bits")
    if not value:
        raise ValueError("At least one content type must be subscribed")
    return ContentType(value)


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------

def _require(data: Dict[str, Any], key: str, kind: str) -> Any:
    value = data.get(key)
    if value is None:
        raise DecodeError(f"{kind}: missing field {key!r}")
    return value


def _require_int(data: Dict[str, Any], key: str, kind: str) -> int:
    value = _require(data, key, kind)
    if isinstance(value, bool) or not isinstance(value, int):
        raise DecodeError(f"{kind}: field {key!r} must be an integer, got {value!r}")
    return value


def _require_str(data: Dict[str, Any], key: str, kind: str) -> str:
    value = _require(data, key, kind)
    if not isinstance(value, str):
        raise DecodeError(f"{kind}: field {key!r} must be a string, got {value!r}")
    return value


_URL_KEYS = (
    (ContentType.AUDIO, "audio"),
    (ContentType.VIDEO, "video"),
    (ContentType.TRANSCRIPT, "transcript"),
)


def select_media_url(server_urls: Any, content_types: ContentType) -> Optional[str]:
    """
    Pick the media server address for the subscribed content types.

    A single subscribed type prefers its own endpoint, combined subscriptions
    prefer the "all" endpoint. Falls back to any matching key.
    """
    if isinstance(server_urls, str):
        return server_urls or None
    if not isinstance(server_urls, dict):
        return None

    wanted = [key for flag, key in _URL_KEYS if flag & content_types]
    order = wanted + ["all"] if len(wanted) == 1 else ["all"] + wanted
    for key in order:
        url = server_urls.get(key)
        if isinstance(url, str) and url:
            return url
    return None


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class HandshakeRequest:
    session_id: str
    stream_id: str
    signature: str

    msg_type: ClassVar[MsgType] = MsgType.HANDSHAKE_REQUEST

    def to_payload(self) -> Dict[str, Any]:
        return {
            "msg_type": int(self.msg_type),
            "meeting_uuid": self.session_id,
            "session_id": self.session_id,
            "rtms_stream_id": self.stream_id,
            "signature": self.signature,
        }

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "HandshakeRequest":
        kind = cls.msg_type.name
        session_id = data.get("session_id") or _require_str(data, "meeting_uuid", kind)
        return cls(
            session_id=session_id,
            stream_id=_require_str(data, "rtms_stream_id", kind),
            signature=_require_str(data, "signature", kind),
        )


@dataclass(frozen=True)
class HandshakeResponse:
    status_code: int
    server_urls: Any = None  # dict of {audio, video, transcript, all} or a plain url

    msg_type: ClassVar[MsgType] = MsgType.HANDSHAKE_RESPONSE

    @property
    def ok(self) -> bool:
        return self.status_code == STATUS_OK

    def media_url(self, content_types: ContentType) -> Optional[str]:
        return select_media_url(self.server_urls, content_types)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"msg_type": int(self.msg_type), "status_code": self.status_code}
        if self.server_urls is not None:
            payload["media_server"] = {"server_urls": self.server_urls}
        return payload

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "HandshakeResponse":
        media_server = data.get("media_server")
        server_urls = media_server.get("server_urls") if isinstance(media_server, dict) else None
        return cls(
            status_code=_require_int(data, "status_code", cls.msg_type.name),
            server_urls=server_urls,
        )


@dataclass(frozen=True)
class DataHandshakeRequest:
    session_id: str
    stream_id: str
    signature: str
    content_types: ContentType
    sequence: int = 0
    protocol_version: int = PROTOCOL_VERSION

    msg_type: ClassVar[MsgType] = MsgType.DATA_HANDSHAKE_REQUEST

    def to_payload(self) -> Dict[str, Any]:
        return {
            "msg_type": int(self.msg_type),
            "protocol_version": self.protocol_version,
            "sequence": self.sequence,
            "meeting_uuid": self.session_id,
            "session_id": self.session_id,
            "rtms_stream_id": self.stream_id,
            "signature": self.signature,
            "media_type": int(self.content_types),
        }

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "DataHandshakeRequest":
        kind = cls.msg_type.name
        session_id = data.get("session_id") or _require_str(data, "meeting_uuid", kind)
        return cls(
            session_id=session_id,
            stream_id=_require_str(data, "rtms_stream_id", kind),
            signature=_require_str(data, "signature", kind),
            content_types=ContentType(_require_int(data, "media_type", kind)),
            sequence=_require_int(data, "sequence", kind),
            protocol_version=_require_int(data, "protocol_version", kind),
        )


@dataclass(frozen=True)
class DataHandshakeResponse:
    status_code: int

    msg_type: ClassVar[MsgType] = MsgType.DATA_HANDSHAKE_RESPONSE

    @property
    def ok(self) -> bool:
        return self.status_code == STATUS_OK

    def to_payload(self) -> Dict[str, Any]:
        return {"msg_type": int(self.msg_type), "status_code": self.status_code}

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "DataHandshakeResponse":
        return cls(status_code=_require_int(data, "status_code", cls.msg_type.name))


@dataclass(frozen=True)
class ClientReadyAck:
    stream_id: str

    msg_type: ClassVar[MsgType] = MsgType.CLIENT_READY_ACK

    def to_payload(self) -> Dict[str, Any]:
        return {"msg_type": int(self.msg_type), "rtms_stream_id": self.stream_id}

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "ClientReadyAck":
        return cls(stream_id=_require_str(data, "rtms_stream_id", cls.msg_type.name))


@dataclass(frozen=True)
class KeepAliveRequest:
    timestamp: Any  # echoed verbatim, never interpreted

    msg_type: ClassVar[MsgType] = MsgType.KEEP_ALIVE_REQUEST

    def to_payload(self) -> Dict[str, Any]:
        return {"msg_type": int(self.msg_type), "timestamp": self.timestamp}

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "KeepAliveRequest":
        return cls(timestamp=_require(data, "timestamp", cls.msg_type.name))


@dataclass(frozen=True)
class KeepAliveReply:
    """Reply to a keep-alive; the tag comes from the per-channel responder."""
    timestamp: Any
    msg_type: int = MsgType.KEEP_ALIVE_RESPONSE

    def to_payload(self) -> Dict[str, Any]:
        return {"msg_type": int(self.msg_type), "timestamp": self.timestamp}

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "KeepAliveReply":
        return cls(
            timestamp=_require(data, "timestamp", "KEEP_ALIVE_RESPONSE"),
            msg_type=_require_int(data, "msg_type", "KEEP_ALIVE_RESPONSE"),
        )


@dataclass(frozen=True)
class SpeakerMetadata:
    user_id: Any = None
    user_name: Optional[str] = None
    timestamp: Any = None

    def to_content(self) -> Dict[str, Any]:
        return {"user_id": self.user_id, "user_name": self.user_name, "timestamp": self.timestamp}

    @classmethod
    def from_content(cls, content: Any) -> "SpeakerMetadata":
        if not isinstance(content, dict):
            return cls()
        return cls(
            user_id=content.get("user_id"),
            user_name=content.get("user_name"),
            timestamp=content.get("timestamp"),
        )


@dataclass(frozen=True)
class AudioContent:
    data: bytes
    speaker: SpeakerMetadata = field(default_factory=SpeakerMetadata)

    msg_type: ClassVar[MsgType] = MsgType.AUDIO_CONTENT

    def to_payload(self) -> Dict[str, Any]:
        content = self.speaker.to_content()
        content["data"] = base64.b64encode(self.data).decode("ascii")
        return {"msg_type": int(self.msg_type), "content": content}

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "AudioContent":
        kind = cls.msg_type.name
        content = _require(data, "content", kind)
        encoded = content.get("data") if isinstance(content, dict) else content
        if not isinstance(encoded, str):
            raise DecodeError(f"{kind}: missing audio data")
        try:
            raw = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as e:
            raise DecodeError(f"{kind}: audio data is not base64: {e}") from None
        return cls(data=raw, speaker=SpeakerMetadata.from_content(content))


@dataclass(frozen=True)
class TranscriptContent:
    text: str
    speaker: SpeakerMetadata = field(default_factory=SpeakerMetadata)

    msg_type: ClassVar[MsgType] = MsgType.TRANSCRIPT_CONTENT

    def to_payload(self) -> Dict[str, Any]:
        content = self.speaker.to_content()
        content["data"] = self.text
        return {"msg_type": int(self.msg_type), "content": content}

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "TranscriptContent":
        kind = cls.msg_type.name
        content = _require(data, "content", kind)
        text = content.get("data") if isinstance(content, dict) else content
        if not isinstance(text, str):
            raise DecodeError(f"{kind}: missing transcript text")
        return cls(text=text, speaker=SpeakerMetadata.from_content(content))


ProtocolMessage = Union[
    HandshakeRequest,
    HandshakeResponse,
    DataHandshakeRequest,
    DataHandshakeResponse,
    ClientReadyAck,
    KeepAliveRequest,
    KeepAliveReply,
    AudioContent,
    TranscriptContent,
]

_DECODERS: Dict[MsgType, Callable[[Dict[str, Any]], ProtocolMessage]] = {
    MsgType.HANDSHAKE_REQUEST: HandshakeRequest.from_payload,
    MsgType.HANDSHAKE_RESPONSE: HandshakeResponse.from_payload,
    MsgType.DATA_HANDSHAKE_REQUEST: DataHandshakeRequest.from_payload,
    MsgType.DATA_HANDSHAKE_RESPONSE: DataHandshakeResponse.from_payload,
    MsgType.CLIENT_READY_ACK: ClientReadyAck.from_payload,
    MsgType.KEEP_ALIVE_REQUEST: KeepAliveRequest.from_payload,
    MsgType.KEEP_ALIVE_RESPONSE: KeepAliveReply.from_payload,
    MsgType.AUDIO_CONTENT: AudioContent.from_payload,
    MsgType.TRANSCRIPT_CONTENT: TranscriptContent.from_payload,
}


# ---------------------------------------------------------------------------
# Codec
# ---------------------------------------------------------------------------

def encode(message: ProtocolMessage) -> str:
    """Serialize a message to the JSON text frame sent on the wire."""
    return dumps(message.to_payload())


def decode(raw: Union[str, bytes, bytearray]) -> ProtocolMessage:
    """
    Parse one frame into a ProtocolMessage.

    Raises:
        DecodeError: frame is not JSON, not an object, has no/unknown msg_type
            or misses a field required by its kind.
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = bytes(raw).decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecodeError(f"Binary frame is not UTF-8: {e}") from None

    try:
        data = loads(raw)
    except JSONDecodeError as e:
        raise DecodeError(f"Invalid JSON: {e}") from None

    if not isinstance(data, dict):
        raise DecodeError(f"Expected a JSON object, got {type(data).__name__}")

    tag = data.get("msg_type")
    if isinstance(tag, bool) or not isinstance(tag, int):
        raise DecodeError(f"Missing or invalid msg_type: {tag!r}")
    try:
        kind = MsgType(tag)
    except ValueError:
        raise DecodeError(f"Unknown msg_type: {tag}") from None

    return _DECODERS[kind](data)
