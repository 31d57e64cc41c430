"""
Keep-alive reply policy.

The provider probes both channels with KEEP_ALIVE_REQUEST (12) and drops
the connection if it is not answered. The reply echoes the request's
timestamp untouched. On the signaling channel the reply is called
KEEP_ALIVE_RESPONSE, on the media channel KEEP_ALIVE_ACK. Both use tag 13
in the observed provider traffic; the tag stays per-channel here so a
provider change on one channel does not leak into the other.
"""
from __future__ import annotations

from types import MappingProxyType
from typing import Mapping

from rtms.protocol import ChannelRole, KeepAliveReply, KeepAliveRequest


SIGNALING_KEEP_ALIVE_RESPONSE = 13
MEDIA_KEEP_ALIVE_ACK = 13

KEEP_ALIVE_REPLY_TAGS: Mapping[ChannelRole, int] = MappingProxyType({
    ChannelRole.SIGNALING: SIGNALING_KEEP_ALIVE_RESPONSE,
    ChannelRole.MEDIA: MEDIA_KEEP_ALIVE_ACK,
})


def is_keep_alive(message: object) -> bool:
    return isinstance(message, KeepAliveRequest)


def keep_alive_reply(request: KeepAliveRequest, role: ChannelRole) -> KeepAliveReply:
    """Build the reply for a keep-alive request received on the channel with this role."""
    return KeepAliveReply(timestamp=request.timestamp, msg_type=KEEP_ALIVE_REPLY_TAGS[role])
