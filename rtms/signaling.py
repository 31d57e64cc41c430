from __future__ import annotations

from logging import getLogger
from typing import Optional

from rtms.channel import Channel, ChannelState, transition_table
from rtms.errors import HandshakeError
from rtms.protocol import STATUS_OK, ChannelRole, HandshakeRequest, HandshakeResponse, ProtocolMessage

logger = getLogger(__name__)


class SignalingChannel(Channel):
    """
    Control connection of one stream session.

    Protocol:
      - on open, send HANDSHAKE_REQUEST {session id, stream id, signature}
      - HANDSHAKE_RESPONSE status_code == 0 carries the media server address -> READY
      - any other status code -> FAILED, no retry
      - answer KEEP_ALIVE_REQUEST in every live state, also during the handshake
      - later carries CLIENT_READY_ACK on behalf of the media channel
    """
    role = ChannelRole.SIGNALING
    established = ChannelState.READY
    transitions = transition_table(ChannelState.READY)
    tag = "SIGNALING"

    media_url: Optional[str] = None

    def _handshake_request(self) -> HandshakeRequest:
        return HandshakeRequest(
            session_id=self.session_id,
            stream_id=self.stream_id,
            signature=self._signer.for_stream(self.session_id, self.stream_id),
        )

    async def _on_message(self, message: ProtocolMessage) -> None:
        if not isinstance(message, HandshakeResponse):
            logger.debug("[SIGNALING] %s: ignoring %s", self.session_id, type(message).__name__)
            return

        if self._state is not ChannelState.HANDSHAKING:
            logger.warning("[SIGNALING] %s: unexpected handshake response in state %s",
                           self.session_id, self._state.value)
            return

        if not message.ok:
            await self._fail(HandshakeError(
                f"Signaling handshake refused (status_code={message.status_code})", message.status_code
            ))
            return

        media_url = message.media_url(self._config.content_types)
        if not media_url:
            await self._fail(HandshakeError(
                f"Signaling handshake returned no media server for {self._config.content_types!r}", STATUS_OK
            ))
            return

        self.media_url = media_url
        logger.info("[SIGNALING] %s: handshake OK, media server %s", self.session_id, media_url)
        self._transition(ChannelState.READY)
