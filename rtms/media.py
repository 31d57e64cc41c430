from __future__ import annotations

from logging import getLogger
from typing import Awaitable, Callable, Optional

from rtms.channel import Channel, ChannelState, SendOnSignaling, transition_table
from rtms.errors import ChannelStateError, HandshakeError
from rtms.protocol import (
    AudioContent,
    ChannelRole,
    ClientReadyAck,
    DataHandshakeRequest,
    DataHandshakeResponse,
    ProtocolMessage,
    TranscriptContent,
)
from rtms.signaling import SignalingChannel

logger = getLogger(__name__)

TranscriptSink = Callable[[str], object]
AudioSink = Callable[[AudioContent], Awaitable[None]]


class MediaChannel(Channel):
    """
    Data connection of one stream session, opened from a READY signaling channel.

    Protocol:
      - on open, send DATA_HANDSHAKE_REQUEST with the subscribed content type mask
      - DATA_HANDSHAKE_RESPONSE OK -> ACTIVE, and CLIENT_READY_ACK goes out on the
        *signaling* socket (posted to the session as a SendOnSignaling command)
      - TRANSCRIPT_CONTENT text goes to the transcript sink (aggregator)
      - AUDIO_CONTENT goes to the audio sink, if one is attached; sink errors
        are logged and the stream goes on
      - keep-alives are answered with KEEP_ALIVE_ACK
    """
    role = ChannelRole.MEDIA
    established = ChannelState.ACTIVE
    transitions = transition_table(ChannelState.ACTIVE)
    tag = "MEDIA"

    def __init__(
            self,
            signaling: SignalingChannel,
            url: str,
            *,
            on_transcript: TranscriptSink,
            on_audio: Optional[AudioSink] = None,
            **kwargs,
    ) -> None:
        if signaling.state is not ChannelState.READY:
            raise ChannelStateError(
                f"Media channel of session {signaling.session_id} requires a READY signaling channel, "
                f"signaling is {signaling.state.value}"
            )
        super().__init__(url, session_id=signaling.session_id, stream_id=signaling.stream_id, **kwargs)
        self.content_types = self._config.content_types
        self.sequence = 0
        self._on_transcript = on_transcript
        self._on_audio = on_audio

    def _handshake_request(self) -> DataHandshakeRequest:
        request = DataHandshakeRequest(
            session_id=self.session_id,
            stream_id=self.stream_id,
            signature=self._signer.for_stream(self.session_id, self.stream_id),
            content_types=self.content_types,
            sequence=self.sequence,
        )
        self.sequence += 1
        return request

    async def _on_message(self, message: ProtocolMessage) -> None:
        if isinstance(message, DataHandshakeResponse):
            await self._on_handshake_response(message)
            return

        if isinstance(message, (TranscriptContent, AudioContent)) and self._state is not ChannelState.ACTIVE:
            logger.warning("[MEDIA] %s: content before handshake completed, dropped", self.session_id)
            return

        if isinstance(message, TranscriptContent):
            logger.debug("[MEDIA] %s: transcript from %s: %s",
                         self.session_id, message.speaker.user_name, message.text[:50])
            self._on_transcript(message.text)
        elif isinstance(message, AudioContent):
            if self._on_audio is not None:
                try:
                    await self._on_audio(message)
                except Exception as e:
                    logger.exception("[MEDIA] %s: audio sink failed: %r", self.session_id, e)
        else:
            logger.debug("[MEDIA] %s: ignoring %s", self.session_id, type(message).__name__)

    async def _on_handshake_response(self, message: DataHandshakeResponse) -> None:
        if self._state is not ChannelState.HANDSHAKING:
            logger.warning("[MEDIA] %s: unexpected data handshake response in state %s",
                           self.session_id, self._state.value)
            return

        if not message.ok:
            await self._fail(HandshakeError(
                f"Media handshake refused (status_code={message.status_code})", message.status_code
            ))
            return

        logger.info("[MEDIA] %s: handshake OK, streaming %r", self.session_id, self.content_types)
        self._transition(ChannelState.ACTIVE)
        self._post(SendOnSignaling(ClientReadyAck(stream_id=self.stream_id)))
