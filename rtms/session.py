from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from logging import getLogger
from typing import Any, Callable, Dict, Optional

from websockets import connect

from rtms.aggregator import TranscriptAggregator
from rtms.channel import (
    Channel,
    ChannelOpened,
    ChannelState,
    Connector,
    FrameReceived,
    HandshakeTimedOut,
    SendOnSignaling,
    StateChanged,
    TransportClosed,
)
from rtms.classifier import ClassificationResult, Classifier
from rtms.client_config import RtmsClientConfig
from rtms.errors import ChannelStateError
from rtms.media import AudioSink, MediaChannel
from rtms.protocol import ChannelRole
from rtms.signaling import SignalingChannel

logger = getLogger(__name__)


class SessionState(str, Enum):
    CONNECTING = "connecting"    # signaling not ready yet
    NEGOTIATING = "negotiating"  # media handshake in progress
    STREAMING = "streaming"
    DEGRADED = "degraded"        # media gone, signaling still up
    FAILED = "failed"
    STOPPED = "stopped"


FINISHED_STATES = frozenset({SessionState.FAILED, SessionState.STOPPED})


@dataclass(frozen=True)
class StopRequested:
    reason: str = "stop requested"


class Session:
    """
    One live stream: a signaling + media channel pair and its transcript buffer.

    All inbox items (frames, channel notices, cross-channel commands) are
    processed by a single task, in the order they were posted. Frames of one
    connection keep their arrival order; the two connections are not ordered
    relative to each other.
    """

    def __init__(
            self,
            session_id: str,
            stream_id: str,
            signaling_url: str,
            *,
            config: RtmsClientConfig,
            classifier: Classifier,
            connector: Connector = connect,
            label_sink: Optional[Callable[[ClassificationResult], None]] = None,
            audio_sink: Optional[AudioSink] = None,
            on_finished: Optional[Callable[["Session"], None]] = None,
    ) -> None:
        self.session_id = session_id
        self.stream_id = stream_id
        self.signaling_url = signaling_url
        self.media_url: Optional[str] = None
        self.state = SessionState.CONNECTING
        self.error: Optional[BaseException] = None
        self.last_label: Optional[str] = None

        self._config = config
        self._connector = connector
        self._signer = config.signer()
        self._label_sink = label_sink
        self._audio_sink = audio_sink
        self._on_finished = on_finished
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None

        self.signaling = SignalingChannel(
            signaling_url,
            session_id=session_id,
            stream_id=stream_id,
            signer=self._signer,
            config=config,
            inbox=self._inbox,
            connector=connector,
        )
        self.media: Optional[MediaChannel] = None
        self.aggregator = TranscriptAggregator(
            classifier,
            threshold=config.transcript_threshold,
            unit=config.threshold_unit,
            session_id=session_id,
            stream_id=stream_id,
            on_result=self._on_result,
        )

    def __repr__(self) -> str:
        return f"Session({self.session_id!r}, stream={self.stream_id!r}, state={self.state.value})"

    @property
    def finished(self) -> bool:
        return self.state in FINISHED_STATES

    def start(self) -> None:
        if self._task is not None:
            raise ChannelStateError(f"Session {self.session_id} already started")
        self._task = asyncio.create_task(self._run(), name=f"rtms-session-{self.session_id}")

    async def stop(self) -> None:
        """Close both channels and wait for the session task to end."""
        if self._task is None:
            self.state = SessionState.STOPPED
            self.aggregator.close()
            return
        if not self._task.done():
            self._inbox.put_nowait(StopRequested())
        await self.wait_closed()

    async def wait_closed(self) -> None:
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "stream_id": self.stream_id,
            "state": self.state.value,
            "signaling": self.signaling.state.value,
            "media": self.media.state.value if self.media else None,
            "media_url": self.media_url,
            "buffered": self.aggregator.size,
            "classifying": self.aggregator.pending,
            "last_label": self.last_label,
            "error": str(self.error) if self.error else None,
        }

    # -- session task ---------------------------------------------------------

    async def _run(self) -> None:
        logger.info("[SESSION] %s: starting (stream %s)", self.session_id, self.stream_id)
        try:
            self.signaling.connect()
            while not self.finished:
                event = await self._inbox.get()
                await self._dispatch(event)
        except asyncio.CancelledError:
            self.state = SessionState.STOPPED
            raise
        except Exception as e:
            logger.exception("[SESSION] %s: crashed: %r", self.session_id, e)
            self.error = e
            self.state = SessionState.FAILED
        finally:
            await self._teardown()
            logger.info("[SESSION] %s: finished (%s)", self.session_id, self.state.value)
            if self._on_finished is not None:
                self._on_finished(self)

    async def _dispatch(self, event: object) -> None:
        if isinstance(event, StopRequested):
            logger.info("[SESSION] %s: %s", self.session_id, event.reason)
            self.state = SessionState.STOPPED
        elif isinstance(event, StateChanged):
            await self._on_state_changed(event)
        elif isinstance(event, SendOnSignaling):
            await self._send_on_signaling(event)
        elif isinstance(event, (ChannelOpened, FrameReceived, TransportClosed, HandshakeTimedOut)):
            channel = self._channel(event.role)
            if channel is None:
                logger.warning("[SESSION] %s: %s for missing %s channel",
                               self.session_id, type(event).__name__, event.role.value)
            elif isinstance(event, ChannelOpened):
                await channel.on_opened()
            elif isinstance(event, FrameReceived):
                await channel.handle_frame(event.raw)
            elif isinstance(event, TransportClosed):
                await channel.on_transport_closed(event.error)
            else:
                await channel.on_handshake_timeout()
        else:
            raise TypeError(f"Unknown session inbox item: {event!r}")

    def _channel(self, role: ChannelRole) -> Optional[Channel]:
        return self.signaling if role is ChannelRole.SIGNALING else self.media

    async def _on_state_changed(self, event: StateChanged) -> None:
        if event.role is ChannelRole.SIGNALING:
            if event.state is ChannelState.READY:
                await self._open_media()
            elif event.state is ChannelState.FAILED:
                logger.error("[SESSION] %s: signaling failed: %s", self.session_id, event.error)
                self.error = event.error
                self.state = SessionState.FAILED
            elif event.state is ChannelState.CLOSED:
                self.state = SessionState.STOPPED
            return

        if event.state is ChannelState.ACTIVE:
            self.state = SessionState.STREAMING
        elif event.state in (ChannelState.FAILED, ChannelState.CLOSED):
            # signaling stays up: the provider may still send the stop over it
            logger.warning("[SESSION] %s: media channel %s, session degraded: %s",
                           self.session_id, event.state.value, event.error)
            if event.error is not None:
                self.error = event.error
            self.state = SessionState.DEGRADED

    async def _open_media(self) -> None:
        self.media_url = self.signaling.media_url
        self.media = MediaChannel(
            self.signaling,
            self.media_url,
            on_transcript=self.aggregator.append,
            on_audio=self._audio_sink,
            signer=self._signer,
            config=self._config,
            inbox=self._inbox,
            connector=self._connector,
        )
        self.state = SessionState.NEGOTIATING
        self.media.connect()

    async def _send_on_signaling(self, command: SendOnSignaling) -> None:
        if self.signaling.state is not ChannelState.READY:
            logger.warning("[SESSION] %s: signaling is %s, dropping %s",
                           self.session_id, self.signaling.state.value, type(command.message).__name__)
            return
        logger.info("[SESSION] %s: sending %s on signaling channel",
                    self.session_id, type(command.message).__name__)
        await self.signaling.send(command.message)

    def _on_result(self, result: ClassificationResult) -> None:
        self.last_label = result.label
        if self._label_sink is not None:
            self._label_sink(result)

    async def _teardown(self) -> None:
        self.aggregator.close()
        if self.media is not None:
            await self.media.close()
        await self.signaling.close()
