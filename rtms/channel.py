"""
Shared plumbing of the two RTMS connections (signaling and media).

Threading model
---------------
A channel never acts on its own. It only owns a websocket and two helper
tasks, and reports everything into the inbox of the session that owns it:

- the open task runs ``connect()`` and posts ``ChannelOpened`` or
  ``TransportClosed(error)``;
- the reader task loops on ``recv()`` and posts ``FrameReceived`` for every
  frame, then ``TransportClosed`` when the socket goes away;
- the handshake timer posts ``HandshakeTimedOut``.

The session task drains the inbox and calls back into the channel
(``on_opened``, ``handle_frame``, ...). Decoding, state transitions, keep-alive
replies and sends therefore all run on one task per session and need no locks.
Every transition is posted back as ``StateChanged`` so the session can react.

A reader holds at most ``MAX_PENDING_FRAMES`` frames in the inbox; it stops
reading until the session has handled one, so the socket's own receive queue
(``max_queue``) pushes back on the server instead of the inbox growing.

State machine
-------------
    IDLE -> CONNECTING -> HANDSHAKING -> READY|ACTIVE -> CLOSED|FAILED

Any transition outside the table raises ChannelStateError.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from logging import getLogger
from types import MappingProxyType
from typing import Any, Awaitable, Callable, ClassVar, FrozenSet, Mapping, Optional, Union

from websockets import connect, ConnectionClosed, ConnectionClosedOK

from rtms.client_config import RtmsClientConfig
from rtms.errors import ChannelStateError, DecodeError, HandshakeError
from rtms.keep_alive import is_keep_alive, keep_alive_reply
from rtms.protocol import ChannelRole, ProtocolMessage, decode, encode
from rtms.signature import StreamSigner

logger = getLogger(__name__)

Connector = Callable[..., Awaitable[Any]]

MAX_PENDING_FRAMES = 32


class ChannelState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    HANDSHAKING = "handshaking"
    READY = "ready"      # signaling: media server address known
    ACTIVE = "active"    # media: content is flowing
    CLOSED = "closed"
    FAILED = "failed"


TERMINAL_STATES = frozenset({ChannelState.CLOSED, ChannelState.FAILED})


def transition_table(established: ChannelState) -> Mapping[ChannelState, FrozenSet[ChannelState]]:
    return MappingProxyType({
        ChannelState.IDLE: frozenset({ChannelState.CONNECTING, ChannelState.CLOSED}),
        ChannelState.CONNECTING: frozenset({ChannelState.HANDSHAKING, ChannelState.FAILED, ChannelState.CLOSED}),
        ChannelState.HANDSHAKING: frozenset({established, ChannelState.FAILED, ChannelState.CLOSED}),
        established: frozenset({ChannelState.FAILED, ChannelState.CLOSED}),
        ChannelState.CLOSED: frozenset(),
        ChannelState.FAILED: frozenset(),
    })


# ---------------------------------------------------------------------------
# Session inbox items
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ChannelOpened:
    role: ChannelRole


@dataclass(frozen=True)
class FrameReceived:
    role: ChannelRole
    raw: Union[str, bytes]


@dataclass(frozen=True)
class TransportClosed:
    role: ChannelRole
    error: Optional[BaseException] = None  # None = clean close


@dataclass(frozen=True)
class HandshakeTimedOut:
    role: ChannelRole


@dataclass(frozen=True)
class StateChanged:
    role: ChannelRole
    state: ChannelState
    error: Optional[BaseException] = None


@dataclass(frozen=True)
class SendOnSignaling:
    """Command from the media side: send this message on the signaling socket."""
    message: ProtocolMessage


# ---------------------------------------------------------------------------
# Channel
# ---------------------------------------------------------------------------

class Channel:
    role: ClassVar[ChannelRole]
    established: ClassVar[ChannelState]
    transitions: ClassVar[Mapping[ChannelState, FrozenSet[ChannelState]]]
    tag: ClassVar[str]

    def __init__(
            self,
            url: str,
            *,
            session_id: str,
            stream_id: str,
            signer: StreamSigner,
            config: RtmsClientConfig,
            inbox: asyncio.Queue,
            connector: Connector = connect,
    ) -> None:
        self.url = url
        self.session_id = session_id
        self.stream_id = stream_id
        self.error: Optional[BaseException] = None
        self._signer = signer
        self._config = config
        self._inbox = inbox
        self._connector = connector
        self._state = ChannelState.IDLE
        self._ws = None
        self._open_task: Optional[asyncio.Task] = None
        self._rx_task: Optional[asyncio.Task] = None
        self._handshake_timer: Optional[asyncio.TimerHandle] = None
        self._frame_credits = asyncio.Semaphore(MAX_PENDING_FRAMES)

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def is_established(self) -> bool:
        return self._state is self.established

    def _post(self, event: object) -> None:
        self._inbox.put_nowait(event)

    def _transition(self, new_state: ChannelState, error: Optional[BaseException] = None) -> None:
        old_state = self._state
        if new_state not in self.transitions[old_state]:
            raise ChannelStateError(
                f"{self.role.value} channel of session {self.session_id}: "
                f"illegal transition {old_state.value} -> {new_state.value}"
            )
        self._state = new_state
        if error is not None and self.error is None:
            self.error = error
        if old_state is ChannelState.HANDSHAKING:
            self._cancel_handshake_timer()
        logger.debug("[%s] %s: %s -> %s", self.tag, self.session_id, old_state.value, new_state.value)
        self._post(StateChanged(self.role, new_state, error))

    def _handshake_request(self) -> ProtocolMessage:
        raise NotImplementedError

    async def _on_message(self, message: ProtocolMessage) -> None:
        raise NotImplementedError

    # -- transport ----------------------------------------------------------

    def connect(self) -> None:
        """Start opening the transport; the outcome arrives in the session inbox."""
        self._transition(ChannelState.CONNECTING)
        self._open_task = asyncio.create_task(
            self._open_transport(), name=f"rtms-{self.role.value}-open-{self.session_id}"
        )

    async def _open_transport(self) -> None:
        logger.info("[%s] %s: connecting to %s", self.tag, self.session_id, self.url)
        try:
            self._ws = await asyncio.wait_for(
                self._connector(
                    self.url,
                    open_timeout=self._config.open_timeout_s,
                    ping_interval=self._config.ping_interval_s,
                    ping_timeout=self._config.ping_timeout_s,
                    close_timeout=5,
                    max_queue=MAX_PENDING_FRAMES,
                ),
                timeout=self._config.open_timeout_s,
            )
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError:
            logger.warning("[%s] %s: connection timed out after %.1fs",
                           self.tag, self.session_id, self._config.open_timeout_s)
            self._post(TransportClosed(self.role, TimeoutError(f"connect to {self.url} timed out")))
            return
        except Exception as e:
            logger.warning("[%s] %s: could not connect: %r", self.tag, self.session_id, e)
            self._post(TransportClosed(self.role, e))
            return
        self._post(ChannelOpened(self.role))

    async def _recv_loop(self) -> None:
        """Background task: forward every frame to the session inbox, in arrival order."""
        error: Optional[BaseException] = None
        try:
            while True:
                await self._frame_credits.acquire()
                raw = await self._ws.recv()
                self._post(FrameReceived(self.role, raw))
        except ConnectionClosedOK:
            logger.debug("[%s] %s: connection closed cleanly.", self.tag, self.session_id)
        except ConnectionClosed as e:
            is_clean = e.rcvd is not None and e.rcvd.code == 1000
            if is_clean or e.rcvd is None and e.sent is not None:
                logger.debug("[%s] %s: connection closed (code=%s).", self.tag, self.session_id,
                             e.rcvd.code if e.rcvd else None)
            else:
                logger.warning("[%s] %s: connection closed unexpectedly: %s", self.tag, self.session_id, e)
                error = e
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("[%s] %s: receiver crashed: %r", self.tag, self.session_id, e)
            error = e
        self._post(TransportClosed(self.role, error))

    async def send(self, message: ProtocolMessage) -> bool:
        """Send one message. Returns False if the socket is gone (the reader reports why)."""
        if self._ws is None or self._state in TERMINAL_STATES:
            logger.warning("[%s] %s: cannot send %s, channel is %s",
                           self.tag, self.session_id, type(message).__name__, self._state.value)
            return False
        try:
            await self._ws.send(encode(message))
        except ConnectionClosed:
            logger.warning("[%s] %s: connection closed while sending %s",
                           self.tag, self.session_id, type(message).__name__)
            return False
        return True

    # -- events from the session inbox --------------------------------------

    async def on_opened(self) -> None:
        if self._state is not ChannelState.CONNECTING:
            # closed while the connect was in flight
            await self._close_transport()
            return
        self._rx_task = asyncio.create_task(
            self._recv_loop(), name=f"rtms-{self.role.value}-rx-{self.session_id}"
        )
        self._transition(ChannelState.HANDSHAKING)
        self._arm_handshake_timer()
        request = self._handshake_request()
        logger.info("[%s] %s: sending %s", self.tag, self.session_id, type(request).__name__)
        await self.send(request)

    async def handle_frame(self, raw: Union[str, bytes]) -> None:
        try:
            await self._handle_frame(raw)
        finally:
            self._frame_credits.release()

    async def _handle_frame(self, raw: Union[str, bytes]) -> None:
        if self._state not in (ChannelState.HANDSHAKING, self.established):
            logger.debug("[%s] %s: dropping frame received in state %s", self.tag, self.session_id, self._state.value)
            return
        try:
            message = decode(raw)
        except DecodeError as e:
            logger.warning("[%s] %s: dropping malformed message: %s", self.tag, self.session_id, e)
            return

        if is_keep_alive(message):
            logger.debug("[%s] %s: keep-alive %r", self.tag, self.session_id, message.timestamp)
            await self.send(keep_alive_reply(message, self.role))
            return

        await self._on_message(message)

    async def on_transport_closed(self, error: Optional[BaseException]) -> None:
        if self._state in TERMINAL_STATES:
            return
        if error is None and self.is_established:
            logger.info("[%s] %s: closed by server", self.tag, self.session_id)
            self._transition(ChannelState.CLOSED)
        else:
            error = error or ConnectionError(f"{self.role.value} connection closed during {self._state.value}")
            logger.error("[%s] %s: transport failed: %s", self.tag, self.session_id, error)
            self._transition(ChannelState.FAILED, error)
        await self._close_transport()

    async def on_handshake_timeout(self) -> None:
        if self._state is not ChannelState.HANDSHAKING:
            return
        timeout = self._config.handshake_timeout_s
        logger.error("[%s] %s: no handshake response within %.1fs", self.tag, self.session_id, timeout)
        await self._fail(HandshakeError(f"{self.role.value} handshake timed out after {timeout}s"))

    async def _fail(self, error: BaseException) -> None:
        self._transition(ChannelState.FAILED, error)
        await self._close_transport()

    # -- shutdown -------------------------------------------------------------

    async def close(self) -> None:
        """Close the channel (idempotent). Safe in any state."""
        if self._state not in TERMINAL_STATES:
            self._transition(ChannelState.CLOSED)
        await self._close_transport()

    async def _close_transport(self) -> None:
        self._cancel_handshake_timer()
        current = asyncio.current_task()
        for task in (self._open_task, self._rx_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
        if self._ws is not None:
            try:
                await self._ws.close()
            except Exception as e:
                logger.debug("[%s] %s: error while closing socket: %r", self.tag, self.session_id, e)

    def _arm_handshake_timer(self) -> None:
        timeout = self._config.handshake_timeout_s
        if timeout:
            loop = asyncio.get_running_loop()
            self._handshake_timer = loop.call_later(timeout, self._post, HandshakeTimedOut(self.role))

    def _cancel_handshake_timer(self) -> None:
        if self._handshake_timer is not None:
            self._handshake_timer.cancel()
            self._handshake_timer = None
