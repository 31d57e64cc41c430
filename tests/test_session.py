"""
End-to-end tests of the session lifecycle through SessionController,
with the provider played by FakeConnector.

    pytest tests/test_session.py -v
"""
from __future__ import annotations

import asyncio
import unittest
from typing import List

from fakes import (
    MEDIA_ALL_URL,
    MEDIA_URL,
    SIGNALING_URL,
    FakeConnector,
    RecordingClassifier,
    handshake_ok,
    make_config,
    wait_until,
)
from rtms.channel import ChannelState
from rtms.classifier import ClassificationResult
from rtms.controller import SessionController
from rtms.errors import DuplicateSessionError, HandshakeError
from rtms.protocol import ContentType
from rtms.session import Session, SessionState

SESSION_ID = "4f1d2c3b-meeting"
STREAM_ID = "stream-0001"


class SessionTestCase(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self) -> None:
        self.connector = FakeConnector()
        self.classifier = RecordingClassifier(label="gratitude")
        self.results: List[ClassificationResult] = []
        self.controller = self._controller(make_config())

    async def asyncTearDown(self) -> None:
        await self.controller.shutdown()

    def _controller(self, config) -> SessionController:
        return SessionController(
            config,
            self.classifier,
            connector=self.connector,
            label_sink=self.results.append,
        )

    def _socket_sent(self, url: str) -> bool:
        ws = self.connector.sockets.get(url)
        return ws is not None and bool(ws.sent)

    async def _start(self) -> Session:
        session = await self.controller.start(SESSION_ID, STREAM_ID, SIGNALING_URL)
        await wait_until(lambda: self._socket_sent(SIGNALING_URL))
        return session

    async def _start_streaming(self, media_url: str = MEDIA_URL) -> Session:
        session = await self._start()
        self.connector.sockets[SIGNALING_URL].push(handshake_ok())
        await wait_until(lambda: self._socket_sent(media_url))
        self.connector.sockets[media_url].push({"msg_type": 4, "status_code": 0})
        await wait_until(lambda: session.state is SessionState.STREAMING)
        return session


class TestHandshakeSequence(SessionTestCase):

    async def test_signaling_refused_fails_session(self) -> None:
        session = await self._start()
        self.connector.sockets[SIGNALING_URL].push({"msg_type": 2, "status_code": 3})

        await wait_until(lambda: session.finished)

        self.assertEqual(SessionState.FAILED, session.state)
        self.assertIsInstance(session.error, HandshakeError)
        self.assertEqual(3, session.error.status_code)
        self.assertNotIn(MEDIA_URL, self.connector.calls)
        self.assertTrue(self.connector.sockets[SIGNALING_URL].closed)
        self.assertNotIn(SESSION_ID, self.controller)

    async def test_media_not_opened_before_signaling_ready(self) -> None:
        session = await self._start()
        ws = self.connector.sockets[SIGNALING_URL]

        # keep-alives and noise do not open the media connection
        ws.push({"msg_type": 12, "timestamp": 1})
        await wait_until(lambda: bool(ws.messages_of(13)))
        self.assertEqual([SIGNALING_URL], self.connector.calls)
        self.assertEqual(SessionState.CONNECTING, session.state)

        ws.push(handshake_ok())
        await wait_until(lambda: MEDIA_URL in self.connector.calls)
        self.assertEqual([SIGNALING_URL, MEDIA_URL], self.connector.calls)
        self.assertEqual(MEDIA_URL, session.media_url)

    async def test_ready_ack_goes_out_on_signaling(self) -> None:
        await self._start_streaming()
        signaling_ws = self.connector.sockets[SIGNALING_URL]
        media_ws = self.connector.sockets[MEDIA_URL]

        await wait_until(lambda: bool(signaling_ws.messages_of(7)))

        self.assertEqual([{"msg_type": 7, "rtms_stream_id": STREAM_ID}], signaling_ws.messages_of(7))
        self.assertEqual([], media_ws.messages_of(7))
        # handshake request first, then the ready ack
        self.assertEqual([1, 7], [m["msg_type"] for m in signaling_ws.messages()])
        self.assertEqual([3], [m["msg_type"] for m in media_ws.messages()])

    async def test_handshake_timeout_fails_session(self) -> None:
        self.controller = self._controller(make_config(handshake_timeout_s=0.05))
        session = await self._start()

        await wait_until(lambda: session.finished)

        self.assertEqual(SessionState.FAILED, session.state)
        self.assertIsInstance(session.error, HandshakeError)
        self.assertNotIn(SESSION_ID, self.controller)

    async def test_signaling_connect_refused(self) -> None:
        self.connector.refuse.add(SIGNALING_URL)
        session = await self.controller.start(SESSION_ID, STREAM_ID, SIGNALING_URL)

        await wait_until(lambda: session.finished)

        self.assertEqual(SessionState.FAILED, session.state)
        self.assertIsInstance(session.error, OSError)
        self.assertEqual(0, len(self.controller))


class TestStreaming(SessionTestCase):

    async def test_transcript_reaches_classifier(self) -> None:
        session = await self._start_streaming()
        media_ws = self.connector.sockets[MEDIA_URL]
        text = "thank you all for joining, this release went better than any of us expected and "
        text += "the customers noticed"
        self.assertGreater(len(text), 100)

        media_ws.push({"msg_type": 17, "content": {"user_name": "Ada", "data": text}})

        await wait_until(lambda: session.last_label is not None)
        self.assertEqual([text], self.classifier.calls)
        self.assertEqual("gratitude", session.last_label)
        self.assertEqual(
            [ClassificationResult(SESSION_ID, STREAM_ID, text, "gratitude")],
            self.results,
        )

    async def test_short_fragments_accumulate(self) -> None:
        session = await self._start_streaming()
        media_ws = self.connector.sockets[MEDIA_URL]

        for word in ("so ", "far ", "so ", "good"):
            media_ws.push({"msg_type": 17, "content": {"data": word}})

        await wait_until(lambda: session.aggregator.text == "so far so good")
        self.assertEqual([], self.classifier.calls)
        self.assertEqual(14, session.snapshot()["buffered"])

    async def test_keep_alives_on_both_channels(self) -> None:
        await self._start_streaming()
        signaling_ws = self.connector.sockets[SIGNALING_URL]
        media_ws = self.connector.sockets[MEDIA_URL]

        signaling_ws.push({"msg_type": 12, "timestamp": 1727000000123})
        media_ws.push({"msg_type": 12, "timestamp": 1727000000456})

        await wait_until(lambda: bool(signaling_ws.messages_of(13)) and bool(media_ws.messages_of(13)))
        self.assertEqual([{"msg_type": 13, "timestamp": 1727000000123}], signaling_ws.messages_of(13))
        self.assertEqual([{"msg_type": 13, "timestamp": 1727000000456}], media_ws.messages_of(13))

    async def test_media_failure_degrades_session(self) -> None:
        session = await self._start_streaming()

        self.connector.sockets[MEDIA_URL].server_fail()

        await wait_until(lambda: session.state is SessionState.DEGRADED)
        self.assertEqual(ChannelState.FAILED, session.media.state)
        self.assertEqual(ChannelState.READY, session.signaling.state)
        self.assertFalse(self.connector.sockets[SIGNALING_URL].closed)
        self.assertIn(SESSION_ID, self.controller)

    async def test_signaling_closed_by_server_stops_session(self) -> None:
        session = await self._start_streaming()

        self.connector.sockets[SIGNALING_URL].server_close()

        await wait_until(lambda: session.finished)
        self.assertEqual(SessionState.STOPPED, session.state)
        self.assertIsNone(session.error)
        self.assertTrue(self.connector.sockets[MEDIA_URL].closed)
        self.assertNotIn(SESSION_ID, self.controller)

    async def test_failing_audio_sink_does_not_end_session(self) -> None:
        async def audio_sink(message) -> None:
            raise RuntimeError("sink broke")

        self.controller = SessionController(
            make_config(content_types=ContentType.AUDIO | ContentType.TRANSCRIPT),
            self.classifier,
            connector=self.connector,
            label_sink=self.results.append,
            audio_sink=audio_sink,
        )
        session = await self._start_streaming(media_url=MEDIA_ALL_URL)
        media_ws = self.connector.sockets[MEDIA_ALL_URL]

        media_ws.push({"msg_type": 14, "content": {"data": "AAECAw==", "timestamp": 1}})
        media_ws.push({"msg_type": 17, "content": {"data": "after the audio"}})

        await wait_until(lambda: session.aggregator.text == "after the audio")
        self.assertEqual(SessionState.STREAMING, session.state)
        self.assertIsNone(session.error)
        self.assertEqual(ChannelState.READY, session.signaling.state)
        self.assertEqual(ChannelState.ACTIVE, session.media.state)
        self.assertIs(session, self.controller.get(SESSION_ID))

    async def test_snapshot(self) -> None:
        session = await self._start_streaming()
        snapshot = session.snapshot()
        self.assertEqual(SESSION_ID, snapshot["session_id"])
        self.assertEqual("streaming", snapshot["state"])
        self.assertEqual("ready", snapshot["signaling"])
        self.assertEqual("active", snapshot["media"])
        self.assertEqual(MEDIA_URL, snapshot["media_url"])
        self.assertEqual(0, snapshot["classifying"])
        self.assertNotIn("test-secret", repr(snapshot))


class TestController(SessionTestCase):

    async def test_duplicate_start_rejected(self) -> None:
        session = await self._start_streaming()

        with self.assertRaises(DuplicateSessionError):
            await self.controller.start(SESSION_ID, "another-stream", "wss://elsewhere.example.test")

        self.assertIs(session, self.controller.get(SESSION_ID))
        self.assertEqual(SessionState.STREAMING, session.state)
        self.assertEqual([SIGNALING_URL, MEDIA_URL], self.connector.calls)
        self.assertEqual(1, len(self.controller))

    async def test_empty_arguments_rejected(self) -> None:
        with self.assertRaises(ValueError):
            await self.controller.start("", STREAM_ID, SIGNALING_URL)
        with self.assertRaises(ValueError):
            await self.controller.start(SESSION_ID, STREAM_ID, "")
        self.assertEqual([], self.connector.calls)

    async def test_stop_closes_both_channels(self) -> None:
        session = await self._start_streaming()

        self.assertTrue(await self.controller.stop(SESSION_ID))

        self.assertEqual(SessionState.STOPPED, session.state)
        self.assertEqual(ChannelState.CLOSED, session.signaling.state)
        self.assertEqual(ChannelState.CLOSED, session.media.state)
        self.assertTrue(self.connector.sockets[SIGNALING_URL].closed)
        self.assertTrue(self.connector.sockets[MEDIA_URL].closed)
        self.assertNotIn(SESSION_ID, self.controller)
        self.assertFalse(await self.controller.stop(SESSION_ID))

    async def test_stop_discards_in_flight_classification(self) -> None:
        gate = asyncio.Event()
        self.classifier.gate = gate
        session = await self._start_streaming()

        self.connector.sockets[MEDIA_URL].push({"msg_type": 17, "content": {"data": "x" * 150}})
        await wait_until(lambda: bool(self.classifier.calls))

        await self.controller.stop(SESSION_ID)
        gate.set()
        await session.aggregator.wait_idle()

        self.assertEqual([], self.results)
        self.assertIsNone(session.last_label)

    async def test_stop_unknown_session(self) -> None:
        self.assertFalse(await self.controller.stop("never-started"))

    async def test_restart_after_stop(self) -> None:
        first = await self._start_streaming()
        await self.controller.stop(SESSION_ID)

        second = await self.controller.start(SESSION_ID, STREAM_ID, SIGNALING_URL)

        self.assertIsNot(first, second)
        self.assertIs(second, self.controller.get(SESSION_ID))

    async def test_shutdown_stops_everything(self) -> None:
        first = await self.controller.start("session-a", "stream-a", "wss://a.example.test")
        second = await self.controller.start("session-b", "stream-b", "wss://b.example.test")

        await self.controller.shutdown()

        self.assertEqual(0, len(self.controller))
        self.assertEqual(SessionState.STOPPED, first.state)
        self.assertEqual(SessionState.STOPPED, second.state)
