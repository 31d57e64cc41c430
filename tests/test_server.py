"""
Tests for the webhook endpoints, with the session controller stubbed out.

    pytest tests/test_server.py -v
"""
from __future__ import annotations

import unittest
from typing import Any, Dict, List, Tuple

from fastapi.testclient import TestClient

from rtms.errors import DuplicateSessionError
from server import EVENT_RTMS_STARTED, EVENT_RTMS_STOPPED, create_app


class _SnapshotOnly:
    def __init__(self, session_id: str) -> None:
        self.session_id = session_id

    def snapshot(self) -> Dict[str, Any]:
        return {"session_id": self.session_id, "state": "streaming"}


class StubController:
    def __init__(self) -> None:
        self.started: List[Tuple[str, str, str]] = []
        self.stopped: List[str] = []
        self.live = set()
        self.shutdown_called = False

    async def start(self, session_id: str, stream_id: str, signaling_url: str) -> None:
        if session_id in self.live:
            raise DuplicateSessionError(session_id)
        self.live.add(session_id)
        self.started.append((session_id, stream_id, signaling_url))

    async def stop(self, session_id: str) -> bool:
        self.stopped.append(session_id)
        if session_id not in self.live:
            return False
        self.live.discard(session_id)
        return True

    async def shutdown(self) -> None:
        self.shutdown_called = True

    def sessions(self) -> List[_SnapshotOnly]:
        return [_SnapshotOnly(session_id) for session_id in sorted(self.live)]


def _started(**overrides: Any) -> Dict[str, Any]:
    payload = {
        "session_id": "sess-1",
        "rtms_stream_id": "stream-1",
        "server_urls": "wss://signaling.example.test/rtms",
    }
    payload.update(overrides)
    return {"event": EVENT_RTMS_STARTED, "payload": payload}


class TestWebhook(unittest.TestCase):

    def setUp(self) -> None:
        self.controller = StubController()
        self.client = TestClient(create_app(self.controller))

    def test_index(self) -> None:
        response = self.client.get("/")
        self.assertEqual(200, response.status_code)
        self.assertEqual("RTMS sample server running.", response.text)

    def test_started(self) -> None:
        response = self.client.post("/webhook", json=_started())
        self.assertEqual(200, response.status_code)
        self.assertEqual({"status": "started"}, response.json())
        self.assertEqual([("sess-1", "stream-1", "wss://signaling.example.test/rtms")], self.controller.started)

    def test_started_with_missing_fields(self) -> None:
        for field in ("session_id", "rtms_stream_id", "server_urls"):
            with self.subTest(field=field):
                response = self.client.post("/webhook", json=_started(**{field: None}))
                self.assertEqual(400, response.status_code)
        response = self.client.post("/webhook", json=_started(server_urls=""))
        self.assertEqual(400, response.status_code)
        self.assertEqual([], self.controller.started)

    def test_duplicate_start_conflicts(self) -> None:
        self.assertEqual(200, self.client.post("/webhook", json=_started()).status_code)
        response = self.client.post("/webhook", json=_started(rtms_stream_id="stream-2"))
        self.assertEqual(409, response.status_code)
        self.assertIn("sess-1", response.json()["detail"])
        self.assertEqual(1, len(self.controller.started))

    def test_stopped(self) -> None:
        self.client.post("/webhook", json=_started())
        stop = {"event": EVENT_RTMS_STOPPED, "payload": {"session_id": "sess-1"}}

        self.assertEqual({"status": "stopped"}, self.client.post("/webhook", json=stop).json())
        self.assertEqual({"status": "not_found"}, self.client.post("/webhook", json=stop).json())
        self.assertEqual(["sess-1", "sess-1"], self.controller.stopped)

    def test_stopped_without_session_id(self) -> None:
        response = self.client.post("/webhook", json={"event": EVENT_RTMS_STOPPED, "payload": {}})
        self.assertEqual(400, response.status_code)

    def test_other_events_ignored(self) -> None:
        response = self.client.post("/webhook", json={"event": "endpoint.url_validation", "payload": {"x": 1}})
        self.assertEqual({"status": "ignored"}, response.json())
        response = self.client.post("/webhook", json={"event": "meeting.started"})
        self.assertEqual({"status": "ignored"}, response.json())
        self.assertEqual([], self.controller.started)

    def test_invalid_body(self) -> None:
        response = self.client.post("/webhook", json={"payload": {}})
        self.assertEqual(422, response.status_code)

    def test_sessions(self) -> None:
        self.client.post("/webhook", json=_started())
        response = self.client.get("/sessions")
        self.assertEqual([{"session_id": "sess-1", "state": "streaming"}], response.json())

    def test_shutdown_stops_controller(self) -> None:
        with TestClient(create_app(self.controller)) as client:
            client.get("/")
            self.assertFalse(self.controller.shutdown_called)
        self.assertTrue(self.controller.shutdown_called)
