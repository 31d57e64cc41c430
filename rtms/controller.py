from __future__ import annotations

import asyncio
from logging import getLogger
from typing import Callable, Dict, List, Optional

from websockets import connect

from rtms.channel import Connector
from rtms.classifier import ClassificationResult, Classifier
from rtms.client_config import RtmsClientConfig
from rtms.errors import DuplicateSessionError
from rtms.media import AudioSink
from rtms.session import Session

logger = getLogger(__name__)


def log_label(result: ClassificationResult) -> None:
    logger.info("Sentiment result for session %s: %s", result.session_id, result.label)


class SessionController:
    """
    Registry of live stream sessions, keyed by session id.

    The webhook ingress calls ``start`` on ``session.rtms_started`` and
    ``stop`` on ``session.rtms_stopped``. A session that ends on its own
    (signaling failure or close) removes itself from the registry.
    The classifier is shared read-only by all sessions.
    """

    def __init__(
            self,
            config: RtmsClientConfig,
            classifier: Classifier,
            *,
            connector: Connector = connect,
            label_sink: Optional[Callable[[ClassificationResult], None]] = log_label,
            audio_sink: Optional[AudioSink] = None,
    ) -> None:
        self._config = config
        self._classifier = classifier
        self._connector = connector
        self._label_sink = label_sink
        self._audio_sink = audio_sink
        self._sessions: Dict[str, Session] = {}

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def sessions(self) -> List[Session]:
        return list(self._sessions.values())

    async def start(self, session_id: str, stream_id: str, signaling_url: str) -> Session:
        """
        Create and start a session.

        Raises:
            DuplicateSessionError: a session with this id is live; it is left untouched.
            ValueError: an argument is empty.
        """
        if not session_id or not stream_id or not signaling_url:
            raise ValueError("session_id, stream_id and signaling_url are required")

        if session_id in self._sessions:
            logger.warning("[SESSION] %s: start rejected, session already active", session_id)
            raise DuplicateSessionError(session_id)

        session = Session(
            session_id,
            stream_id,
            signaling_url,
            config=self._config,
            classifier=self._classifier,
            connector=self._connector,
            label_sink=self._label_sink,
            audio_sink=self._audio_sink,
            on_finished=self._on_session_finished,
        )
        self._sessions[session_id] = session
        session.start()
        return session

    async def stop(self, session_id: str) -> bool:
        """Stop a session. Returns False if no such session is live."""
        session = self._sessions.pop(session_id, None)
        if session is None:
            logger.info("[SESSION] %s: stop for unknown session ignored", session_id)
            return False
        await session.stop()
        return True

    async def shutdown(self) -> None:
        session_ids = list(self._sessions)
        if session_ids:
            logger.info("Stopping %d session(s)", len(session_ids))
            await asyncio.gather(*(self.stop(session_id) for session_id in session_ids))

    def _on_session_finished(self, session: Session) -> None:
        if self._sessions.get(session.session_id) is session:
            del self._sessions[session.session_id]
            logger.info("[SESSION] %s: removed from registry (%s)", session.session_id, session.state.value)
