from __future__ import annotations

import asyncio
from logging import getLogger
from typing import Callable, Optional, Set

from rtms.classifier import ClassificationResult, Classifier

logger = getLogger(__name__)

ResultSink = Callable[[ClassificationResult], None]


class TranscriptAggregator:
    """
    Per-session transcript buffer with threshold dispatch to a classifier.

    Fragments are concatenated exactly as received, in arrival order. When
    the buffer size (chars or words) becomes strictly greater than the
    threshold, the buffer is swapped for an empty one and the old contents
    go to the classifier in a separate task. Text appended while classification runs lands in the new buffer,
    so nothing is lost or classified twice.

    Classifier errors are logged and dropped. After ``close()`` in-flight
    classifications may finish, but their results are discarded.
    """

    def __init__(
            self,
            classifier: Classifier,
            *,
            threshold: int,
            unit: str = "chars",
            session_id: str = "",
            stream_id: str = "",
            on_result: Optional[ResultSink] = None,
    ) -> None:
        if threshold <= 0:
            raise ValueError(f"threshold must be positive, got {threshold}")
        if unit not in ("chars", "words"):
            raise ValueError(f"unit must be 'chars' or 'words', got {unit!r}")
        self._classifier = classifier
        self._threshold = threshold
        self._unit = unit
        self._session_id = session_id
        self._stream_id = stream_id
        self._on_result = on_result
        self._buffer = ""
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False
        self.dispatch_count = 0

    @property
    def text(self) -> str:
        return self._buffer

    @property
    def size(self) -> int:
        return self._measure(self._buffer)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def _measure(self, text: str) -> int:
        if self._unit == "words":
            return len(text.split())
        return len(text)

    def append(self, text: str) -> Optional[asyncio.Task]:
        """
        Add a fragment; returns the classification task if this append crossed the threshold.
        Must be called from a running event loop.
        """
        if self._closed:
            logger.debug("[AGGREGATOR] %s: closed, dropping fragment", self._session_id)
            return None
        if not text:
            return None

        self._buffer += text
        if self._measure(self._buffer) > self._threshold:
            return self._dispatch()
        return None

    def _dispatch(self) -> asyncio.Task:
        # swap before the classifier ever runs: later appends go to the fresh buffer
        batch, self._buffer = self._buffer, ""
        self.dispatch_count += 1
        logger.debug("[AGGREGATOR] %s: dispatching %d %s to classifier",
                     self._session_id, self._measure(batch), self._unit)
        task = asyncio.create_task(self._classify(batch), name=f"rtms-classify-{self._session_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _classify(self, batch: str) -> Optional[ClassificationResult]:
        try:
            label = await self._classifier.classify(batch)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("[AGGREGATOR] %s: classifier failed: %r", self._session_id, e)
            return None

        if self._closed:
            logger.debug("[AGGREGATOR] %s: session gone, discarding label %r", self._session_id, label)
            return None

        result = ClassificationResult(
            session_id=self._session_id,
            stream_id=self._stream_id,
            text=batch,
            label=label,
        )
        logger.info("[AGGREGATOR] %s: sentiment result: %s", self._session_id, label)
        if self._on_result is not None:
            try:
                self._on_result(result)
            except Exception as e:
                logger.exception("[AGGREGATOR] %s: result sink failed: %r", self._session_id, e)
        return result

    async def wait_idle(self) -> None:
        """Wait for every classification dispatched so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def close(self) -> None:
        """Stop accepting text. Running classifications finish, their results are dropped."""
        if not self._closed:
            self._closed = True
            if self._buffer:
                logger.debug("[AGGREGATOR] %s: discarding %d unclassified %s",
                             self._session_id, self.size, self._unit)
            self._buffer = ""
