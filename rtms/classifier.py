"""
Classifier protocol: the interface a transcript classifier must implement.

The session hands batches of transcript text to a classifier once the
aggregation threshold is crossed. Any object with an async ``classify``
method fits (structural typing, no inheritance needed)::

    class MyClassifier:
        async def classify(self, text: str) -> str:
            return "joy"

Classifiers may fail; the aggregator catches and logs the error, the session
keeps streaming. The concrete Gemini based classifier lives in
``helpers/emotion_classifier.py``.

The classifier instance is shared by all sessions and must not keep
per-call mutable state.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class ClassificationResult:
    """
    Label produced for one dispatched transcript batch.

    Attributes:
        session_id: Session the text came from.
        stream_id: Stream the text came from.
        text: The exact batch handed to the classifier.
        label: Classifier output.
    """
    session_id: str
    stream_id: str
    text: str
    label: str


class Classifier(Protocol):
    async def classify(self, text: str) -> str: ...
