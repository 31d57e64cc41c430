"""
Emotion classifier for live transcript batches, backed by Gemini.

Labels are the 27 emotion categories of the GoEmotions dataset, so any
consumer that already speaks GoEmotions sees a familiar vocabulary. The model is asked for JSON only and the label is validated
against that vocabulary; anything else raises and is logged by the
transcript aggregator.
"""
from __future__ import annotations

import asyncio
from json import loads, JSONDecodeError
from logging import getLogger
from time import time

from google import genai
from google.genai import types
from google.genai.errors import ServerError

from config import CLASSIFIER_MODEL_ID

logger = getLogger(__name__)

EMOTIONS = (
    "admiration",
    "amusement",
    "anger",
    "annoyance",
    "approval",
    "caring",
    "confusion",
    "curiosity",
    "desire",
    "disappointment",
    "disapproval",
    "disgust",
    "embarrassment",
    "excitement",
    "fear",
    "gratitude",
    "grief",
    "joy",
    "love",
    "nervousness",
    "optimism",
    "pride",
    "realization",
    "relief",
    "remorse",
    "sadness",
    "surprise",
)

_SYSTEM_PROMPT = f"""\
You classify the dominant emotion in a short excerpt of a live meeting transcript.
The excerpt may start or end mid-sentence and may contain recognition errors.

Pick exactly one label from this list:
{", ".join(EMOTIONS)}

Return JSON only, no markdown, using this exact schema:
{{"label": "<one label from the list>"}}
"""


class GeminiEmotionClassifier:
    """
    Classifier implementation (see rtms/classifier.py) using the Gemini API.

    Usage:
        classifier = GeminiEmotionClassifier(api_key=os.getenv("GEMINI_API_KEY"))
        label = await classifier.classify("thank you so much, that really helped")
        # label -> "gratitude"
    """

    def __init__(self, api_key: str, model_id: str = CLASSIFIER_MODEL_ID,
                 temperature: float = 0.0, max_retries: int = 2):
        if not api_key:
            raise RuntimeError("GEMINI_API_KEY is not set")

        self.model_id = model_id
        self.client = genai.Client(api_key=api_key)
        self.temperature = temperature
        self.max_retries = max_retries

    async def _call_gemini(self, text: str):
        """Run a single blocking Gemini API call in a thread pool."""
        return await asyncio.to_thread(
            self.client.models.generate_content,
            model=self.model_id,
            contents=text,
            config=types.GenerateContentConfig(
                system_instruction=_SYSTEM_PROMPT,
                temperature=self.temperature,
                response_mime_type="application/json",
            ),
        )

    async def classify(self, text: str) -> str:
        """
        Return the emotion label for text.

        Retries on transient overload (503) with linear backoff.

        Raises:
            ValueError: the model answered with something outside EMOTIONS.
            JSONDecodeError: the model did not answer with JSON.
            RuntimeError: still overloaded after all retries.
        """
        logger.debug("[CLASSIFIER] %s: classifying %d chars", self.model_id, len(text))
        start = time()

        resp = None
        for attempt in range(self.max_retries + 1):
            try:
                resp = await self._call_gemini(text)
                break
            except ServerError as e:
                if e.code == 503 and attempt < self.max_retries:
                    delay = 1.0 * (attempt + 1)
                    logger.warning(
                        "[CLASSIFIER] %s attempt %d/%d failed (code=%d), retrying in %.1fs: %s",
                        self.model_id, attempt + 1, self.max_retries + 1, e.code, delay, e.message
                    )
                    await asyncio.sleep(delay)
                    continue
                if e.code == 503:
                    raise RuntimeError(
                        f"{self.model_id}: server unavailable (503) after {self.max_retries + 1} attempts"
                    ) from None
                raise

        raw = (resp.text or "").strip()
        logger.debug("[CLASSIFIER] %s responded in %.1f s: %r", self.model_id, time() - start, raw[:200])
        try:
            data = loads(raw)
        except JSONDecodeError:
            logger.error("[CLASSIFIER] Failed to parse JSON from %s. raw_response=%r", self.model_id, raw)
            raise

        label = data.get("label") if isinstance(data, dict) else None
        label = label.strip().lower() if isinstance(label, str) else ""
        if label not in EMOTIONS:
            raise ValueError(f"{self.model_id} returned unknown label: {raw!r}")
        return label
