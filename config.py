import os
from dotenv import load_dotenv
from pathlib import Path

load_dotenv()

# credentials
# Client id / secret of the streaming app; used to sign handshakes (HMAC-SHA256).
ZM_RTMS_CLIENT = os.getenv("ZM_RTMS_CLIENT", "")
ZM_RTMS_SECRET = os.getenv("ZM_RTMS_SECRET", "")
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY")

# logging config
LOG_LEVEL = os.getenv("LOG_LEVEL", "DEV").upper()

# file config
BASE_PATH = Path(__file__).parent
LOG_PATH = BASE_PATH / "log"
LOG_PATH.mkdir(exist_ok=True)

# webhook server
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8080"))

# Media subscription, comma separated names: audio, video, transcript.
# Classification only needs the transcript; add audio only if an audio sink is attached.
RTMS_MEDIA_TYPES = os.getenv("RTMS_MEDIA_TYPES", "transcript")

# Transcript batching before classification.
# The buffer is dispatched once its size is strictly greater than the threshold.
TRANSCRIPT_THRESHOLD = int(os.getenv("TRANSCRIPT_THRESHOLD", "200"))
TRANSCRIPT_THRESHOLD_UNIT = os.getenv("TRANSCRIPT_THRESHOLD_UNIT", "chars").lower()  # chars | words

# Protocol timing
# Provider does not answer a bad handshake in some cases, so we never wait forever.
# 0 disables the timeout.
HANDSHAKE_TIMEOUT_S = float(os.getenv("HANDSHAKE_TIMEOUT_S", "10"))
RTMS_OPEN_TIMEOUT_S = float(os.getenv("RTMS_OPEN_TIMEOUT_S", "15"))
# websocket level ping, independent of the provider's own keep-alive messages
WS_PING_INTERVAL_S = 10.0
WS_PING_TIMEOUT_S = 10.0

# Classifier
# https://ai.google.dev/gemini-api/docs/models
CLASSIFIER_MODEL_ID = os.getenv("CLASSIFIER_MODEL_ID", "gemini-2.5-flash")
