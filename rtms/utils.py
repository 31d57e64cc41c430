from datetime import datetime
from logging import getLogger, basicConfig, DEBUG, INFO, FileHandler, Formatter, Filter
from pathlib import Path

from config import LOG_LEVEL, LOG_PATH


# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------

# Prefixes for project modules (DEBUG level in file)
PROJECT_PREFIXES = ("rtms.", "helpers.", "server", "__main__")

# Chatty 3rd party loggers, held at INFO
THIRD_PARTY_LOGGERS = ("websockets", "httpx", "httpcore", "uvicorn.access", "google", "asyncio")


class _ThirdPartyLogFilter(Filter):
    """Filter that only passes records from 3rd party modules at INFO+."""
    def filter(self, record):
        is_project = record.name.startswith(PROJECT_PREFIXES)
        if is_project:
            return True  # project code: pass all levels
        return record.levelno >= INFO  # 3rd party: INFO and above only


_LOG_FORMAT = "%(asctime)s %(levelname)s:%(name)s:%(funcName)s(): %(message)s"


def setup_logging() -> Path:
    """
    Configure logging for the server.

    Console: DEV mode = DEBUG, PROD mode = INFO (3rd party always INFO+).
    File: Always DEBUG for project code, INFO for 3rd party.

    Returns the path to the log file.
    """
    level = DEBUG if LOG_LEVEL == "DEV" else INFO
    basicConfig(level=DEBUG, format=_LOG_FORMAT)
    for handler in getLogger().handlers:
        handler.setLevel(level)  # console
    for name in THIRD_PARTY_LOGGERS:
        getLogger(name).setLevel(INFO)

    # File handler: DEBUG for project code, INFO for 3rd party
    log_filename = LOG_PATH / f"rtms_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"
    file_handler = FileHandler(log_filename, encoding="utf-8")
    file_handler.setLevel(DEBUG)
    file_handler.setFormatter(Formatter(_LOG_FORMAT))
    file_handler.addFilter(_ThirdPartyLogFilter())
    getLogger().addHandler(file_handler)

    getLogger(__name__).info("Logging to file: %s", log_filename)
    return log_filename
