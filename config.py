"""config.py — Runtime settings, overridable from the environment or a .env file."""

import os

from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    raw = os.getenv(name)
    if raw is None:
        return int(default)
    try:
        value = int(raw)
    except ValueError:
        return int(default)
    return max(minimum, value)


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None:
        return float(default)
    try:
        value = float(raw)
    except ValueError:
        return float(default)
    return max(float(minimum), value)


# Characters per ContentLayer before the chunker starts a new one
MAX_LAYER_LENGTH = _env_int("SCROLLBOOK_MAX_LAYER_LENGTH", 15000)

# Chapters kept resident by the ChapterCache
CACHE_CAPACITY = _env_int("SCROLLBOOK_CACHE_SIZE", 5)

# Seconds a prefetch batch waits before it starts loading
PREFETCH_DELAY = _env_float("SCROLLBOOK_PREFETCH_DELAY", 0.1)

# Tried when a plain-text file is not valid UTF-8
LEGACY_ENCODING = os.getenv("SCROLLBOOK_LEGACY_ENCODING", "gb18030").strip() or "gb18030"

LOG_LEVEL = os.getenv("SCROLLBOOK_LOG_LEVEL", "WARNING").strip().upper() or "WARNING"
