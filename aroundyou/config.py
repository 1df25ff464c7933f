"""
Runtime configuration.

Values are read once from the environment (a local ``.env`` file is loaded
first) and exposed as module constants. See ``.env.example`` for the full list.
"""

import os

from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


def _get_int(name: str, default: int) -> int:
    return int(_get_float(name, float(default)))


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# Model provider
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "https://openrouter.ai/api/v1")
CHAT_MODEL = os.getenv("CHAT_MODEL", "openai/gpt-4o")
INTENT_MODEL = os.getenv("INTENT_MODEL", "openai/gpt-4o-mini")
EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "openai/text-embedding-3-small")

# Model behaviour
CHAT_TEMPERATURE = _get_float("CHAT_TEMPERATURE", 0.7)
CHAT_MAX_TOKENS = _get_int("CHAT_MAX_TOKENS", 2000)
INTENT_TEMPERATURE = _get_float("INTENT_TEMPERATURE", 0.3)
INTENT_MAX_TOKENS = _get_int("INTENT_MAX_TOKENS", 500)

# Every external call is bounded by one of these
MODEL_TIMEOUT_SECONDS = _get_float("MODEL_TIMEOUT_SECONDS", 60.0)
COLLABORATOR_TIMEOUT_SECONDS = _get_float("COLLABORATOR_TIMEOUT_SECONDS", 15.0)

# Search
MIN_SIMILARITY = _get_float("MIN_SIMILARITY", 0.5)

# Shopper location used by the CLI
USER_LATITUDE = _get_float("USER_LATITUDE", 31.5204)
USER_LONGITUDE = _get_float("USER_LONGITUDE", 74.3587)

# Storage
DATABASE_PATH = os.getenv("DATABASE_PATH", "./db/aroundyou.db")
VECTOR_STORE_PATH = os.getenv("VECTOR_STORE_PATH", "./vector_store")
CATALOG_PATH = os.getenv("CATALOG_PATH", "./data/catalog.json")

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_JSON = _get_bool("LOG_JSON", False)
