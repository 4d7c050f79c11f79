"""
CONFIGURATION MODULE
====================

PURPOSE:
  Central place for all server settings: API keys, model names, paths, session
  limits, rate limits and the default system prompt. Every value can be
  overridden from the environment or a .env file next to this module.

WHAT THIS FILE DOES:
  - Loads environment variables from .env (so API keys stay out of code).
  - Defines the vector store directory and creates it if it doesn't exist.
  - Exposes GROQ_API_KEYS and GROQ_MODEL for the completion service.
  - Defines chunk size/overlap and the retrieval threshold for the knowledge base.
  - Defines session history, expiry and capacity limits.
  - Defines per-route rate limits and the bucket cache bounds.
  - Holds the default system prompt that seeds every new session.

USAGE:
  Import what you need: `from config import GROQ_API_KEYS, MAX_HISTORY, SYSTEM_PROMPT`
  Only ragchat.main reads this module; services receive plain values when they
  are constructed, so tests never depend on the environment.
"""

import os
import logging
from pathlib import Path
from dotenv import load_dotenv


# -----------------------------------------------------------------------------
# LOGGING
# -----------------------------------------------------------------------------
logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# ENVIRONMENT
# -----------------------------------------------------------------------------
# Load environment variables from .env file (if it exists).
load_dotenv()


def _env_int(name: str, default: int) -> int:
    """Read an integer from the environment; fall back to default on a bad value."""
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid integer for %s=%r, using default %s", name, raw, default)
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Invalid number for %s=%r, using default %s", name, raw, default)
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


# -----------------------------------------------------------------------------
# BASE PATH
# -----------------------------------------------------------------------------
BASE_DIR = Path(__file__).parent

# ============================================================================
# DATABASE PATHS
# ============================================================================
# vector_store: FAISS index files holding the knowledge base segments.
# Sessions and rate-limit buckets are process-local and never written to disk.

VECTOR_STORE_DIR = Path(os.getenv("VECTOR_STORE_DIR", str(BASE_DIR / "database" / "vector_store")))
VECTOR_STORE_DIR.mkdir(parents=True, exist_ok=True)

# ============================================================================
# GROQ API CONFIGURATION
# ============================================================================
# Groq is the LLM provider used for completions (plain and streaming).
# You can set one key (GROQ_API_KEY) or several: GROQ_API_KEY, GROQ_API_KEY_2,
# GROQ_API_KEY_3, ... Keys are used round-robin; a failing key falls through
# to the next one.


def _load_groq_api_keys() -> list:
    """
    Load all GROQ API keys from the environment.
    Reads GROQ_API_KEY first, then GROQ_API_KEY_2, GROQ_API_KEY_3, ... until
    a number has no value. Returns a list of non-empty key strings.
    """
    keys = []
    first = os.getenv("GROQ_API_KEY", "").strip()
    if first:
        keys.append(first)
    i = 2
    while True:
        k = os.getenv(f"GROQ_API_KEY_{i}", "").strip()
        if not k:
            break
        keys.append(k)
        i += 1
    return keys


GROQ_API_KEYS = _load_groq_api_keys()
GROQ_MODEL = os.getenv("GROQ_MODEL", "llama-3.3-70b-versatile")

# ============================================================================
# KNOWLEDGE BASE / EMBEDDING CONFIGURATION
# ============================================================================
# Embeddings run locally with a sentence-transformers model (no API key).
# CHUNK_SIZE / CHUNK_OVERLAP: characters per segment and overlap between segments.
# RAG_MIN_SCORE: minimum relevance (0-1) for a segment to be injected into a prompt.
# RAG_MAX_RESULTS: how many segments are injected at most.

EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "sentence-transformers/all-MiniLM-L6-v2")
CHUNK_SIZE = _env_int("CHUNK_SIZE", 500)
CHUNK_OVERLAP = _env_int("CHUNK_OVERLAP", 50)
RAG_MIN_SCORE = _env_float("RAG_MIN_SCORE", 0.3)
RAG_MAX_RESULTS = _env_int("RAG_MAX_RESULTS", 3)

# ============================================================================
# SESSION CONFIGURATION
# ============================================================================
# MAX_HISTORY: messages kept per session, system prompt included.
# SESSION_EXPIRE_MINUTES: idle time after which a session is evicted.
# SESSION_CLEANUP_INTERVAL_MINUTES: how often the background sweep runs.
# MAX_SESSIONS: cap on live sessions; the least recently used go first.

MAX_HISTORY = _env_int("MAX_HISTORY", 20)
SESSION_EXPIRE_MINUTES = _env_int("SESSION_EXPIRE_MINUTES", 30)
SESSION_CLEANUP_INTERVAL_MINUTES = _env_int("SESSION_CLEANUP_INTERVAL_MINUTES", 5)
MAX_SESSIONS = _env_int("MAX_SESSIONS", 1000)
DEFAULT_SESSION_ID = os.getenv("DEFAULT_SESSION_ID", "default-session")

# Maximum length (characters) for a single user message.
MAX_MESSAGE_LENGTH = 32_000

# ============================================================================
# RATE LIMIT CONFIGURATION
# ============================================================================
# Token buckets per (route, client ip). Chat routes are expensive, so they get
# their own limits. Buckets idle for RATE_LIMIT_IDLE_MINUTES are dropped and
# at most RATE_LIMIT_MAX_BUCKETS are kept in memory.

RATE_LIMIT_ENABLED = _env_bool("RATE_LIMIT_ENABLED", True)
CHAT_REQUESTS_PER_MINUTE = _env_int("CHAT_REQUESTS_PER_MINUTE", 30)
STREAM_REQUESTS_PER_MINUTE = _env_int("STREAM_REQUESTS_PER_MINUTE", 20)
KNOWLEDGE_REQUESTS_PER_MINUTE = _env_int("KNOWLEDGE_REQUESTS_PER_MINUTE", 30)
RATE_LIMIT_IDLE_MINUTES = _env_int("RATE_LIMIT_IDLE_MINUTES", 10)
RATE_LIMIT_MAX_BUCKETS = _env_int("RATE_LIMIT_MAX_BUCKETS", 10_000)

# ============================================================================
# ASSISTANT PERSONALITY CONFIGURATION
# ============================================================================
# The system prompt is the first message of every session and is never trimmed.
# Set SYSTEM_PROMPT in .env to replace it entirely, or ASSISTANT_NAME to rename
# the assistant in the default prompt.

ASSISTANT_NAME = (os.getenv("ASSISTANT_NAME", "").strip() or "Assistant")

_SYSTEM_PROMPT_BASE = """You are {assistant_name}, a friendly and professional AI assistant who helps users with all kinds of questions.

Guidelines:
- Be helpful, accurate and concise.
- When reference material is provided with a question, base your answer on it first.
- If the reference material does not cover the question, answer from your own knowledge and say so.
- Never invent references or sources.
"""

SYSTEM_PROMPT = (
    os.getenv("SYSTEM_PROMPT", "").strip()
    or _SYSTEM_PROMPT_BASE.format(assistant_name=ASSISTANT_NAME)
)
