# /docchat/config.py
"""
Centralized configuration for the DocChat service.
Includes model names, paths, retrieval/streaming tuning and auth settings.
"""
import functools
import os
from pathlib import Path
from dotenv import load_dotenv
from rich.console import Console
from .observability import configure_logging, get_logger

# ==============================================================================
# CONSOLE & ENVIRONMENT
# ==============================================================================
console = Console()
load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return bool(default)
    return str(raw).strip().lower() in {"1", "true", "yes", "on"}


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


def _env_list(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "")
    return tuple(item.strip() for item in raw.split(",") if item.strip())


# ==============================================================================
# DEVICE DETECTION
# ==============================================================================
def _load_torch():
    try:
        import torch  # Imported lazily; only the embedding model needs it.
        return torch
    except ImportError:
        return None


@functools.cache
def detect_device() -> str:
    """Picks the device for the local embedding model on first access only."""
    torch = _load_torch()
    if torch is not None and torch.cuda.is_available():
        get_logger(__name__).info("embedding_device_selected", device="cuda", name=torch.cuda.get_device_name(0))
        return "cuda"
    get_logger(__name__).info("embedding_device_selected", device="cpu")
    return "cpu"


@functools.cache
def get_model_kwargs() -> dict[str, str]:
    return {'device': detect_device()}


# ==============================================================================
# GLOBAL CONFIGURATION
# ==============================================================================
# --- Language Model ---
USE_API_LLM = _env_bool("USE_API_LLM", True)              # True for Groq API, False for local Ollama
API_MODEL_NAME = os.getenv("API_MODEL_NAME", "mixtral-8x7b-32768")
LOCAL_MODEL_NAME = os.getenv("LOCAL_MODEL_NAME", "mistral")
LLM_TEMPERATURE = _env_float("LLM_TEMPERATURE", 0.0, minimum=0.0)
LLM_MAX_TOKENS = _env_int("LLM_MAX_TOKENS", 1200, minimum=16)
# Request timeout for the model client; 0 leaves the client default in place.
LLM_TIMEOUT_S = _env_float("LLM_TIMEOUT_S", 60.0, minimum=0.0)

# --- Embeddings / Vector Index ---
EMBEDDING_MODEL_NAME = os.getenv("EMBEDDING_MODEL_NAME", "sentence-transformers/all-MiniLM-L6-v2")

_BASE_DIR = Path(__file__).resolve().parent.parent.parent
_DATA_DIR = _BASE_DIR / "data"

DB_PATH = os.getenv("DB_PATH", str(_DATA_DIR / "vector_store_db"))
RUNTIME_DIR = Path(os.getenv("RUNTIME_DIR", str(_DATA_DIR / "runtime")))

# --- Retrieval / Sources ---
RETRIEVER_K = _env_int("RETRIEVER_K", 4, minimum=1)
EXCERPT_CHARS = 50

# --- Streaming Tuning ---
# 0 means an unbounded fragment queue between the model and the transport.
STREAM_QUEUE_MAXSIZE = _env_int("STREAM_QUEUE_MAXSIZE", 0, minimum=0)

# --- Auth ---
AUTH_REQUIRED = _env_bool("AUTH_REQUIRED", True)
CHAT_API_KEYS = _env_list("CHAT_API_KEYS")

# --- Logging / Metrics ---
LOG_PATH = Path(os.getenv("LOG_PATH", str(RUNTIME_DIR / "app.log")))
METRICS_DIR = Path(os.getenv("METRICS_DIR", str(RUNTIME_DIR / "logs")))
LOG_PATH.parent.mkdir(parents=True, exist_ok=True)
configure_logging(LOG_PATH)

# --- Dependency Availability Flags ---
try:
    import langchain_groq
    GROQ_API_AVAILABLE = True
except ImportError:
    GROQ_API_AVAILABLE = False
