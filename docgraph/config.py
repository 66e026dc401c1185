"""Application configuration with sensible defaults."""
import os
from pathlib import Path


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# Paths
BASE_DIR = Path(__file__).parent.parent
DATA_DIR = Path(os.getenv("DOCGRAPH_DATA_DIR", str(BASE_DIR / "data")))
DOCS_DIR = Path(os.getenv("DOCGRAPH_DOCS_DIR", str(BASE_DIR / "docs")))

# Ensure data directory exists
DATA_DIR.mkdir(parents=True, exist_ok=True)

# Ollama configuration
OLLAMA_BASE_URL = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")
CHAT_MODEL = os.getenv("CHAT_MODEL", "gemma3:12b")
EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "mxbai-embed-large:latest")

# Chunking parameters (character-based to avoid tokenizer inconsistencies)
CHUNK_SIZE = int(os.getenv("CHUNK_SIZE", "1000"))
CHUNK_OVERLAP = int(os.getenv("CHUNK_OVERLAP", "200"))
MIN_CHUNK_SIZE = int(os.getenv("MIN_CHUNK_SIZE", "100"))
RESPECT_PARAGRAPHS = _env_bool("RESPECT_PARAGRAPHS", "true")

# Retrieval parameters
DEFAULT_MAX_RESULTS = int(os.getenv("DEFAULT_MAX_RESULTS", "10"))
MAX_RESULTS_LIMIT = int(os.getenv("MAX_RESULTS_LIMIT", "20"))
OVERFETCH_FACTOR = int(os.getenv("OVERFETCH_FACTOR", "3"))
MIN_RELEVANCE_SCORE = float(os.getenv("MIN_RELEVANCE_SCORE", "0.0"))
CONFIDENCE_SCALE = float(os.getenv("CONFIDENCE_SCALE", "1.2"))
RELATED_CONCEPT_HOPS = int(os.getenv("RELATED_CONCEPT_HOPS", "2"))
EXTRACT_CONCEPTS = _env_bool("EXTRACT_CONCEPTS", "true")
INDEX_CONCURRENCY = int(os.getenv("INDEX_CONCURRENCY", "4"))
MAX_CONTEXT_CHARS = int(os.getenv("MAX_CONTEXT_CHARS", "12000"))

# Promotion boosts applied to raw similarity scores
PROMOTION_BOOSTS = {
    "standard": 1.0,
    "promoted": 1.5,
    "pinned": 2.0,
}

# Resilience (seconds)
DEFAULT_TIMEOUT = float(os.getenv("DEFAULT_TIMEOUT", "30"))
EMBEDDING_TIMEOUT = float(os.getenv("EMBEDDING_TIMEOUT", "60"))
DATABASE_TIMEOUT = float(os.getenv("DATABASE_TIMEOUT", "15"))
GENERATION_TIMEOUT = float(os.getenv("GENERATION_TIMEOUT", "120"))
RETRY_MAX_ATTEMPTS = int(os.getenv("RETRY_MAX_ATTEMPTS", "3"))
RETRY_INITIAL_DELAY = float(os.getenv("RETRY_INITIAL_DELAY", "0.2"))
RETRY_MAX_DELAY = float(os.getenv("RETRY_MAX_DELAY", "5.0"))
RETRY_MULTIPLIER = float(os.getenv("RETRY_MULTIPLIER", "2.0"))
BREAKER_FAILURE_THRESHOLD = int(os.getenv("BREAKER_FAILURE_THRESHOLD", "5"))
BREAKER_RESET_TIMEOUT = float(os.getenv("BREAKER_RESET_TIMEOUT", "30"))

# Embedding cache
EMBEDDING_CACHE_ENABLED = _env_bool("EMBEDDING_CACHE_ENABLED", "true")
EMBEDDING_CACHE_MAX_ITEMS = int(os.getenv("EMBEDDING_CACHE_MAX_ITEMS", "10000"))
EMBEDDING_CACHE_TTL = float(os.getenv("EMBEDDING_CACHE_TTL", str(24 * 3600)))

# Storage
GRAPH_DB_PATH = DATA_DIR / "graph.sqlite"
VECTOR_INDEX_DIR = DATA_DIR

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_JSON = _env_bool("LOG_JSON", "true")
