"""
Configuration Management for LedgerLens

Loads configuration from ~/.ledgerlens/config.json and environment variables.
"""

import os
import json
import logging
from pathlib import Path
from dataclasses import dataclass, field
from typing import Optional

logger = logging.getLogger("ledgerlens.common.config")

# Default config paths
CONFIG_DIR = Path.home() / ".ledgerlens"
CONFIG_PATH = CONFIG_DIR / "config.json"


@dataclass
class EmbeddingConfig:
    """Embedding model configuration"""
    mode: str = "google"  # "google" (Gemini API) or "femb" (fastembed, on-device)
    model: str = "models/embedding-001"
    dimension: int = 768
    batch_size: int = 20
    concurrency: int = 15
    max_retries: int = 5
    retry_delay: float = 2.0
    batch_delay: float = 1.5


@dataclass
class IndexConfig:
    """Vector index configuration"""
    backend: str = "atlas"  # "atlas" or "memory"
    mongo_url: str = ""
    database: str = "ledgerlens"
    collection: str = "atlascells"
    index_name: str = "vector_index"
    embedding_path: str = "embedding"
    records_path: str = ""  # JSON records for the memory backend


@dataclass
class LLMConfig:
    """LLM provider configuration"""
    provider: str = "google"
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-sonnet-4-20250514"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    google_api_key: str = ""
    google_model: str = "gemini-2.5-flash"
    temperature: float = 0.3
    max_tokens: int = 2000


@dataclass
class RetrievalConfig:
    """Vector retrieval cascade configuration"""
    top_k: int = 50
    candidate_multiplier: int = 5
    pure_num_candidates: int = 1000
    minimal_num_candidates: int = 100
    minimal_limit: int = 50
    synthetic_score_step: float = 0.01
    timeout: Optional[float] = None  # seconds; no bound unless set


@dataclass
class RankingConfig:
    """Re-ranking boost weights"""
    metric_boost: float = 0.3
    dimension_boost: float = 0.2
    year_boost: float = 0.2
    quarter_boost: float = 0.15
    month_boost: float = 0.10
    result_limit: int = 10
    min_score: Optional[float] = None  # no floor unless set


@dataclass
class SynthesisConfig:
    """Answer synthesis configuration"""
    timeout: float = 30.0
    max_context_rows: int = 200


@dataclass
class ServerConfig:
    """Search API server configuration"""
    host: str = "0.0.0.0"
    port: int = 8090


@dataclass
class LedgerLensConfig:
    """Main LedgerLens configuration"""
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    index: IndexConfig = field(default_factory=IndexConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    ranking: RankingConfig = field(default_factory=RankingConfig)
    synthesis: SynthesisConfig = field(default_factory=SynthesisConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    dictionary_path: str = ""
    _env_sourced_keys: set = field(default_factory=set, repr=False)


def _parse_section(data: dict, name: str, cls):
    """Build a section dataclass from the matching dict, ignoring unknown keys"""
    section = data.get(name, {}) or {}
    defaults = cls()
    kwargs = {}
    for key in defaults.__dataclass_fields__:
        if key in section:
            default, value = getattr(defaults, key), section[key]
            # Optional fields (default None) are numeric thresholds
            if default is None:
                kwargs[key] = None if value is None else float(value)
            else:
                kwargs[key] = type(default)(value)
    return cls(**kwargs)


def _parse_index_config(data: dict) -> IndexConfig:
    """Parse index section, accepting the legacy "mongo" section name"""
    if "index" not in data and "mongo" in data:
        mongo = data["mongo"]
        return IndexConfig(
            mongo_url=mongo.get("url", ""),
            database=mongo.get("database", "ledgerlens"),
            collection=mongo.get("collection", "atlascells"),
        )
    return _parse_section(data, "index", IndexConfig)


def load_config() -> LedgerLensConfig:
    """
    Load configuration from file and environment variables.

    Priority (highest to lowest):
    1. Environment variables
    2. Config file (~/.ledgerlens/config.json)
    3. Default values
    """
    config = LedgerLensConfig()

    if CONFIG_PATH.exists():
        try:
            with open(CONFIG_PATH) as f:
                data = json.load(f)

            config.embedding = _parse_section(data, "embedding", EmbeddingConfig)
            config.index = _parse_index_config(data)
            config.llm = _parse_section(data, "llm", LLMConfig)
            config.retrieval = _parse_section(data, "retrieval", RetrievalConfig)
            config.ranking = _parse_section(data, "ranking", RankingConfig)
            config.synthesis = _parse_section(data, "synthesis", SynthesisConfig)
            config.server = _parse_section(data, "server", ServerConfig)
            config.dictionary_path = data.get("dictionary_path", "")
        except (json.JSONDecodeError, IOError, TypeError, ValueError) as e:
            logger.warning("Failed to load config file %s: %s", CONFIG_PATH, e)

    if os.getenv("EMBEDDING_MODE"):
        config.embedding.mode = os.getenv("EMBEDDING_MODE")
    if os.getenv("EMBEDDING_MODEL"):
        config.embedding.model = os.getenv("EMBEDDING_MODEL")

    if os.getenv("MONGO_DB_URL"):
        config.index.mongo_url = os.getenv("MONGO_DB_URL")
        config._env_sourced_keys.add("mongo_url")
    if os.getenv("LEDGERLENS_INDEX_BACKEND"):
        config.index.backend = os.getenv("LEDGERLENS_INDEX_BACKEND")

    if os.getenv("LEDGERLENS_PORT"):
        config.server.port = int(os.getenv("LEDGERLENS_PORT"))
    if os.getenv("LEDGERLENS_SYNTHESIS_TIMEOUT"):
        config.synthesis.timeout = float(os.getenv("LEDGERLENS_SYNTHESIS_TIMEOUT"))

    # LLM env var overrides (track env-sourced keys so they are never saved)
    _env_llm_map = {
        "ANTHROPIC_API_KEY": "anthropic_api_key",
        "ANTHROPIC_MODEL": "anthropic_model",
        "OPENAI_API_KEY": "openai_api_key",
        "OPENAI_MODEL": "openai_model",
        "GOOGLE_API_KEY": "google_api_key",
        "GEMINI_API_KEY": "google_api_key",
        "GOOGLE_MODEL": "google_model",
        "LEDGERLENS_LLM_PROVIDER": "provider",
    }
    for env_var, attr in _env_llm_map.items():
        val = os.getenv(env_var)
        if val:
            setattr(config.llm, attr, val)
            config._env_sourced_keys.add(attr)

    return config


def save_config(config: LedgerLensConfig) -> None:
    """Save configuration to file.

    Secrets that were sourced from environment variables are written
    as empty strings so that they are not persisted to disk.
    """
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)

    env_sourced = getattr(config, "_env_sourced_keys", set())

    llm_section = dict(vars(config.llm))
    for key in ("anthropic_api_key", "openai_api_key", "google_api_key"):
        if key in env_sourced:
            llm_section[key] = ""

    index_section = dict(vars(config.index))
    if "mongo_url" in env_sourced:
        index_section["mongo_url"] = ""

    data = {
        "embedding": dict(vars(config.embedding)),
        "index": index_section,
        "llm": llm_section,
        "retrieval": dict(vars(config.retrieval)),
        "ranking": dict(vars(config.ranking)),
        "synthesis": dict(vars(config.synthesis)),
        "server": dict(vars(config.server)),
        "dictionary_path": config.dictionary_path,
    }

    with open(CONFIG_PATH, "w") as f:
        json.dump(data, f, indent=2)

    # Set secure permissions
    CONFIG_PATH.chmod(0o600)
