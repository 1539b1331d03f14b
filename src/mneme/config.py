"""mneme configuration."""

from __future__ import annotations

import os
from datetime import timedelta
from pathlib import Path

from pydantic import BaseModel, Field


def _default_data_dir() -> Path:
    return Path(os.environ.get("MNEME_DATA_DIR", Path.cwd() / "data"))


def _env_flag(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class ExtractionConfig(BaseModel):
    min_confidence: float = 0.6
    extract_entities: bool = True
    extract_relationships: bool = True
    extract_memories: bool = True
    extract_times: bool = True
    background_workers: int = 4
    background_timeout: float = 30.0


class VectorConfig(BaseModel):
    enabled: bool = Field(default_factory=lambda: _env_flag("MNEME_VECTOR_ENABLED", True))
    provider: str = Field(default_factory=lambda: os.environ.get("MNEME_EMBED_PROVIDER", "local"))
    model: str = Field(default_factory=lambda: os.environ.get("MNEME_EMBED_MODEL", ""))
    dimension: int = 384
    openai_api_key: str = Field(default_factory=lambda: os.environ.get("OPENAI_API_KEY", ""))
    openai_base_url: str = "https://api.openai.com/v1"
    ollama_host: str = Field(
        default_factory=lambda: os.environ.get("OLLAMA_HOST", "http://localhost:11434")
    )
    timeout: float = 30.0
    max_scan: int = 1000
    min_similarity: float = 0.5


class SearchConfig(BaseModel):
    default_limit: int = 10
    polish_answers: bool = False


class CompressionConfig(BaseModel):
    compress_after: timedelta = timedelta(days=90)
    delete_after: timedelta = timedelta(days=365)
    min_importance_to_keep: int = 3
    max_memories_per_batch: int = 100
    enable_compression: bool = True
    enable_deletion: bool = True
    schedule_interval: timedelta = timedelta(hours=24)


class ChatConfig(BaseModel):
    provider: str = Field(default_factory=lambda: os.environ.get("MNEME_CHAT_PROVIDER", ""))
    model: str = Field(default_factory=lambda: os.environ.get("MNEME_CHAT_MODEL", ""))
    timeout: float = 60.0
    temperature: float = 0.2
    max_tokens: int = 512


class APIConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8430
    bearer_token: str = Field(default_factory=lambda: os.environ.get("MNEME_API_TOKEN", ""))
    default_user: str = Field(default_factory=lambda: os.environ.get("MNEME_DEFAULT_USER", ""))


class LoggingConfig(BaseModel):
    level: str = Field(default_factory=lambda: os.environ.get("MNEME_LOG_LEVEL", "INFO"))
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class Config(BaseModel):
    data_dir: Path = Field(default_factory=_default_data_dir)
    extraction: ExtractionConfig = Field(default_factory=ExtractionConfig)
    vector: VectorConfig = Field(default_factory=VectorConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    compression: CompressionConfig = Field(default_factory=CompressionConfig)
    chat: ChatConfig = Field(default_factory=ChatConfig)
    api: APIConfig = Field(default_factory=APIConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def db_path(self) -> Path:
        return self.data_dir / "db" / "mneme.db"

    def ensure_dirs(self) -> None:
        for d in [self.data_dir, self.db_path.parent]:
            d.mkdir(parents=True, exist_ok=True)
