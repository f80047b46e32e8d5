"""Service configuration using environment variables.

The settings defined here control the indexing engine and the HTTP
service wrapped around it.  Defaults are provided for all options so
that the service can start without a .env file, but any value can be
overridden by setting ``DOCINDEX_``-prefixed environment variables.

Engine components never read the module-level ``settings`` directly;
they receive a ``Settings`` instance when constructed.  The module-level
instance exists for the HTTP application only.
"""

from __future__ import annotations

from typing import List, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_prefix="DOCINDEX_", extra="ignore")

    # Vector store
    vector_store_uri: str = "/data/vector_store"
    artifacts_collection: str = "artifacts"

    # Embedding provider
    embed_provider: Literal["openai", "ollama"] = "openai"
    embed_base_url: str = "https://api.openai.com/v1"
    embed_api_key: str = ""
    embed_model: str = "text-embedding-3-large"
    embed_dim: int = Field(3072, ge=1)
    embed_batch_size: int = Field(64, ge=1)
    embed_max_concurrency: int = Field(4, ge=1)
    embed_max_retries: int = Field(3, ge=0)
    embed_retry_backoff: float = Field(0.5, ge=0.0)
    embed_timeout: float = 60.0

    # ANN index build parameters.  Below vector_index_min_rows the vector
    # index is not trained yet and search scans the table exactly.
    hnsw_m: int = Field(8, ge=2)
    hnsw_ef_construction: int = Field(64, ge=1)
    vector_index_min_rows: int = Field(1024, ge=1)

    # Retrieval defaults
    search_limit: int = Field(10, ge=1)
    search_categories: List[str] = ["NarrativeText", "ListItem"]

    # Metadata keys that are discarded instead of rejected during indexing
    ignored_metadata_fields: List[str] = []

    # Logging
    log_level: str = "INFO"


settings = Settings()
