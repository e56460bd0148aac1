from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings

from src.security.signing import derive_signing_secret


class Settings(BaseSettings):
    """Application settings validated via Pydantic.

    Values are loaded from environment variables and/or a .env file.
    """

    # API Keys
    anthropic_api_key: str = ""
    openai_api_key: str = ""

    # Supabase (service-role key; also the source of the HMAC signing secret)
    supabase_url: str = ""
    supabase_key: str = ""
    request_signing_secret: str = ""  # Optional; defaults to supabase_key[:32]

    # App config
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    log_level: str = "INFO"
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:5173"]
    cors_origin_regex: str = r"http://localhost:\d+"

    # Models
    embedding_model: str = "text-embedding-3-small"
    ner_model: str = "claude-3-5-haiku-20241022"

    # Chunking
    chunk_size: int = 2000
    chunk_overlap: int = 200

    # Embedding client
    embedding_max_input_chars: int = 8000
    embedding_max_retries: int = 3
    embedding_initial_delay_seconds: float = 0.5
    embedding_max_delay_seconds: float = 10.0

    # Entity extraction
    ner_chunk_text_limit: int = 2000
    ner_max_attempts: int = 3
    ner_retry_base_delay_seconds: float = 0.5
    ner_call_timeout_seconds: float = 50.0
    ner_single_chunk_timeout_seconds: float = 15.0
    ner_max_tokens: int = 8192

    # Pacing and batching
    embedding_delay_seconds: float = 0.5
    ner_batch_delay_seconds: float = 0.3
    ner_chunks_per_call: int = 5
    ner_fetch_size: int = 15
    embedding_fetch_size: int = 10
    chunking_batch_size: int = 50
    insert_batch_size: int = 100
    inline_enrichment_limit: int = 0

    # Background jobs
    heartbeat_interval_seconds: float = 10.0

    # Request guard and rate limiting
    signature_max_age_seconds: int = 300
    signature_max_skew_seconds: int = 60
    rate_limit_requests: int = 5
    rate_limit_window_seconds: int = 60

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def signing_secret(self) -> str:
        """HMAC secret for service-to-service request signatures."""
        return self.request_signing_secret or derive_signing_secret(self.supabase_key)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance.

    Gracefully handles missing .env files (e.g. in CI/testing) by falling
    back to environment variables and defaults.
    """
    try:
        return Settings()
    except Exception:
        # If .env is missing or unreadable, build settings from env vars only.
        return Settings(_env_file=None)  # type: ignore[call-arg]


settings = get_settings()
