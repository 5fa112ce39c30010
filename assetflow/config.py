# assetflow/config.py
from typing import List, Optional
from pydantic_settings import BaseSettings
from pydantic import Field, field_validator

class Settings(BaseSettings):
    # DB
    database_url: str = Field("postgresql+asyncpg://localhost:5432/assetflow", env="DATABASE_URL")

    # Celery / Redis
    redis_url: str = Field("redis://localhost:6379/0", env="REDIS_URL")
    document_queue: str = Field("document-processing", env="DOCUMENT_QUEUE")
    bookmark_queue: str = Field("bookmark-processing", env="BOOKMARK_QUEUE")
    task_soft_time_limit: int = Field(60 * 30, env="TASK_SOFT_TIME_LIMIT")
    # job keys outlive the soft limit so a dead worker never blocks retries forever
    job_lock_ttl_seconds: int = Field(60 * 35, env="JOB_LOCK_TTL_SECONDS")

    # Blob storage
    storage_backend: str = Field("local", env="STORAGE_BACKEND")  # "local" or "minio"
    storage_dir: str = Field(".data", env="STORAGE_DIR")
    minio_endpoint: Optional[str] = Field(None, env="MINIO_ENDPOINT")
    minio_access_key: Optional[str] = Field(None, env="MINIO_ACCESS_KEY")
    minio_secret_key: Optional[str] = Field(None, env="MINIO_SECRET_KEY")
    minio_bucket: str = Field("assets", env="MINIO_BUCKET")
    minio_secure: bool = Field(False, env="MINIO_SECURE")

    # AI completion (OpenAI-compatible endpoint)
    ai_base_url: str = Field("https://api.deepinfra.com/v1/openai", env="AI_BASE_URL")
    ai_token: str = Field("", env="AI_TOKEN")
    ai_model: str = Field("meta-llama/Meta-Llama-3.1-8B-Instruct", env="AI_MODEL")
    ai_timeout_seconds: float = Field(60.0, env="AI_TIMEOUT_SECONDS")
    tag_temperature: float = Field(0.1, env="TAG_TEMPERATURE")
    tag_max_tokens: int = Field(200, env="TAG_MAX_TOKENS")

    # Fetching / rendering
    favicon_timeout_seconds: float = Field(10.0, env="FAVICON_TIMEOUT_SECONDS")
    page_fetch_timeout_seconds: float = Field(30.0, env="PAGE_FETCH_TIMEOUT_SECONDS")
    render_timeout_ms: int = Field(45_000, env="RENDER_TIMEOUT_MS")
    render_settle_ms: int = Field(3_000, env="RENDER_SETTLE_MS")
    browser_headless: bool = Field(True, env="BROWSER_HEADLESS")
    user_agent: str = Field(
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/120.0.0.0 Safari/537.36",
        env="USER_AGENT",
    )

    # CORS
    cors_origins: List[str] = Field(["*"], env="CORS_ORIGINS")

    host: str = Field("0.0.0.0", env="HOST")
    port: int = Field(8000, env="PORT")

    # Prometheus
    prometheus_enabled: bool = Field(True, env="PROMETHEUS_ENABLED")

    # Pydantic v2 config
    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    # ---- field validators (pydantic v2 style) ----
    @field_validator("cors_origins", mode="before")
    def _split_cors_origins(cls, v):
        """
        Allows CORS_ORIGINS as comma-separated string in env, or as a list.
        """
        if isinstance(v, str):
            return [s.strip() for s in v.split(",") if s.strip()]
        return v

    @field_validator("storage_backend", mode="before")
    def _normalize_storage_backend(cls, v):
        if v is None:
            return "local"
        v = str(v).strip().lower()
        if v not in ("local", "minio"):
            raise ValueError("STORAGE_BACKEND must be 'local' or 'minio'")
        return v

    @field_validator("job_lock_ttl_seconds", "task_soft_time_limit", mode="before")
    def _validate_positive_seconds(cls, v):
        """
        Accepts the env value as string or int and ensures it's a positive int.
        """
        if isinstance(v, str) and v.isdigit():
            v = int(v)
        if not isinstance(v, int) or v <= 0:
            raise ValueError("time limits must be positive integers")
        return v

settings = Settings()
