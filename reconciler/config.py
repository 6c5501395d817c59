from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    # Relational mirror of the ledger
    database_url: str = "sqlite:///./reconciler.db"

    # Ledger sheets live under LEDGER_DIR/<tenant_id>/*.csv
    # Empty value keeps every ledger in memory (local dev / tests)
    ledger_dir: str = ""
    default_tenant: str = "default"

    # Civil timezone of "YYYY/MM/DD HH:mm:ss" strings written by operators
    ledger_timezone: str = "Asia/Tokyo"

    lock_timeout_seconds: float = 8.0
    merge_lock_timeout_seconds: float = 30.0

    # Mirror backend: "sql" (DATABASE_URL), "rest" (PostgREST / Supabase) or "none"
    mirror_backend: str = "sql"
    mirror_timeout_seconds: float = 10.0
    supabase_url: str = ""
    supabase_key: str = ""

    # My page cache invalidation
    # Example: "https://clinic.example.com"
    cache_invalidation_url: str = ""
    admin_token: str = ""
    notify_timeout_seconds: float = 5.0

    patient_index_keep: int = 30

    # Auto-run alembic migrations on startup (set to "true" in staging)
    run_migrations_on_startup: str = ""

    log_level: str = "INFO"

    # CORS configuration - comma-separated list of allowed origins
    cors_allowed_origins: Optional[str] = None

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    def get_cors_origins(self) -> list[str]:
        """Get list of CORS allowed origins, combining defaults with env var.

        - Strips whitespace
        - Removes trailing slashes
        - Deduplicates
        """
        default_origins = [
            "http://localhost:5173",
            "http://localhost:3000",
        ]

        all_origins = list(default_origins)

        if self.cors_allowed_origins:
            for origin in self.cors_allowed_origins.split(","):
                cleaned = origin.strip().rstrip("/")
                if cleaned and cleaned not in all_origins:
                    all_origins.append(cleaned)

        return all_origins


@lru_cache()
def get_settings() -> Settings:
    return Settings()
