"""
Centralised gateway settings loaded from environment / .env file.
"""
from __future__ import annotations

from pathlib import Path
from functools import lru_cache

from pydantic_settings import BaseSettings
from dotenv import load_dotenv

# Load .env from project root (two levels up from this file)
_ENV_PATH = Path(__file__).resolve().parents[2] / ".env"
load_dotenv(_ENV_PATH)

_DEFAULT_POLICY_PATH = Path(__file__).resolve().parents[2] / "policy" / "gateway_policy.yml"


class Settings(BaseSettings):
    # ── Postgres ─────────────────────────────────────────
    postgres_user: str = "gateway"
    postgres_password: str = "gateway_pw"
    postgres_db: str = "bookkeeping"
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    database_url_override: str = ""

    # ── Execution ────────────────────────────────────────
    sql_row_limit: int = 200
    statement_timeout_ms: int = 10_000
    tenant_setting_prefix: str = "auth"

    # ── Confirmation gate ────────────────────────────────
    confirmation_ttl_seconds: float = 300

    # ── Schema cache ─────────────────────────────────────
    schema_cache_ttl_seconds: float = 300
    schema_cache_max_size: int = 256

    # ── Audit ────────────────────────────────────────────
    audit_backend: str = "database"  # database | log
    audit_table: str = "gateway_audit_log"

    # ── App ──────────────────────────────────────────────
    log_level: str = "INFO"
    policy_path: str = str(_DEFAULT_POLICY_PATH)

    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        return (
            f"postgresql://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache
def get_settings() -> Settings:
    return Settings()
