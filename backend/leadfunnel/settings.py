from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_DB_PATH = str(Path(__file__).resolve().parent.parent / "data" / "analytics.db")

SUPPORTED_DB_TYPES = {"sqlite", "postgresql"}
SESSION_SCHEMAS = {"auto", "extended", "legacy"}


class Settings(BaseSettings):
    """Global configuration for the lead funnel analytics backend."""

    db_type: str = "sqlite"
    db_path: str = DEFAULT_DB_PATH
    database_url: str = ""
    default_days: int = 30
    default_question_count: int = 8
    dropoff_limit: int = 50
    session_schema: str = "auto"
    seed_order_sets: bool = True
    cors_origins: str = "*"
    require_admin_auth: bool = True
    admin_uids: str = ""

    model_config = SettingsConfigDict(env_prefix="FUNNEL_", extra="ignore")

    @field_validator("db_type")
    @classmethod
    def validate_db_type(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in SUPPORTED_DB_TYPES:
            raise ValueError(f"Unsupported db_type {value!r}; expected sqlite or postgresql.")
        return value

    @field_validator("session_schema")
    @classmethod
    def validate_session_schema(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in SESSION_SCHEMAS:
            raise ValueError("session_schema must be one of auto, extended, legacy.")
        return value

    def cors_origin_list(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()] or ["*"]

    def admin_uid_set(self) -> set[str]:
        return {uid.strip() for uid in self.admin_uids.split(",") if uid.strip()}


settings = Settings()  # type: ignore[call-arg]
