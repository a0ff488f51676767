import os
from dataclasses import dataclass, field
from functools import lru_cache


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, default))
    except ValueError:
        return default


@dataclass
class Settings:
    """Runtime configuration, read from the environment."""
    # Database
    database_url: str = field(default_factory=lambda: os.getenv("DATABASE_URL") or "mongodb://localhost:27017")
    database_name: str = field(default_factory=lambda: os.getenv("DATABASE_NAME") or "appdb")

    # Tenant id used to namespace every record path (artifacts/{app_id}/...)
    app_id: str = field(default_factory=lambda: os.getenv("APP_ID") or "default-app-id")

    # AI summary
    gemini_api_key: str = field(default_factory=lambda: os.getenv("GEMINI_API_KEY", ""))
    gemini_model: str = field(default_factory=lambda: os.getenv("GEMINI_MODEL") or "gemini-2.5-flash")
    summary_timeout: float = 20.0

    # Identity
    auth_domain: str = field(default_factory=lambda: os.getenv("AUTH_DOMAIN") or "@yourinstitutiondomain.com")
    admin_username: str = field(default_factory=lambda: os.getenv("ADMIN_USERNAME") or "admin")
    admin_password: str = field(default_factory=lambda: os.getenv("ADMIN_PASSWORD") or "admin")
    session_secret: str = field(default_factory=lambda: os.getenv("SESSION_SECRET") or "change-me")
    session_ttl_minutes: int = field(default_factory=lambda: _env_int("SESSION_TTL_MINUTES", 60 * 24))

    # Server
    log_level: str = field(default_factory=lambda: (os.getenv("LOG_LEVEL") or "INFO").upper())
    port: int = field(default_factory=lambda: _env_int("PORT", 8000))

    @property
    def uses_memory_store(self) -> bool:
        return self.database_url.startswith("memory://")


@lru_cache()
def get_settings() -> Settings:
    return Settings()
