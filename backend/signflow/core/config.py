from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Global SignFlow settings.
    Values are read from the environment and from the .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Project
    project_name: str = "SignFlow API"
    api_v1_str: str = "/api/v1"
    debug: bool = False

    # Owner authentication (JWTs issued by the identity provider)
    secret_key: str = "changeme"
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 60

    # Database
    database_url: str = "sqlite:///./dev.db"

    # CORS
    allowed_origins: List[str] = [
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

    # Public URLs (links handed to signers)
    public_base_url: str = "http://localhost:8000"
    public_app_url: str = "http://localhost:3000"

    # Signer capability tokens
    signing_token_bytes: int = 32
    token_generation_attempts: int = 5

    # Client addresses: read cf-connecting-ip and x-forwarded-for when running behind a trusted proxy
    trust_proxy_headers: bool = False

    # Signatures
    max_signature_bytes: int = 2 * 1024 * 1024
    min_typed_signature_length: int = 2

    # Reminders
    default_reminder_days: int = 3

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    def resolved_public_app_url(self) -> str:
        """Base URL used to build the signing links handed to signers."""
        base = (self.public_app_url or "").strip()
        if base:
            return base.rstrip("/")
        return (self.public_base_url or "").rstrip("/")

    def signing_url(self, token: str) -> str:
        return f"{self.resolved_public_app_url()}/sign/{token}"


@lru_cache
def get_settings() -> Settings:
    """Return the cached settings instance."""
    return Settings()


settings = get_settings()
