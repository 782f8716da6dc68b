from __future__ import annotations

import warnings
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Trusted secret for per-user key derivation. Only set in the trusted
    # (server) context; clients leave it empty and use key_service_url.
    key_material: str = ""
    jwt_secret: str = ""  # Verifies bearer tokens issued by the session system
    allow_insecure_jwt: bool = False

    @model_validator(mode="after")
    def _check_jwt_secret(self) -> Settings:
        self.jwt_secret = self.jwt_secret.strip()
        if not self.jwt_secret:
            if self.allow_insecure_jwt:
                warnings.warn(
                    "JWT_SECRET is empty but ALLOW_INSECURE_JWT is set; "
                    "this is INSECURE and should only be used for development.",
                    stacklevel=2,
                )
            else:
                raise ValueError(
                    "JWT_SECRET is not set. An empty JWT secret allows attackers to "
                    "forge bearer tokens and request other users' keys. Set JWT_SECRET "
                    "in .env or set ALLOW_INSECURE_JWT=1 for development."
                )
        return self

    jwt_access_token_expire_minutes: int = 15
    db_url: str = "sqlite:///./hillchart.db"

    # Remote key issuance (untrusted context)
    key_service_url: str = "http://localhost:3000"
    key_request_timeout_seconds: float = 10.0
    key_request_max_attempts: int = 3
    key_retry_base_delay_seconds: float = 0.5
    key_retry_max_delay_seconds: float = 5.0

    # Key cache idle timeout; 0 keeps keys until sign-out
    key_cache_timeout_minutes: int = 0
    # Read-only compatibility with records encrypted under the placeholder
    # legacy secret. Remove once no such records remain.
    legacy_key_enabled: bool = False

    # Hash migration
    migration_batch_size: int = 100
    migration_sample_size: int = 10


@lru_cache
def get_settings() -> Settings:
    return Settings()
