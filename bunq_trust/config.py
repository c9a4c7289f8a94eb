"""
bunq-trust Configuration
========================

PURPOSE:
    Pydantic-Settings based configuration for the bunq trust/session client.
    All settings can be overridden via environment variables (BUNQ_ prefix)
    or a local .env file.

    The subsystem only ever reads these values. The API key and the
    environment select which credential namespace is used in the store.
"""

from typing import List, Literal, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings

BASE_URLS = {
    "sandbox": "https://public-api.sandbox.bunq.com/v1",
    "production": "https://api.bunq.com/v1",
}

MIN_RSA_KEY_SIZE = 2048

Environment = Literal["sandbox", "production"]


class Settings(BaseSettings):
    app_name: str = "bunq-trust"

    # bunq environment: selects base URL and credential namespace
    environment: Environment = "sandbox"

    # The user's API key secret. Rotating it invalidates every stored credential.
    api_key: Optional[str] = None

    # Device registration
    device_description: str = "bunq-trust Python client"
    permitted_ips: List[str] = ["*"]  # desktop clients change IP, so allow any

    # Fixed headers required by the bunq API
    language: str = "en_US"
    region: str = "en_US"
    geolocation: str = "0 0 0 0 000"
    user_agent: str = "bunq-trust/1.0.0"

    request_timeout_s: float = 30.0
    rsa_key_size: int = MIN_RSA_KEY_SIZE

    # Refresh attempts closer together than this reuse the stored session
    min_refresh_interval_s: float = 5.0

    # File credential store
    credential_path: str = "~/.config/bunq-trust/credentials.json"
    # Fernet key used to encrypt stored values at rest (optional)
    secret_key: Optional[str] = None

    # Logging
    log_dir: str = "logs"
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_prefix = "BUNQ_"

    @field_validator("rsa_key_size")
    @classmethod
    def check_key_size(cls, v: int) -> int:
        if v < MIN_RSA_KEY_SIZE:
            raise ValueError(f"rsa_key_size must be at least {MIN_RSA_KEY_SIZE} bits")
        return v

    @field_validator("api_key")
    @classmethod
    def strip_api_key(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return v.strip() or None

    @property
    def base_url(self) -> str:
        return BASE_URLS[self.environment]


def get_base_url(environment: str) -> str:
    """Base URL for an environment name, rejecting unknown ones."""
    try:
        return BASE_URLS[environment]
    except KeyError:
        raise ValueError(f"Unknown bunq environment: {environment!r}") from None


settings = Settings()
