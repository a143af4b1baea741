"""Library configuration from environment."""
import logging
from functools import lru_cache
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="FORMPUBLISHER_",
        env_file=".env",
        extra="ignore",
    )

    # Script registry (storefront "content scripts" API). {tenant} is the store hash.
    registry_base_url: str = "https://api.bigcommerce.com/stores/{tenant}/v3"
    registry_auth_token: str = ""
    verify_script_deletion: bool = True

    @field_validator("registry_auth_token", "registry_base_url", mode="before")
    @classmethod
    def strip_registry(cls, v: str) -> str:
        return (v or "").strip()

    # Upper bound for each external call (generation, registry create/update/delete).
    external_call_timeout_seconds: float = 10.0
    # Delay before the post-operation re-confirmation read.
    settle_delay_seconds: float = 0.1

    script_src_url: str = "/custom-signup.min.js"
    script_name: str = "Custom Signup Form"
    script_description: str = "Injects custom signup form script into the theme"
    script_container_id: str = "custom-signup-container"

    signup_page_size: int = 10

    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    return Settings()


def configure_logging(settings: Optional[Settings] = None) -> None:
    """Install a basic root handler at the configured level."""
    settings = settings or get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
