"""Application settings loaded from environment variables."""

import json
from typing import Annotated

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from fedbroker.oidc.types import DEFAULT_AUDIENCE, DEFAULT_SERVICES, BrokerConfig

AUTHORITY_HOST_DEFAULT = "https://login.microsoftonline.com"
SCOPE_TEMPLATE_DEFAULT = "https://{service}.azure.com/.default"
EXCHANGE_TIMEOUT_DEFAULT = 30.0
REFRESH_INTERVAL_DEFAULT = 600


class DatabaseSettings(BaseSettings):
    """Key-value store connection settings."""

    model_config = SettingsConfigDict(env_prefix="BROKER_DB_")

    url: str = "sqlite+aiosqlite:///./fedbroker.db"
    echo: bool = False


class BrokerSettings(BaseSettings):
    """Federated credential and token exchange settings."""

    model_config = SettingsConfigDict(env_prefix="BROKER_")

    issuer_url: str = "http://localhost:8000"
    tenant_id: str = ""
    client_id: str = ""
    services: Annotated[list[str], NoDecode] = list(DEFAULT_SERVICES)
    audience: str | None = None
    setup_complete: bool = False
    authority_host: str = AUTHORITY_HOST_DEFAULT
    scope_template: str = SCOPE_TEMPLATE_DEFAULT
    exchange_timeout: float = EXCHANGE_TIMEOUT_DEFAULT
    refresh_interval_seconds: int = REFRESH_INTERVAL_DEFAULT
    internal_token: str = ""
    signing_key_encryption_key: str = ""

    @field_validator("services", mode="before")
    @classmethod
    def _parse_services(cls, value: object) -> object:
        """Accept a JSON array or a comma-separated list."""
        if not isinstance(value, str):
            return value
        text = value.strip()
        if text.startswith("["):
            return json.loads(text)
        return [s.strip() for s in text.split(",") if s.strip()]

    @property
    def issuer(self) -> str:
        """Issuer URL without a trailing slash."""
        return self.issuer_url.rstrip("/")

    def to_broker_config(self) -> BrokerConfig:
        """Snapshot the values the refresh cycle depends on."""
        return BrokerConfig(
            tenant_id=self.tenant_id,
            client_id=self.client_id,
            services=list(self.services),
            audience=self.audience or DEFAULT_AUDIENCE,
            setup_complete=self.setup_complete,
        )
