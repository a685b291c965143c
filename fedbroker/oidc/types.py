"""Type definitions for token exchange and refresh state."""

import hashlib
import json
from datetime import datetime

from pydantic import BaseModel, Field

DEFAULT_AUDIENCE = "api://AzureADTokenExchange"
DEFAULT_SERVICES = ("management",)


class BrokerConfig(BaseModel):
    """Host configuration the refresh cycle depends on."""

    tenant_id: str
    client_id: str
    services: list[str] = Field(default_factory=lambda: list(DEFAULT_SERVICES))
    audience: str = DEFAULT_AUDIENCE
    setup_complete: bool = False

    def fingerprint(self) -> str:
        """SHA-256 over the fields whose change must force a new exchange."""
        canonical = json.dumps(
            {
                "tenant_id": self.tenant_id,
                "client_id": self.client_id,
                "services": self.services,
                "audience": self.audience,
            },
            sort_keys=True,
            separators=(",", ":"),
        )
        return hashlib.sha256(canonical.encode()).hexdigest()


class ServiceToken(BaseModel):
    """Access token issued for a single service scope."""

    service: str
    access_token: str
    expires_at: datetime


class ServiceTokenSet(BaseModel):
    """Access tokens for every configured service, expiring together."""

    access_tokens: dict[str, str]
    expires_at: datetime


class RefreshState(BaseModel):
    """What the last successful cycle recorded."""

    last_expiry: datetime | None = None
    last_config_fingerprint: str | None = None
