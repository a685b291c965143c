"""Pydantic schemas for the internal token API."""

from pydantic import BaseModel, ConfigDict


def _to_camel(name: str) -> str:
    """Convert snake_case to camelCase for JSON serialization."""
    parts = name.split("_")
    return parts[0] + "".join(p.capitalize() for p in parts[1:])


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=_to_camel,
        populate_by_name=True,
    )


class TokensResponse(_CamelModel):
    """Current token map; both fields are null before the first cycle."""

    access_tokens: dict[str, str] | None = None
    expires_at: int | None = None


class SyncResponse(_CamelModel):
    """Outcome of a triggered sync."""

    status: str
    description: str | None = None


class StatusResponse(_CamelModel):
    """Snapshot of the broker lifecycle."""

    status: str
    description: str | None = None
    key_id: str | None = None
