"""Internal API for token consumers and configuration-change triggers."""

from typing import Annotated

from fastapi import APIRouter, Depends, Request

from fedbroker.api.deps import (
    Settings,
    get_controller,
    get_key_store,
    require_internal_token,
)
from fedbroker.api.schemas import StatusResponse, SyncResponse, TokensResponse
from fedbroker.core.clock import to_epoch_ms
from fedbroker.db.repo_keys import KeyStore
from fedbroker.oidc.refresh import BrokerStatus, RefreshController

router = APIRouter(prefix="/internal", tags=["internal"])

Controller = Annotated[RefreshController, Depends(get_controller)]
InternalToken = Annotated[str, Depends(require_internal_token)]


@router.get("/tokens")
async def read_tokens(
    controller: Controller,
    _token: InternalToken,
) -> TokensResponse:
    """GET /internal/tokens -- current access token map."""
    tokens = await controller.current_tokens()
    if tokens is None:
        return TokensResponse()
    return TokensResponse(
        access_tokens=tokens.access_tokens,
        expires_at=to_epoch_ms(tokens.expires_at),
    )


@router.post("/sync")
async def trigger_sync(
    request: Request,
    controller: Controller,
    settings: Settings,
    _token: InternalToken,
) -> SyncResponse:
    """POST /internal/sync -- run a full refresh decision now."""
    result = await controller.sync(settings.to_broker_config(), settings.issuer)
    request.app.state.last_sync = result
    return SyncResponse(status=result.status, description=result.description)


@router.get("/status")
async def read_status(
    request: Request,
    key_store: Annotated[KeyStore, Depends(get_key_store)],
    _token: InternalToken,
) -> StatusResponse:
    """GET /internal/status -- last reported lifecycle state."""
    last = request.app.state.last_sync
    public = await key_store.get_public_key()
    return StatusResponse(
        status=last.status if last else BrokerStatus.UNINITIALIZED,
        description=last.description if last else None,
        key_id=public[0] if public else None,
    )
