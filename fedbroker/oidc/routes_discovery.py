"""OIDC discovery and JWKS endpoints consumed by the external authority."""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Response
from starlette.responses import JSONResponse

from fedbroker.api.deps import Settings, get_publisher
from fedbroker.core.errors import BrokerError
from fedbroker.crypto.types import JWKSResponse
from fedbroker.oidc.discovery import (
    DISCOVERY_PATH,
    JWKS_PATH,
    DiscoveryDocument,
    DiscoveryPublisher,
)

logger = logging.getLogger(__name__)

router = APIRouter()

JWKS_CACHE_CONTROL = "public, max-age=300"
HTTP_INTERNAL_ERROR = 500

Publisher = Annotated[DiscoveryPublisher, Depends(get_publisher)]


def _internal_error() -> JSONResponse:
    return JSONResponse(
        {"error": "Internal server error"}, status_code=HTTP_INTERNAL_ERROR
    )


@router.get(DISCOVERY_PATH, response_model=None)
async def openid_configuration(
    publisher: Publisher,
    settings: Settings,
) -> DiscoveryDocument | JSONResponse:
    """OpenID Connect Discovery 1.0."""
    try:
        return await publisher.discovery_document(settings.issuer)
    except BrokerError as exc:
        logger.error("Discovery request failed: %s", exc.message)
        return _internal_error()
    except Exception:
        logger.exception("Discovery request raised")
        return _internal_error()


@router.get(JWKS_PATH, response_model=None)
async def jwks(
    response: Response,
    publisher: Publisher,
) -> JWKSResponse | JSONResponse:
    """JSON Web Key Set endpoint."""
    try:
        key_set = await publisher.jwk_set()
    except (BrokerError, ValueError) as exc:
        logger.error("JWKS request failed: %s", exc)
        return _internal_error()
    except Exception:
        logger.exception("JWKS request raised")
        return _internal_error()
    response.headers["Cache-Control"] = JWKS_CACHE_CONTROL
    return key_set
