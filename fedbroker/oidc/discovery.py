"""OpenID Connect discovery document and JWKS publication."""

from pydantic import BaseModel

from fedbroker.core.errors import KeyNotInitialized
from fedbroker.crypto.keys import jwk_from_public_pem
from fedbroker.crypto.types import SIGNING_ALGORITHM, JWKSResponse
from fedbroker.db.repo_keys import KeyStore

JWKS_PATH = "/.well-known/jwks"
DISCOVERY_PATH = "/.well-known/openid-configuration"


class DiscoveryDocument(BaseModel):
    """OIDC .well-known/openid-configuration response."""

    issuer: str
    jwks_uri: str
    response_types_supported: list[str]
    subject_types_supported: list[str]
    id_token_signing_alg_values_supported: list[str]
    claims_supported: list[str]


def build_discovery(issuer: str) -> DiscoveryDocument:
    """Build the discovery document for an issuer URL."""
    issuer = issuer.rstrip("/")
    return DiscoveryDocument(
        issuer=issuer,
        jwks_uri=f"{issuer}{JWKS_PATH}",
        response_types_supported=["id_token"],
        subject_types_supported=["pairwise", "public"],
        id_token_signing_alg_values_supported=[SIGNING_ALGORITHM],
        claims_supported=["sub", "aud", "exp", "iat", "iss", "jti", "nbf"],
    )


class DiscoveryPublisher:
    """Publishes the public half of the signing key for the authority."""

    def __init__(self, key_store: KeyStore) -> None:
        self._key_store = key_store

    async def discovery_document(self, issuer: str) -> DiscoveryDocument:
        """Return the discovery document once a key exists."""
        if await self._key_store.get_public_key() is None:
            raise KeyNotInitialized()
        return build_discovery(issuer)

    async def jwk_set(self) -> JWKSResponse:
        """Return a key set holding exactly the active key."""
        public = await self._key_store.get_public_key()
        if public is None:
            raise KeyNotInitialized()
        kid, public_pem = public
        return JWKSResponse(keys=[jwk_from_public_pem(public_pem, kid)])
