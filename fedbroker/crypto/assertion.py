"""Client assertion minting using RS256."""

from collections.abc import Callable
from urllib.parse import urlparse

import jwt
import uuid_utils

from fedbroker.core.clock import Clock, system_clock
from fedbroker.core.errors import SigningFailed
from fedbroker.crypto.types import (
    SIGNING_ALGORITHM,
    Assertion,
    AssertionClaims,
    SigningKeyData,
)

ASSERTION_TTL = 300

AssertionFactory = Callable[[], str]


class AssertionMinter:
    """Builds short-lived self-signed assertions for token exchange."""

    def __init__(self, clock: Clock = system_clock) -> None:
        self._clock = clock

    def mint(
        self, issuer: str, audience: str, signing_material: SigningKeyData
    ) -> Assertion:
        """Sign a fresh assertion; every call gets its own ``jti``."""
        now = int(self._clock().timestamp())
        claims = AssertionClaims(
            iss=issuer,
            sub=urlparse(issuer).hostname or issuer,
            aud=audience,
            iat=now,
            nbf=now,
            exp=now + ASSERTION_TTL,
            jti=str(uuid_utils.uuid4()),
        )
        try:
            token = jwt.encode(
                claims.model_dump(),
                signing_material.private_key_pem,
                algorithm=SIGNING_ALGORITHM,
                headers={"kid": signing_material.kid, "typ": "JWT"},
            )
        except (jwt.PyJWTError, ValueError, TypeError) as exc:
            raise SigningFailed(f"Could not sign assertion: {exc}") from exc
        return Assertion(token=token, kid=signing_material.kid, claims=claims)

    def factory(
        self, issuer: str, audience: str, signing_material: SigningKeyData
    ) -> AssertionFactory:
        """Bind issuer, audience and key into a per-call assertion source."""

        def _next_assertion() -> str:
            return self.mint(issuer, audience, signing_material).token

        return _next_assertion
