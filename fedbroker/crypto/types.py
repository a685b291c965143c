"""Type definitions for signing key, JWKS, and assertion operations."""

from pydantic import BaseModel

SIGNING_ALGORITHM = "RS256"


class SigningKeyData(BaseModel):
    """An RSA keypair for assertion signing."""

    kid: str
    private_key_pem: str
    public_key_pem: str


class JWKEntry(BaseModel):
    """Single JWK entry in a JWKS response."""

    kty: str = "RSA"
    use: str = "sig"
    alg: str = SIGNING_ALGORITHM
    kid: str
    n: str
    e: str


class JWKSResponse(BaseModel):
    """JSON Web Key Set response."""

    keys: list[JWKEntry]


class AssertionClaims(BaseModel):
    """Claim set carried by a client assertion."""

    iss: str
    sub: str
    aud: str
    iat: int
    nbf: int
    exp: int
    jti: str


class Assertion(BaseModel):
    """A signed client assertion and the claims it carries."""

    token: str
    kid: str
    claims: AssertionClaims
