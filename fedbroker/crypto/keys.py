"""Signing key material: generation, sealing at rest, and JWK export."""

import uuid_utils
from cryptography.fernet import Fernet
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.asymmetric.rsa import (
    RSAPrivateKey,
    RSAPublicKey,
)
from jwt.algorithms import RSAAlgorithm

from fedbroker.crypto.types import JWKEntry, SigningKeyData

RSA_KEY_SIZE = 2048
RSA_PUBLIC_EXPONENT = 65537


def generate_rsa_keypair() -> SigningKeyData:
    """Create the broker's assertion signing key under a fresh random kid."""
    private_key = rsa.generate_private_key(
        public_exponent=RSA_PUBLIC_EXPONENT,
        key_size=RSA_KEY_SIZE,
    )
    private_pem, public_pem = _export_pem(private_key)
    return SigningKeyData(
        kid=str(uuid_utils.uuid7()),
        private_key_pem=private_pem,
        public_key_pem=public_pem,
    )


def _export_pem(private_key: RSAPrivateKey) -> tuple[str, str]:
    private_pem = private_key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )
    public_pem = private_key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return private_pem.decode(), public_pem.decode()


class PrivateKeySealer:
    """Seals the private PEM with Fernet before it reaches the store.

    An empty ``fernet_key`` stores the PEM as-is. A malformed key raises
    ``ValueError`` from ``seal``/``unseal``, and a ciphertext sealed under a
    different key raises ``cryptography.fernet.InvalidToken`` from ``unseal``.
    """

    def __init__(self, fernet_key: str = "") -> None:
        self._fernet_key = fernet_key

    @property
    def enabled(self) -> bool:
        return bool(self._fernet_key)

    def seal(self, private_pem: str) -> str:
        if not self.enabled:
            return private_pem
        return self._cipher().encrypt(private_pem.encode()).decode()

    def unseal(self, stored: str) -> str:
        if not self.enabled:
            return stored
        return self._cipher().decrypt(stored.encode()).decode()

    def _cipher(self) -> Fernet:
        return Fernet(self._fernet_key.encode())


def load_private_key(private_key_pem: str) -> RSAPrivateKey:
    """Parse a PEM private key, rejecting anything that is not RSA."""
    loaded = serialization.load_pem_private_key(
        private_key_pem.encode(), password=None
    )
    if not isinstance(loaded, RSAPrivateKey):
        raise ValueError("Signing key is not an RSA private key")
    if loaded.key_size < RSA_KEY_SIZE:
        raise ValueError(f"Signing key is shorter than {RSA_KEY_SIZE} bits")
    return loaded


def jwk_from_public_pem(public_key_pem: str, kid: str) -> JWKEntry:
    """Publish a stored PEM public key as the single JWKS entry."""
    loaded = serialization.load_pem_public_key(public_key_pem.encode())
    if not isinstance(loaded, RSAPublicKey):
        raise ValueError("Stored public key is not an RSA key")
    exported = RSAAlgorithm.to_jwk(loaded, as_dict=True)
    return JWKEntry(kid=kid, n=exported["n"], e=exported["e"])
