"""Persistence of the broker's single RSA signing key."""

import logging

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.fernet import InvalidToken

from fedbroker.core.errors import SigningFailed
from fedbroker.crypto.keys import (
    PrivateKeySealer,
    generate_rsa_keypair,
    load_private_key,
)
from fedbroker.crypto.types import SigningKeyData
from fedbroker.db.kv_store import KEY_ID, PRIVATE_KEY, PUBLIC_KEY, KeyValueStore

logger = logging.getLogger(__name__)


class KeyStore:
    """Owns the signing keypair and its stable key id.

    The private key, public key and kid are always written together in one
    batch. If any of them is missing or the private key cannot be loaded the
    whole triple is treated as absent and regenerated on the next
    ``ensure_key`` call. There is no rotation: once written the key lives for
    the lifetime of the installation.
    """

    def __init__(self, store: KeyValueStore, encryption_key: str = "") -> None:
        self._store = store
        self._sealer = PrivateKeySealer(encryption_key)

    async def get_public_key(self) -> tuple[str, str] | None:
        """Return ``(kid, public_key_pem)`` if a complete triple is stored."""
        values = await self._store.get_many([PRIVATE_KEY, PUBLIC_KEY, KEY_ID])
        if not all(values.values()):
            return None
        return values[KEY_ID], values[PUBLIC_KEY]

    async def get_key(self) -> SigningKeyData | None:
        """Return the stored key material, or None if absent or unusable."""
        values = await self._store.get_many([PRIVATE_KEY, PUBLIC_KEY, KEY_ID])
        if not all(values.values()):
            return None
        try:
            private_pem = self._sealer.unseal(values[PRIVATE_KEY])
            load_private_key(private_pem)
        except (InvalidToken, ValueError, TypeError, UnsupportedAlgorithm) as exc:
            logger.warning("Stored signing key %s is unusable: %s", values[KEY_ID], exc)
            return None
        return SigningKeyData(
            kid=values[KEY_ID],
            private_key_pem=private_pem,
            public_key_pem=values[PUBLIC_KEY],
        )

    async def ensure_key(self) -> SigningKeyData:
        """Return the current key, generating and storing one if needed."""
        existing = await self.get_key()
        if existing is not None:
            return existing

        keypair = generate_rsa_keypair()
        await self._store.set_many(
            {
                PRIVATE_KEY: self._seal(keypair.private_key_pem),
                PUBLIC_KEY: keypair.public_key_pem,
                KEY_ID: keypair.kid,
            }
        )
        logger.info("Generated signing key %s", keypair.kid)
        return keypair

    def _seal(self, private_pem: str) -> str:
        try:
            return self._sealer.seal(private_pem)
        except ValueError as exc:
            raise SigningFailed(f"Invalid signing key encryption key: {exc}") from exc
