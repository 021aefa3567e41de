"""
toothpaste.kdf - Ways of producing the key-store session key.

Two strategies share one interface:

- PassphraseDerived: Argon2id over (passphrase, persisted random salt)
- AuthenticatorDerived: a verified platform-authenticator assertion,
  followed by HKDF over the credential id

No strategy unlocks without authentication.
"""

from __future__ import annotations

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from argon2 import Type
from argon2.low_level import hash_secret_raw
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .config import AuthConfig, KDFConfig
from .errors import ConfigError, UnknownCredentialError, UnlockCancelledError
from .robustness import log_with_context, short_id
from .webauthn import Authenticator, b64url_encode, parse_attestation, verify_assertion

if TYPE_CHECKING:
    from .store import KeyStore

logger = logging.getLogger(__name__)

KEY_LENGTH = 32
ARGON2_MIN_TIME_COST = 3
ARGON2_MIN_MEMORY_KIB = 64 * 1024
CREDENTIAL_KEY_SALT = b"toothpaste-user"
CREDENTIAL_KEY_INFO = b"toothpaste-encryption-v1"
USER_ID_LENGTH = 16


def derive_aes_key(
    passphrase: str | bytes,
    salt: bytes,
    time_cost: int = ARGON2_MIN_TIME_COST,
    memory_cost_kib: int = ARGON2_MIN_MEMORY_KIB,
    parallelism: int = 4,
) -> bytes:
    """Derive a 256-bit AES key from a passphrase with Argon2id.

    Deterministic for a given (passphrase, salt, parameters).
    """
    if time_cost < ARGON2_MIN_TIME_COST or memory_cost_kib < ARGON2_MIN_MEMORY_KIB:
        raise ConfigError(
            f"Argon2 parameters below minimum: time_cost={time_cost}, memory_cost_kib={memory_cost_kib}"
        )
    if isinstance(passphrase, str):
        passphrase = passphrase.encode("utf-8")
    return hash_secret_raw(
        secret=passphrase,
        salt=salt,
        time_cost=time_cost,
        memory_cost=memory_cost_kib,
        parallelism=parallelism,
        hash_len=KEY_LENGTH,
        type=Type.ID,
    )


def derive_key_from_credential_id(credential_id: bytes) -> bytes:
    """Stable AES key for a credential: same id, same key."""
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=CREDENTIAL_KEY_SALT,
        info=CREDENTIAL_KEY_INFO,
    )
    return hkdf.derive(credential_id)


class KeyDerivationStrategy(ABC):
    """Produces the session key for a KeyStore unlock."""

    method: str = "unknown"

    @abstractmethod
    async def derive_key(self, store: KeyStore) -> bytes:
        raise NotImplementedError


class PassphraseDerived(KeyDerivationStrategy):
    method = "passphrase"

    def __init__(self, passphrase: str | bytes, kdf: KDFConfig | None = None):
        self._passphrase = passphrase
        self.kdf = kdf or KDFConfig()

    async def derive_key(self, store: KeyStore) -> bytes:
        salt = store.load_or_create_meta("salt", self.kdf.salt_length)
        # Argon2 is CPU and memory bound; keep it off the event loop.
        return await asyncio.to_thread(
            derive_aes_key,
            self._passphrase,
            salt,
            self.kdf.time_cost,
            self.kdf.memory_cost_kib,
            self.kdf.parallelism,
        )


class AuthenticatorDerived(KeyDerivationStrategy):
    method = "authenticator"

    def __init__(self, authenticator: Authenticator, auth: AuthConfig | None = None):
        self.authenticator = authenticator
        self.auth = auth or AuthConfig()

    def _challenge(self) -> bytes:
        return os.urandom(self.auth.challenge_length)

    async def derive_key(self, store: KeyStore) -> bytes:
        credentials = store.list_credentials()
        if not credentials:
            raise UnknownCredentialError("No registered credentials found; register an authenticator first")

        challenge = self._challenge()
        assertion = await self.authenticator.get_assertion(
            challenge=challenge,
            rp_id=self.auth.rp_id,
            allow_credentials=[record.credential_id for record in credentials],
        )
        if assertion is None:
            raise UnlockCancelledError("Authentication was cancelled")

        record = store.credential_record(assertion.credential_id)
        if record is None:
            raise UnknownCredentialError(
                "Assertion names a credential that is not registered",
                context={"credential": short_id(assertion.credential_id)},
            )

        counter = verify_assertion(
            assertion,
            challenge=challenge,
            rp_id=self.auth.rp_id,
            public_key=record.public_key,
            stored_sign_count=record.counter,
        )
        store.update_credential_counter(assertion.credential_id, counter)
        log_with_context(
            "Authenticator assertion accepted",
            "info",
            {"credential": short_id(assertion.credential_id), "counter": counter},
        )
        return derive_key_from_credential_id(assertion.credential_id)

    async def register(self, store: KeyStore, display_name: str) -> bytes:
        """Create a new credential, record it, and return its session key."""
        challenge = self._challenge()
        user_id = store.load_or_create_meta("user_id", USER_ID_LENGTH)
        attestation = await self.authenticator.create_credential(
            challenge=challenge,
            rp_id=self.auth.rp_id,
            user_id=user_id,
            display_name=display_name,
        )
        if attestation is None:
            raise UnlockCancelledError("Credential creation was cancelled")

        credential = parse_attestation(attestation, challenge=challenge, rp_id=self.auth.rp_id)
        store.save_credential(
            credential.credential_id,
            display_name=display_name,
            public_key=credential.public_key,
            counter=credential.sign_count,
        )
        logger.info(f"Registered credential {b64url_encode(credential.credential_id)[:8]} for {display_name!r}")
        return derive_key_from_credential_id(credential.credential_id)
