"""
toothpaste.store - Encrypted local store for long-lived key material.

Layout on disk (JSON):

    {
      "schema_version": 3,
      "deviceKeys": {device_id: {field: base64(iv || ciphertext || tag)}},
      "webauthnCredentials": {b64url(credential_id): {displayName, publicKey, counter}},
      "meta": {"salt": base64, "user_id": base64}
    }

Every field value is AES-256-GCM sealed under the session key held by the
live SessionContext. Unlock produces that context, lock() invalidates it,
and there is at most one live context per store. A record that fails to
open reads as absent; a file whose partitions or schema version are wrong
is deleted and recreated empty.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
import os
import tempfile
import time
from dataclasses import dataclass
from typing import Any, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .codec import IV_LENGTH, TAG_LENGTH
from .config import AuthConfig, Config, KDFConfig
from .ecdh import SHARED_SECRET_LEN, UNCOMPRESSED_LEN
from .errors import CorruptionError, FormatError, NotUnlockedError, UnlockCancelledError
from .kdf import AuthenticatorDerived, KeyDerivationStrategy, PassphraseDerived
from .robustness import log_with_context, short_id
from .webauthn import Authenticator, b64url_decode, b64url_encode

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 3
DEVICE_KEYS = "deviceKeys"
CREDENTIALS = "webauthnCredentials"
META = "meta"

SELF_PUBLIC_KEY = "selfPublicKey"
SELF_PRIVATE_KEY = "selfPrivateKey"
PEER_PUBLIC_KEY = "peerPublicKey"
SHARED_SECRET = "sharedSecret"
KEY_MATERIAL_FIELDS = (SELF_PUBLIC_KEY, SELF_PRIVATE_KEY, PEER_PUBLIC_KEY, SHARED_SECRET)

MIN_RECORD_LEN = IV_LENGTH + TAG_LENGTH


# ----- record sealing -----


def seal_record(aead: AESGCM, plaintext: bytes) -> bytes:
    iv = os.urandom(IV_LENGTH)
    return iv + aead.encrypt(iv, plaintext, None)


def open_record(aead: AESGCM, blob: bytes) -> bytes:
    """Reverse seal_record. An empty plaintext (28-byte record) is valid."""
    if len(blob) < MIN_RECORD_LEN:
        raise CorruptionError(f"record too short: need at least {MIN_RECORD_LEN} bytes, got {len(blob)}")
    try:
        return aead.decrypt(blob[:IV_LENGTH], blob[IV_LENGTH:], None)
    except InvalidTag as e:
        raise CorruptionError("record failed authentication") from e


def _encode_value(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        doc = {"t": "bytes", "v": base64.b64encode(bytes(value)).decode()}
    else:
        doc = {"t": "json", "v": value}
    return json.dumps(doc, separators=(",", ":")).encode()


def _decode_value(raw: bytes) -> Any:
    try:
        doc = json.loads(raw)
        if doc["t"] == "bytes":
            return base64.b64decode(doc["v"], validate=True)
        if doc["t"] == "json":
            return doc["v"]
    except (ValueError, KeyError, TypeError, binascii.Error) as e:
        raise CorruptionError(f"record payload unreadable: {e}") from e
    raise CorruptionError(f"unknown record payload type {doc['t']!r}")


class SessionContext:
    """Proof of a successful unlock; the only holder of the session key.

    The raw key is not kept as an attribute: it lives inside the AESGCM
    object, which is dropped on invalidate().
    """

    def __init__(self, key: bytes, method: str):
        if len(key) != 32:
            raise ValueError("session key must be 32 bytes")
        self._aead: Optional[AESGCM] = AESGCM(key)
        self.method = method
        self.unlocked_at = time.time()

    @property
    def active(self) -> bool:
        return self._aead is not None

    def invalidate(self) -> None:
        self._aead = None

    def _require(self) -> AESGCM:
        if self._aead is None:
            raise NotUnlockedError("Session has been locked")
        return self._aead

    def seal(self, plaintext: bytes) -> bytes:
        return seal_record(self._require(), plaintext)

    def open(self, blob: bytes) -> bytes:
        return open_record(self._require(), blob)


@dataclass(frozen=True)
class KeyMaterial:
    self_public_key: bytes
    self_private_key: bytes
    peer_public_key: bytes
    shared_secret: bytes

    def __post_init__(self):
        for name, value in (("self_public_key", self.self_public_key), ("peer_public_key", self.peer_public_key)):
            if len(value) != UNCOMPRESSED_LEN or value[0] != 0x04:
                raise FormatError(f"{name} must be a {UNCOMPRESSED_LEN}-byte uncompressed point")
        if len(self.shared_secret) != SHARED_SECRET_LEN:
            raise FormatError(f"shared_secret must be {SHARED_SECRET_LEN} bytes")
        if not self.self_private_key:
            raise FormatError("self_private_key is empty")

    def as_fields(self) -> dict[str, bytes]:
        return {
            SELF_PUBLIC_KEY: self.self_public_key,
            SELF_PRIVATE_KEY: self.self_private_key,
            PEER_PUBLIC_KEY: self.peer_public_key,
            SHARED_SECRET: self.shared_secret,
        }


@dataclass
class CredentialRecord:
    credential_id: bytes
    display_name: str
    public_key: bytes
    counter: int


# ----- persistence -----


def _empty_document() -> dict[str, Any]:
    return {"schema_version": SCHEMA_VERSION, DEVICE_KEYS: {}, CREDENTIALS: {}, META: {}}


def _check_schema(doc: Any) -> None:
    if not isinstance(doc, dict):
        raise CorruptionError("store root is not an object")
    if doc.get("schema_version") != SCHEMA_VERSION:
        raise CorruptionError(f"schema version {doc.get('schema_version')!r}, expected {SCHEMA_VERSION}")
    for partition in (DEVICE_KEYS, CREDENTIALS, META):
        if not isinstance(doc.get(partition), dict):
            raise CorruptionError(f"partition {partition!r} missing")
    for device_id, record in doc[DEVICE_KEYS].items():
        if not isinstance(record, dict) or not all(isinstance(v, str) for v in record.values()):
            raise CorruptionError(f"device record {short_id(device_id)} malformed")
    for cred_id, record in doc[CREDENTIALS].items():
        if not isinstance(record, dict) or not {"displayName", "publicKey", "counter"} <= record.keys():
            raise CorruptionError(f"credential record {cred_id[:8]} malformed")


class StoreFile:
    """JSON document with atomic writes. `path=None` keeps it in memory."""

    def __init__(self, path: str | None):
        self.path = os.path.expanduser(path) if path else None
        self.recovered = False
        self.doc = self._load()

    def _load(self) -> dict[str, Any]:
        if self.path is None or not os.path.exists(self.path):
            return _empty_document()
        # I/O errors propagate; only unreadable content counts as corruption.
        with open(self.path, "rb") as f:
            raw = f.read()
        try:
            doc = json.loads(raw)
            _check_schema(doc)
            return doc
        except (ValueError, CorruptionError) as e:
            log_with_context(
                f"Key store unreadable, deleting and recreating: {e}",
                "warning",
                {"path": self.path},
            )
            os.remove(self.path)
            self.recovered = True
            doc = _empty_document()
            self._write(doc)
            return doc

    def _write(self, doc: dict[str, Any]) -> None:
        if self.path is None:
            return
        directory = os.path.dirname(self.path) or "."
        os.makedirs(directory, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=directory, prefix=".keystore-")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(doc, f, separators=(",", ":"), sort_keys=True)
            os.chmod(tmp, 0o600)
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def commit(self) -> None:
        self._write(self.doc)

    def partition(self, name: str) -> dict[str, Any]:
        return self.doc[name]


class KeyStore:
    """Authenticate-then-unlock store for per-device key material."""

    def __init__(
        self,
        path: str | None = None,
        *,
        kdf: KDFConfig | None = None,
        auth: AuthConfig | None = None,
    ):
        self.kdf = kdf or KDFConfig()
        self.auth = auth or AuthConfig()
        self._file = StoreFile(path)
        self._live: Optional[SessionContext] = None

    @classmethod
    def from_config(cls, config: Config) -> KeyStore:
        return cls(
            config.get("store", "path"),
            kdf=config.get("kdf"),
            auth=config.get("auth"),
        )

    @property
    def recovered(self) -> bool:
        """True when the backing file was found corrupt and recreated."""
        return self._file.recovered

    @property
    def context(self) -> Optional[SessionContext]:
        return self._live

    @property
    def is_unlocked(self) -> bool:
        return self._live is not None and self._live.active

    # ----- unlock / lock -----

    async def unlock(self, strategy: KeyDerivationStrategy, timeout: float | None = None) -> SessionContext:
        """Run a key-derivation strategy and install its key as the live session key."""
        timeout = self.auth.timeout if timeout is None else timeout
        try:
            key = await asyncio.wait_for(strategy.derive_key(self), timeout=timeout)
        except asyncio.TimeoutError as e:
            log_with_context("Unlock timed out", "warning", {"method": strategy.method, "timeout": timeout})
            raise UnlockCancelledError(f"Unlock timed out after {timeout}s") from e
        except Exception as e:
            log_with_context(
                f"Unlock failed: {type(e).__name__}: {e}",
                "warning",
                {"method": strategy.method},
            )
            raise
        return self._install(key, strategy.method)

    async def unlock_with_passphrase(self, passphrase: str | bytes, timeout: float | None = None) -> SessionContext:
        return await self.unlock(PassphraseDerived(passphrase, self.kdf), timeout)

    async def unlock_with_authenticator(
        self, authenticator: Authenticator, timeout: float | None = None
    ) -> SessionContext:
        return await self.unlock(AuthenticatorDerived(authenticator, self.auth), timeout)

    async def register_authenticator(
        self, authenticator: Authenticator, display_name: str, timeout: float | None = None
    ) -> SessionContext:
        """Register a new credential and unlock with it."""
        strategy = AuthenticatorDerived(authenticator, self.auth)
        timeout = self.auth.timeout if timeout is None else timeout
        try:
            key = await asyncio.wait_for(strategy.register(self, display_name), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise UnlockCancelledError(f"Registration timed out after {timeout}s") from e
        return self._install(key, strategy.method)

    def _install(self, key: bytes, method: str) -> SessionContext:
        if self._live is not None:
            self._live.invalidate()
        self._live = SessionContext(key, method)
        log_with_context("Key store unlocked", "info", {"method": method})
        return self._live

    def lock(self) -> None:
        if self._live is not None:
            self._live.invalidate()
            self._live = None
            logger.info("Key store locked")

    def _require(self, ctx: Optional[SessionContext]) -> SessionContext:
        if ctx is None or ctx is not self._live or not ctx.active:
            raise NotUnlockedError("Key store is locked; unlock before reading or writing key material")
        return ctx

    # ----- device records -----

    def put(self, ctx: SessionContext, device_id: str, field: str, value: Any) -> None:
        ctx = self._require(ctx)
        devices = self._file.partition(DEVICE_KEYS)
        record = devices.get(device_id, {})
        if field == SHARED_SECRET and not {SELF_PRIVATE_KEY, PEER_PUBLIC_KEY} <= record.keys():
            raise ValueError("sharedSecret requires selfPrivateKey and peerPublicKey; use put_key_material")
        record[field] = base64.b64encode(ctx.seal(_encode_value(value))).decode()
        devices[device_id] = record
        self._file.commit()

    def get(self, ctx: SessionContext, device_id: str, field: str) -> Any:
        """Decrypt one field. Missing, tampered or malformed records read as None."""
        ctx = self._require(ctx)
        stored = self._file.partition(DEVICE_KEYS).get(device_id, {}).get(field)
        if stored is None:
            return None
        try:
            blob = base64.b64decode(stored, validate=True)
            return _decode_value(ctx.open(blob))
        except (binascii.Error, ValueError, CorruptionError) as e:
            log_with_context(
                f"Record unreadable, treating as absent: {e}",
                "warning",
                {"device": short_id(device_id), "field": field},
            )
            return None

    def put_key_material(self, ctx: SessionContext, device_id: str, material: KeyMaterial) -> None:
        """Replace all four key-material fields of a device in one write."""
        ctx = self._require(ctx)
        sealed = {
            name: base64.b64encode(ctx.seal(_encode_value(value))).decode()
            for name, value in material.as_fields().items()
        }
        self._file.partition(DEVICE_KEYS)[device_id] = sealed
        self._file.commit()
        log_with_context("Stored key material", "info", {"device": short_id(device_id)})

    def get_key_material(self, ctx: SessionContext, device_id: str) -> Optional[KeyMaterial]:
        values = {name: self.get(ctx, device_id, name) for name in KEY_MATERIAL_FIELDS}
        if not all(isinstance(v, bytes) for v in values.values()):
            return None
        try:
            return KeyMaterial(
                self_public_key=values[SELF_PUBLIC_KEY],
                self_private_key=values[SELF_PRIVATE_KEY],
                peer_public_key=values[PEER_PUBLIC_KEY],
                shared_secret=values[SHARED_SECRET],
            )
        except FormatError as e:
            logger.warning(f"Key material for {short_id(device_id)} is inconsistent: {e}")
            return None

    def key_material_complete(self, ctx: SessionContext, device_id: str) -> bool:
        return all(self.get(ctx, device_id, name) is not None for name in KEY_MATERIAL_FIELDS)

    def has_shared_secret(self, device_id: str) -> bool:
        """Whether a sealed shared secret exists, without decrypting it."""
        return SHARED_SECRET in self._file.partition(DEVICE_KEYS).get(device_id, {})

    def delete_device(self, device_id: str) -> bool:
        removed = self._file.partition(DEVICE_KEYS).pop(device_id, None) is not None
        if removed:
            self._file.commit()
            logger.info(f"Deleted key material for {short_id(device_id)}")
        return removed

    def list_devices(self) -> list[str]:
        return sorted(self._file.partition(DEVICE_KEYS))

    # ----- credentials -----

    def credentials_exist(self) -> bool:
        return bool(self._file.partition(CREDENTIALS))

    def list_credentials(self) -> list[CredentialRecord]:
        return [
            self._credential_from_doc(cred_id, record)
            for cred_id, record in self._file.partition(CREDENTIALS).items()
        ]

    def credential_record(self, credential_id: bytes) -> Optional[CredentialRecord]:
        key = b64url_encode(credential_id)
        record = self._file.partition(CREDENTIALS).get(key)
        if record is None:
            return None
        return self._credential_from_doc(key, record)

    @staticmethod
    def _credential_from_doc(cred_id: str, record: dict[str, Any]) -> CredentialRecord:
        return CredentialRecord(
            credential_id=b64url_decode(cred_id),
            display_name=record["displayName"],
            public_key=base64.b64decode(record["publicKey"]),
            counter=int(record["counter"]),
        )

    def save_credential(self, credential_id: bytes, *, display_name: str, public_key: bytes, counter: int) -> None:
        self._file.partition(CREDENTIALS)[b64url_encode(credential_id)] = {
            "displayName": display_name,
            "publicKey": base64.b64encode(public_key).decode(),
            "counter": counter,
        }
        self._file.commit()

    def update_credential_counter(self, credential_id: bytes, counter: int) -> None:
        record = self._file.partition(CREDENTIALS)[b64url_encode(credential_id)]
        record["counter"] = counter
        self._file.commit()

    # ----- metadata -----

    def load_or_create_meta(self, name: str, length: int) -> bytes:
        """Return a persisted random value, generating it on first use."""
        meta = self._file.partition(META)
        if name in meta:
            try:
                return base64.b64decode(meta[name], validate=True)
            except binascii.Error:
                logger.warning(f"Stored {name} unreadable, regenerating")
        value = os.urandom(length)
        meta[name] = base64.b64encode(value).decode()
        self._file.commit()
        return value
