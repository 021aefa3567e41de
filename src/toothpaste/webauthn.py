"""
toothpaste.webauthn - Platform authenticator interface and assertion checks.

The platform (browser, OS keychain, security key) is an external
collaborator behind the Authenticator interface. This module only parses
what it returns and decides whether to trust it:

- registration: attestation object -> credential id, P-256 public key, counter
- unlock: assertion -> challenge, relying party, user presence, ES256
  signature and a strictly increasing signature counter
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec

from . import cbor
from .ecdh import import_peer_public_key
from .errors import ClonedAuthenticatorError, FormatError, InvalidKeyError, SignatureError

logger = logging.getLogger(__name__)

FLAG_USER_PRESENT = 0x01
FLAG_USER_VERIFIED = 0x04
FLAG_ATTESTED_CREDENTIAL = 0x40

# COSE key labels for an EC2 key
COSE_KTY = 1
COSE_ALG = 3
COSE_CRV = -1
COSE_X = -2
COSE_Y = -3
COSE_KTY_EC2 = 2
COSE_ALG_ES256 = -7
COSE_CRV_P256 = 1

AUTH_DATA_MIN_LEN = 37


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(text: str) -> bytes:
    padded = text + "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


@dataclass
class AttestationResponse:
    credential_id: bytes
    client_data_json: bytes
    attestation_object: bytes


@dataclass
class AssertionResponse:
    credential_id: bytes
    client_data_json: bytes
    authenticator_data: bytes
    signature: bytes


@dataclass
class AuthenticatorData:
    rp_id_hash: bytes
    flags: int
    sign_count: int
    credential_id: Optional[bytes] = None
    credential_public_key: Optional[dict] = None

    @property
    def user_present(self) -> bool:
        return bool(self.flags & FLAG_USER_PRESENT)


@dataclass
class RegisteredCredential:
    credential_id: bytes
    public_key: bytes
    sign_count: int


class Authenticator(ABC):
    """Platform authenticator. Either call may return None when the user cancels."""

    @abstractmethod
    async def create_credential(
        self, *, challenge: bytes, rp_id: str, user_id: bytes, display_name: str
    ) -> Optional[AttestationResponse]:
        raise NotImplementedError

    @abstractmethod
    async def get_assertion(
        self, *, challenge: bytes, rp_id: str, allow_credentials: list[bytes]
    ) -> Optional[AssertionResponse]:
        raise NotImplementedError


def parse_authenticator_data(data: bytes) -> AuthenticatorData:
    if len(data) < AUTH_DATA_MIN_LEN:
        raise FormatError(f"authenticator data too short: {len(data)} bytes")
    parsed = AuthenticatorData(
        rp_id_hash=bytes(data[:32]),
        flags=data[32],
        sign_count=int.from_bytes(data[33:37], "big"),
    )
    if parsed.flags & FLAG_ATTESTED_CREDENTIAL:
        offset = AUTH_DATA_MIN_LEN + 16  # skip aaguid
        if len(data) < offset + 2:
            raise FormatError("attested credential data truncated")
        id_len = int.from_bytes(data[offset:offset + 2], "big")
        offset += 2
        if len(data) < offset + id_len:
            raise FormatError("credential id truncated")
        parsed.credential_id = bytes(data[offset:offset + id_len])
        key, _ = cbor.decode_item(data, offset + id_len)
        if not isinstance(key, dict):
            raise FormatError("credential public key is not a COSE map")
        parsed.credential_public_key = key
    return parsed


def cose_to_public_key(cose_key: dict[Any, Any]) -> bytes:
    """Convert a COSE EC2/ES256/P-256 key into a 65-byte uncompressed point."""
    if cose_key.get(COSE_KTY) != COSE_KTY_EC2:
        raise FormatError(f"unsupported COSE key type {cose_key.get(COSE_KTY)!r}")
    if cose_key.get(COSE_ALG) != COSE_ALG_ES256:
        raise FormatError(f"unsupported COSE algorithm {cose_key.get(COSE_ALG)!r}")
    if cose_key.get(COSE_CRV) != COSE_CRV_P256:
        raise FormatError(f"unsupported COSE curve {cose_key.get(COSE_CRV)!r}")
    x, y = cose_key.get(COSE_X), cose_key.get(COSE_Y)
    if not isinstance(x, bytes) or not isinstance(y, bytes) or len(x) != 32 or len(y) != 32:
        raise FormatError("COSE key coordinates must be 32-byte strings")
    point = b"\x04" + x + y
    import_peer_public_key(point)
    return point


def _check_client_data(client_data_json: bytes, expected_type: str, challenge: bytes) -> dict:
    try:
        client_data = json.loads(client_data_json)
    except (ValueError, UnicodeDecodeError) as e:
        raise SignatureError(f"client data is not valid JSON: {e}") from e
    if not isinstance(client_data, dict) or client_data.get("type") != expected_type:
        raise SignatureError(f"client data type is not {expected_type}")
    try:
        returned = b64url_decode(str(client_data.get("challenge", "")))
    except ValueError as e:
        raise SignatureError("client data challenge is not base64url") from e
    if returned != challenge:
        raise SignatureError("challenge mismatch")
    return client_data


def _check_rp(auth_data: AuthenticatorData, rp_id: str):
    if auth_data.rp_id_hash != hashlib.sha256(rp_id.encode()).digest():
        raise SignatureError("relying party hash mismatch")
    if not auth_data.user_present:
        raise SignatureError("user presence flag not set")


def parse_attestation(response: AttestationResponse, *, challenge: bytes, rp_id: str) -> RegisteredCredential:
    """Extract the new credential from a registration response.

    Attestation statements are not evaluated: the credential is trusted on
    first use, as with attestation conveyance "none".
    """
    _check_client_data(response.client_data_json, "webauthn.create", challenge)
    attestation = cbor.decode(response.attestation_object)
    if not isinstance(attestation, dict) or not isinstance(attestation.get("authData"), bytes):
        raise FormatError("attestation object has no authData")
    auth_data = parse_authenticator_data(attestation["authData"])
    _check_rp(auth_data, rp_id)
    if auth_data.credential_id is None or auth_data.credential_public_key is None:
        raise FormatError("attestation carries no credential data")
    if auth_data.credential_id != response.credential_id:
        raise SignatureError("attested credential id does not match response id")
    try:
        public_key = cose_to_public_key(auth_data.credential_public_key)
    except InvalidKeyError as e:
        raise FormatError(f"attested public key is invalid: {e}") from e
    logger.debug(f"Parsed attestation fmt={attestation.get('fmt')!r} counter={auth_data.sign_count}")
    return RegisteredCredential(
        credential_id=auth_data.credential_id,
        public_key=public_key,
        sign_count=auth_data.sign_count,
    )


def verify_assertion(
    response: AssertionResponse,
    *,
    challenge: bytes,
    rp_id: str,
    public_key: bytes,
    stored_sign_count: int,
) -> int:
    """Check an assertion and return its signature counter.

    The counter must be strictly greater than `stored_sign_count`; anything
    else means two authenticators share one credential and is rejected with
    ClonedAuthenticatorError even when the signature itself is valid.
    """
    _check_client_data(response.client_data_json, "webauthn.get", challenge)
    try:
        auth_data = parse_authenticator_data(response.authenticator_data)
    except FormatError as e:
        raise SignatureError(f"malformed authenticator data: {e}") from e
    _check_rp(auth_data, rp_id)

    verifier = import_peer_public_key(public_key)
    signed = bytes(response.authenticator_data) + hashlib.sha256(response.client_data_json).digest()
    try:
        verifier.verify(response.signature, signed, ec.ECDSA(hashes.SHA256()))
    except InvalidSignature as e:
        raise SignatureError("assertion signature does not verify") from e

    if auth_data.sign_count <= stored_sign_count:
        raise ClonedAuthenticatorError(
            "signature counter did not increase",
            context={"stored": stored_sign_count, "received": auth_data.sign_count},
        )
    return auth_data.sign_count
