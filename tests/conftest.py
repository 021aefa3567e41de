# tests/conftest.py
"""Shared fixtures, including a software platform authenticator."""

import hashlib
import json
import os
import struct
from typing import Optional

import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec

from toothpaste import cbor
from toothpaste.store import KeyStore
from toothpaste.webauthn import (
    FLAG_ATTESTED_CREDENTIAL,
    FLAG_USER_PRESENT,
    AssertionResponse,
    AttestationResponse,
    Authenticator,
    b64url_encode,
)


def client_data(kind: str, challenge: bytes, rp_id: str) -> bytes:
    return json.dumps(
        {"type": kind, "challenge": b64url_encode(challenge), "origin": f"https://{rp_id}"}
    ).encode()


def cose_key(private_key: ec.EllipticCurvePrivateKey) -> dict:
    numbers = private_key.public_key().public_numbers()
    return {
        1: 2,
        3: -7,
        -1: 1,
        -2: numbers.x.to_bytes(32, "big"),
        -3: numbers.y.to_bytes(32, "big"),
    }


class SoftwareAuthenticator(Authenticator):
    """ES256 authenticator that signs for real.

    `cancel` makes both calls behave as if the user dismissed the prompt.
    `counter_step` controls how the signature counter moves per assertion;
    0 replays the previous value, which is what a cloned key looks like.
    """

    def __init__(self):
        self.credentials: dict[bytes, ec.EllipticCurvePrivateKey] = {}
        self.counter = 0
        self.counter_step = 1
        self.cancel = False
        self.user_present = True
        self.challenges: list[bytes] = []

    def _flags(self, extra: int = 0) -> int:
        return (FLAG_USER_PRESENT if self.user_present else 0) | extra

    async def create_credential(self, *, challenge, rp_id, user_id, display_name) -> Optional[AttestationResponse]:
        self.challenges.append(challenge)
        if self.cancel:
            return None
        credential_id = os.urandom(16)
        private_key = ec.generate_private_key(ec.SECP256R1())
        self.credentials[credential_id] = private_key
        auth_data = (
            hashlib.sha256(rp_id.encode()).digest()
            + bytes([self._flags(FLAG_ATTESTED_CREDENTIAL)])
            + struct.pack(">I", self.counter)
            + bytes(16)
            + struct.pack(">H", len(credential_id))
            + credential_id
            + cbor.encode(cose_key(private_key))
        )
        return AttestationResponse(
            credential_id=credential_id,
            client_data_json=client_data("webauthn.create", challenge, rp_id),
            attestation_object=cbor.encode({"fmt": "none", "attStmt": {}, "authData": auth_data}),
        )

    async def get_assertion(self, *, challenge, rp_id, allow_credentials) -> Optional[AssertionResponse]:
        self.challenges.append(challenge)
        if self.cancel:
            return None
        credential_id = next(c for c in allow_credentials if c in self.credentials)
        self.counter += self.counter_step
        auth_data = (
            hashlib.sha256(rp_id.encode()).digest()
            + bytes([self._flags()])
            + struct.pack(">I", self.counter)
        )
        client_data_json = client_data("webauthn.get", challenge, rp_id)
        signature = self.credentials[credential_id].sign(
            auth_data + hashlib.sha256(client_data_json).digest(),
            ec.ECDSA(hashes.SHA256()),
        )
        return AssertionResponse(
            credential_id=credential_id,
            client_data_json=client_data_json,
            authenticator_data=auth_data,
            signature=signature,
        )


@pytest.fixture
def authenticator():
    return SoftwareAuthenticator()


@pytest.fixture
def store_path(tmp_path):
    return str(tmp_path / "keystore.json")


@pytest.fixture
def store(store_path):
    return KeyStore(store_path)
