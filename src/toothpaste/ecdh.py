"""
toothpaste.ecdh - P-256 key agreement and point compression.

Public API:
- generate_key_pair, compress, decompress
- import_peer_public_key, derive_shared_secret, derive_session_key
- serialize_private_key, load_private_key, public_key_bytes

Peripherals announce their key as a 33-byte compressed point (it has to fit
one small write); only the host ever expands it back to 65 bytes.
"""

from __future__ import annotations

import logging

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .errors import FormatError, InvalidKeyError

logger = logging.getLogger(__name__)

CURVE = ec.SECP256R1()
UNCOMPRESSED_LEN = 65
COMPRESSED_LEN = 33
SHARED_SECRET_LEN = 32
SESSION_KEY_INFO = b"aes-gcm-256"


def generate_key_pair() -> tuple[ec.EllipticCurvePrivateKey, bytes]:
    """Generate a fresh P-256 key pair.

    Returns (private_key, public_key) where public_key is the 65-byte
    uncompressed X9.62 point.
    """
    private_key = ec.generate_private_key(CURVE)
    return private_key, public_key_bytes(private_key.public_key())


def public_key_bytes(public_key: ec.EllipticCurvePublicKey) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.X962,
        format=serialization.PublicFormat.UncompressedPoint,
    )


def compress(public_key: bytes | ec.EllipticCurvePublicKey) -> bytes:
    """Encode an uncompressed point as prefix || x.

    The prefix is 0x02 when y is even and 0x03 when it is odd. This works on
    the encoding alone and does not check that the point is on the curve.
    """
    if isinstance(public_key, ec.EllipticCurvePublicKey):
        public_key = public_key_bytes(public_key)
    raw = bytes(public_key)
    if len(raw) != UNCOMPRESSED_LEN or raw[0] != 0x04:
        raise FormatError(
            f"expected a {UNCOMPRESSED_LEN}-byte uncompressed point starting with 0x04",
            context={"length": len(raw)},
        )
    x = raw[1:33]
    y = raw[33:65]
    prefix = 0x02 if y[-1] % 2 == 0 else 0x03
    return bytes([prefix]) + x


def decompress(compressed: bytes) -> bytes:
    """Recover the 65-byte uncompressed point from its 33-byte compressed form."""
    raw = bytes(compressed)
    if len(raw) != COMPRESSED_LEN or raw[0] not in (0x02, 0x03):
        raise InvalidKeyError(
            f"expected a {COMPRESSED_LEN}-byte compressed point with prefix 0x02 or 0x03",
            context={"length": len(raw)},
        )
    try:
        point = ec.EllipticCurvePublicKey.from_encoded_point(CURVE, raw)
    except ValueError as e:
        raise InvalidKeyError(f"compressed key is not a point on P-256: {e}") from e
    return public_key_bytes(point)


def import_peer_public_key(public_key: bytes) -> ec.EllipticCurvePublicKey:
    """Load a peer's uncompressed point, rejecting anything off the curve."""
    raw = bytes(public_key)
    if len(raw) != UNCOMPRESSED_LEN or raw[0] != 0x04:
        raise InvalidKeyError(
            "peer key must be a 65-byte uncompressed point",
            context={"length": len(raw)},
        )
    try:
        return ec.EllipticCurvePublicKey.from_encoded_point(CURVE, raw)
    except ValueError as e:
        logger.warning(f"Rejected peer key: {e}")
        raise InvalidKeyError(f"peer key is not a valid P-256 point: {e}") from e


def derive_shared_secret(
    private_key: ec.EllipticCurvePrivateKey,
    peer_public_key: bytes | ec.EllipticCurvePublicKey,
) -> bytes:
    """ECDH over P-256; returns the 32-byte shared x-coordinate."""
    if not isinstance(peer_public_key, ec.EllipticCurvePublicKey):
        peer_public_key = import_peer_public_key(peer_public_key)
    try:
        secret = private_key.exchange(ec.ECDH(), peer_public_key)
    except ValueError as e:
        raise InvalidKeyError(f"key agreement failed: {e}") from e
    if len(secret) != SHARED_SECRET_LEN:
        raise InvalidKeyError(f"unexpected shared secret length {len(secret)}")
    return secret


def derive_session_key(shared_secret: bytes, info: bytes = SESSION_KEY_INFO) -> bytes:
    """Expand an ECDH output into an AES-256 key with HKDF-SHA256 (no salt)."""
    if len(shared_secret) != SHARED_SECRET_LEN:
        raise InvalidKeyError(f"shared secret must be {SHARED_SECRET_LEN} bytes")
    hkdf = HKDF(algorithm=hashes.SHA256(), length=32, salt=None, info=info)
    return hkdf.derive(shared_secret)


def serialize_private_key(private_key: ec.EllipticCurvePrivateKey) -> bytes:
    return private_key.private_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def load_private_key(data: bytes) -> ec.EllipticCurvePrivateKey:
    try:
        key = serialization.load_der_private_key(data, password=None)
    except (ValueError, TypeError) as e:
        raise InvalidKeyError(f"private key could not be loaded: {e}") from e
    if not isinstance(key, ec.EllipticCurvePrivateKey) or key.curve.name != CURVE.name:
        raise InvalidKeyError("private key is not a P-256 key")
    return key
