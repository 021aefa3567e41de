# src/toothpaste/session.py
"""
Session orchestration module for toothpaste.

Ties one key exchange and one transport session to each paired device.
Pairing runs as:

1. the peer's compressed public key arrives out of band (pasted or scanned)
2. it is decompressed, a fresh local key pair is generated and the shared
   secret derived
3. all four pieces of key material are written to the key store
4. the local compressed public key is written back over the link, unencrypted,
   so the peer can derive the same secret
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import time
from dataclasses import dataclass, field
from typing import Optional

from .config import Config
from .ecdh import COMPRESSED_LEN, compress, decompress, derive_shared_secret, generate_key_pair, serialize_private_key
from .errors import AlreadyPairedError, FormatError, NotUnlockedError, StateError, TransportError
from .link import RawLink
from .robustness import log_with_context, short_id
from .store import KeyMaterial, KeyStore
from .transport import TransportSession, TransportState

logger = logging.getLogger(__name__)


def decode_pairing_payload(text: str | bytes) -> bytes:
    """Turn a pasted or scanned pairing code into a 33-byte compressed key.

    Accepts hex (66 digits) or base64 in either alphabet.
    """
    if isinstance(text, bytes):
        if len(text) == COMPRESSED_LEN:
            return text
        text = text.decode("ascii", errors="replace")
    cleaned = "".join(text.split())
    candidates = []
    try:
        candidates.append(bytes.fromhex(cleaned))
    except ValueError:
        pass
    padded = cleaned + "=" * (-len(cleaned) % 4)
    for decoder in (base64.b64decode, base64.urlsafe_b64decode):
        try:
            candidates.append(decoder(padded))
        except (binascii.Error, ValueError):
            continue
    for candidate in candidates:
        if len(candidate) == COMPRESSED_LEN and candidate[0] in (0x02, 0x03):
            return candidate
    raise FormatError(f"pairing code is not a {COMPRESSED_LEN}-byte compressed public key")


@dataclass
class DeviceSession:
    device_id: str
    link: RawLink
    transport: TransportSession
    connected_at: float = field(default_factory=time.time)

    @property
    def active(self) -> bool:
        return self.transport.state is TransportState.STREAMING


class SessionManager:
    """Owns per-device session state and lifecycle."""

    def __init__(self, store: KeyStore, config: Optional[Config] = None):
        self.store = store
        self.config = config
        self.sessions: dict[str, DeviceSession] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _setting(self, *keys, default=None):
        if self.config is None:
            return default
        return self.config.get(*keys, default=default)

    def _lock_for(self, device_id: str) -> asyncio.Lock:
        # Entries are never removed: a queued coroutine may still be waiting on one.
        lock = self._locks.get(device_id)
        if lock is None:
            lock = self._locks[device_id] = asyncio.Lock()
        return lock

    def _context(self):
        ctx = self.store.context
        if ctx is None or not self.store.is_unlocked:
            raise NotUnlockedError("Unlock the key store before pairing or connecting")
        return ctx

    def is_paired(self, device_id: str) -> bool:
        return self.store.has_shared_secret(device_id)

    async def pair(self, device_id: str, peer_public_key: bytes | str, link: RawLink, *, repair: bool = False) -> bytes:
        """Pair with a device and return the local compressed public key sent to it.

        Refuses to replace an existing pairing unless `repair` is set.
        """
        ctx = self._context()
        async with self._lock_for(device_id):
            if self.is_paired(device_id) and not repair:
                raise AlreadyPairedError(
                    f"Device {short_id(device_id)} is already paired; pass repair=True to replace it",
                    context={"device": short_id(device_id)},
                )

            peer_compressed = decode_pairing_payload(peer_public_key)
            peer_uncompressed = decompress(peer_compressed)

            private_key, public_key = await asyncio.to_thread(generate_key_pair)
            secret = derive_shared_secret(private_key, peer_uncompressed)

            if device_id in self.sessions:
                await self._close(device_id)

            self.store.put_key_material(
                ctx,
                device_id,
                KeyMaterial(
                    self_public_key=public_key,
                    self_private_key=serialize_private_key(private_key),
                    peer_public_key=peer_uncompressed,
                    shared_secret=secret,
                ),
            )

            local_compressed = compress(public_key)
            try:
                link.write(local_compressed)
                ready_timeout = self._setting("link", "ready_timeout")
                if ready_timeout is None:
                    await link.wait_ready()
                else:
                    await asyncio.wait_for(link.wait_ready(), timeout=ready_timeout)
            except Exception as e:
                log_with_context(
                    f"Failed to send public key to peer: {e}",
                    "error",
                    {"device": short_id(device_id)},
                )
                raise TransportError(f"could not deliver public key to {short_id(device_id)}: {e}") from e

            log_with_context(
                "Device paired",
                "info",
                {"device": short_id(device_id), "repair": repair},
            )
            return local_compressed

    async def connect(self, device_id: str, link: RawLink) -> TransportSession:
        """Open a streaming transport to a paired device."""
        ctx = self._context()
        async with self._lock_for(device_id):
            existing = self.sessions.get(device_id)
            if existing is not None and existing.active:
                return existing.transport

            material = self.store.get_key_material(ctx, device_id)
            if material is None:
                raise StateError(f"Device {short_id(device_id)} has no usable key material; pair it first")

            transport = TransportSession(
                link,
                mtu=self._setting("link", "mtu", default=247),
                ready_timeout=self._setting("link", "ready_timeout"),
                slow_mode=self._setting("link", "slow_mode", default=False),
                session_kdf=self._setting("transport", "session_kdf", default="raw"),
                device_id=device_id,
            )
            transport.agree_key(material.shared_secret)
            transport.start()
            self.sessions[device_id] = DeviceSession(device_id=device_id, link=link, transport=transport)
            logger.info(f"Connected to {short_id(device_id)}")
            return transport

    async def send(self, device_id: str, text: str | bytes) -> int:
        session = self.sessions.get(device_id)
        if session is None:
            raise StateError(f"Device {short_id(device_id)} is not connected")
        return await session.transport.send_encrypted(text)

    async def _close(self, device_id: str) -> None:
        session = self.sessions.pop(device_id, None)
        if session is not None:
            await session.transport.close()

    async def disconnect(self, device_id: str) -> None:
        """Drain any in-flight message and close the device's transport."""
        await self._close(device_id)
        logger.info(f"Disconnected from {short_id(device_id)}")

    async def forget(self, device_id: str) -> bool:
        """Disconnect and delete the device's key material."""
        async with self._lock_for(device_id):
            await self._close(device_id)
            removed = self.store.delete_device(device_id)
        log_with_context("Device forgotten", "info", {"device": short_id(device_id), "removed": removed})
        return removed

    async def close_all(self) -> None:
        for device_id in list(self.sessions):
            await self.disconnect(device_id)
