# src/toothpaste/transport.py
"""
Transport session module for toothpaste.

Splits application payloads into fragments that fit one link write,
seals each fragment as its own AES-GCM unit, and paces writes against the
link's readiness signal. The receive side (Reassembler) checks ordering and
stitches fragments back together.

State machine per connection:

    IDLE -> KEY_AGREED -> STREAMING -> DRAINING -> CLOSED
"""

from __future__ import annotations

import asyncio
import logging
import os
from enum import Enum
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .codec import IV_LENGTH, TAG_LENGTH, Packet, PacketKind, decode_packet, max_fragment_size
from .ecdh import SHARED_SECRET_LEN, derive_session_key
from .errors import FormatError, FragmentAuthenticationError, InvalidKeyError, ReassemblyError, StateError, TransportError
from .link import RawLink
from .robustness import log_with_context, short_id

logger = logging.getLogger(__name__)

DEFAULT_MTU = 247


class TransportState(Enum):
    IDLE = "IDLE"
    KEY_AGREED = "KEY_AGREED"
    STREAMING = "STREAMING"
    DRAINING = "DRAINING"
    CLOSED = "CLOSED"


def session_aead(shared_secret: bytes, session_kdf: str = "raw") -> AESGCM:
    """AES-GCM cipher for a connection, keyed from the ECDH shared secret."""
    if len(shared_secret) != SHARED_SECRET_LEN:
        raise InvalidKeyError(f"shared secret must be {SHARED_SECRET_LEN} bytes, got {len(shared_secret)}")
    if session_kdf == "hkdf":
        return AESGCM(derive_session_key(shared_secret))
    if session_kdf != "raw":
        raise ValueError(f"unknown session kdf {session_kdf!r}")
    return AESGCM(shared_secret)


def fragment(plaintext: bytes, max_size: int) -> list[bytes]:
    """Cut plaintext into chunks of at most `max_size` bytes.

    An empty payload still yields one (empty) fragment so the far end sees a
    complete message.
    """
    if max_size < 1:
        raise ValueError("fragment size must be positive")
    if not plaintext:
        return [b""]
    return [plaintext[i:i + max_size] for i in range(0, len(plaintext), max_size)]


class TransportSession:
    """Encrypted, flow-controlled sender bound to one link."""

    def __init__(
        self,
        link: RawLink,
        *,
        mtu: int = DEFAULT_MTU,
        fragment_size: Optional[int] = None,
        ready_timeout: Optional[float] = None,
        slow_mode: bool = False,
        session_kdf: str = "raw",
        device_id: Optional[str] = None,
    ):
        self.link = link
        self.fragment_size = fragment_size or max_fragment_size(mtu)
        self.ready_timeout = ready_timeout
        self.slow_mode = slow_mode
        self.session_kdf = session_kdf
        self.device_id = device_id
        self.messages_sent = 0
        self.packets_sent = 0
        self._state = TransportState.IDLE
        self._aead: Optional[AESGCM] = None
        self._send_lock = asyncio.Lock()

    @property
    def state(self) -> TransportState:
        return self._state

    def _context(self, **extra) -> dict:
        return {"device": short_id(self.device_id or ""), "state": self._state.value, **extra}

    def agree_key(self, shared_secret: bytes) -> None:
        if self._state is not TransportState.IDLE:
            raise StateError(f"cannot agree a key in state {self._state.value}")
        self._aead = session_aead(shared_secret, self.session_kdf)
        self._state = TransportState.KEY_AGREED
        logger.debug(f"Transport for {short_id(self.device_id or '')} key agreed")

    def start(self) -> None:
        if self._state is not TransportState.KEY_AGREED:
            raise StateError(f"cannot start streaming from state {self._state.value}")
        self._state = TransportState.STREAMING

    def seal(self, kind: PacketKind, sequence: int, total: int, chunk: bytes, slow_mode: bool) -> Packet:
        if self._aead is None:
            raise StateError("no session key")
        iv = os.urandom(IV_LENGTH)
        sealed = self._aead.encrypt(iv, chunk, None)
        return Packet(
            kind=kind,
            sequence_number=sequence,
            total_packets=total,
            slow_mode=slow_mode,
            iv=iv,
            plaintext_length=len(chunk),
            ciphertext=sealed[:-TAG_LENGTH],
            auth_tag=sealed[-TAG_LENGTH:],
        )

    async def _wait_ready(self) -> None:
        try:
            if self.ready_timeout is None:
                await self.link.wait_ready()
            else:
                await asyncio.wait_for(self.link.wait_ready(), timeout=self.ready_timeout)
        except asyncio.TimeoutError as e:
            raise TransportError(f"link not ready after {self.ready_timeout}s") from e

    async def send_encrypted(
        self,
        plaintext: bytes | str,
        *,
        kind: PacketKind = PacketKind.DATA,
        slow_mode: Optional[bool] = None,
    ) -> int:
        """Fragment, encrypt and write one logical message; returns the packet count.

        Concurrent calls queue behind each other. If a write fails, or the
        readiness wait is cancelled, the rest of the message is dropped and
        the caller must resend it in full; the session stays usable.
        """
        if self._state is not TransportState.STREAMING:
            raise StateError(f"cannot send in state {self._state.value}")
        data = plaintext.encode("utf-8") if isinstance(plaintext, str) else bytes(plaintext)
        slow = self.slow_mode if slow_mode is None else slow_mode

        async with self._send_lock:
            if self._state is not TransportState.STREAMING:
                raise StateError(f"session entered {self._state.value} while message was queued")
            fragments = fragment(data, self.fragment_size)
            total = len(fragments)
            sent = 0
            try:
                for sequence, chunk in enumerate(fragments):
                    packet = self.seal(kind, sequence, total, chunk, slow)
                    try:
                        self.link.write(packet.serialize())
                    except Exception as e:
                        log_with_context(
                            f"Link write failed, aborting message: {e}",
                            "error",
                            self._context(sequence=sequence, total=total),
                        )
                        raise TransportError(f"link write failed at fragment {sequence}/{total}: {e}") from e
                    sent += 1
                    self.packets_sent += 1
                    await self._wait_ready()
            except asyncio.CancelledError:
                log_with_context(
                    "Send cancelled while waiting for link, remaining fragments dropped",
                    "warning",
                    self._context(sent=sent, total=total),
                )
                raise
            self.messages_sent += 1
            logger.debug(f"Sent {total} packet(s), {len(data)} bytes")
            return total

    async def close(self) -> None:
        """Finish any in-flight message, then close."""
        if self._state is TransportState.CLOSED:
            return
        if self._state is TransportState.STREAMING:
            self._state = TransportState.DRAINING
            async with self._send_lock:
                pass
        self._aead = None
        self._state = TransportState.CLOSED
        logger.info(f"Transport for {short_id(self.device_id or '')} closed")


class Reassembler:
    """Receive side: buffers fragments of one message until the last arrives.

    Fragments carry no message id, so any sequence gap, repeat or change of
    total count discards the partial message. An authentic fragment 0 while a
    message is in progress starts a new message: the sender aborted and is
    resending, so the stale prefix is dropped. A fragment whose tag fails is
    dropped on its own and the buffered prefix is kept.
    """

    def __init__(self, shared_secret: bytes, session_kdf: str = "raw"):
        self._aead = session_aead(shared_secret, session_kdf)
        self._chunks: list[bytes] = []
        self._total: Optional[int] = None
        self._kind: Optional[PacketKind] = None
        self.last_kind: Optional[PacketKind] = None
        self.abandoned = 0

    @property
    def pending(self) -> int:
        return len(self._chunks)

    def reset(self) -> None:
        self._chunks = []
        self._total = None
        self._kind = None

    def _violation(self, message: str, packet: Optional[Packet] = None) -> ReassemblyError:
        context = {"buffered": len(self._chunks), "expected_total": self._total}
        if packet is not None:
            context.update(sequence=packet.sequence_number, total=packet.total_packets)
        self.reset()
        log_with_context(f"Reassembly violation: {message}", "warning", context)
        return ReassemblyError(message, context=context)

    def feed(self, data: bytes | Packet) -> Optional[bytes]:
        """Add one packet; returns the full plaintext once the last fragment arrives."""
        if isinstance(data, Packet):
            packet = data
        else:
            try:
                packet = decode_packet(data)
            except FormatError as e:
                raise self._violation(f"undecodable packet: {e}") from e

        restart = packet.sequence_number == 0 and bool(self._chunks)
        expected = len(self._chunks)
        if not restart:
            if packet.sequence_number != expected:
                raise self._violation(
                    f"expected fragment {expected}, got {packet.sequence_number}", packet
                )
            if self._total is not None and (packet.total_packets != self._total or packet.kind != self._kind):
                raise self._violation("fragment does not belong to the message in progress", packet)

        try:
            chunk = self._aead.decrypt(packet.iv, packet.ciphertext + packet.auth_tag, None)
        except InvalidTag as e:
            raise FragmentAuthenticationError(
                f"fragment {packet.sequence_number} failed authentication",
                context={"sequence": packet.sequence_number, "total": packet.total_packets},
            ) from e

        if restart:
            log_with_context(
                "New message started before the last one completed, dropping partial message",
                "warning",
                {"buffered": len(self._chunks), "expected_total": self._total},
            )
            self.abandoned += 1
            self.reset()

        if self._total is None:
            self._total = packet.total_packets
            self._kind = packet.kind
        self._chunks.append(chunk)

        if not packet.is_last:
            return None
        message = b"".join(self._chunks)
        self.last_kind = self._kind
        self.reset()
        return message
