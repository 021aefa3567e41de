"""
toothpaste.codec - Binary layout of the wire packet.

Fixed-order fields, big-endian integers:

    kind(1) sequence(4) total(4) slow_mode(1) iv(12) length(4) ciphertext(length) tag(16)

Pure encode/decode, no I/O and no cryptography.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntEnum

from .errors import FormatError

IV_LENGTH = 12
TAG_LENGTH = 16

HEADER_FMT = "!BIIB12sI"  # kind1, sequence4, total4, slow1, iv12, length4
HEADER_LEN = struct.calcsize(HEADER_FMT)
PACKET_OVERHEAD = HEADER_LEN + TAG_LENGTH

MAX_UINT32 = 0xFFFFFFFF


class PacketKind(IntEnum):
    DATA = 0
    AUTH = 1


@dataclass(frozen=True)
class Packet:
    kind: PacketKind
    sequence_number: int
    total_packets: int
    slow_mode: bool
    iv: bytes
    plaintext_length: int
    ciphertext: bytes
    auth_tag: bytes

    def __post_init__(self):
        if not 0 <= self.sequence_number < self.total_packets <= MAX_UINT32:
            raise FormatError(
                f"sequence {self.sequence_number} out of range for {self.total_packets} packets"
            )
        if len(self.iv) != IV_LENGTH:
            raise FormatError(f"iv must be {IV_LENGTH} bytes, got {len(self.iv)}")
        if len(self.auth_tag) != TAG_LENGTH:
            raise FormatError(f"auth tag must be {TAG_LENGTH} bytes, got {len(self.auth_tag)}")
        if len(self.ciphertext) != self.plaintext_length:
            raise FormatError(
                f"ciphertext is {len(self.ciphertext)} bytes, header says {self.plaintext_length}"
            )

    @property
    def is_last(self) -> bool:
        return self.sequence_number == self.total_packets - 1

    def serialize(self) -> bytes:
        return encode_packet(self)


def encode_packet(packet: Packet) -> bytes:
    header = struct.pack(
        HEADER_FMT,
        int(packet.kind),
        packet.sequence_number,
        packet.total_packets,
        1 if packet.slow_mode else 0,
        packet.iv,
        packet.plaintext_length,
    )
    return header + packet.ciphertext + packet.auth_tag


def decode_packet(data: bytes) -> Packet:
    if len(data) < PACKET_OVERHEAD:
        raise FormatError(f"short packet: {len(data)} bytes, need at least {PACKET_OVERHEAD}")
    kind, sequence, total, slow, iv, length = struct.unpack(HEADER_FMT, data[:HEADER_LEN])
    if len(data) != PACKET_OVERHEAD + length:
        raise FormatError(f"packet length {len(data)} does not match declared payload {length}")
    try:
        kind = PacketKind(kind)
    except ValueError:
        raise FormatError(f"unknown packet kind {kind}") from None
    if slow not in (0, 1):
        raise FormatError(f"slow mode flag must be 0 or 1, got {slow}")
    body_end = HEADER_LEN + length
    return Packet(
        kind=kind,
        sequence_number=sequence,
        total_packets=total,
        slow_mode=bool(slow),
        iv=iv,
        plaintext_length=length,
        ciphertext=data[HEADER_LEN:body_end],
        auth_tag=data[body_end:],
    )


def max_fragment_size(mtu: int) -> int:
    """Largest plaintext fragment that fits a single link write of `mtu` bytes."""
    size = mtu - PACKET_OVERHEAD
    if size < 1:
        raise FormatError(f"mtu {mtu} leaves no room for payload")
    return size
