# tests/test_session.py
"""Tests for session orchestration: pairing, connecting and streaming."""

import asyncio
import base64
from unittest.mock import MagicMock

import pytest

from toothpaste.config import Config
from toothpaste.ecdh import compress, decompress, derive_shared_secret, generate_key_pair
from toothpaste.errors import (
    AlreadyPairedError,
    FormatError,
    InvalidKeyError,
    NotUnlockedError,
    StateError,
    TransportError,
)
from toothpaste.link import MemoryLink
from toothpaste.session import SessionManager, decode_pairing_payload
from toothpaste.transport import Reassembler, TransportState


class Peripheral:
    """Far end of a pairing: announces a key and derives the same secret."""

    def __init__(self):
        self.private_key, self.public_key = generate_key_pair()
        self.announcement = compress(self.public_key)

    def secret_from(self, host_compressed: bytes) -> bytes:
        return derive_shared_secret(self.private_key, decompress(host_compressed))


@pytest.fixture
async def manager(store):
    await store.unlock_with_passphrase("pw")
    return SessionManager(store)


async def pair(manager, device_id, peripheral, **kwargs):
    link = MemoryLink(capacity=4)
    local = await manager.pair(device_id, peripheral.announcement, link, **kwargs)
    return local, link


class TestPairingPayload:
    def test_hex(self):
        peripheral = Peripheral()
        assert decode_pairing_payload(peripheral.announcement.hex()) == peripheral.announcement

    def test_hex_with_whitespace(self):
        peripheral = Peripheral()
        text = " ".join(peripheral.announcement.hex()[i:i + 8] for i in range(0, 66, 8))
        assert decode_pairing_payload(text + "\n") == peripheral.announcement

    def test_base64(self):
        peripheral = Peripheral()
        assert decode_pairing_payload(base64.b64encode(peripheral.announcement).decode()) == peripheral.announcement

    def test_raw_bytes(self):
        peripheral = Peripheral()
        assert decode_pairing_payload(peripheral.announcement) == peripheral.announcement

    def test_rejects_uncompressed(self):
        with pytest.raises(FormatError):
            decode_pairing_payload(Peripheral().public_key.hex())


class TestPair:
    @pytest.mark.asyncio
    async def test_both_sides_share_secret(self, manager, store):
        peripheral = Peripheral()
        local, link = await pair(manager, "kbd", peripheral)

        assert link.writes == [local]
        assert len(local) == 33
        assert manager.is_paired("kbd")

        material = store.get_key_material(store.context, "kbd")
        assert material.peer_public_key == peripheral.public_key
        assert material.shared_secret == peripheral.secret_from(local)

    @pytest.mark.asyncio
    async def test_requires_unlock(self, store):
        manager = SessionManager(store)
        with pytest.raises(NotUnlockedError):
            await manager.pair("kbd", Peripheral().announcement, MemoryLink())

    @pytest.mark.asyncio
    async def test_rejects_silent_repair(self, manager, store):
        await pair(manager, "kbd", Peripheral())
        before = store.get_key_material(store.context, "kbd")

        with pytest.raises(AlreadyPairedError):
            await pair(manager, "kbd", Peripheral())
        assert store.get_key_material(store.context, "kbd") == before

    @pytest.mark.asyncio
    async def test_explicit_repair(self, manager, store):
        await pair(manager, "kbd", Peripheral())
        replacement = Peripheral()
        local, _ = await pair(manager, "kbd", replacement, repair=True)
        material = store.get_key_material(store.context, "kbd")
        assert material.shared_secret == replacement.secret_from(local)

    @pytest.mark.asyncio
    async def test_invalid_peer_key(self, manager):
        bad = b"\x02" + bytes.fromhex("ffffffff00000001000000000000000000000000ffffffffffffffffffffffff")
        with pytest.raises(InvalidKeyError):
            await manager.pair("kbd", bad, MemoryLink())
        assert not manager.is_paired("kbd")

    @pytest.mark.asyncio
    async def test_link_failure(self, manager):
        link = MagicMock()
        link.write.side_effect = ConnectionError("gone")
        with pytest.raises(TransportError):
            await manager.pair("kbd", Peripheral().announcement, link)


class TestStreaming:
    @pytest.mark.asyncio
    async def test_end_to_end(self, manager):
        peripheral = Peripheral()
        local, _ = await pair(manager, "kbd", peripheral)

        link = MemoryLink(capacity=1)
        transport = await manager.connect("kbd", link)
        assert transport.state is TransportState.STREAMING

        reassembler = Reassembler(peripheral.secret_from(local))
        message = "hello\b\bp me " * 40

        async def receive_all():
            while True:
                result = reassembler.feed(await link.receive())
                if result is not None:
                    return result

        receiver = asyncio.create_task(receive_all())
        packets = await manager.send("kbd", message)
        assert packets > 1
        assert (await receiver).decode() == message

    @pytest.mark.asyncio
    async def test_connect_uses_config(self, manager, tmp_path, monkeypatch):
        monkeypatch.setenv("TOOTHPASTE_LINK_MTU", "60")
        manager.config = Config(str(tmp_path / "none.yaml"))
        await pair(manager, "kbd", Peripheral())
        transport = await manager.connect("kbd", MemoryLink(capacity=100))
        assert transport.fragment_size == 18

    @pytest.mark.asyncio
    async def test_connect_reuses_live_transport(self, manager):
        await pair(manager, "kbd", Peripheral())
        first = await manager.connect("kbd", MemoryLink())
        assert await manager.connect("kbd", MemoryLink()) is first

    @pytest.mark.asyncio
    async def test_connect_unpaired(self, manager):
        with pytest.raises(StateError):
            await manager.connect("ghost", MemoryLink())

    @pytest.mark.asyncio
    async def test_send_without_connect(self, manager):
        with pytest.raises(StateError):
            await manager.send("kbd", "x")

    @pytest.mark.asyncio
    async def test_disconnect(self, manager):
        await pair(manager, "kbd", Peripheral())
        transport = await manager.connect("kbd", MemoryLink())
        await manager.disconnect("kbd")
        assert transport.state is TransportState.CLOSED
        with pytest.raises(StateError):
            await manager.send("kbd", "x")

    @pytest.mark.asyncio
    async def test_close_all(self, manager):
        await pair(manager, "a", Peripheral())
        await pair(manager, "b", Peripheral())
        await manager.connect("a", MemoryLink())
        await manager.connect("b", MemoryLink())
        await manager.close_all()
        assert manager.sessions == {}


class TestForget:
    @pytest.mark.asyncio
    async def test_forget_removes_material(self, manager, store):
        await pair(manager, "kbd", Peripheral())
        await manager.connect("kbd", MemoryLink())
        assert await manager.forget("kbd")
        assert not manager.is_paired("kbd")
        assert "kbd" not in manager.sessions
        assert not await manager.forget("kbd")

    @pytest.mark.asyncio
    async def test_pair_again_after_forget(self, manager):
        await pair(manager, "kbd", Peripheral())
        await manager.forget("kbd")
        await pair(manager, "kbd", Peripheral())
        assert manager.is_paired("kbd")


class TestPerDeviceSerialization:
    @pytest.mark.asyncio
    async def test_pairs_queued_across_forget_cannot_both_win(self, manager):
        await pair(manager, "kbd", Peripheral())
        link = MemoryLink(capacity=1)
        await manager.connect("kbd", link)

        sender = asyncio.create_task(manager.send("kbd", "x" * 600))
        await asyncio.sleep(0.01)
        forgetter = asyncio.create_task(manager.forget("kbd"))
        await asyncio.sleep(0.01)
        first = asyncio.create_task(pair(manager, "kbd", Peripheral()))
        await asyncio.sleep(0.01)

        for _ in range(3):
            await link.receive()
        assert await sender == 3
        assert await forgetter

        second = asyncio.create_task(pair(manager, "kbd", Peripheral()))
        results = await asyncio.gather(first, second, return_exceptions=True)
        assert sum(isinstance(r, tuple) for r in results) == 1
        assert sum(isinstance(r, AlreadyPairedError) for r in results) == 1

    @pytest.mark.asyncio
    async def test_pairing_reply_respects_ready_timeout(self, manager, tmp_path, monkeypatch):
        monkeypatch.setenv("TOOTHPASTE_READY_TIMEOUT", "0.05")
        manager.config = Config(str(tmp_path / "none.yaml"))
        with pytest.raises(TransportError):
            await manager.pair("kbd", Peripheral().announcement, MemoryLink(capacity=1))
