# tests/test_kdf.py
"""Tests for key-derivation strategies."""

from unittest.mock import AsyncMock

import pytest

from toothpaste.errors import ConfigError, SignatureError, UnknownCredentialError, UnlockCancelledError
from toothpaste.kdf import (
    AuthenticatorDerived,
    PassphraseDerived,
    derive_aes_key,
    derive_key_from_credential_id,
)


class TestArgon2:
    def test_deterministic(self):
        salt = b"s" * 16
        key = derive_aes_key("correct horse", salt)
        assert len(key) == 32
        assert key == derive_aes_key(b"correct horse", salt)

    def test_salt_and_passphrase_matter(self):
        salt = b"s" * 16
        key = derive_aes_key("correct horse", salt)
        assert key != derive_aes_key("correct horse", b"t" * 16)
        assert key != derive_aes_key("battery staple", salt)

    def test_refuses_weak_parameters(self):
        with pytest.raises(ConfigError):
            derive_aes_key("pw", b"s" * 16, time_cost=1)
        with pytest.raises(ConfigError):
            derive_aes_key("pw", b"s" * 16, memory_cost_kib=1024)


def test_credential_key_is_stable():
    key = derive_key_from_credential_id(b"cred-1")
    assert len(key) == 32
    assert key == derive_key_from_credential_id(b"cred-1")
    assert key != derive_key_from_credential_id(b"cred-2")


@pytest.mark.asyncio
async def test_passphrase_strategy_reuses_salt(store):
    strategy = PassphraseDerived("pw")
    first = await strategy.derive_key(store)
    second = await strategy.derive_key(store)
    assert first == second
    assert len(store.load_or_create_meta("salt", 16)) == 16


class TestAuthenticatorDerived:
    @pytest.mark.asyncio
    async def test_register_then_derive(self, store, authenticator):
        strategy = AuthenticatorDerived(authenticator)
        registered_key = await strategy.register(store, "laptop")
        assert store.credentials_exist()

        key = await strategy.derive_key(store)
        assert key == registered_key
        assert store.list_credentials()[0].counter == 1

    @pytest.mark.asyncio
    async def test_fresh_challenge_each_call(self, store, authenticator):
        strategy = AuthenticatorDerived(authenticator)
        await strategy.register(store, "laptop")
        await strategy.derive_key(store)
        await strategy.derive_key(store)
        assert len(set(authenticator.challenges)) == 3
        assert all(len(c) == 32 for c in authenticator.challenges)

    @pytest.mark.asyncio
    async def test_no_credentials(self, store, authenticator):
        with pytest.raises(UnknownCredentialError):
            await AuthenticatorDerived(authenticator).derive_key(store)

    @pytest.mark.asyncio
    async def test_cancelled_assertion(self, store, authenticator):
        strategy = AuthenticatorDerived(authenticator)
        await strategy.register(store, "laptop")
        authenticator.cancel = True
        with pytest.raises(UnlockCancelledError) as exc_info:
            await strategy.derive_key(store)
        assert not exc_info.value.security_failure

    @pytest.mark.asyncio
    async def test_cancelled_registration(self, store, authenticator):
        authenticator.cancel = True
        with pytest.raises(UnlockCancelledError):
            await AuthenticatorDerived(authenticator).register(store, "laptop")
        assert not store.credentials_exist()

    @pytest.mark.asyncio
    async def test_unregistered_credential_in_assertion(self, store, authenticator):
        strategy = AuthenticatorDerived(authenticator)
        await strategy.register(store, "laptop")
        response = await authenticator.get_assertion(
            challenge=b"c" * 32, rp_id="toothpaste.local", allow_credentials=list(authenticator.credentials)
        )
        response.credential_id = b"someone-else"
        stub = AsyncMock()
        stub.get_assertion.return_value = response
        with pytest.raises(UnknownCredentialError) as exc_info:
            await AuthenticatorDerived(stub).derive_key(store)
        assert isinstance(exc_info.value, SignatureError)
