"""Tests for stored marketplace credentials."""

import pytest
from sqlalchemy import text

from stocksync.ingest.errors import AuthExpiredError
from stocksync.ingest.tokens import CredentialStore

USER_ID = 123456789


@pytest.mark.asyncio
async def test_save_and_read_token(session_factory, clock):
    store = CredentialStore(session_factory, refresh_margin_seconds=300, clock=clock)
    await store.save_tokens(USER_ID, "APP_USR-access", "TG-refresh", expires_in=21600)

    assert await store.get_access_token(USER_ID) == "APP_USR-access"
    assert await store.token_expires_at(USER_ID) == clock().replace(hour=18)


@pytest.mark.asyncio
async def test_tokens_are_encrypted_at_rest(session_factory, clock):
    store = CredentialStore(session_factory, clock=clock)
    await store.save_tokens(USER_ID, "APP_USR-access", expires_in=3600)

    async with session_factory() as db:
        raw = (await db.execute(text("SELECT access_token FROM user_tokens"))).scalar_one()
    assert raw != "APP_USR-access"
    assert "APP_USR" not in raw


@pytest.mark.asyncio
async def test_token_inside_refresh_margin_needs_auth(session_factory, clock):
    store = CredentialStore(session_factory, refresh_margin_seconds=300, clock=clock)
    await store.save_tokens(USER_ID, "APP_USR-access", expires_in=3600)

    clock.advance(minutes=56)
    with pytest.raises(AuthExpiredError) as exc_info:
        await store.get_access_token(USER_ID)
    assert exc_info.value.needs_auth is True


@pytest.mark.asyncio
async def test_missing_or_cleared_token_needs_auth(session_factory, clock):
    store = CredentialStore(session_factory, clock=clock)

    with pytest.raises(AuthExpiredError):
        await store.get_access_token(USER_ID)

    await store.save_tokens(USER_ID, "APP_USR-access")
    assert await store.get_access_token(USER_ID) == "APP_USR-access"

    await store.clear_tokens(USER_ID)
    with pytest.raises(AuthExpiredError):
        await store.get_access_token(USER_ID)
    assert await store.token_expires_at(USER_ID) is None
