"""Global test configuration and fixtures for the billing API."""

import json
import os
import time
from collections.abc import AsyncGenerator
from typing import Callable
from uuid import uuid4

import pytest
import pytest_asyncio
from asgi_lifespan import LifespanManager
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from jose import jwt
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from src.api.core.constants import JWT_ALGORITHM
from src.database.models import Account, Base
from src.utils.settings.auth import AuthSettings

from tests.factories import (
    AccountFactory,
    CreditTransactionFactory,
    DisputeFactory,
    ProcessedEventFactory,
    SubscriptionFactory,
)
from tests.utils.stripe_events import sign_payload

BASE_URL = "http://test-billing-api"


@pytest.fixture
def account_factory():
    return AccountFactory


@pytest.fixture
def subscription_factory():
    return SubscriptionFactory


@pytest.fixture
def credit_transaction_factory():
    return CreditTransactionFactory


@pytest.fixture
def processed_event_factory():
    return ProcessedEventFactory


@pytest.fixture
def dispute_factory():
    return DisputeFactory


@pytest.fixture
def test_database_uri(tmp_path) -> str:
    """A fresh database per test: a SQLite file, or TEST_DATABASE_URL if set."""
    return os.getenv("TEST_DATABASE_URL") or f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}"


@pytest_asyncio.fixture
async def async_engine(test_database_uri):
    engine = create_async_engine(test_database_uri, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(async_engine) -> async_sessionmaker[AsyncSession]:
    """Independent sessions on the test database, as the app creates them."""
    return async_sessionmaker(bind=async_engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def app(session_factory):
    """FastAPI application wired to the test database."""
    from src.main import app

    async with LifespanManager(app):
        app.state.session_factory = session_factory
        yield app


# Test Data Fixtures
@pytest_asyncio.fixture
async def test_account(db_session: AsyncSession, account_factory) -> Account:
    return await account_factory.create_async(db_session, id=uuid4())


# JWT Token Fixtures
@pytest.fixture()
def jwt_token_factory() -> Callable[..., str]:
    """Factory for creating Supabase-style JWTs."""
    auth_settings = AuthSettings()

    def create_token(account_id: str, email: str = "user@example.com", **overrides) -> str:
        payload = {
            "sub": account_id,
            "email": email,
            "role": "authenticated",
            "aud": auth_settings.JWT_AUDIENCE,
            "exp": int(time.time()) + 3600,
        }
        payload.update(overrides)
        return jwt.encode(payload, auth_settings.SUPABASE_JWT_SECRET, algorithm=JWT_ALGORITHM)

    return create_token


@pytest.fixture
def account_token(test_account: Account, jwt_token_factory) -> str:
    return jwt_token_factory(str(test_account.id), test_account.email)


# HTTP Client Fixtures
@pytest_asyncio.fixture
async def public_client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url=BASE_URL) as ac:
        yield ac


@pytest_asyncio.fixture
async def authorized_client(
    app: FastAPI, account_token: str
) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url=BASE_URL,
        headers={"Authorization": f"Bearer {account_token}"},
    ) as ac:
        yield ac


# Stripe webhook helpers
@pytest.fixture
def signed_webhook():
    """Serialize an event and return ``(body, headers)`` ready to POST."""

    def build(event: dict, secret: str | None = None) -> tuple[bytes, dict]:
        body = json.dumps(event).encode("utf-8")
        return body, {
            "stripe-signature": sign_payload(body, secret),
            "content-type": "application/json",
        }

    return build
