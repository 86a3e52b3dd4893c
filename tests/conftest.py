"""
Test configuration and fixtures.

Provides:
- Database session on a fresh in-memory schema per test
- JWT token minting for authenticated tests
- HTTPX AsyncClient with proper headers
- Channel factory with optional stored credentials
"""
import os
import uuid
from dataclasses import dataclass
from typing import AsyncGenerator, Callable, Generator

# Settings are read at import time; configure before importing the app
os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["CHANNEL_ENCRYPTION_KEY"] = "MDEyMzQ1Njc4OWFiY2RlZjAxMjM0NTY3ODlhYmNkZWY="
os.environ["INTERNAL_SECRET"] = "test-internal-secret"
os.environ["JWT_SECRET"] = "test-jwt-secret-with-enough-length-for-hs256"
os.environ["TESTING"] = "1"
os.environ["ENV"] = "test"
os.environ["SENTRY_DSN"] = ""

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.orm import Session

from app.main import app
from app.db.base import Base
from app.db.session import engine, SessionLocal
from app.core.deps import get_db, COOKIE_NAME
from app.core.security import create_session_token
from app.db.models import Channel, Membership, Organization, User
from app.db.enums import ChannelKind, ChannelProvider, ChannelState, Role
from app.services import credential_service
from app.services.channel_providers import TokenSet, get_capabilities


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    """
    Creates a database session on a freshly created schema.

    App code commits freely; the schema is dropped after each test.
    """
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()

    yield session

    session.close()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def test_org(db: Session) -> Organization:
    """Create a test organization."""
    org = Organization(
        id=uuid.uuid4(),
        name="Test Organization",
        slug=f"test-org-{uuid.uuid4().hex[:8]}",
    )
    db.add(org)
    db.commit()
    return org


@pytest.fixture(scope="function")
def test_user(db: Session, test_org: Organization) -> User:
    """Create a test user with admin membership in test_org."""
    user = User(
        id=uuid.uuid4(),
        email=f"test-{uuid.uuid4().hex[:8]}@test.com",
        display_name="Test User",
        token_version=1,
    )
    db.add(user)
    db.flush()

    membership = Membership(
        id=uuid.uuid4(),
        user_id=user.id,
        organization_id=test_org.id,
        role=Role.ADMIN.value,
    )
    db.add(membership)
    db.commit()

    return user


# =============================================================================
# Auth Fixtures
# =============================================================================

@dataclass
class TestAuth:
    """Test authentication context."""
    user: User
    org: Organization
    token: str
    cookie_name: str = COOKIE_NAME


@pytest.fixture(scope="function")
def test_auth(test_user: User, test_org: Organization) -> TestAuth:
    """Create JWT token for test user."""
    token = create_session_token(
        user_id=test_user.id,
        org_id=test_org.id,
        role=Role.ADMIN.value,
        token_version=test_user.token_version,
    )
    return TestAuth(
        user=test_user,
        org=test_org,
        token=token,
    )


# =============================================================================
# Client Fixtures
# =============================================================================

@pytest.fixture(scope="function")
async def client(db: Session) -> AsyncGenerator[AsyncClient, None]:
    """
    Create unauthenticated AsyncClient for testing public endpoints.
    """
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as c:
        yield c

    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
async def authed_client(
    db: Session,
    test_auth: TestAuth
) -> AsyncGenerator[AsyncClient, None]:
    """
    Create authenticated AsyncClient with JWT cookie and CSRF header.
    """
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        cookies={test_auth.cookie_name: test_auth.token},
        headers={"X-Requested-With": "XMLHttpRequest"},  # CSRF header
    ) as c:
        yield c

    app.dependency_overrides.clear()


# =============================================================================
# Channel Fixtures
# =============================================================================

@pytest.fixture(scope="function")
def make_channel(db: Session, test_org: Organization) -> Callable[..., Channel]:
    """
    Factory for channels stored directly in the database.

    Pass with_tokens=True to store an OAuth token set, or secrets={...}
    for credential-based providers.
    """
    def _make(
        provider: ChannelProvider = ChannelProvider.MICROSOFT365,
        state: ChannelState = ChannelState.ACTIVE,
        *,
        org: Organization | None = None,
        with_tokens: bool = False,
        secrets: dict | None = None,
        **fields,
    ) -> Channel:
        caps = get_capabilities(provider)
        values = {
            "name": f"{provider.value} channel",
            "is_default": False,
            "subscribed_topics": [],
        }
        if caps.kind == ChannelKind.EMAIL:
            values["fetch_folder"] = "inbox-id"
            values["email_address"] = "support@example.com"
        else:
            values["external_account_id"] = f"acct-{uuid.uuid4().hex[:8]}"
        values.update(fields)

        channel = Channel(
            organization_id=(org or test_org).id,
            provider=provider,
            kind=caps.kind,
            state=state,
            **values,
        )
        db.add(channel)
        db.commit()
        db.refresh(channel)

        if with_tokens:
            credential_service.save_tokens(
                db,
                channel,
                TokenSet(access_token="access-token", refresh_token="refresh-token", expires_in=3600),
            )
        if secrets:
            credential_service.save_secrets(db, channel, secrets)
        return channel

    return _make
