from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

import pytest

from app.db.enums import (
    ChannelProvider,
    ChannelState,
    ConnectionEventType,
    ConnectionOutcome,
    IntegrationFamily,
)
from app.services.channel_errors import ProviderError
from app.services.channel_providers import TokenSet
from app.services.channel_providers.microsoft365 import Microsoft365Provider


def _verified_integration(db, org, family=IntegrationFamily.MICROSOFT365):
    from app.services import integration_service

    integration = integration_service.save_integration(
        db,
        org.id,
        family,
        {"client_id": "client-123", "client_secret": "secret-456", "tenant_id": "contoso"},
    )
    integration.is_verified = True
    db.commit()
    return integration


@pytest.fixture
def exchanged(monkeypatch):
    """Replace the Graph code exchange; records the codes it saw."""
    calls: list[str] = []

    async def _exchange(self, ctx, code):
        calls.append(code)
        return TokenSet(
            access_token="graph-access",
            refresh_token="graph-refresh",
            expires_in=3600,
            account_email="helpdesk@contoso.com",
            granted_scopes=["Mail.ReadWrite"],
        )

    monkeypatch.setattr(Microsoft365Provider, "exchange_token", _exchange)
    return calls


async def _start(authed_client, channel) -> str:
    response = await authed_client.get(f"/channels/{channel.id}/oauth/redirect")
    assert response.status_code == 302
    location = urlparse(response.headers["location"])
    assert location.netloc == "login.microsoftonline.com"
    assert location.path == "/contoso/oauth2/v2.0/authorize"
    return parse_qs(location.query)["state"][0]


def _error_of(response) -> str:
    assert response.status_code == 302
    return parse_qs(urlparse(response.headers["location"]).query)["error"][0]


@pytest.mark.asyncio
async def test_redirect_requires_verified_integration(authed_client, db, test_org, make_channel):
    channel = make_channel(state=ChannelState.UNCONNECTED)

    response = await authed_client.get(f"/channels/{channel.id}/oauth/redirect")

    assert response.status_code == 409
    assert response.json()["detail"]["action_url"] == "/integrations/microsoft365"
    db.refresh(channel)
    assert channel.state == ChannelState.UNCONNECTED


@pytest.mark.asyncio
async def test_redirect_refused_for_credential_provider(authed_client, db, make_channel):
    channel = make_channel(ChannelProvider.IMAP, state=ChannelState.AUTHENTICATED)

    response = await authed_client.get(f"/channels/{channel.id}/oauth/redirect")

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_oauth_happy_path(authed_client, db, test_org, make_channel, exchanged):
    from app.db.models import ConnectionAuditEntry
    from app.services import credential_service

    _verified_integration(db, test_org)
    channel = make_channel(state=ChannelState.UNCONNECTED, email_address=None)

    state = await _start(authed_client, channel)
    db.refresh(channel)
    assert channel.state == ChannelState.AUTHORIZATION_PENDING

    response = await authed_client.get(
        "/channels/oauth/microsoft365/callback", params={"code": "auth-code", "state": state}
    )

    assert response.status_code == 302
    assert response.headers["location"].endswith(f"/settings/channels/{channel.id}/configure")
    assert exchanged == ["auth-code"]

    db.refresh(channel)
    assert channel.state == ChannelState.AUTHENTICATED
    assert channel.email_address == "helpdesk@contoso.com"
    credential = credential_service.get_credential(db, channel)
    assert credential.access_token_encrypted
    assert credential.access_token_encrypted != "graph-access"
    assert credential.granted_scopes == ["Mail.ReadWrite"]

    outcomes = [
        e.outcome
        for e in db.query(ConnectionAuditEntry)
        .filter(
            ConnectionAuditEntry.channel_id == channel.id,
            ConnectionAuditEntry.event_type == ConnectionEventType.AUTH,
        )
        .all()
    ]
    assert outcomes.count(ConnectionOutcome.SUCCESS) == 2  # redirect + exchange


@pytest.mark.asyncio
async def test_state_is_single_use(authed_client, db, test_org, make_channel, exchanged):
    _verified_integration(db, test_org)
    channel = make_channel(state=ChannelState.UNCONNECTED)
    state = await _start(authed_client, channel)

    first = await authed_client.get(
        "/channels/oauth/microsoft365/callback", params={"code": "c1", "state": state}
    )
    second = await authed_client.get(
        "/channels/oauth/microsoft365/callback", params={"code": "c2", "state": state}
    )

    assert first.headers["location"].endswith("/configure")
    assert _error_of(second) == "state_consumed"
    assert exchanged == ["c1"]


@pytest.mark.asyncio
async def test_new_redirect_invalidates_previous_state(
    authed_client, db, test_org, make_channel, exchanged
):
    _verified_integration(db, test_org)
    channel = make_channel(state=ChannelState.UNCONNECTED)
    old_state = await _start(authed_client, channel)
    await _start(authed_client, channel)

    response = await authed_client.get(
        "/channels/oauth/microsoft365/callback", params={"code": "c1", "state": old_state}
    )

    assert _error_of(response) == "state_consumed"
    assert exchanged == []


@pytest.mark.asyncio
async def test_expired_state_is_rejected(authed_client, db, test_org, make_channel, exchanged):
    from app.db.models import OAuthStateToken

    _verified_integration(db, test_org)
    channel = make_channel(state=ChannelState.UNCONNECTED)
    state = await _start(authed_client, channel)

    token = db.query(OAuthStateToken).filter(OAuthStateToken.state == state).one()
    token.expires_at = datetime.now(timezone.utc) - timedelta(seconds=1)
    db.commit()

    response = await authed_client.get(
        "/channels/oauth/microsoft365/callback", params={"code": "c1", "state": state}
    )

    assert _error_of(response) == "state_expired"
    assert exchanged == []
    db.refresh(channel)
    assert channel.state == ChannelState.AUTHORIZATION_PENDING


@pytest.mark.asyncio
async def test_unknown_state_and_missing_code(authed_client, db, test_org, make_channel, exchanged):
    unknown = await authed_client.get(
        "/channels/oauth/microsoft365/callback", params={"code": "c1", "state": "forged"}
    )
    no_code = await authed_client.get(
        "/channels/oauth/microsoft365/callback", params={"state": "forged"}
    )
    denied = await authed_client.get(
        "/channels/oauth/microsoft365/callback",
        params={"error": "access_denied", "state": "forged"},
    )

    assert _error_of(unknown) == "invalid_state"
    assert _error_of(no_code) == "missing_code"
    assert _error_of(denied) == "access_denied"
    assert exchanged == []


@pytest.mark.asyncio
async def test_state_bound_to_initiating_user(authed_client, db, test_org, make_channel, exchanged):
    from app.services import channel_oauth_service
    from app.services.channel_errors import AuthorizationError

    _verified_integration(db, test_org)
    channel = make_channel(state=ChannelState.UNCONNECTED)
    state = await _start(authed_client, channel)

    with pytest.raises(AuthorizationError) as exc_info:
        await channel_oauth_service.handle_callback(
            db, "microsoft365", code="c1", state=state, error=None, user_id=uuid.uuid4()
        )
    assert exc_info.value.code == "invalid_state"

    with pytest.raises(AuthorizationError):
        await channel_oauth_service.handle_callback(
            db, "microsoft365", code="c1", state=state, error=None, user_id=None
        )
    assert exchanged == []


@pytest.mark.asyncio
async def test_provider_mismatch_is_rejected_and_audited(
    authed_client, db, test_org, make_channel, exchanged
):
    from app.db.models import ConnectionAuditEntry, OAuthStateToken

    _verified_integration(db, test_org)
    channel = make_channel(state=ChannelState.UNCONNECTED)
    state = await _start(authed_client, channel)

    response = await authed_client.get(
        "/channels/oauth/google/callback", params={"code": "c1", "state": state}
    )

    assert _error_of(response) == "provider_mismatch"
    assert exchanged == []
    rejected = (
        db.query(ConnectionAuditEntry)
        .filter(
            ConnectionAuditEntry.channel_id == channel.id,
            ConnectionAuditEntry.outcome == ConnectionOutcome.REJECTED,
        )
        .one()
    )
    assert rejected.details["reason"] == "provider_mismatch"
    # Tampered callbacks do not burn the state
    token = db.query(OAuthStateToken).filter(OAuthStateToken.state == state).one()
    assert token.consumed_at is None


@pytest.mark.asyncio
async def test_exchange_failure_redirects_with_detail(
    authed_client, db, test_org, make_channel, monkeypatch
):
    from app.db.models import ConnectionAuditEntry
    from app.services import credential_service

    async def _refuse(self, ctx, code):
        raise ProviderError(
            "microsoft365 API error 400: AADSTS70008 code expired",
            provider="microsoft365",
            status_code=400,
        )

    monkeypatch.setattr(Microsoft365Provider, "exchange_token", _refuse)
    _verified_integration(db, test_org)
    channel = make_channel(state=ChannelState.UNCONNECTED)
    state = await _start(authed_client, channel)

    response = await authed_client.get(
        "/channels/oauth/microsoft365/callback", params={"code": "stale", "state": state}
    )

    assert _error_of(response) == "exchange_failed"
    detail = parse_qs(urlparse(response.headers["location"]).query)["detail"][0]
    assert "AADSTS70008" in detail

    db.refresh(channel)
    assert channel.state == ChannelState.AUTHORIZATION_PENDING
    assert credential_service.get_credential(db, channel) is None
    failure = (
        db.query(ConnectionAuditEntry)
        .filter(
            ConnectionAuditEntry.channel_id == channel.id,
            ConnectionAuditEntry.outcome == ConnectionOutcome.FAILURE,
        )
        .one()
    )
    assert failure.event_type == ConnectionEventType.AUTH


def test_purge_state_tokens_removes_expired_and_consumed(db, test_org, make_channel):
    from app.db.models import OAuthStateToken
    from app.services import channel_oauth_service

    channel = make_channel(state=ChannelState.AUTHORIZATION_PENDING)
    now = datetime.now(timezone.utc)
    for state, expires_at, consumed_at in (
        ("live", now + timedelta(minutes=5), None),
        ("expired", now - timedelta(minutes=5), None),
        ("used", now + timedelta(minutes=5), now),
    ):
        db.add(
            OAuthStateToken(
                state=state,
                channel_id=channel.id,
                organization_id=test_org.id,
                user_id=None,
                provider=ChannelProvider.MICROSOFT365,
                issued_at=now - timedelta(minutes=10),
                expires_at=expires_at,
                consumed_at=consumed_at,
            )
        )
    db.commit()

    assert channel_oauth_service.purge_state_tokens(db) == 2
    assert [t.state for t in db.query(OAuthStateToken).all()] == ["live"]


@pytest.mark.asyncio
async def test_inactive_integration_blocks_messaging_authorization(authed_client, db, test_org, make_channel):
    from app.services import integration_service

    integration = integration_service.save_integration(
        db,
        test_org.id,
        IntegrationFamily.META,
        {"app_id": "app-1", "app_secret": "s", "webhook_verify_token": "v"},
    )
    integration.is_verified = True
    integration.is_active = False
    db.commit()
    channel = make_channel(ChannelProvider.INSTAGRAM, state=ChannelState.UNCONNECTED)

    response = await authed_client.get(f"/channels/{channel.id}/oauth/redirect")

    assert response.status_code == 409
    assert response.json()["detail"]["action_url"] == "/integrations/meta"
    db.refresh(channel)
    assert channel.state == ChannelState.UNCONNECTED
