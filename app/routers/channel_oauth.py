"""Channel OAuth router: provider redirect and callback.

Both endpoints are browser navigations, so neither requires the CSRF header.
The one-time state token minted on redirect is the CSRF defence.
"""

import logging
from urllib.parse import quote
from uuid import UUID

from fastapi import APIRouter, Depends
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.deps import get_db, get_optional_session, require_roles
from app.db.enums import ROLES_CAN_MANAGE_CHANNELS
from app.routers.channels import _http_error
from app.schemas.auth import UserSession
from app.services import channel_oauth_service
from app.services.channel_errors import (
    AuthorizationError,
    ChannelError,
    ExchangeError,
)

router = APIRouter(prefix="/channels", tags=["channels"])

logger = logging.getLogger(__name__)

MAX_ERROR_DETAIL_CHARS = 200


def _settings_url() -> str:
    return f"{settings.FRONTEND_URL.rstrip('/')}/settings/channels"


def _error_redirect(error: str, detail: str | None = None) -> RedirectResponse:
    url = f"{_settings_url()}?error={error}"
    if detail:
        url += f"&detail={quote(detail[:MAX_ERROR_DETAIL_CHARS])}"
    return RedirectResponse(url, status_code=302)


@router.get("/{channel_id}/oauth/redirect")
def start_channel_oauth(
    channel_id: UUID,
    db: Session = Depends(get_db),
    session: UserSession = Depends(require_roles(ROLES_CAN_MANAGE_CHANNELS)),
) -> RedirectResponse:
    """
    Redirect the browser to the provider's consent screen.

    Refused with 409 when the org integration is missing or unverified, or
    the channel is in a state that cannot be (re)authorized.
    """
    try:
        url = channel_oauth_service.initiate_authorization(
            db, session.org_id, channel_id, session.user_id
        )
    except ChannelError as exc:
        raise _http_error(exc)
    return RedirectResponse(url, status_code=302)


@router.get("/oauth/{provider}/callback")
async def channel_oauth_callback(
    provider: str,
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
    db: Session = Depends(get_db),
    session: UserSession | None = Depends(get_optional_session),
) -> RedirectResponse:
    """
    Handle the provider's OAuth callback.

    Every outcome is a redirect back to the frontend: the configure step on
    success, the channel list with ?error=<code> otherwise.
    """
    try:
        channel = await channel_oauth_service.handle_callback(
            db,
            provider,
            code=code,
            state=state,
            error=error,
            user_id=session.user_id if session else None,
        )
    except AuthorizationError as exc:
        logger.info("Channel OAuth callback rejected: provider=%s error=%s", provider, exc.code)
        return _error_redirect(exc.code)
    except ExchangeError as exc:
        return _error_redirect("exchange_failed", str(exc))
    except ChannelError as exc:
        logger.warning("Channel OAuth callback failed: provider=%s error=%s", provider, type(exc).__name__)
        return _error_redirect("oauth_failed")

    return RedirectResponse(f"{_settings_url()}/{channel.id}/configure", status_code=302)
