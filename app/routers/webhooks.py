"""Webhooks router - inbound pushes from messaging providers."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.deps import get_db
from app.core.rate_limit import limiter
from app.services.webhooks.registry import get_handler

router = APIRouter()
logger = logging.getLogger(__name__)


def _handler_or_404(provider: str):
    try:
        return get_handler(provider)
    except KeyError:
        raise HTTPException(status_code=404, detail="Unknown webhook provider")


@router.get("/{provider}")
async def verify_webhook(
    provider: str,
    mode: str = Query(None, alias="hub.mode"),
    token: str = Query(None, alias="hub.verify_token"),
    challenge: str = Query(None, alias="hub.challenge"),
    db: Session = Depends(get_db),
):
    """Subscription handshake: echo the challenge when the verify token matches."""
    handler = _handler_or_404(provider)
    return handler.verify(db, mode, token, challenge)


@router.post("/{provider}")
@limiter.limit(f"{settings.RATE_LIMIT_WEBHOOK}/minute")
async def receive_webhook(
    provider: str,
    request: Request,
    db: Session = Depends(get_db),
):
    """
    Receive a provider push.

    Signature is verified before parsing; events are deduplicated and
    deferred to channel_webhook_ingest jobs.
    """
    handler = _handler_or_404(provider)
    return await handler.handle(request, db)
