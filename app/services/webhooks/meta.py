"""Meta channel webhook handler (Instagram, Messenger, WhatsApp)."""

from __future__ import annotations

import json
import logging

from fastapi import HTTPException, Request
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session

from app.core.config import settings
from app.db.enums import ChannelProvider
from app.services import channel_webhook_service, integration_service
from app.services.channel_errors import UnknownWebhookAccountError, WebhookSignatureError
from app.services.channel_providers import get_provider

logger = logging.getLogger(__name__)


class MetaChannelWebhookHandler:
    def __init__(self, provider: ChannelProvider):
        self.provider = provider

    def verify(
        self, db: Session, mode: str | None, token: str | None, challenge: str | None
    ) -> PlainTextResponse:
        """
        Meta webhook verification endpoint.

        When you configure the webhook in Meta, it sends a GET request
        with a challenge that must be echoed back as PLAIN TEXT (not JSON).
        """
        if mode == "subscribe" and integration_service.matches_webhook_verify_token(db, token):
            return PlainTextResponse(challenge or "")

        logger.warning("%s webhook verification failed: mode=%s", self.provider.value, mode)
        raise HTTPException(status_code=403, detail="Verification failed")

    async def handle(self, request: Request, db: Session, **kwargs) -> dict:
        """
        Receive a Meta messaging webhook.

        Security:
        - Validates payload size
        - Validates X-Hub-Signature-256 HMAC before parsing
        - Validates the account is bound to an active channel of a signing org

        Processing:
        - Records each delivery id once (duplicates are no-ops)
        - Enqueues ingest jobs and returns before any ticket work
        """
        provider = get_provider(self.provider)

        # 1. Check payload size
        content_length = request.headers.get("content-length", "0")
        try:
            if int(content_length) > settings.WEBHOOK_MAX_PAYLOAD_BYTES:
                raise HTTPException(413, "Payload too large")
        except ValueError:
            pass

        # 2. Get raw body for signature verification
        body = await request.body()
        # Fallback size check in case Content-Length is missing/incorrect
        if len(body) > settings.WEBHOOK_MAX_PAYLOAD_BYTES:
            raise HTTPException(413, "Payload too large")
        signature = request.headers.get("X-Hub-Signature-256", "")

        # 3. Validate signature
        try:
            signing = channel_webhook_service.verify_signature(db, provider, body, signature)
        except WebhookSignatureError as exc:
            raise HTTPException(403, str(exc))

        # 4. Parse payload
        try:
            data = json.loads(body)
        except json.JSONDecodeError:
            raise HTTPException(400, "Invalid JSON")
        if not isinstance(data, dict):
            raise HTTPException(400, "Invalid payload")

        # 5. Resolve, dedupe and enqueue
        try:
            counts = channel_webhook_service.accept_events(db, provider, data, signing)
        except UnknownWebhookAccountError as exc:
            raise HTTPException(404, str(exc))

        logger.info(
            "%s webhook: enqueued=%s skipped=%s",
            self.provider.value,
            counts["events_enqueued"],
            counts["events_skipped"],
        )
        return {"status": "ok", **counts}
