"""Webhook handler interface."""

from __future__ import annotations

from typing import Protocol

from fastapi import Request, Response
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session

WebhookResult = dict | Response


class WebhookHandler(Protocol):
    def verify(
        self, db: Session, mode: str | None, token: str | None, challenge: str | None
    ) -> PlainTextResponse:
        """Answer the provider's subscription handshake."""

    async def handle(self, request: Request, db: Session, **kwargs) -> WebhookResult:
        """Handle a webhook request."""
