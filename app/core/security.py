"""Security utilities for JWT session tokens, OAuth state and webhook signatures."""

import hashlib
import hmac
import secrets
from datetime import datetime, timedelta, timezone
from uuid import UUID

import jwt

from app.core.config import settings


# =============================================================================
# Session Token (JWT in cookie)
# =============================================================================

def create_session_token(
    user_id: UUID,
    org_id: UUID,
    role: str,
    token_version: int,
) -> str:
    """
    Create signed session JWT.

    Always signs with current secret (JWT_SECRET).
    Token contains user identity, org context, and revocation version.
    """
    payload = {
        "sub": str(user_id),
        "org_id": str(org_id),
        "role": role,
        "token_version": token_version,
        "iat": datetime.now(timezone.utc),
        "exp": datetime.now(timezone.utc) + timedelta(hours=settings.JWT_EXPIRES_HOURS),
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm="HS256")


def decode_session_token(token: str) -> dict:
    """
    Decode and verify session JWT.

    Tries current secret first, then previous (for rotation support).

    Raises:
        jwt.InvalidTokenError: If token invalid with all secrets
    """
    last_error = None
    for secret in settings.jwt_secrets:
        try:
            return jwt.decode(token, secret, algorithms=["HS256"])
        except jwt.InvalidTokenError as e:
            last_error = e
            continue
    raise last_error  # type: ignore


# =============================================================================
# OAuth State
# =============================================================================

def generate_oauth_state() -> str:
    """Generate cryptographically random state (32 bytes, URL-safe base64)."""
    return secrets.token_urlsafe(32)


# =============================================================================
# Shared-secret helpers
# =============================================================================

def verify_secret(provided: str | None, expected: str | None) -> bool:
    """Constant-time comparison that fails closed on empty values."""
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode(), expected.encode())


def compute_hub_signature(payload: bytes, secret: str) -> str:
    """Compute the X-Hub-Signature-256 header value for a payload."""
    digest = hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_hub_signature(payload: bytes, signature: str | None, secret: str | None) -> bool:
    """
    Verify X-Hub-Signature-256 HMAC signature.

    Args:
        payload: Raw request body bytes
        signature: Value of X-Hub-Signature-256 header
        secret: App secret the provider signs with

    Returns:
        True if signature is valid, False otherwise
    """
    if not signature or not signature.startswith("sha256="):
        return False
    if not secret:
        return False
    return hmac.compare_digest(compute_hub_signature(payload, secret), signature)
