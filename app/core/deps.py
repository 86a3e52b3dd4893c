"""FastAPI dependencies for authentication, authorization, and database access."""

from typing import Generator
from uuid import UUID

import jwt
from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from app.core.security import decode_session_token
from app.db.session import SessionLocal


# Cookie and header names
COOKIE_NAME = "helpdesk_session"
CSRF_HEADER = "X-Requested-With"
CSRF_HEADER_VALUE = "XMLHttpRequest"


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency.

    Yields a database session and ensures it's closed after the request.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_current_session(
    request: Request,
    db: Session = Depends(get_db),
):
    """
    Get full session context: user_id, org_id, role.

    Validates:
    - Session cookie exists
    - JWT is valid and not expired
    - User exists, is active and the token version matches
    - Membership exists with a known role

    Raises:
        HTTPException 401: Not authenticated
        HTTPException 403: No membership or unknown role
    """
    # Import here to avoid circular imports
    from app.db.enums import Role
    from app.db.models import Membership, User
    from app.schemas.auth import UserSession

    token = request.cookies.get(COOKIE_NAME)
    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated")

    try:
        payload = decode_session_token(token)
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid session")

    try:
        user_id = UUID(payload["sub"])
    except (KeyError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid session")

    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    if not user.is_active:
        raise HTTPException(status_code=401, detail="Account disabled")
    if user.token_version != payload.get("token_version"):
        raise HTTPException(status_code=401, detail="Session revoked")

    membership = (
        db.query(Membership)
        .filter(Membership.user_id == user.id, Membership.is_active.is_(True))
        .first()
    )
    if not membership:
        raise HTTPException(status_code=403, detail="No organization membership")

    # Validate role is a known enum value - return 403 not 500
    if not Role.has_value(membership.role):
        raise HTTPException(
            status_code=403,
            detail=f"Unknown role '{membership.role}'. Contact administrator.",
        )

    return UserSession(
        user_id=user.id,
        org_id=membership.organization_id,
        role=Role(membership.role),
        email=user.email,
        display_name=user.display_name,
    )


def require_roles(allowed_roles):
    """
    Dependency factory for role-based authorization.

    Usage:
        @router.post("/channels", dependencies=[Depends(require_roles(ROLES_CAN_MANAGE_CHANNELS))])
    """
    def dependency(request: Request, db: Session = Depends(get_db)):
        session = get_current_session(request, db)
        if session.role not in allowed_roles:
            raise HTTPException(
                status_code=403,
                detail=f"Role '{session.role.value}' not authorized for this action",
            )
        return session
    return dependency


def require_csrf_header(request: Request) -> None:
    """
    Verify CSRF header on mutations.

    Apply to state-changing endpoints (POST, PATCH, DELETE).
    Browser navigations (OAuth redirect/callback) cannot carry it and skip this.

    Raises:
        HTTPException 403: Missing or invalid CSRF header
    """
    if request.headers.get(CSRF_HEADER) != CSRF_HEADER_VALUE:
        raise HTTPException(
            status_code=403,
            detail=f"Missing CSRF header. Include '{CSRF_HEADER}: {CSRF_HEADER_VALUE}'",
        )


def get_optional_session(
    request: Request,
    db: Session = Depends(get_db),
):
    """
    Session context when a valid session cookie is present, else None.

    Used by browser callbacks that must redirect instead of returning 401.
    """
    try:
        return get_current_session(request, db)
    except HTTPException:
        return None
