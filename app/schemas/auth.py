"""Session schemas."""

from uuid import UUID

from pydantic import BaseModel

from app.db.enums import Role


class UserSession(BaseModel):
    """
    Full session context for authenticated requests.

    This is returned by get_current_session dependency
    and contains all information needed for authorization.
    """
    user_id: UUID
    org_id: UUID
    role: Role  # Validated enum
    email: str
    display_name: str
