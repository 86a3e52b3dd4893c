"""Pydantic schemas for API request/response models."""

from app.schemas.auth import UserSession

__all__ = ["UserSession"]
