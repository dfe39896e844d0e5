"""Pydantic v2 request/response schemas for account endpoints."""

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, EmailStr, Field

# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------


class SignUpRequest(BaseModel):
    """Schema for creating an account. A sign-in link is sent to the email."""

    email: EmailStr
    name: str = Field(..., min_length=1, max_length=255)


class SignInRequest(BaseModel):
    """Schema for requesting a sign-in link."""

    email: EmailStr


class CredentialsRequest(BaseModel):
    """Exchange a sign-in token (from the emailed link) or a refresh token for credentials."""

    token: str = Field(..., min_length=1)


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------


class TokenResponse(BaseModel):
    """JWT token pair returned on successful authentication."""

    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class ProfileResponse(BaseModel):
    """Profile of the authenticated user."""

    id: uuid.UUID
    email: str
    name: str
    is_active: bool
    is_subscribed: bool = False
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
