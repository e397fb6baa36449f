"""Authentication-related request and response schemas."""

from pydantic import BaseModel, ConfigDict


class LoginRequest(BaseModel):
    """Payload for operator login."""

    username: str
    password: str


class TokenResponse(BaseModel):
    """JWT response payload."""

    access_token: str
    token_type: str = "bearer"


class AuthUserResponse(BaseModel):
    """Operator response for auth endpoints."""

    id: int
    username: str
    email: str | None = None
    role: str

    model_config = ConfigDict(from_attributes=True)
