from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Bounds on client-supplied strings; codes and tokens are far shorter in practice.
MAX_TOKEN_LENGTH = 4096
MAX_URI_LENGTH = 2048


class ErrorBody(BaseModel):
    error: str
    error_description: str


class TokenRequest(BaseModel):
    """``POST /token`` body, accepted as form fields or JSON."""

    model_config = ConfigDict(extra="ignore")

    grant_type: Optional[str] = Field(default=None, max_length=64)
    code: Optional[str] = Field(default=None, max_length=MAX_TOKEN_LENGTH)
    redirect_uri: Optional[str] = Field(default=None, max_length=MAX_URI_LENGTH)
    client_id: Optional[str] = Field(default=None, max_length=256)
    client_secret: Optional[str] = Field(default=None, max_length=512)
    code_verifier: Optional[str] = Field(default=None, max_length=256)

    @field_validator("grant_type", "code", "redirect_uri", "client_id", mode="before")
    @classmethod
    def _strip(cls, value):
        if isinstance(value, str):
            return value.strip() or None
        return value


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    scope: str
    refresh_token: Optional[str] = None


class DeviceTokenResponse(BaseModel):
    success: bool = True
    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    scope: str


class IntrospectionResponse(BaseModel):
    active: bool
    user_id: str
    email: str
    scope: Optional[str] = None
    token_type: str
    entitlement_active: bool
    exp: Optional[int] = None
    iat: Optional[int] = None
    external_account_ref: Optional[str] = None
    workspace_ref: Optional[str] = None


class RevokeRequest(BaseModel):
    token: Optional[str] = Field(default=None, max_length=MAX_TOKEN_LENGTH)
    user_id: Optional[str] = Field(default=None, max_length=128)
    all: bool = False


class RevokeResponse(BaseModel):
    success: bool
    message: str
    revoked: int = 0


class RefreshRequest(BaseModel):
    refresh_token: str = Field(default="", max_length=MAX_TOKEN_LENGTH)


class SessionUser(BaseModel):
    id: str
    email: str


class SessionTokensResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int
    user: Optional[SessionUser] = None


class WebhookAck(BaseModel):
    received: bool = True
    duplicate: Optional[bool] = None


class CleanupResponse(BaseModel):
    authorization_codes: int = 0
    access_tokens: int = 0
    refresh_tokens: int = 0


class LinkAccountRequest(BaseModel):
    external_account_ref: str = Field(default="", max_length=256)


class LinkedAccount(BaseModel):
    id: str
    email: str
    external_account_ref: Optional[str] = None


class LinkAccountResponse(BaseModel):
    success: bool = True
    user: LinkedAccount
