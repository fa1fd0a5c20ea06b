from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


ENTITLEMENT_ACTIVE = "active"
ENTITLEMENT_INACTIVE = "inactive"


@dataclass
class Identity:
    id: str
    email: str
    auth_subject: Optional[str] = None
    entitlement_key: Optional[str] = None
    external_account_ref: Optional[str] = None
    workspace_ref: Optional[str] = None
    workspace_connected: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Entitlement:
    key: str
    status: str = ENTITLEMENT_INACTIVE
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == ENTITLEMENT_ACTIVE


@dataclass
class AuthorizationCode:
    code: str
    identity_id: str
    client_id: str
    redirect_uri: str
    scope: str
    expires_at: datetime
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None
    used: bool = False
    used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        code: str,
        identity_id: str,
        client_id: str,
        redirect_uri: str,
        scope: str,
        *,
        ttl_seconds: int,
        code_challenge: Optional[str] = None,
        code_challenge_method: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "AuthorizationCode":
        issued = now or utcnow()
        return cls(
            code=code,
            identity_id=identity_id,
            client_id=client_id,
            redirect_uri=redirect_uri,
            scope=scope,
            expires_at=issued + timedelta(seconds=ttl_seconds),
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method if code_challenge else None,
            created_at=issued,
        )


@dataclass
class AccessToken:
    token: str
    identity_id: str
    client_id: str
    scope: str
    issued_at: datetime
    expires_at: datetime
    revoked: bool = False
    revoked_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        token: str,
        identity_id: str,
        client_id: str,
        scope: str,
        *,
        ttl_seconds: int,
        now: Optional[datetime] = None,
    ) -> "AccessToken":
        issued = now or utcnow()
        return cls(
            token=token,
            identity_id=identity_id,
            client_id=client_id,
            scope=scope,
            issued_at=issued,
            expires_at=issued + timedelta(seconds=ttl_seconds),
        )

    def is_live(self, now: datetime) -> bool:
        return not self.revoked and self.expires_at > now


@dataclass
class RefreshToken:
    token: str
    identity_id: str
    client_id: str
    expires_at: datetime
    revoked: bool = False
    revoked_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        token: str,
        identity_id: str,
        client_id: str,
        *,
        ttl_seconds: int,
        now: Optional[datetime] = None,
    ) -> "RefreshToken":
        issued = now or utcnow()
        return cls(
            token=token,
            identity_id=identity_id,
            client_id=client_id,
            expires_at=issued + timedelta(seconds=ttl_seconds),
            created_at=issued,
        )

    def is_live(self, now: datetime) -> bool:
        return not self.revoked and self.expires_at > now
