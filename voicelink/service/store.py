from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional, Protocol

from voicelink.storage.models import (
    AccessToken,
    AuthorizationCode,
    Entitlement,
    Identity,
    RefreshToken,
)


class OAuthStore(Protocol):
    """Persistence surface shared by every lifecycle service.

    Methods returning ``bool`` or ``int`` from a state change are compare-and-set
    operations: they report whether (or how many) rows actually flipped.
    """

    # identities and entitlements
    def create_identity(
        self,
        email: str,
        *,
        identity_id: Optional[str] = None,
        auth_subject: Optional[str] = None,
        entitlement_key: Optional[str] = None,
        external_account_ref: Optional[str] = None,
        workspace_ref: Optional[str] = None,
        workspace_connected: bool = False,
    ) -> Identity: ...

    def get_identity(self, identity_id: str) -> Optional[Identity]: ...

    def get_identity_by_subject(self, auth_subject: str) -> Optional[Identity]: ...

    def get_identity_by_external_ref(self, external_ref: str) -> Optional[Identity]: ...

    def list_identities_by_entitlement(self, entitlement_key: str) -> List[Identity]: ...

    def list_linked_identities(self) -> List[Identity]: ...

    def link_external_account(
        self, identity_id: str, external_ref: str
    ) -> Optional[Identity]: ...

    def get_entitlement(self, key: str) -> Optional[Entitlement]: ...

    def set_entitlement_status(self, key: str, status: str) -> Entitlement: ...

    # authorization codes
    def create_authorization_code(self, code: AuthorizationCode) -> AuthorizationCode: ...

    def get_authorization_code(
        self, code: str, *, client_id: str, redirect_uri: str
    ) -> Optional[AuthorizationCode]: ...

    def consume_authorization_code(self, code: str, used_at: datetime) -> bool: ...

    # access tokens
    def create_access_token(self, token: AccessToken) -> AccessToken: ...

    def get_access_token(self, token: str) -> Optional[AccessToken]: ...

    def has_live_access_token(self, identity_id: str, now: datetime) -> bool: ...

    def revoke_access_token(self, token: str, revoked_at: datetime) -> bool: ...

    def revoke_identity_access_tokens(self, identity_id: str, revoked_at: datetime) -> int: ...

    def revoke_all_access_tokens(self, revoked_at: datetime) -> int: ...

    # refresh tokens
    def create_refresh_token(self, token: RefreshToken) -> RefreshToken: ...

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]: ...

    def revoke_refresh_token(self, token: str, revoked_at: datetime) -> bool: ...

    def revoke_identity_refresh_tokens(self, identity_id: str, revoked_at: datetime) -> int: ...

    # housekeeping
    def delete_expired_tokens(self, now: datetime) -> Dict[str, int]: ...
