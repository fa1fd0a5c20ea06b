from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from voicelink.logging import get_logger
from voicelink.storage.errors import ConstraintViolation
from voicelink.storage.models import (
    AccessToken,
    AuthorizationCode,
    Entitlement,
    Identity,
    RefreshToken,
    utcnow,
)

# Retention windows shared with the Postgres cleanup statements
CODE_RETENTION = timedelta(days=1)
EXPIRED_TOKEN_RETENTION = timedelta(days=7)
REVOKED_TOKEN_RETENTION = timedelta(days=30)


class MemoryStore:
    """In-process store used by tests and single-node development.

    Every compare-and-set runs under ``_data_lock`` so concurrent callers see
    the same single-winner semantics the Postgres conditional updates give.
    Returned records are copies; mutating them never changes stored state.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.identities: Dict[str, Identity] = {}
        self.entitlements: Dict[str, Entitlement] = {}
        self.authorization_codes: Dict[str, AuthorizationCode] = {}
        self.access_tokens: Dict[str, AccessToken] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        # RLock so helpers can re-enter while a CAS holds the lock
        self._data_lock = threading.RLock()

    # identities
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
    ) -> Identity:
        identity = Identity(
            id=identity_id or str(uuid.uuid4()),
            email=email,
            auth_subject=auth_subject,
            entitlement_key=entitlement_key,
            external_account_ref=external_account_ref,
            workspace_ref=workspace_ref,
            workspace_connected=workspace_connected,
        )
        with self._data_lock:
            if identity.id in self.identities:
                raise ConstraintViolation("identity already exists", table="identity", field="id")
            for existing in self.identities.values():
                if existing.email.lower() == email.lower():
                    raise ConstraintViolation("email already exists", table="identity", field="email")
                if external_account_ref and existing.external_account_ref == external_account_ref:
                    raise ConstraintViolation(
                        "external account already linked",
                        table="identity",
                        field="external_account_ref",
                    )
            self.identities[identity.id] = identity
            return replace(identity)

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            return replace(identity) if identity else None

    def get_identity_by_subject(self, auth_subject: str) -> Optional[Identity]:
        with self._data_lock:
            for identity in self.identities.values():
                if identity.auth_subject == auth_subject:
                    return replace(identity)
        return None

    def get_identity_by_external_ref(self, external_ref: str) -> Optional[Identity]:
        with self._data_lock:
            for identity in self.identities.values():
                if identity.external_account_ref == external_ref:
                    return replace(identity)
        return None

    def list_identities_by_entitlement(self, entitlement_key: str) -> List[Identity]:
        with self._data_lock:
            return [
                replace(identity)
                for identity in self.identities.values()
                if identity.entitlement_key == entitlement_key
            ]

    def list_linked_identities(self) -> List[Identity]:
        with self._data_lock:
            return [
                replace(identity)
                for identity in self.identities.values()
                if identity.external_account_ref
            ]

    def link_external_account(self, identity_id: str, external_ref: str) -> Optional[Identity]:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if not identity:
                return None
            for other in self.identities.values():
                if other.id != identity_id and other.external_account_ref == external_ref:
                    raise ConstraintViolation(
                        "external account already linked",
                        table="identity",
                        field="external_account_ref",
                    )
            identity.external_account_ref = external_ref
            return replace(identity)

    # entitlements
    def get_entitlement(self, key: str) -> Optional[Entitlement]:
        with self._data_lock:
            entitlement = self.entitlements.get(key)
            return replace(entitlement) if entitlement else None

    def set_entitlement_status(self, key: str, status: str) -> Entitlement:
        with self._data_lock:
            entitlement = Entitlement(key=key, status=status, updated_at=utcnow())
            self.entitlements[key] = entitlement
            return replace(entitlement)

    # authorization codes
    def create_authorization_code(self, code: AuthorizationCode) -> AuthorizationCode:
        with self._data_lock:
            if code.identity_id not in self.identities:
                raise ConstraintViolation(
                    "unknown identity", table="oauth_authorization_codes", field="identity_id"
                )
            if code.code in self.authorization_codes:
                raise ConstraintViolation(
                    "authorization code collision", table="oauth_authorization_codes", field="code"
                )
            self.authorization_codes[code.code] = replace(code)
            return replace(code)

    def get_authorization_code(
        self, code: str, *, client_id: str, redirect_uri: str
    ) -> Optional[AuthorizationCode]:
        with self._data_lock:
            row = self.authorization_codes.get(code)
            if not row or row.client_id != client_id or row.redirect_uri != redirect_uri:
                return None
            return replace(row)

    def consume_authorization_code(self, code: str, used_at: datetime) -> bool:
        with self._data_lock:
            row = self.authorization_codes.get(code)
            if not row or row.used:
                return False
            row.used = True
            row.used_at = used_at
            return True

    # access tokens
    def create_access_token(self, token: AccessToken) -> AccessToken:
        with self._data_lock:
            if token.identity_id not in self.identities:
                raise ConstraintViolation(
                    "unknown identity", table="oauth_access_tokens", field="identity_id"
                )
            if token.token in self.access_tokens:
                raise ConstraintViolation(
                    "access token collision", table="oauth_access_tokens", field="token"
                )
            self.access_tokens[token.token] = replace(token)
            return replace(token)

    def get_access_token(self, token: str) -> Optional[AccessToken]:
        with self._data_lock:
            row = self.access_tokens.get(token)
            return replace(row) if row else None

    def has_live_access_token(self, identity_id: str, now: datetime) -> bool:
        with self._data_lock:
            return any(
                row.identity_id == identity_id and row.is_live(now)
                for row in self.access_tokens.values()
            )

    def revoke_access_token(self, token: str, revoked_at: datetime) -> bool:
        with self._data_lock:
            row = self.access_tokens.get(token)
            if not row or row.revoked:
                return False
            row.revoked = True
            row.revoked_at = revoked_at
            return True

    def revoke_identity_access_tokens(self, identity_id: str, revoked_at: datetime) -> int:
        with self._data_lock:
            count = 0
            for row in self.access_tokens.values():
                if row.identity_id == identity_id and not row.revoked:
                    row.revoked = True
                    row.revoked_at = revoked_at
                    count += 1
            return count

    def revoke_all_access_tokens(self, revoked_at: datetime) -> int:
        with self._data_lock:
            count = 0
            for row in self.access_tokens.values():
                if not row.revoked:
                    row.revoked = True
                    row.revoked_at = revoked_at
                    count += 1
            return count

    # refresh tokens
    def create_refresh_token(self, token: RefreshToken) -> RefreshToken:
        with self._data_lock:
            if token.identity_id not in self.identities:
                raise ConstraintViolation(
                    "unknown identity", table="oauth_refresh_tokens", field="identity_id"
                )
            if token.token in self.refresh_tokens:
                raise ConstraintViolation(
                    "refresh token collision", table="oauth_refresh_tokens", field="token"
                )
            self.refresh_tokens[token.token] = replace(token)
            return replace(token)

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._data_lock:
            row = self.refresh_tokens.get(token)
            return replace(row) if row else None

    def revoke_refresh_token(self, token: str, revoked_at: datetime) -> bool:
        with self._data_lock:
            row = self.refresh_tokens.get(token)
            if not row or row.revoked:
                return False
            row.revoked = True
            row.revoked_at = revoked_at
            return True

    def revoke_identity_refresh_tokens(self, identity_id: str, revoked_at: datetime) -> int:
        with self._data_lock:
            count = 0
            for row in self.refresh_tokens.values():
                if row.identity_id == identity_id and not row.revoked:
                    row.revoked = True
                    row.revoked_at = revoked_at
                    count += 1
            return count

    # housekeeping
    def delete_expired_tokens(self, now: datetime) -> Dict[str, int]:
        """Drop rows that can no longer influence any decision."""

        def _stale(row) -> bool:
            if row.revoked:
                return row.revoked_at is not None and row.revoked_at < now - REVOKED_TOKEN_RETENTION
            return row.expires_at < now - EXPIRED_TOKEN_RETENTION

        with self._data_lock:
            stale_codes = [
                key
                for key, row in self.authorization_codes.items()
                if row.expires_at < now - CODE_RETENTION
            ]
            stale_access = [key for key, row in self.access_tokens.items() if _stale(row)]
            stale_refresh = [key for key, row in self.refresh_tokens.items() if _stale(row)]
            for key in stale_codes:
                del self.authorization_codes[key]
            for key in stale_access:
                del self.access_tokens[key]
            for key in stale_refresh:
                del self.refresh_tokens[key]
        counts = {
            "authorization_codes": len(stale_codes),
            "access_tokens": len(stale_access),
            "refresh_tokens": len(stale_refresh),
        }
        self.logger.info("expired_tokens_deleted", **counts)
        return counts
