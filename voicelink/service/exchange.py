from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from voicelink.config import Settings
from voicelink.logging import get_logger
from voicelink.service.errors import (
    AccessDeniedError,
    InvalidClientError,
    InvalidGrantError,
    InvalidRequestError,
    ServerError,
    UnauthorizedError,
    UserNotFoundError,
)
from voicelink.service.identity import CallerResolver
from voicelink.service.store import OAuthStore
from voicelink.storage.errors import ConstraintViolation
from voicelink.storage.models import AccessToken, Identity, RefreshToken, utcnow

logger = get_logger(__name__)

# Format tags for opaque credentials; "_" keeps them out of the legacy alphabet.
ACCESS_TOKEN_PREFIX = "at_"
REFRESH_TOKEN_PREFIX = "rt_"


def new_access_token_value() -> str:
    return f"{ACCESS_TOKEN_PREFIX}{secrets.token_urlsafe(32)}"


def new_refresh_token_value() -> str:
    return f"{REFRESH_TOKEN_PREFIX}{secrets.token_urlsafe(32)}"


def pkce_s256(verifier: str) -> str:
    """BASE64URL(SHA256(verifier)) without padding."""
    digest = hashlib.sha256(verifier.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


@dataclass(frozen=True)
class TokenGrant:
    access_token: str
    expires_in: int
    scope: str
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
            "scope": self.scope,
        }
        if self.refresh_token:
            body["refresh_token"] = self.refresh_token
        return body


class CodeExchanger:
    """Redeem an authorization code exactly once for an opaque device token."""

    def __init__(
        self,
        store: OAuthStore,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self._now = clock

    def authenticate_client(self, client_id: Optional[str], client_secret: Optional[str]) -> None:
        expected_id = self.settings.oauth_client_id
        if not expected_id:
            logger.error("oauth_client_id_not_configured")
            raise ServerError("authorization server is not configured")
        if not client_id or client_id != expected_id:
            raise InvalidClientError("invalid client_id", status_code=401)
        expected_secret = self.settings.oauth_client_secret
        if expected_secret and not hmac.compare_digest(
            (client_secret or "").encode(), expected_secret.encode()
        ):
            logger.warning("client_secret_mismatch", client_id=client_id)
            raise InvalidClientError("invalid client credentials", status_code=401)

    def exchange(
        self,
        *,
        code: Optional[str],
        client_id: Optional[str],
        redirect_uri: Optional[str],
        code_verifier: Optional[str] = None,
        client_secret: Optional[str] = None,
    ) -> TokenGrant:
        self.authenticate_client(client_id, client_secret)
        if not code or not redirect_uri:
            raise InvalidRequestError("code and redirect_uri are required")

        # Binding lookup: a code only exists for the client and redirect it was minted for
        row = self.store.get_authorization_code(code, client_id=client_id, redirect_uri=redirect_uri)
        if row is None:
            logger.warning("code_lookup_failed", client_id=client_id)
            raise InvalidGrantError("invalid authorization code")

        now = self._now()
        leeway = timedelta(seconds=self.settings.authorization_code_leeway_seconds)
        if now > row.expires_at + leeway:
            logger.info("code_expired", identity_id=row.identity_id)
            raise InvalidGrantError("authorization code expired")

        if row.used:
            logger.warning("code_replay_rejected", identity_id=row.identity_id, client_id=client_id)
            raise InvalidGrantError("authorization code already used")

        if row.code_challenge:
            if not code_verifier:
                raise InvalidGrantError("code_verifier required")
            if not hmac.compare_digest(pkce_s256(code_verifier).encode(), row.code_challenge.encode()):
                logger.warning("pkce_verification_failed", identity_id=row.identity_id)
                raise InvalidGrantError("invalid code_verifier")

        # Single winner under concurrent redemption; losers see used=true
        if not self.store.consume_authorization_code(row.code, now):
            logger.warning("code_consume_race_lost", identity_id=row.identity_id)
            raise InvalidGrantError("authorization code already used")

        if self.store.get_identity(row.identity_id) is None:
            logger.error("code_identity_missing", identity_id=row.identity_id)
            raise ServerError("user not found")

        access = self._mint_access_token(row.identity_id, row.client_id, row.scope, now)
        refresh_value = None
        if self.settings.refresh_tokens_enabled:
            refresh_value = self._issue_refresh_token(row.identity_id, row.client_id, now)

        logger.info(
            "device_token_issued",
            identity_id=row.identity_id,
            client_id=row.client_id,
            with_refresh=refresh_value is not None,
        )
        return TokenGrant(
            access_token=access.token,
            expires_in=self.settings.device_token_ttl_seconds,
            scope=row.scope,
            refresh_token=refresh_value,
        )

    async def issue_for_caller(
        self, callers: CallerResolver, authorization: Optional[str]
    ) -> TokenGrant:
        """Issue a device token straight to a signed-in, entitled caller.

        Used after a purchase, before any account linking has happened; the
        row is indistinguishable from one minted by ``exchange``.
        """
        client_id = self.settings.oauth_client_id
        if not client_id:
            logger.error("oauth_client_id_not_configured")
            raise ServerError("authorization server is not configured")
        caller = await callers.resolve(authorization)
        if caller is None:
            raise UnauthorizedError("authentication required")
        identity = callers.lookup_identity(self.store, caller)
        if identity is None:
            raise UserNotFoundError("user not found")
        if not self._entitled(identity):
            logger.info("device_token_entitlement_required", identity_id=identity.id)
            raise AccessDeniedError("an active license is required")

        scope = self.settings.oauth_default_scope
        access = self._mint_access_token(identity.id, client_id, scope, self._now())
        logger.info("device_token_issued_direct", identity_id=identity.id, client_id=client_id)
        return TokenGrant(
            access_token=access.token,
            expires_in=self.settings.device_token_ttl_seconds,
            scope=scope,
        )

    def _entitled(self, identity: Identity) -> bool:
        if self.settings.entitlement_bypass:
            return True
        if not identity.entitlement_key:
            return False
        entitlement = self.store.get_entitlement(identity.entitlement_key)
        return bool(entitlement and entitlement.is_active)

    def _mint_access_token(
        self, identity_id: str, client_id: str, scope: str, now: datetime
    ) -> AccessToken:
        return self.store.create_access_token(
            AccessToken.new(
                new_access_token_value(),
                identity_id,
                client_id,
                scope,
                ttl_seconds=self.settings.device_token_ttl_seconds,
                now=now,
            )
        )

    def _issue_refresh_token(self, identity_id: str, client_id: str, now: datetime) -> Optional[str]:
        try:
            refresh = self.store.create_refresh_token(
                RefreshToken.new(
                    new_refresh_token_value(),
                    identity_id,
                    client_id,
                    ttl_seconds=self.settings.refresh_token_ttl_seconds,
                    now=now,
                )
            )
        except ConstraintViolation as exc:
            # The access token is already committed; hand it out without a refresh token.
            logger.warning("refresh_token_store_failed", identity_id=identity_id, error=exc.message)
            return None
        return refresh.token
