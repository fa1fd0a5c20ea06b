from __future__ import annotations

import hmac
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from voicelink.config import Settings
from voicelink.logging import get_logger
from voicelink.service.errors import AccessDeniedError, UnauthorizedError
from voicelink.service.identity import extract_bearer
from voicelink.service.store import OAuthStore
from voicelink.storage.models import utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class RevocationSummary:
    access_tokens: int = 0
    refresh_tokens: int = 0

    @property
    def total(self) -> int:
        return self.access_tokens + self.refresh_tokens


class Revoker:
    """Revoke opaque access and refresh tokens.

    Every operation is a conditional update, so repeated or concurrent calls
    converge on the same end state. Signed session tokens have no row and are
    untouched; they lapse at their own ``exp``.
    """

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

    def revoke_token(self, token: str) -> bool:
        """Revoke one token; returns False when it was unknown or already revoked."""
        now = self._now()
        revoked = self.store.revoke_access_token(token, now)
        if not revoked:
            revoked = self.store.revoke_refresh_token(token, now)
        logger.info("token_revoked" if revoked else "token_revoke_noop")
        return revoked

    def revoke_all(self, identity_id: str) -> RevocationSummary:
        now = self._now()
        access = self.store.revoke_identity_access_tokens(identity_id, now)
        refresh = 0
        if self.settings.refresh_tokens_enabled:
            refresh = self.store.revoke_identity_refresh_tokens(identity_id, now)
        summary = RevocationSummary(access_tokens=access, refresh_tokens=refresh)
        logger.info(
            "identity_tokens_revoked",
            identity_id=identity_id,
            access_tokens=access,
            refresh_tokens=refresh,
        )
        return summary

    def authorize_admin(self, authorization: Optional[str]) -> None:
        """Gate privileged calls on the admin credential (constant-time compare)."""
        presented = extract_bearer(authorization)
        if not presented:
            raise UnauthorizedError("authorization required")
        expected = self.settings.admin_api_key
        if not expected or not hmac.compare_digest(presented.encode(), expected.encode()):
            logger.warning("admin_credential_rejected", configured=bool(expected))
            raise AccessDeniedError("insufficient permissions")

    def revoke_everything(self, authorization: Optional[str]) -> int:
        self.authorize_admin(authorization)
        count = self.store.revoke_all_access_tokens(self._now())
        logger.warning("all_access_tokens_revoked", access_tokens=count)
        return count
