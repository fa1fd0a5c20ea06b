from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict

from voicelink.logging import get_logger
from voicelink.service.errors import InvalidGrantError, ServerError
from voicelink.service.sessions import SessionTokenIssuer
from voicelink.service.store import OAuthStore
from voicelink.storage.models import utcnow

logger = get_logger(__name__)


class RefreshRotator:
    """Single-use refresh token rotation.

    The presented token is revoked with a compare-and-set before the new pair
    is minted, so a value can win at most one rotation. If minting fails after
    the revoke the caller is left without a refresh token and must sign in
    again; the reverse order would instead leave old and new valid together.
    """

    def __init__(
        self,
        store: OAuthStore,
        sessions: SessionTokenIssuer,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self._now = clock

    def rotate(self, refresh_token: str) -> Dict[str, Any]:
        if not refresh_token:
            raise InvalidGrantError("refresh_token is required", status_code=401)
        now = self._now()
        row = self.store.get_refresh_token(refresh_token)
        if row is None or row.revoked or row.expires_at <= now:
            logger.warning(
                "refresh_token_rejected",
                found=row is not None,
                revoked=bool(row and row.revoked),
            )
            raise InvalidGrantError("invalid refresh token", status_code=401)

        identity = self.store.get_identity(row.identity_id)
        if identity is None:
            logger.error("refresh_identity_missing", identity_id=row.identity_id)
            raise ServerError("user not found")

        if not self.store.revoke_refresh_token(row.token, now):
            logger.warning("refresh_token_reuse_rejected", identity_id=identity.id)
            raise InvalidGrantError("invalid refresh token", status_code=401)

        try:
            tokens = self.sessions.mint(identity, client_id=row.client_id)
        except Exception as exc:
            logger.error(
                "refresh_rotation_incomplete",
                identity_id=identity.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise ServerError("could not complete token refresh") from exc
        logger.info("refresh_token_rotated", identity_id=identity.id, client_id=row.client_id)
        return tokens
