from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, Optional

from voicelink.config import Settings
from voicelink.logging import get_logger
from voicelink.service.codec import TokenCodec
from voicelink.service.errors import ServerError, UnauthorizedError, UserNotFoundError
from voicelink.service.exchange import new_refresh_token_value
from voicelink.service.identity import CallerResolver
from voicelink.service.store import OAuthStore
from voicelink.storage.models import Identity, RefreshToken, utcnow

logger = get_logger(__name__)

WEBSITE_CLIENT_ID = "website"


class SessionTokenIssuer:
    """Mint a signed website session token plus an opaque refresh token."""

    def __init__(
        self,
        store: OAuthStore,
        codec: TokenCodec,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.codec = codec
        self.settings = settings
        self._now = clock

    def mint(self, identity: Identity, *, client_id: str = WEBSITE_CLIENT_ID) -> Dict[str, Any]:
        access_token = self.codec.sign_session(identity, self.settings.session_token_ttl_seconds)
        refresh = self.store.create_refresh_token(
            RefreshToken.new(
                new_refresh_token_value(),
                identity.id,
                client_id,
                ttl_seconds=self.settings.refresh_token_ttl_seconds,
                now=self._now(),
            )
        )
        return {
            "access_token": access_token,
            "refresh_token": refresh.token,
            "token_type": "Bearer",
            "expires_in": self.settings.session_token_ttl_seconds,
        }

    async def issue_for_caller(
        self, callers: CallerResolver, authorization: Optional[str]
    ) -> Dict[str, Any]:
        """Exchange an authenticated caller (session or IdP) for a fresh token pair."""
        caller = await callers.resolve(authorization)
        if caller is None:
            raise UnauthorizedError("authentication required")
        identity = callers.lookup_identity(self.store, caller)
        if identity is None:
            raise UserNotFoundError("user not found")
        try:
            tokens = self.mint(identity)
        except ValueError as exc:
            logger.error("session_token_sign_failed", identity_id=identity.id, error=str(exc))
            raise ServerError("could not issue session tokens") from exc
        logger.info("session_tokens_issued", identity_id=identity.id, source=caller.source)
        return {**tokens, "user": {"id": identity.id, "email": identity.email}}
