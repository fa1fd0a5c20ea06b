from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import httpx

from voicelink.logging import get_logger
from voicelink.service.codec import SESSION_TOKEN_TYPE, TokenCodec
from voicelink.service.errors import (
    InvalidRequestError,
    ServerError,
    UnauthorizedError,
    UserNotFoundError,
)
from voicelink.service.store import OAuthStore
from voicelink.storage.models import Identity

logger = get_logger(__name__)

SOURCE_SESSION = "session_token"
SOURCE_IDP = "idp_session"


@dataclass(frozen=True)
class Caller:
    """Authenticated caller. ``subject`` is an identity id for session tokens
    and the identity-provider user id for IdP sessions."""

    subject: str
    source: str
    email: Optional[str] = None


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, value = header.strip().partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


class CallerResolver:
    """Resolve who is calling: our own signed session token first, then the
    external identity provider's session token."""

    def __init__(
        self,
        codec: TokenCodec,
        *,
        idp_url: Optional[str] = None,
        idp_api_key: Optional[str] = None,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.codec = codec
        self.idp_url = idp_url.rstrip("/") if idp_url else None
        self.idp_api_key = idp_api_key
        self.timeout = timeout
        self._transport = transport

    async def resolve(self, authorization: Optional[str]) -> Optional[Caller]:
        token = extract_bearer(authorization)
        if not token:
            return None
        result = self.codec.verify(token)
        if result.ok and result.claims.get("type") == SESSION_TOKEN_TYPE:
            return Caller(
                subject=str(result.claims["sub"]),
                source=SOURCE_SESSION,
                email=result.claims.get("email"),
            )
        if not self.idp_url:
            return None
        return await self._resolve_idp_session(token)

    async def _resolve_idp_session(self, token: str) -> Optional[Caller]:
        headers = {"Authorization": f"Bearer {token}"}
        if self.idp_api_key:
            headers["apikey"] = self.idp_api_key
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.get(f"{self.idp_url}/auth/v1/user", headers=headers)
        except httpx.HTTPError as exc:
            logger.error("idp_session_lookup_failed", error=str(exc))
            raise ServerError("identity provider unavailable") from exc
        if resp.status_code in (401, 403):
            logger.info("idp_session_rejected", status_code=resp.status_code)
            return None
        if resp.status_code >= 400:
            logger.error("idp_session_lookup_error", status_code=resp.status_code)
            raise ServerError("identity provider error")
        try:
            data = resp.json()
        except ValueError as exc:
            raise ServerError("identity provider returned invalid JSON") from exc
        subject = data.get("id") if isinstance(data, dict) else None
        if not subject:
            return None
        return Caller(subject=str(subject), source=SOURCE_IDP, email=data.get("email"))

    @staticmethod
    def lookup_identity(store: OAuthStore, caller: Caller) -> Optional[Identity]:
        if caller.source == SOURCE_SESSION:
            return store.get_identity(caller.subject)
        return store.get_identity_by_subject(caller.subject)


class AccountLinker:
    """Attach a voice-assistant account reference to the signed-in identity.

    This is the only write allowed on an identity. A reference held by another
    identity surfaces as ``ConstraintViolation`` (409); relinking the same
    reference to its owner is a no-op success.
    """

    def __init__(self, store: OAuthStore, callers: CallerResolver) -> None:
        self.store = store
        self.callers = callers

    async def link(self, authorization: Optional[str], external_account_ref: str) -> Identity:
        caller = await self.callers.resolve(authorization)
        if caller is None:
            raise UnauthorizedError("authentication required")
        identity = self.callers.lookup_identity(self.store, caller)
        if identity is None:
            raise UserNotFoundError("user not found")
        external_account_ref = (external_account_ref or "").strip()
        if not external_account_ref:
            raise InvalidRequestError("external_account_ref is required")

        linked = self.store.link_external_account(identity.id, external_account_ref)
        if linked is None:
            # deleted between lookup and update
            raise UserNotFoundError("user not found")
        logger.info("external_account_linked", identity_id=linked.id, source=caller.source)
        return linked
