from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from voicelink.logging import get_logger
from voicelink.service.codec import TokenCodec, VerifyFailure
from voicelink.service.errors import InvalidTokenError
from voicelink.service.legacy import LegacyTokenBridge
from voicelink.service.store import OAuthStore
from voicelink.storage.models import Identity, utcnow

logger = get_logger(__name__)

TOKEN_TYPE_LEGACY = "legacy"
TOKEN_TYPE_OPAQUE = "Bearer"
LEGACY_SCOPE = "legacy"


@dataclass(frozen=True)
class Introspection:
    active: bool
    user_id: str
    email: str
    scope: Optional[str]
    token_type: str
    entitlement_active: bool
    exp: Optional[int] = None
    iat: Optional[int] = None
    external_account_ref: Optional[str] = None
    workspace_ref: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class _NotThisFormat(Exception):
    """Internal signal: the stage does not recognise the bearer string."""


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class Introspector:
    """Resolve any bearer string to identity, scope and current entitlement.

    Stages run in a fixed order and the first one that recognises the token
    owns the outcome; a recognised but bad token is rejected, never passed on:

    1. legacy base64 JSON (identity by embedded external account reference)
    2. opaque token row (revoked/expiry checked)
    3. signed token (signature and expiry; a signed token that was stored as
       a row, e.g. by a migration, is already settled by stage 2, which is
       where its revocation flag is honoured)

    Entitlement is always read from the store; claims inside a signed token
    are advisory.
    """

    def __init__(
        self,
        store: OAuthStore,
        codec: TokenCodec,
        legacy: LegacyTokenBridge,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.codec = codec
        self.legacy = legacy
        self._now = clock
        self._stages = (
            ("legacy", self._introspect_legacy),
            ("opaque", self._introspect_opaque),
            ("signed", self._introspect_signed),
        )

    def introspect(self, token: Optional[str]) -> Introspection:
        if not token:
            raise InvalidTokenError("missing bearer token")
        for name, stage in self._stages:
            try:
                result = stage(token)
            except _NotThisFormat:
                continue
            if result is None:
                logger.info("introspection_rejected", stage=name)
                raise InvalidTokenError("token is invalid, expired or revoked")
            return result
        logger.info("introspection_unrecognised")
        raise InvalidTokenError("token is invalid, expired or revoked")

    def _entitlement_active(self, identity: Identity) -> bool:
        if not identity.entitlement_key:
            return False
        entitlement = self.store.get_entitlement(identity.entitlement_key)
        return bool(entitlement and entitlement.is_active)

    def _introspect_legacy(self, token: str) -> Optional[Introspection]:
        if not self.legacy.looks_legacy(token):
            raise _NotThisFormat()
        if not self.legacy.accepts(self._now()):
            logger.info("legacy_token_outside_window")
            return None
        claims = self.legacy.decode(token)
        if claims is None or not claims.external_account_ref:
            return None
        identity = self.store.get_identity_by_external_ref(claims.external_account_ref)
        if identity is None:
            return None
        return Introspection(
            active=True,
            user_id=identity.id,
            email=identity.email,
            scope=LEGACY_SCOPE,
            token_type=TOKEN_TYPE_LEGACY,
            entitlement_active=self._entitlement_active(identity),
            external_account_ref=identity.external_account_ref,
            workspace_ref=identity.workspace_ref,
        )

    def _introspect_opaque(self, token: str) -> Optional[Introspection]:
        row = self.store.get_access_token(token)
        if row is None:
            raise _NotThisFormat()
        if not row.is_live(self._now()):
            return None
        identity = self.store.get_identity(row.identity_id)
        if identity is None:
            return None
        return Introspection(
            active=True,
            user_id=identity.id,
            email=identity.email,
            scope=row.scope,
            token_type=TOKEN_TYPE_OPAQUE,
            entitlement_active=self._entitlement_active(identity),
            exp=int(row.expires_at.timestamp()),
            iat=int(row.issued_at.timestamp()),
            external_account_ref=identity.external_account_ref,
            workspace_ref=identity.workspace_ref,
        )

    def _introspect_signed(self, token: str) -> Optional[Introspection]:
        result = self.codec.verify(token)
        if result.failure is VerifyFailure.MALFORMED:
            raise _NotThisFormat()
        if not result.ok:
            logger.info("signed_token_rejected", reason=result.failure.value)
            return None
        claims = result.claims
        identity = self.store.get_identity(str(claims["sub"]))
        if identity is None:
            return None
        return Introspection(
            active=True,
            user_id=identity.id,
            email=identity.email,
            scope=claims.get("scope"),
            token_type=str(claims.get("type") or "signed"),
            entitlement_active=self._entitlement_active(identity),
            exp=int(claims["exp"]),
            iat=_as_int(claims.get("iat")),
            external_account_ref=identity.external_account_ref,
            workspace_ref=identity.workspace_ref,
        )
