from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from voicelink.config import Settings
from voicelink.logging import get_logger
from voicelink.service.errors import (
    InvalidClientError,
    InvalidRequestError,
    ServerError,
    UnsupportedResponseTypeError,
    UserNotFoundError,
)
from voicelink.service.identity import CallerResolver
from voicelink.service.store import OAuthStore
from voicelink.storage.models import AuthorizationCode, Identity, utcnow

logger = get_logger(__name__)

PKCE_METHOD_S256 = "S256"

OUTCOME_CODE = "code"
OUTCOME_SIGN_IN = "sign_in"
OUTCOME_BILLING_REQUIRED = "billing_required"
OUTCOME_CONNECTION_REQUIRED = "connection_required"

_BILLING_MESSAGE = "Your license is not active. Purchase or activate a license to link your voice assistant."
_CONNECTION_MESSAGE = "Connect your workspace first, then link your voice assistant."


@dataclass
class AuthorizationRequest:
    response_type: Optional[str]
    client_id: Optional[str]
    redirect_uri: Optional[str]
    scope: Optional[str] = None
    state: Optional[str] = None
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None


@dataclass(frozen=True)
class AuthorizationOutcome:
    kind: str
    location: str
    code: Optional[str] = None


def append_query(url: str, params: dict[str, Optional[str]]) -> str:
    """Add ``params`` to ``url`` keeping any query string it already has."""
    parsed = urlparse(url)
    query = parse_qsl(parsed.query, keep_blank_values=True)
    query.extend((key, value) for key, value in params.items() if value is not None)
    return urlunparse(parsed._replace(query=urlencode(query)))


class AuthorizationCodeIssuer:
    """Validate an account-linking request and mint a one-time, PKCE-bound code.

    Checks run in a fixed order and the first failure wins:

    1. ``response_type`` is ``code``
    2. ``client_id`` matches the single configured client
    3. ``redirect_uri`` starts with a configured prefix (PKCE method is S256)
    4. the caller is authenticated, otherwise a redirect to sign-in
    5. the caller's identity exists
    6. entitlement is active and a live device token exists (unless bypassed),
       otherwise a redirect to the billing page
    7. the workspace connection exists, otherwise a redirect to connect it
    """

    def __init__(
        self,
        store: OAuthStore,
        callers: CallerResolver,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.callers = callers
        self.settings = settings
        self._now = clock

    def _validate_request(self, request: AuthorizationRequest) -> None:
        if request.response_type != "code":
            raise UnsupportedResponseTypeError('only the "code" response type is supported')
        expected_client = self.settings.oauth_client_id
        if not expected_client:
            logger.error("oauth_client_id_not_configured")
            raise ServerError("authorization server is not configured")
        if not request.client_id or request.client_id != expected_client:
            raise InvalidClientError("invalid client_id")
        prefixes = self.settings.oauth_redirect_uri_prefixes
        if not prefixes:
            logger.error("redirect_uri_allow_list_missing")
            raise ServerError("authorization server is not configured")
        if not request.redirect_uri or not any(
            request.redirect_uri.startswith(prefix) for prefix in prefixes
        ):
            logger.warning("redirect_uri_rejected", redirect_uri=request.redirect_uri)
            raise InvalidRequestError("invalid or not allowed redirect_uri")
        if request.code_challenge:
            method = request.code_challenge_method or PKCE_METHOD_S256
            if method != PKCE_METHOD_S256:
                raise InvalidRequestError("only the S256 code_challenge_method is supported")

    def _error_page(self, message: str, action: str) -> str:
        base = self.settings.app_base_url.rstrip("/")
        return append_query(f"{base}/error", {"message": message, "action": action})

    def _sign_in_page(self, request_url: str) -> str:
        base = self.settings.app_base_url.rstrip("/")
        return append_query(f"{base}/", {"redirect": request_url})

    def _has_entitlement(self, identity: Identity) -> bool:
        if self.settings.entitlement_bypass:
            return True
        if not identity.entitlement_key:
            return False
        entitlement = self.store.get_entitlement(identity.entitlement_key)
        if not entitlement or not entitlement.is_active:
            return False
        # The licence flag alone is not enough: a purchase also issues a device
        # token, so a missing token means the webhook only partially applied.
        return self.store.has_live_access_token(identity.id, self._now())

    async def authorize(
        self,
        request: AuthorizationRequest,
        *,
        authorization: Optional[str],
        request_url: str,
    ) -> AuthorizationOutcome:
        self._validate_request(request)

        caller = await self.callers.resolve(authorization)
        if caller is None:
            return AuthorizationOutcome(OUTCOME_SIGN_IN, self._sign_in_page(request_url))

        identity = self.callers.lookup_identity(self.store, caller)
        if identity is None:
            logger.warning("authorize_identity_missing", source=caller.source)
            raise UserNotFoundError("user not found")

        if not self._has_entitlement(identity):
            logger.info("authorize_entitlement_required", identity_id=identity.id)
            return AuthorizationOutcome(
                OUTCOME_BILLING_REQUIRED, self._error_page(_BILLING_MESSAGE, "purchase")
            )

        if not identity.workspace_connected:
            logger.info("authorize_workspace_required", identity_id=identity.id)
            return AuthorizationOutcome(
                OUTCOME_CONNECTION_REQUIRED, self._error_page(_CONNECTION_MESSAGE, "connect")
            )

        code = self._issue_code(identity, request)
        location = append_query(request.redirect_uri, {"code": code.code, "state": request.state})
        logger.info(
            "authorization_code_issued",
            identity_id=identity.id,
            client_id=code.client_id,
            pkce=bool(code.code_challenge),
        )
        return AuthorizationOutcome(OUTCOME_CODE, location, code=code.code)

    def _issue_code(self, identity: Identity, request: AuthorizationRequest) -> AuthorizationCode:
        code = AuthorizationCode.new(
            secrets.token_urlsafe(32),
            identity.id,
            request.client_id,
            request.redirect_uri,
            request.scope or self.settings.oauth_default_scope,
            ttl_seconds=self.settings.authorization_code_ttl_seconds,
            code_challenge=request.code_challenge or None,
            code_challenge_method=(request.code_challenge_method or PKCE_METHOD_S256)
            if request.code_challenge
            else None,
            now=self._now(),
        )
        return self.store.create_authorization_code(code)
