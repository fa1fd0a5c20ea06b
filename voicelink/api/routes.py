from __future__ import annotations

import base64
import binascii
from typing import Any, Dict, Optional, Tuple
from urllib.parse import unquote

from fastapi import APIRouter, Header, Query, Request, Response
from fastapi.responses import RedirectResponse
from pydantic import ValidationError

from voicelink.api.schemas import (
    CleanupResponse,
    DeviceTokenResponse,
    IntrospectionResponse,
    LinkAccountRequest,
    LinkAccountResponse,
    LinkedAccount,
    RefreshRequest,
    RevokeRequest,
    RevokeResponse,
    SessionTokensResponse,
    TokenRequest,
    TokenResponse,
    WebhookAck,
)
from voicelink.logging import get_logger
from voicelink.service.authorize import AuthorizationRequest
from voicelink.service.billing import SIGNATURE_HEADER
from voicelink.service.errors import InvalidRequestError, UnsupportedGrantTypeError
from voicelink.service.identity import extract_bearer
from voicelink.service.runtime import get_runtime
from voicelink.storage.models import utcnow

logger = get_logger(__name__)

router = APIRouter()

GRANT_AUTHORIZATION_CODE = "authorization_code"

_NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}


def _no_store(response: Response) -> None:
    response.headers.update(_NO_STORE_HEADERS)


def _basic_credentials(authorization: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """Client credentials from an HTTP Basic header (RFC 6749 section 2.3.1)."""
    if not authorization:
        return None, None
    scheme, _, encoded = authorization.strip().partition(" ")
    if scheme.lower() != "basic" or not encoded:
        return None, None
    try:
        decoded = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        raise InvalidRequestError("malformed basic credentials")
    client_id, sep, client_secret = decoded.partition(":")
    if not sep:
        raise InvalidRequestError("malformed basic credentials")
    return unquote(client_id), unquote(client_secret)


async def _read_token_request(request: Request) -> TokenRequest:
    content_type = request.headers.get("content-type", "")
    payload: Dict[str, Any]
    if content_type.startswith("application/json"):
        try:
            payload = await request.json()
        except ValueError:
            raise InvalidRequestError("request body is not valid JSON")
        if not isinstance(payload, dict):
            raise InvalidRequestError("request body must be a JSON object")
    else:
        form = await request.form()
        payload = {key: value for key, value in form.items() if isinstance(value, str)}
    try:
        return TokenRequest.model_validate(payload)
    except ValidationError as exc:
        first = exc.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ()))
        raise InvalidRequestError(f"{field}: {first.get('msg', 'invalid value')}")


@router.get("/authorize", tags=["oauth"])
async def authorize(
    request: Request,
    response_type: Optional[str] = Query(None, max_length=32),
    client_id: Optional[str] = Query(None, max_length=256),
    redirect_uri: Optional[str] = Query(None, max_length=2048),
    scope: Optional[str] = Query(None, max_length=256),
    state: Optional[str] = Query(None, max_length=1024),
    code_challenge: Optional[str] = Query(None, max_length=128),
    code_challenge_method: Optional[str] = Query(None, max_length=16),
    authorization: Optional[str] = Header(None),
):
    """Start account linking.

    Always answers with a redirect: to the skill's ``redirect_uri`` carrying the
    code, or to a sign-in / billing / connection page on the web app. Request
    errors are JSON ``{error, error_description}`` bodies.
    """
    runtime = get_runtime()
    outcome = await runtime.authorizer.authorize(
        AuthorizationRequest(
            response_type=response_type,
            client_id=client_id,
            redirect_uri=redirect_uri,
            scope=scope,
            state=state,
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method,
        ),
        authorization=authorization,
        request_url=str(request.url),
    )
    return RedirectResponse(outcome.location, status_code=302)


@router.post(
    "/token",
    response_model=TokenResponse,
    response_model_exclude_none=True,
    tags=["oauth"],
)
async def token(
    request: Request,
    response: Response,
    authorization: Optional[str] = Header(None),
):
    """Exchange an authorization code for an opaque device token."""
    body = await _read_token_request(request)
    if not body.grant_type:
        raise InvalidRequestError("grant_type is required")
    if body.grant_type != GRANT_AUTHORIZATION_CODE:
        raise UnsupportedGrantTypeError(f"unsupported grant_type: {body.grant_type}")
    client_id, client_secret = body.client_id, body.client_secret
    basic_id, basic_secret = _basic_credentials(authorization)
    if basic_id is not None:
        # One authentication method per request (RFC 6749 section 2.3)
        if client_secret or (client_id and client_id != basic_id):
            raise InvalidRequestError("client credentials sent both in the body and in HTTP Basic")
        client_id, client_secret = basic_id, basic_secret
    grant = get_runtime().exchanger.exchange(
        code=body.code,
        client_id=client_id,
        redirect_uri=body.redirect_uri,
        code_verifier=body.code_verifier,
        client_secret=client_secret,
    )
    _no_store(response)
    return TokenResponse(**grant.to_dict())


@router.post("/introspect", response_model=IntrospectionResponse, tags=["oauth"])
async def introspect(authorization: Optional[str] = Header(None)):
    """Resolve the bearer token to its identity and current entitlement."""
    result = get_runtime().introspector.introspect(extract_bearer(authorization))
    return IntrospectionResponse(**result.to_dict())


@router.post("/revoke", response_model=RevokeResponse, tags=["oauth"])
async def revoke(body: RevokeRequest, authorization: Optional[str] = Header(None)):
    """Revoke one token, every token of a user, or (``all``) every access token."""
    runtime = get_runtime()
    runtime.revoker.authorize_admin(authorization)
    if body.all:
        count = runtime.revoker.revoke_everything(authorization)
        return RevokeResponse(success=True, message="all access tokens revoked", revoked=count)
    if body.user_id:
        summary = runtime.revoker.revoke_all(body.user_id)
        return RevokeResponse(
            success=True, message="user tokens revoked", revoked=summary.total
        )
    if body.token:
        revoked = runtime.revoker.revoke_token(body.token)
        message = "token revoked" if revoked else "token already revoked or unknown"
        return RevokeResponse(success=True, message=message, revoked=int(revoked))
    raise InvalidRequestError("one of token, user_id or all is required")


@router.post("/refresh", response_model=SessionTokensResponse, response_model_exclude_none=True, tags=["oauth"])
async def refresh(body: RefreshRequest, response: Response):
    tokens = get_runtime().rotator.rotate(body.refresh_token)
    _no_store(response)
    return SessionTokensResponse(**tokens)


@router.post(
    "/auth/issue-tokens",
    response_model=SessionTokensResponse,
    response_model_exclude_none=True,
    tags=["auth"],
)
async def issue_tokens(response: Response, authorization: Optional[str] = Header(None)):
    """Mint a website session token and refresh token for the signed-in caller."""
    runtime = get_runtime()
    tokens = await runtime.sessions.issue_for_caller(runtime.callers, authorization)
    _no_store(response)
    return SessionTokensResponse(**tokens)


@router.post(
    "/webhooks/billing",
    response_model=WebhookAck,
    response_model_exclude_none=True,
    tags=["billing"],
)
async def billing_webhook(
    request: Request,
    billing_signature: Optional[str] = Header(None, alias=SIGNATURE_HEADER),
):
    payload = await request.body()
    result = await get_runtime().billing.handle(payload, billing_signature)
    return WebhookAck(**result)


@router.post("/admin/cleanup", response_model=CleanupResponse, tags=["admin"])
async def cleanup_expired_tokens(authorization: Optional[str] = Header(None)):
    """Delete long-expired codes and tokens; returns per-table counts."""
    runtime = get_runtime()
    runtime.revoker.authorize_admin(authorization)
    counts = runtime.store.delete_expired_tokens(utcnow())
    logger.info("admin_cleanup_completed", **counts)
    return CleanupResponse(**counts)


@router.post("/billing/device-token", response_model=DeviceTokenResponse, tags=["billing"])
async def issue_device_token(response: Response, authorization: Optional[str] = Header(None)):
    """Give an entitled, signed-in caller their first device token."""
    runtime = get_runtime()
    grant = await runtime.exchanger.issue_for_caller(runtime.callers, authorization)
    _no_store(response)
    return DeviceTokenResponse(
        access_token=grant.access_token,
        token_type=grant.token_type,
        expires_in=grant.expires_in,
        scope=grant.scope,
    )


@router.post("/users/link-account", response_model=LinkAccountResponse, tags=["auth"])
async def link_account(body: LinkAccountRequest, authorization: Optional[str] = Header(None)):
    """Record the caller's voice-assistant account reference; 409 when another user holds it."""
    runtime = get_runtime()
    identity = await runtime.linker.link(authorization, body.external_account_ref)
    return LinkAccountResponse(
        user=LinkedAccount(
            id=identity.id,
            email=identity.email,
            external_account_ref=identity.external_account_ref,
        )
    )
