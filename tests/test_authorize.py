"""Tests for the /authorize decision chain (validation, caller, entitlement, code)."""

from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from voicelink.service.authorize import (
    OUTCOME_BILLING_REQUIRED,
    OUTCOME_CODE,
    OUTCOME_CONNECTION_REQUIRED,
    OUTCOME_SIGN_IN,
    AuthorizationCodeIssuer,
    AuthorizationRequest,
    append_query,
)
from voicelink.service.errors import (
    InvalidClientError,
    InvalidRequestError,
    ServerError,
    UnsupportedResponseTypeError,
    UserNotFoundError,
)
from voicelink.service.exchange import new_access_token_value
from voicelink.service.identity import CallerResolver
from voicelink.storage.models import ENTITLEMENT_INACTIVE, AccessToken, utcnow

REDIRECT_URI = "https://layla.amazon.com/api/skill/link/M2TESTVENDOR"
REQUEST_URL = "https://api.example.com/authorize?client_id=skill-client"


def _request(**overrides) -> AuthorizationRequest:
    fields = dict(
        response_type="code",
        client_id="skill-client",
        redirect_uri=REDIRECT_URI,
        scope=None,
        state="xyz",
        code_challenge=None,
        code_challenge_method=None,
    )
    fields.update(overrides)
    return AuthorizationRequest(**fields)


def _give_device_token(store, identity, *, ttl_seconds=3600):
    store.create_access_token(
        AccessToken.new(new_access_token_value(), identity.id, "skill-client", "alexa", ttl_seconds=ttl_seconds)
    )


@pytest.fixture
def callers(codec):
    return CallerResolver(codec)


@pytest.fixture
def issuer(store, callers, settings):
    return AuthorizationCodeIssuer(store, callers, settings)


def _bearer_for(codec, identity) -> str:
    return f"Bearer {codec.sign_session(identity, 3600)}"


class TestRequestValidation:
    async def test_response_type_checked_first(self, issuer):
        with pytest.raises(UnsupportedResponseTypeError):
            await issuer.authorize(
                _request(response_type="token", client_id="wrong"),
                authorization=None,
                request_url=REQUEST_URL,
            )

    async def test_wrong_client_id(self, issuer):
        with pytest.raises(InvalidClientError) as exc_info:
            await issuer.authorize(_request(client_id="other"), authorization=None, request_url=REQUEST_URL)
        assert exc_info.value.status_code == 400

    async def test_missing_client_configuration_is_server_error(self, store, callers, make_settings):
        issuer = AuthorizationCodeIssuer(store, callers, make_settings(oauth_client_id=None))
        with pytest.raises(ServerError):
            await issuer.authorize(_request(), authorization=None, request_url=REQUEST_URL)

    async def test_missing_allow_list_is_server_error(self, store, callers, make_settings):
        """An empty prefix list is a configuration error, not an open redirect."""
        issuer = AuthorizationCodeIssuer(store, callers, make_settings(oauth_redirect_uri_prefixes=[]))
        with pytest.raises(ServerError):
            await issuer.authorize(_request(), authorization=None, request_url=REQUEST_URL)

    @pytest.mark.parametrize(
        "redirect_uri",
        [None, "https://evil.example.com/cb", "https://layla.amazon.com.evil.com/api/skill/link/x"],
    )
    async def test_redirect_outside_allow_list(self, issuer, redirect_uri):
        with pytest.raises(InvalidRequestError):
            await issuer.authorize(
                _request(redirect_uri=redirect_uri), authorization=None, request_url=REQUEST_URL
            )

    async def test_plain_pkce_method_rejected(self, issuer):
        with pytest.raises(InvalidRequestError):
            await issuer.authorize(
                _request(code_challenge="abc", code_challenge_method="plain"),
                authorization=None,
                request_url=REQUEST_URL,
            )


class TestCallerGates:
    async def test_anonymous_caller_redirected_to_sign_in(self, issuer):
        outcome = await issuer.authorize(_request(), authorization=None, request_url=REQUEST_URL)
        assert outcome.kind == OUTCOME_SIGN_IN
        parsed = urlparse(outcome.location)
        assert f"{parsed.scheme}://{parsed.netloc}" == "https://app.example.com"
        assert parse_qs(parsed.query)["redirect"] == [REQUEST_URL]

    async def test_validation_runs_before_authentication(self, issuer):
        """A bad redirect_uri is an error even for anonymous callers."""
        with pytest.raises(InvalidRequestError):
            await issuer.authorize(
                _request(redirect_uri="https://evil.example.com"), authorization=None, request_url=REQUEST_URL
            )

    async def test_unknown_identity(self, issuer, codec):
        from voicelink.storage.models import Identity

        ghost = Identity(id="ghost", email="ghost@example.com")
        with pytest.raises(UserNotFoundError) as exc_info:
            await issuer.authorize(_request(), authorization=_bearer_for(codec, ghost), request_url=REQUEST_URL)
        assert exc_info.value.status_code == 404

    async def test_active_licence_without_device_token_requires_billing(self, issuer, codec, linked_identity):
        """Entitlement flag alone is not enough: a live device token must exist too."""
        outcome = await issuer.authorize(
            _request(), authorization=_bearer_for(codec, linked_identity), request_url=REQUEST_URL
        )
        assert outcome.kind == OUTCOME_BILLING_REQUIRED
        query = parse_qs(urlparse(outcome.location).query)
        assert query["action"] == ["purchase"]
        assert urlparse(outcome.location).path == "/error"

    async def test_inactive_licence_requires_billing(self, issuer, store, codec, linked_identity):
        _give_device_token(store, linked_identity)
        store.set_entitlement_status("LIC-1", ENTITLEMENT_INACTIVE)
        outcome = await issuer.authorize(
            _request(), authorization=_bearer_for(codec, linked_identity), request_url=REQUEST_URL
        )
        assert outcome.kind == OUTCOME_BILLING_REQUIRED

    async def test_revoked_device_token_does_not_count(self, issuer, store, codec, linked_identity):
        _give_device_token(store, linked_identity)
        store.revoke_identity_access_tokens(linked_identity.id, utcnow())
        outcome = await issuer.authorize(
            _request(), authorization=_bearer_for(codec, linked_identity), request_url=REQUEST_URL
        )
        assert outcome.kind == OUTCOME_BILLING_REQUIRED

    async def test_bypass_skips_entitlement(self, store, callers, codec, make_settings, linked_identity):
        issuer = AuthorizationCodeIssuer(store, callers, make_settings(entitlement_bypass=True))
        outcome = await issuer.authorize(
            _request(), authorization=_bearer_for(codec, linked_identity), request_url=REQUEST_URL
        )
        assert outcome.kind == OUTCOME_CODE

    async def test_workspace_connection_required(self, issuer, store, codec):
        store.set_entitlement_status("LIC-2", "active")
        identity = store.create_identity("nows@example.com", entitlement_key="LIC-2")
        _give_device_token(store, identity)
        outcome = await issuer.authorize(
            _request(), authorization=_bearer_for(codec, identity), request_url=REQUEST_URL
        )
        assert outcome.kind == OUTCOME_CONNECTION_REQUIRED
        assert parse_qs(urlparse(outcome.location).query)["action"] == ["connect"]


class TestCodeIssuance:
    async def test_code_issued_and_persisted(self, issuer, store, codec, linked_identity):
        _give_device_token(store, linked_identity)
        outcome = await issuer.authorize(
            _request(code_challenge="challenge-value"),
            authorization=_bearer_for(codec, linked_identity),
            request_url=REQUEST_URL,
        )
        assert outcome.kind == OUTCOME_CODE
        query = parse_qs(urlparse(outcome.location).query)
        assert query["code"] == [outcome.code]
        assert query["state"] == ["xyz"]
        # 32 random bytes, base64url encoded
        assert len(outcome.code) >= 43

        row = store.get_authorization_code(outcome.code, client_id="skill-client", redirect_uri=REDIRECT_URI)
        assert row.identity_id == linked_identity.id
        assert row.scope == "alexa"
        assert row.code_challenge == "challenge-value"
        assert row.code_challenge_method == "S256"
        assert not row.used
        assert row.expires_at - row.created_at == timedelta(seconds=600)

    async def test_existing_redirect_query_is_kept(self, issuer, store, codec, linked_identity):
        _give_device_token(store, linked_identity)
        outcome = await issuer.authorize(
            _request(redirect_uri=f"{REDIRECT_URI}?vendor=1"),
            authorization=_bearer_for(codec, linked_identity),
            request_url=REQUEST_URL,
        )
        query = parse_qs(urlparse(outcome.location).query)
        assert query["vendor"] == ["1"]
        assert "code" in query

    async def test_codes_are_unique(self, issuer, store, codec, linked_identity):
        _give_device_token(store, linked_identity)
        auth = _bearer_for(codec, linked_identity)
        codes = {
            (await issuer.authorize(_request(), authorization=auth, request_url=REQUEST_URL)).code
            for _ in range(20)
        }
        assert len(codes) == 20


class TestIdentityProviderCaller:
    async def test_idp_session_resolves_by_subject(self, store, codec, settings, linked_identity):
        _give_device_token(store, linked_identity)
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["apikey"] = request.headers.get("apikey")
            seen["auth"] = request.headers.get("authorization")
            return httpx.Response(200, json={"id": "idp-user-1", "email": "owner@example.com"})

        callers = CallerResolver(
            codec,
            idp_url="https://idp.example.com/",
            idp_api_key="anon-key",
            transport=httpx.MockTransport(handler),
        )
        issuer = AuthorizationCodeIssuer(store, callers, settings)
        outcome = await issuer.authorize(_request(), authorization="Bearer idp-session", request_url=REQUEST_URL)

        assert outcome.kind == OUTCOME_CODE
        assert seen == {"path": "/auth/v1/user", "apikey": "anon-key", "auth": "Bearer idp-session"}

    async def test_idp_rejection_means_sign_in(self, store, codec, settings):
        callers = CallerResolver(
            codec,
            idp_url="https://idp.example.com",
            transport=httpx.MockTransport(lambda request: httpx.Response(401, json={})),
        )
        issuer = AuthorizationCodeIssuer(store, callers, settings)
        outcome = await issuer.authorize(_request(), authorization="Bearer stale", request_url=REQUEST_URL)
        assert outcome.kind == OUTCOME_SIGN_IN

    async def test_idp_outage_is_server_error(self, store, codec, settings):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        callers = CallerResolver(
            codec, idp_url="https://idp.example.com", transport=httpx.MockTransport(handler)
        )
        issuer = AuthorizationCodeIssuer(store, callers, settings)
        with pytest.raises(ServerError):
            await issuer.authorize(_request(), authorization="Bearer whatever", request_url=REQUEST_URL)

    async def test_idp_5xx_is_server_error(self, codec):
        callers = CallerResolver(
            codec,
            idp_url="https://idp.example.com",
            transport=httpx.MockTransport(lambda request: httpx.Response(503)),
        )
        with pytest.raises(ServerError):
            await callers.resolve("Bearer whatever")

    async def test_non_bearer_header_is_anonymous(self, codec):
        assert await CallerResolver(codec).resolve("Basic abc") is None
        assert await CallerResolver(codec).resolve(None) is None


def test_append_query_encodes_values():
    url = append_query("https://app.example.com/error", {"message": "a b&c", "action": "purchase", "skip": None})
    query = parse_qs(urlparse(url).query)
    assert query == {"message": ["a b&c"], "action": ["purchase"]}
