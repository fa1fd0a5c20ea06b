"""Tests for single-use authorization code redemption."""

import threading
from datetime import timedelta

import pytest

from voicelink.service.errors import (
    AccessDeniedError,
    InvalidClientError,
    InvalidGrantError,
    InvalidRequestError,
    ServerError,
    UnauthorizedError,
)
from voicelink.service.exchange import (
    ACCESS_TOKEN_PREFIX,
    REFRESH_TOKEN_PREFIX,
    CodeExchanger,
    pkce_s256,
)
from voicelink.service.identity import CallerResolver
from voicelink.storage.errors import ConstraintViolation
from voicelink.storage.models import ENTITLEMENT_INACTIVE, AuthorizationCode, utcnow

REDIRECT_URI = "https://layla.amazon.com/api/skill/link/M2TESTVENDOR"
VERIFIER = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"


def _store_code(store, identity, *, code="code-1", challenge=None, now=None, ttl=600):
    return store.create_authorization_code(
        AuthorizationCode.new(
            code,
            identity.id,
            "skill-client",
            REDIRECT_URI,
            "alexa",
            ttl_seconds=ttl,
            code_challenge=challenge,
            code_challenge_method="S256" if challenge else None,
            now=now,
        )
    )


def _exchange(exchanger, code="code-1", **overrides):
    kwargs = dict(
        code=code,
        client_id="skill-client",
        redirect_uri=REDIRECT_URI,
        client_secret="skill-secret",
    )
    kwargs.update(overrides)
    return exchanger.exchange(**kwargs)


@pytest.fixture
def exchanger(store, settings):
    return CodeExchanger(store, settings)


def test_pkce_s256_matches_rfc7636_example():
    assert pkce_s256(VERIFIER) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"


class TestClientAuthentication:
    def test_wrong_client_id_is_401(self, exchanger, store, linked_identity):
        _store_code(store, linked_identity)
        with pytest.raises(InvalidClientError) as exc_info:
            _exchange(exchanger, client_id="other")
        assert exc_info.value.status_code == 401

    def test_wrong_secret_is_401(self, exchanger, store, linked_identity):
        _store_code(store, linked_identity)
        with pytest.raises(InvalidClientError) as exc_info:
            _exchange(exchanger, client_secret="nope")
        assert exc_info.value.status_code == 401

    def test_missing_secret_when_configured(self, exchanger, store, linked_identity):
        _store_code(store, linked_identity)
        with pytest.raises(InvalidClientError):
            _exchange(exchanger, client_secret=None)

    def test_secret_optional_when_not_configured(self, store, make_settings, linked_identity):
        exchanger = CodeExchanger(store, make_settings(oauth_client_secret=None))
        _store_code(store, linked_identity)
        assert _exchange(exchanger, client_secret=None).access_token

    def test_missing_code_is_invalid_request(self, exchanger):
        with pytest.raises(InvalidRequestError):
            _exchange(exchanger, code=None)
        with pytest.raises(InvalidRequestError):
            _exchange(exchanger, redirect_uri="")


class TestRedemption:
    def test_successful_exchange(self, exchanger, store, settings, linked_identity):
        _store_code(store, linked_identity)
        grant = _exchange(exchanger)

        assert grant.access_token.startswith(ACCESS_TOKEN_PREFIX)
        assert grant.token_type == "Bearer"
        assert grant.expires_in == settings.device_token_ttl_seconds
        assert grant.scope == "alexa"
        assert grant.refresh_token is None
        assert "refresh_token" not in grant.to_dict()

        row = store.get_access_token(grant.access_token)
        assert row.identity_id == linked_identity.id
        assert row.client_id == "skill-client"
        assert row.expires_at - row.issued_at == timedelta(seconds=settings.device_token_ttl_seconds)

        code = store.get_authorization_code("code-1", client_id="skill-client", redirect_uri=REDIRECT_URI)
        assert code.used
        assert code.used_at is not None

    def test_second_exchange_fails(self, exchanger, store, linked_identity):
        _store_code(store, linked_identity)
        _exchange(exchanger)
        with pytest.raises(InvalidGrantError) as exc_info:
            _exchange(exchanger)
        assert exc_info.value.status_code == 400

    def test_unknown_code(self, exchanger):
        with pytest.raises(InvalidGrantError):
            _exchange(exchanger, code="never-issued")

    def test_redirect_uri_binding(self, exchanger, store, linked_identity):
        """A code only redeems with the exact redirect_uri it was issued for."""
        _store_code(store, linked_identity)
        with pytest.raises(InvalidGrantError):
            _exchange(exchanger, redirect_uri=REDIRECT_URI + "x")
        # the failed attempt did not burn the code
        assert _exchange(exchanger).access_token

    def test_expiry_allows_one_second_leeway(self, store, settings, linked_identity):
        issued = utcnow() - timedelta(seconds=600)
        row = _store_code(store, linked_identity, now=issued)

        late = CodeExchanger(store, settings, clock=lambda: row.expires_at + timedelta(seconds=2))
        with pytest.raises(InvalidGrantError):
            _exchange(late)

        within = CodeExchanger(store, settings, clock=lambda: row.expires_at + timedelta(milliseconds=500))
        assert _exchange(within).access_token

    def test_identity_deleted_after_issuance(self, exchanger, store, linked_identity):
        _store_code(store, linked_identity)
        del store.identities[linked_identity.id]
        with pytest.raises(ServerError):
            _exchange(exchanger)


class TestPkce:
    def test_verifier_required_when_challenge_stored(self, exchanger, store, linked_identity):
        _store_code(store, linked_identity, challenge=pkce_s256(VERIFIER))
        with pytest.raises(InvalidGrantError):
            _exchange(exchanger)

    def test_wrong_verifier_rejected_and_code_still_usable(self, exchanger, store, linked_identity):
        _store_code(store, linked_identity, challenge=pkce_s256(VERIFIER))
        with pytest.raises(InvalidGrantError):
            _exchange(exchanger, code_verifier="not-the-verifier")
        assert _exchange(exchanger, code_verifier=VERIFIER).access_token

    def test_verifier_ignored_without_challenge(self, exchanger, store, linked_identity):
        _store_code(store, linked_identity)
        assert _exchange(exchanger, code_verifier="anything").access_token


class TestRefreshTokens:
    def test_refresh_token_issued_when_enabled(self, store, make_settings, linked_identity):
        exchanger = CodeExchanger(store, make_settings(refresh_tokens_enabled=True))
        _store_code(store, linked_identity)
        grant = _exchange(exchanger)
        assert grant.refresh_token.startswith(REFRESH_TOKEN_PREFIX)
        assert grant.to_dict()["refresh_token"] == grant.refresh_token
        assert store.get_refresh_token(grant.refresh_token).identity_id == linked_identity.id

    def test_refresh_store_failure_still_returns_access_token(
        self, store, make_settings, linked_identity, monkeypatch
    ):
        def _fail(token):
            raise ConstraintViolation("refresh token collision", table="oauth_refresh_tokens")

        monkeypatch.setattr(store, "create_refresh_token", _fail)
        exchanger = CodeExchanger(store, make_settings(refresh_tokens_enabled=True))
        _store_code(store, linked_identity)
        grant = _exchange(exchanger)
        assert grant.refresh_token is None
        assert store.get_access_token(grant.access_token) is not None


class TestConcurrentExchange:
    def test_exactly_one_winner(self, exchanger, store, linked_identity):
        """Threads racing on one code: one token, everyone else invalid_grant."""
        _store_code(store, linked_identity)
        workers = 12
        barrier = threading.Barrier(workers)
        results = []
        lock = threading.Lock()

        def attempt():
            barrier.wait()
            try:
                grant = _exchange(exchanger)
                outcome = ("ok", grant.access_token)
            except InvalidGrantError:
                outcome = ("invalid_grant", None)
            with lock:
                results.append(outcome)

        threads = [threading.Thread(target=attempt) for _ in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        winners = [token for kind, token in results if kind == "ok"]
        assert len(results) == workers
        assert len(winners) == 1
        assert len(store.access_tokens) == 1


class TestDirectIssuance:
    async def test_entitled_caller_gets_device_token(self, exchanger, store, codec, settings, linked_identity):
        bearer = f"Bearer {codec.sign_session(linked_identity, 60)}"
        grant = await exchanger.issue_for_caller(CallerResolver(codec), bearer)

        assert grant.access_token.startswith(ACCESS_TOKEN_PREFIX)
        assert grant.refresh_token is None
        assert grant.scope == "alexa"
        row = store.get_access_token(grant.access_token)
        assert row.client_id == "skill-client"
        assert store.has_live_access_token(linked_identity.id, utcnow())

    async def test_anonymous_caller(self, exchanger, codec):
        with pytest.raises(UnauthorizedError):
            await exchanger.issue_for_caller(CallerResolver(codec), None)

    async def test_inactive_entitlement_is_denied(self, exchanger, store, codec, linked_identity):
        store.set_entitlement_status("LIC-1", ENTITLEMENT_INACTIVE)
        bearer = f"Bearer {codec.sign_session(linked_identity, 60)}"
        with pytest.raises(AccessDeniedError):
            await exchanger.issue_for_caller(CallerResolver(codec), bearer)
        assert store.access_tokens == {}

    async def test_bypass_skips_entitlement(self, store, codec, make_settings, linked_identity):
        store.set_entitlement_status("LIC-1", ENTITLEMENT_INACTIVE)
        exchanger = CodeExchanger(store, make_settings(entitlement_bypass=True))
        bearer = f"Bearer {codec.sign_session(linked_identity, 60)}"
        grant = await exchanger.issue_for_caller(CallerResolver(codec), bearer)
        assert store.get_access_token(grant.access_token) is not None
