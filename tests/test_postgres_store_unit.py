"""PostgresStore unit tests against a scripted connection (no database)."""

from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors

from voicelink.logging import get_logger
from voicelink.storage.errors import ConstraintViolation
from voicelink.storage.memory import CODE_RETENTION, EXPIRED_TOKEN_RETENTION, REVOKED_TOKEN_RETENTION
from voicelink.storage.models import AccessToken
from voicelink.storage.postgres import PostgresStore

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeResult:
    def __init__(self, rows=None, rowcount=0):
        self.rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    def __init__(self, outcomes):
        self.outcomes = outcomes
        self.calls = []

    def execute(self, sql, params=None):
        self.calls.append((" ".join(sql.split()), params))
        outcome = self.outcomes.pop(0) if self.outcomes else FakeResult()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakePool:
    def __init__(self, *outcomes):
        self.conn = FakeConnection(list(outcomes))

    @contextmanager
    def connection(self):
        yield self.conn


def create_test_store(*outcomes) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = FakePool(*outcomes)
    store.logger = get_logger("test")
    return store


def _token_row(**overrides):
    row = {
        "token": "at_abc",
        "identity_id": "user-1",
        "client_id": "skill-client",
        "scope": "alexa",
        "issued_at": NOW,
        "expires_at": NOW + timedelta(days=1),
        "revoked": False,
        "revoked_at": None,
    }
    row.update(overrides)
    return row


class TestConditionalUpdates:
    def test_consume_wins_when_row_returned(self):
        store = create_test_store(FakeResult(rows=[{"code": "C1"}]))
        assert store.consume_authorization_code("C1", NOW) is True
        sql, params = store.pool.conn.calls[0]
        assert "WHERE code = %s AND used = false" in sql
        assert "RETURNING code" in sql
        assert params == (NOW, "C1")

    def test_consume_loses_when_no_row(self):
        store = create_test_store(FakeResult(rows=[]))
        assert store.consume_authorization_code("C1", NOW) is False

    def test_revoke_access_token_uses_rowcount(self):
        store = create_test_store(FakeResult(rowcount=1), FakeResult(rowcount=0))
        assert store.revoke_access_token("at_abc", NOW) is True
        assert store.revoke_access_token("at_abc", NOW) is False
        assert "revoked = false" in store.pool.conn.calls[0][0]

    def test_revoke_identity_counts(self):
        store = create_test_store(FakeResult(rowcount=3))
        assert store.revoke_identity_access_tokens("user-1", NOW) == 3

    def test_code_lookup_binds_client_and_redirect(self):
        store = create_test_store(FakeResult(rows=[]))
        assert store.get_authorization_code("C1", client_id="c", redirect_uri="https://r") is None
        sql, params = store.pool.conn.calls[0]
        assert "client_id = %s AND redirect_uri = %s" in sql
        assert params == ("C1", "c", "https://r")


class TestConstraintMapping:
    def test_access_token_collision(self):
        store = create_test_store(errors.UniqueViolation("duplicate key"))
        token = AccessToken.new("at_abc", "user-1", "skill-client", "alexa", ttl_seconds=60, now=NOW)
        with pytest.raises(ConstraintViolation) as exc_info:
            store.create_access_token(token)
        assert exc_info.value.detail == {"table": "oauth_access_tokens", "field": "token"}

    def test_access_token_for_missing_identity(self):
        store = create_test_store(errors.ForeignKeyViolation("missing identity"))
        token = AccessToken.new("at_abc", "ghost", "skill-client", "alexa", ttl_seconds=60, now=NOW)
        with pytest.raises(ConstraintViolation) as exc_info:
            store.create_access_token(token)
        assert exc_info.value.field == "identity_id"

    def test_identity_uniqueness(self):
        store = create_test_store(errors.UniqueViolation("duplicate email"))
        with pytest.raises(ConstraintViolation):
            store.create_identity("dup@example.com")

    def test_external_account_already_linked(self):
        store = create_test_store(errors.UniqueViolation("duplicate external_account_ref"))
        with pytest.raises(ConstraintViolation) as exc_info:
            store.link_external_account("id-1", "amzn1.account.TAKEN")
        assert exc_info.value.field == "external_account_ref"

    def test_link_missing_identity(self):
        store = create_test_store(FakeResult())
        assert store.link_external_account("ghost", "amzn1.account.X") is None


class TestRowMapping:
    def test_access_token_row(self):
        store = create_test_store(FakeResult(rows=[_token_row(revoked=True, revoked_at=NOW)]))
        token = store.get_access_token("at_abc")
        assert token.revoked
        assert token.revoked_at == NOW
        assert not token.is_live(NOW)

    def test_entitlement_upsert(self):
        store = create_test_store(
            FakeResult(rows=[{"license_key": "LIC-1", "status": "active", "updated_at": NOW}])
        )
        entitlement = store.set_entitlement_status("LIC-1", "active")
        assert entitlement.is_active
        assert "ON CONFLICT (license_key)" in store.pool.conn.calls[0][0]

    def test_has_live_access_token(self):
        store = create_test_store(FakeResult(rows=[{"live": 1}]), FakeResult(rows=[]))
        assert store.has_live_access_token("user-1", NOW)
        assert not store.has_live_access_token("user-1", NOW)


def test_delete_expired_tokens_reports_per_table():
    store = create_test_store(FakeResult(rowcount=2), FakeResult(rowcount=5), FakeResult(rowcount=1))
    counts = store.delete_expired_tokens(NOW)
    assert counts == {"authorization_codes": 2, "access_tokens": 5, "refresh_tokens": 1}

    calls = store.pool.conn.calls
    assert calls[0][1] == (NOW - CODE_RETENTION,)
    assert "DELETE FROM oauth_access_tokens" in calls[1][0]
    assert calls[1][1] == (NOW - EXPIRED_TOKEN_RETENTION, NOW - REVOKED_TOKEN_RETENTION)
    assert "DELETE FROM oauth_refresh_tokens" in calls[2][0]
