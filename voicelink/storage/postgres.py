from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from voicelink.logging import get_logger
from voicelink.storage.errors import ConstraintViolation
from voicelink.storage.memory import (
    CODE_RETENTION,
    EXPIRED_TOKEN_RETENTION,
    REVOKED_TOKEN_RETENTION,
)
from voicelink.storage.models import (
    AccessToken,
    AuthorizationCode,
    Entitlement,
    Identity,
    RefreshToken,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS account_identity (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        auth_subject TEXT UNIQUE,
        entitlement_key TEXT,
        external_account_ref TEXT UNIQUE,
        workspace_ref TEXT,
        workspace_connected BOOLEAN NOT NULL DEFAULT false,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS entitlement (
        license_key TEXT PRIMARY KEY,
        status TEXT NOT NULL CHECK (status IN ('active', 'inactive')),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS oauth_authorization_codes (
        code TEXT PRIMARY KEY,
        identity_id TEXT NOT NULL REFERENCES account_identity(id) ON DELETE CASCADE,
        client_id TEXT NOT NULL,
        redirect_uri TEXT NOT NULL,
        scope TEXT NOT NULL DEFAULT 'alexa',
        code_challenge TEXT,
        code_challenge_method TEXT,
        used BOOLEAN NOT NULL DEFAULT false,
        used_at TIMESTAMPTZ,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS oauth_access_tokens (
        token TEXT PRIMARY KEY,
        identity_id TEXT NOT NULL REFERENCES account_identity(id) ON DELETE CASCADE,
        client_id TEXT NOT NULL,
        scope TEXT NOT NULL DEFAULT 'alexa',
        issued_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL,
        revoked BOOLEAN NOT NULL DEFAULT false,
        revoked_at TIMESTAMPTZ
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS oauth_access_tokens_live_idx
        ON oauth_access_tokens (identity_id, expires_at) WHERE revoked = false
    """,
    """
    CREATE TABLE IF NOT EXISTS oauth_refresh_tokens (
        token TEXT PRIMARY KEY,
        identity_id TEXT NOT NULL REFERENCES account_identity(id) ON DELETE CASCADE,
        client_id TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked BOOLEAN NOT NULL DEFAULT false,
        revoked_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS oauth_refresh_tokens_identity_idx
        ON oauth_refresh_tokens (identity_id) WHERE revoked = false
    """,
)


def _identity_from_row(row: Dict[str, Any]) -> Identity:
    return Identity(
        id=str(row["id"]),
        email=row["email"],
        auth_subject=row.get("auth_subject"),
        entitlement_key=row.get("entitlement_key"),
        external_account_ref=row.get("external_account_ref"),
        workspace_ref=row.get("workspace_ref"),
        workspace_connected=bool(row.get("workspace_connected")),
        created_at=row["created_at"],
    )


def _code_from_row(row: Dict[str, Any]) -> AuthorizationCode:
    return AuthorizationCode(
        code=row["code"],
        identity_id=str(row["identity_id"]),
        client_id=row["client_id"],
        redirect_uri=row["redirect_uri"],
        scope=row["scope"],
        expires_at=row["expires_at"],
        code_challenge=row.get("code_challenge"),
        code_challenge_method=row.get("code_challenge_method"),
        used=bool(row.get("used")),
        used_at=row.get("used_at"),
        created_at=row["created_at"],
    )


def _access_from_row(row: Dict[str, Any]) -> AccessToken:
    return AccessToken(
        token=row["token"],
        identity_id=str(row["identity_id"]),
        client_id=row["client_id"],
        scope=row["scope"],
        issued_at=row["issued_at"],
        expires_at=row["expires_at"],
        revoked=bool(row.get("revoked")),
        revoked_at=row.get("revoked_at"),
    )


def _refresh_from_row(row: Dict[str, Any]) -> RefreshToken:
    return RefreshToken(
        token=row["token"],
        identity_id=str(row["identity_id"]),
        client_id=row["client_id"],
        expires_at=row["expires_at"],
        revoked=bool(row.get("revoked")),
        revoked_at=row.get("revoked_at"),
        created_at=row["created_at"],
    )


class PostgresStore:
    """Postgres-backed store; every state flip is one conditional UPDATE."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the identity, entitlement and token tables if missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # identities
    def create_identity(
        self,
        email: str,
        *,
        identity_id: Optional[str] = None,
        auth_subject: Optional[str] = None,
        entitlement_key: Optional[str] = None,
        external_account_ref: Optional[str] = None,
        workspace_ref: Optional[str] = None,
        workspace_connected: bool = False,
    ) -> Identity:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO account_identity (
                        id, email, auth_subject, entitlement_key,
                        external_account_ref, workspace_ref, workspace_connected
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        identity_id or str(uuid.uuid4()),
                        email,
                        auth_subject,
                        entitlement_key,
                        external_account_ref,
                        workspace_ref,
                        workspace_connected,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("identity already exists", table="account_identity")
        return _identity_from_row(row)

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account_identity WHERE id = %s", (identity_id,)
            ).fetchone()
        return _identity_from_row(row) if row else None

    def get_identity_by_subject(self, auth_subject: str) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account_identity WHERE auth_subject = %s", (auth_subject,)
            ).fetchone()
        return _identity_from_row(row) if row else None

    def get_identity_by_external_ref(self, external_ref: str) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account_identity WHERE external_account_ref = %s",
                (external_ref,),
            ).fetchone()
        return _identity_from_row(row) if row else None

    def list_identities_by_entitlement(self, entitlement_key: str) -> List[Identity]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM account_identity WHERE entitlement_key = %s ORDER BY created_at",
                (entitlement_key,),
            ).fetchall()
        return [_identity_from_row(row) for row in rows]

    def list_linked_identities(self) -> List[Identity]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM account_identity
                WHERE external_account_ref IS NOT NULL
                ORDER BY created_at
                """
            ).fetchall()
        return [_identity_from_row(row) for row in rows]

    def link_external_account(self, identity_id: str, external_ref: str) -> Optional[Identity]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "UPDATE account_identity SET external_account_ref = %s WHERE id = %s RETURNING *",
                    (external_ref, identity_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "external account already linked",
                table="account_identity",
                field="external_account_ref",
            )
        return _identity_from_row(row) if row else None

    # entitlements
    def get_entitlement(self, key: str) -> Optional[Entitlement]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM entitlement WHERE license_key = %s", (key,)
            ).fetchone()
        if not row:
            return None
        return Entitlement(key=row["license_key"], status=row["status"], updated_at=row["updated_at"])

    def set_entitlement_status(self, key: str, status: str) -> Entitlement:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO entitlement (license_key, status)
                VALUES (%s, %s)
                ON CONFLICT (license_key)
                DO UPDATE SET status = EXCLUDED.status, updated_at = now()
                RETURNING *
                """,
                (key, status),
            ).fetchone()
        return Entitlement(key=row["license_key"], status=row["status"], updated_at=row["updated_at"])

    # authorization codes
    def create_authorization_code(self, code: AuthorizationCode) -> AuthorizationCode:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO oauth_authorization_codes (
                        code, identity_id, client_id, redirect_uri, scope,
                        code_challenge, code_challenge_method, expires_at, created_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        code.code,
                        code.identity_id,
                        code.client_id,
                        code.redirect_uri,
                        code.scope,
                        code.code_challenge,
                        code.code_challenge_method,
                        code.expires_at,
                        code.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "authorization code collision", table="oauth_authorization_codes", field="code"
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "unknown identity", table="oauth_authorization_codes", field="identity_id"
            )
        return code

    def get_authorization_code(
        self, code: str, *, client_id: str, redirect_uri: str
    ) -> Optional[AuthorizationCode]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM oauth_authorization_codes
                WHERE code = %s AND client_id = %s AND redirect_uri = %s
                """,
                (code, client_id, redirect_uri),
            ).fetchone()
        return _code_from_row(row) if row else None

    def consume_authorization_code(self, code: str, used_at: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE oauth_authorization_codes
                SET used = true, used_at = %s
                WHERE code = %s AND used = false
                RETURNING code
                """,
                (used_at, code),
            ).fetchone()
        return row is not None

    # access tokens
    def create_access_token(self, token: AccessToken) -> AccessToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO oauth_access_tokens (
                        token, identity_id, client_id, scope, issued_at, expires_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        token.token,
                        token.identity_id,
                        token.client_id,
                        token.scope,
                        token.issued_at,
                        token.expires_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "access token collision", table="oauth_access_tokens", field="token"
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "unknown identity", table="oauth_access_tokens", field="identity_id"
            )
        return token

    def get_access_token(self, token: str) -> Optional[AccessToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM oauth_access_tokens WHERE token = %s", (token,)
            ).fetchone()
        return _access_from_row(row) if row else None

    def has_live_access_token(self, identity_id: str, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT 1 AS live FROM oauth_access_tokens
                WHERE identity_id = %s AND revoked = false AND expires_at > %s
                LIMIT 1
                """,
                (identity_id, now),
            ).fetchone()
        return row is not None

    def revoke_access_token(self, token: str, revoked_at: datetime) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE oauth_access_tokens
                SET revoked = true, revoked_at = %s
                WHERE token = %s AND revoked = false
                """,
                (revoked_at, token),
            )
            return result.rowcount > 0

    def revoke_identity_access_tokens(self, identity_id: str, revoked_at: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE oauth_access_tokens
                SET revoked = true, revoked_at = %s
                WHERE identity_id = %s AND revoked = false
                """,
                (revoked_at, identity_id),
            )
            return result.rowcount

    def revoke_all_access_tokens(self, revoked_at: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE oauth_access_tokens SET revoked = true, revoked_at = %s WHERE revoked = false",
                (revoked_at,),
            )
            return result.rowcount

    # refresh tokens
    def create_refresh_token(self, token: RefreshToken) -> RefreshToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO oauth_refresh_tokens (
                        token, identity_id, client_id, expires_at, created_at
                    )
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        token.token,
                        token.identity_id,
                        token.client_id,
                        token.expires_at,
                        token.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "refresh token collision", table="oauth_refresh_tokens", field="token"
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "unknown identity", table="oauth_refresh_tokens", field="identity_id"
            )
        return token

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM oauth_refresh_tokens WHERE token = %s", (token,)
            ).fetchone()
        return _refresh_from_row(row) if row else None

    def revoke_refresh_token(self, token: str, revoked_at: datetime) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE oauth_refresh_tokens
                SET revoked = true, revoked_at = %s
                WHERE token = %s AND revoked = false
                """,
                (revoked_at, token),
            )
            return result.rowcount > 0

    def revoke_identity_refresh_tokens(self, identity_id: str, revoked_at: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE oauth_refresh_tokens
                SET revoked = true, revoked_at = %s
                WHERE identity_id = %s AND revoked = false
                """,
                (revoked_at, identity_id),
            )
            return result.rowcount

    # housekeeping
    def delete_expired_tokens(self, now: datetime) -> Dict[str, int]:
        with self._connect() as conn:
            codes = conn.execute(
                "DELETE FROM oauth_authorization_codes WHERE expires_at < %s",
                (now - CODE_RETENTION,),
            ).rowcount
            counts = {"authorization_codes": codes}
            for table in ("oauth_access_tokens", "oauth_refresh_tokens"):
                counts[table.replace("oauth_", "")] = conn.execute(
                    f"""
                    DELETE FROM {table}
                    WHERE (revoked = false AND expires_at < %s)
                       OR (revoked = true AND revoked_at < %s)
                    """,
                    (now - EXPIRED_TOKEN_RETENTION, now - REVOKED_TOKEN_RETENTION),
                ).rowcount
        self.logger.info("expired_tokens_deleted", **counts)
        return counts
