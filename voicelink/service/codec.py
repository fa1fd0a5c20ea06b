from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from voicelink.logging import get_logger
from voicelink.storage.models import Identity

logger = get_logger(__name__)

SESSION_TOKEN_TYPE = "website_session"
DEVICE_TOKEN_TYPE = "device"

_HEADER = {"alg": "HS256", "typ": "JWT"}


class VerifyFailure(str, Enum):
    """Why a signed token was rejected."""

    MALFORMED = "malformed"
    SIGNATURE_MISMATCH = "signature_mismatch"
    EXPIRED = "expired"
    INVALID_CLAIMS = "invalid_claims"


@dataclass(frozen=True)
class VerifyResult:
    claims: Optional[dict[str, Any]] = None
    failure: Optional[VerifyFailure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None and self.claims is not None


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenCodec:
    """HS256 signer/verifier for stateless session and device tokens.

    The codec holds the signing key and issuer for the life of the process and
    performs no I/O. ``clock`` returns epoch seconds and is injectable so
    expiry can be tested deterministically.
    """

    def __init__(
        self,
        secret: str,
        issuer: str,
        *,
        clock: Callable[[], float] = time.time,
        leeway_seconds: int = 0,
    ) -> None:
        if not secret:
            raise ValueError("TokenCodec requires a signing key")
        self._key = secret.encode()
        self.issuer = issuer
        self._clock = clock
        self.leeway_seconds = leeway_seconds

    def _signature(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        )

    def sign(self, claims: dict[str, Any], ttl: int) -> str:
        """Sign ``claims`` with ``iss``, ``iat`` and ``exp`` filled in from the clock."""
        if not claims.get("sub") or not claims.get("type"):
            raise ValueError("signed tokens require 'sub' and 'type' claims")
        now = int(self._clock())
        payload = {
            **{key: value for key, value in claims.items() if value is not None},
            "iss": self.issuer,
            "iat": now,
            "exp": now + int(ttl),
        }
        header_enc = _encode_segment(json.dumps(_HEADER, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._signature(signing_input)}"

    def sign_session(self, identity: Identity, ttl: int, *, scope: Optional[str] = None) -> str:
        return self.sign(
            {
                "sub": identity.id,
                "email": identity.email,
                "scope": scope,
                "type": SESSION_TOKEN_TYPE,
            },
            ttl,
        )

    def sign_device(self, identity: Identity, ttl: int, *, scope: str) -> str:
        """Signed device token in the format issued before opaque device tokens.

        Nothing mints these for clients any more; it exists so tokens of the
        older shape can be produced for fixtures and for rows carried over by
        a migration. The embedded account fields are advisory only.
        """
        return self.sign(
            {
                "sub": identity.id,
                "email": identity.email,
                "scope": scope,
                "type": DEVICE_TOKEN_TYPE,
                "external_account_ref": identity.external_account_ref,
                "workspace_ref": identity.workspace_ref,
            },
            ttl,
        )

    def verify(self, token: str) -> VerifyResult:
        """Check structure, algorithm, signature, issuer and expiry. Never raises."""
        if not isinstance(token, str):
            return VerifyResult(failure=VerifyFailure.MALFORMED)
        parts = token.split(".")
        if len(parts) != 3 or not all(parts):
            return VerifyResult(failure=VerifyFailure.MALFORMED)
        header_b64, payload_b64, sig_b64 = parts

        # Reject anything but HS256 before touching the signature (alg confusion)
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            return VerifyResult(failure=VerifyFailure.MALFORMED)
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "signed_token_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return VerifyResult(failure=VerifyFailure.MALFORMED)

        expected_sig = self._signature(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return VerifyResult(failure=VerifyFailure.SIGNATURE_MISMATCH)

        try:
            claims = json.loads(_decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError):
            return VerifyResult(failure=VerifyFailure.MALFORMED)
        if not isinstance(claims, dict):
            return VerifyResult(failure=VerifyFailure.MALFORMED)

        if claims.get("iss") != self.issuer or not claims.get("sub"):
            return VerifyResult(failure=VerifyFailure.INVALID_CLAIMS)
        try:
            exp_ts = float(claims["exp"])
        except (KeyError, TypeError, ValueError):
            return VerifyResult(failure=VerifyFailure.INVALID_CLAIMS)
        if exp_ts <= self._clock() - self.leeway_seconds:
            return VerifyResult(failure=VerifyFailure.EXPIRED)
        return VerifyResult(claims=claims)
