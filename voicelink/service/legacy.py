from __future__ import annotations

import base64
import binascii
import json
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

# Fields the older linking service put in its tokens; any one marks the format.
LEGACY_MARKER_FIELDS = ("amazon_account_id", "email", "timestamp")

# Standard alphabet only. Signed tokens contain "." and opaque tokens carry an
# "_" prefix, so neither can ever take the legacy branch.
_STANDARD_BASE64 = re.compile(r"^[A-Za-z0-9+/]+={0,2}$")


@dataclass(frozen=True)
class LegacyClaims:
    external_account_ref: Optional[str]
    email: Optional[str] = None
    timestamp: Optional[int] = None


def _decode_object(token: str) -> Optional[dict[str, Any]]:
    if not token or not _STANDARD_BASE64.match(token):
        return None
    try:
        raw = base64.b64decode(token, validate=True)
        parsed = json.loads(raw.decode("utf-8"))
    except (binascii.Error, ValueError, UnicodeDecodeError):
        return None
    return parsed if isinstance(parsed, dict) else None


def looks_legacy(token: str) -> bool:
    """Heuristic shape test: base64 JSON with a marker field and no ``iss``."""
    parsed = _decode_object(token)
    if parsed is None:
        return False
    return any(parsed.get(name) for name in LEGACY_MARKER_FIELDS) and not parsed.get("iss")


def decode(token: str) -> Optional[LegacyClaims]:
    if not looks_legacy(token):
        return None
    parsed = _decode_object(token) or {}
    timestamp = parsed.get("timestamp")
    if not isinstance(timestamp, (int, float)) or isinstance(timestamp, bool):
        timestamp = None
    account_ref = parsed.get("amazon_account_id")
    email = parsed.get("email")
    return LegacyClaims(
        external_account_ref=str(account_ref) if account_ref else None,
        email=str(email) if email else None,
        timestamp=int(timestamp) if timestamp is not None else None,
    )


def encode(external_account_ref: str, *, email: Optional[str] = None, timestamp: Optional[int] = None) -> str:
    """Produce a token in the legacy shape (fixtures and migration dry runs)."""
    payload: dict[str, Any] = {"amazon_account_id": external_account_ref}
    if email:
        payload["email"] = email
    if timestamp is not None:
        payload["timestamp"] = timestamp
    return base64.b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")


class LegacyTokenBridge:
    """Gatekeeper for the legacy format during its transition window."""

    def __init__(self, *, enabled: bool = True, accepted_until: Optional[datetime] = None) -> None:
        self.enabled = enabled
        self.accepted_until = accepted_until

    def looks_legacy(self, token: str) -> bool:
        return looks_legacy(token)

    def decode(self, token: str) -> Optional[LegacyClaims]:
        return decode(token)

    def accepts(self, now: datetime) -> bool:
        """Open only up to and including a configured cut-off; no cut-off means closed."""
        if not self.enabled or self.accepted_until is None:
            return False
        return now <= self.accepted_until
