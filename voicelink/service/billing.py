from __future__ import annotations

import hashlib
import hmac
import json
import time
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from voicelink.config import Settings
from voicelink.logging import get_logger
from voicelink.service.errors import InvalidRequestError, ServerError
from voicelink.service.revoke import Revoker
from voicelink.service.store import OAuthStore
from voicelink.storage.models import ENTITLEMENT_ACTIVE, ENTITLEMENT_INACTIVE
from voicelink.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

SIGNATURE_HEADER = "Billing-Signature"

EVENT_PAYMENT_SUCCEEDED = "payment_intent.succeeded"
EVENT_PAYMENT_FAILED = "payment_intent.payment_failed"
EVENT_PAYMENT_CANCELED = "payment_intent.canceled"
EVENT_CHARGE_REFUNDED = "charge.refunded"


def compute_signature(secret: str, timestamp: int, payload: bytes) -> str:
    signed = f"{timestamp}.".encode() + payload
    return hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()


def signature_header(secret: str, payload: bytes, timestamp: Optional[int] = None) -> str:
    """Build a ``t=...,v1=...`` header; used by tests and local tooling."""
    ts = int(time.time()) if timestamp is None else timestamp
    return f"t={ts},v1={compute_signature(secret, ts, payload)}"


def _parse_signature_header(header: str) -> Tuple[Optional[int], List[str]]:
    timestamp: Optional[int] = None
    signatures: List[str] = []
    for item in header.split(","):
        key, _, value = item.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                return None, []
        elif key == "v1" and value:
            signatures.append(value)
    return timestamp, signatures


def _metadata(obj: Dict[str, Any]) -> Dict[str, Any]:
    """Metadata lives on the object itself or on its embedded payment intent."""
    merged: Dict[str, Any] = {}
    nested = obj.get("payment_intent")
    if isinstance(nested, dict) and isinstance(nested.get("metadata"), dict):
        merged.update(nested["metadata"])
    if isinstance(obj.get("metadata"), dict):
        merged.update({key: value for key, value in obj["metadata"].items() if value})
    return merged


class BillingWebhookHandler:
    """Apply signed billing events to entitlements and device tokens.

    Each handler is idempotent on its own; event-id claims in Redis only save
    repeated work when the provider redelivers.
    """

    def __init__(
        self,
        store: OAuthStore,
        revoker: Revoker,
        settings: Settings,
        *,
        cache: Optional[Union[RedisCache, SyncRedisCache]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.revoker = revoker
        self.settings = settings
        self.cache = cache
        self._clock = clock

    def verify(self, payload: bytes, header: Optional[str]) -> Dict[str, Any]:
        secret = self.settings.billing_webhook_secret
        if not secret:
            logger.error("billing_webhook_secret_missing")
            raise ServerError("billing webhook is not configured")
        if not header:
            raise InvalidRequestError(f"missing {SIGNATURE_HEADER} header")
        timestamp, signatures = _parse_signature_header(header)
        if timestamp is None or not signatures:
            raise InvalidRequestError("malformed signature header")
        if abs(self._clock() - timestamp) > self.settings.billing_webhook_tolerance_seconds:
            logger.warning("billing_webhook_timestamp_out_of_tolerance", timestamp=timestamp)
            raise InvalidRequestError("signature timestamp outside tolerance")
        expected = compute_signature(secret, timestamp, payload)
        if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
            logger.warning("billing_webhook_signature_invalid")
            raise InvalidRequestError("invalid signature")
        try:
            event = json.loads(payload)
        except (ValueError, UnicodeDecodeError) as exc:
            raise InvalidRequestError("invalid event payload") from exc
        if not isinstance(event, dict) or not event.get("type"):
            raise InvalidRequestError("invalid event payload")
        return event

    async def handle(self, payload: bytes, header: Optional[str]) -> Dict[str, Any]:
        event = self.verify(payload, header)
        event_id = event.get("id")
        event_type = event["type"]

        if self.cache is not None and event_id:
            claimed = await self.cache.claim_event(
                str(event_id), event_type, self.settings.webhook_dedupe_ttl_seconds
            )
            if not claimed:
                logger.info("billing_event_duplicate", event_id=event_id, event_type=event_type)
                return {"received": True, "duplicate": True}

        try:
            self.apply(event)
        except Exception:
            if self.cache is not None and event_id:
                await self.cache.release_event(str(event_id))
            raise
        return {"received": True}

    def apply(self, event: Dict[str, Any]) -> None:
        event_type = event.get("type")
        data = event.get("data") if isinstance(event.get("data"), dict) else {}
        obj = data.get("object") if isinstance(data.get("object"), dict) else {}
        meta = _metadata(obj)
        license_key = meta.get("license_key")

        if event_type == EVENT_PAYMENT_SUCCEEDED:
            if license_key:
                self.store.set_entitlement_status(license_key, ENTITLEMENT_ACTIVE)
                logger.info("entitlement_activated", license_key=license_key)
            else:
                logger.warning("billing_event_missing_license", event_type=event_type)
        elif event_type in (EVENT_CHARGE_REFUNDED, EVENT_PAYMENT_CANCELED):
            if license_key:
                self._deactivate(license_key, meta.get("user_id"))
            else:
                logger.warning("billing_event_missing_license", event_type=event_type)
        elif event_type == EVENT_PAYMENT_FAILED:
            logger.info("billing_payment_failed", payment_id=obj.get("id"))
        else:
            logger.info("billing_event_ignored", event_type=event_type)

    def _deactivate(self, license_key: str, user_id: Optional[str]) -> None:
        self.store.set_entitlement_status(license_key, ENTITLEMENT_INACTIVE)
        logger.info("entitlement_deactivated", license_key=license_key)
        if user_id:
            identity_ids = [str(user_id)]
        else:
            identity_ids = [
                identity.id for identity in self.store.list_identities_by_entitlement(license_key)
            ]
        for identity_id in identity_ids:
            self.revoker.revoke_all(identity_id)
