from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from voicelink.config import get_settings, reset_settings_cache
from voicelink.logging import get_logger
from voicelink.service.authorize import AuthorizationCodeIssuer
from voicelink.service.billing import BillingWebhookHandler
from voicelink.service.codec import TokenCodec
from voicelink.service.exchange import CodeExchanger
from voicelink.service.identity import AccountLinker, CallerResolver
from voicelink.service.introspect import Introspector
from voicelink.service.legacy import LegacyTokenBridge
from voicelink.service.refresh import RefreshRotator
from voicelink.service.revoke import Revoker
from voicelink.service.sessions import SessionTokenIssuer
from voicelink.storage.memory import MemoryStore
from voicelink.storage.postgres import PostgresStore
from voicelink.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a connection URL with ``***``."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds the process-wide store, cache and token services."""

    def __init__(self):
        self.settings = get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[Union[RedisCache, SyncRedisCache]] = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode keeps the cache off pytest's event loops
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                logger.warning(
                    "redis_unavailable",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                )
        if self.cache is None:
            logger.info("webhook_dedupe_disabled", reason="no redis cache")

        self.codec = TokenCodec(
            self.settings.jwt_secret,
            self.settings.jwt_issuer,
            leeway_seconds=self.settings.jwt_leeway_seconds,
        )
        self.legacy = LegacyTokenBridge(
            enabled=self.settings.legacy_tokens_enabled,
            accepted_until=self.settings.legacy_tokens_accepted_until,
        )
        if self.legacy.enabled and self.legacy.accepted_until is None:
            logger.warning(
                "legacy_token_window_closed",
                reason="LEGACY_TOKENS_ACCEPTED_UNTIL not set",
            )
        self.callers = CallerResolver(
            self.codec,
            idp_url=self.settings.idp_url,
            idp_api_key=self.settings.idp_api_key,
            timeout=self.settings.idp_timeout_seconds,
        )
        self.linker = AccountLinker(self.store, self.callers)
        self.authorizer = AuthorizationCodeIssuer(self.store, self.callers, self.settings)
        self.exchanger = CodeExchanger(self.store, self.settings)
        self.introspector = Introspector(self.store, self.codec, self.legacy)
        self.revoker = Revoker(self.store, self.settings)
        self.sessions = SessionTokenIssuer(self.store, self.codec, self.settings)
        self.rotator = RefreshRotator(self.store, self.sessions)
        self.billing = BillingWebhookHandler(
            self.store, self.revoker, self.settings, cache=self.cache
        )

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            idp_configured=self.settings.idp_url is not None,
            refresh_tokens_enabled=self.settings.refresh_tokens_enabled,
            legacy_tokens_enabled=self.settings.legacy_tokens_enabled,
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def _close_cache(cache: Union[RedisCache, SyncRedisCache]) -> None:
    if isinstance(cache, SyncRedisCache):
        cache.client.close()
        return
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        asyncio.run(cache.close())
    else:
        loop.create_task(cache.close())


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                _close_cache(runtime.cache)
            except Exception as exc:
                logger.warning("runtime_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
