from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from staffledger.config import get_settings, reset_settings_cache
from staffledger.logging import get_logger
from staffledger.service.auth import AuthService
from staffledger.service.authenticator import RequestAuthenticator
from staffledger.service.tokens import TokenService
from staffledger.storage.memory import MemoryRevocationStore, MemoryStore
from staffledger.storage.postgres import PostgresStore
from staffledger.storage.redis_cache import (
    RedisRevocationStore,
    SyncRedisRevocationStore,
)

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        store_type = "memory" if self.settings.use_memory_store else "postgres"

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.revocations = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client under TEST_MODE avoids event loop binding in pytest
                if self.settings.test_mode:
                    revocations = SyncRedisRevocationStore(self.settings.redis_url)
                else:
                    revocations = RedisRevocationStore(self.settings.redis_url)
                revocations.verify_connection()
                self.revocations = revocations
            except Exception as exc:
                redis_error = exc

        if self.revocations is None:
            if (
                not self.settings.test_mode
                and not self.settings.allow_redis_fallback_dev
            ):
                raise RuntimeError(
                    "Redis is required for token revocation; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error

            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; revoked tokens "
                    "are held in process memory only."
                ),
                mode=fallback_mode,
            )
            self.revocations = MemoryRevocationStore()

        self.tokens = TokenService(self.settings)
        self.auth = AuthService(
            self.store, self.revocations, self.tokens, self.settings
        )
        self.authenticator = RequestAuthenticator(
            self.store, self.revocations, self.tokens
        )

    async def close(self) -> None:
        close_revocations = getattr(self.revocations, "close", None)
        if close_revocations is not None:
            await close_revocations()
        close_store = getattr(self.store, "close", None)
        if close_store is not None:
            await asyncio.to_thread(close_store)


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


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(
            runtime.revocations, SyncRedisRevocationStore
        ):
            runtime.revocations.client.close()

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
