from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from tokenledger.config import Environment, Settings, get_settings, reset_settings_cache
from tokenledger.logging import get_logger
from tokenledger.service.tokens import TokenService, TokenStore
from tokenledger.storage.memory import MemoryStore
from tokenledger.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password of a connection URL with ``***`` for logging."""

    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "<unparseable>"
    if not parsed.password:
        return url
    netloc = parsed.netloc.replace(f":{parsed.password}@", ":***@", 1)
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds the store and token service shared by every request."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            environment=self.settings.environment.value,
        )

        try:
            self.store: TokenStore = (
                MemoryStore(fs_root=self.settings.memory_store_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        # Raises ConfigurationError on unusable signing keys before serving
        self.tokens = TokenService.from_settings(self.store, self.settings)

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            access_ttl_minutes=self.settings.access_token_ttl_minutes,
            refresh_ttl_days=self.settings.refresh_token_ttl_days,
            leeway_seconds=self.settings.token_leeway_seconds,
        )

    async def close(self) -> None:
        close = getattr(self.store, "close", None)
        if close is not None:
            await asyncio.to_thread(close)


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
    """Rebuild the runtime from a freshly read environment."""

    global runtime
    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if settings.environment != Environment.TEST:
            raise RuntimeError("runtime reset is only allowed with ENVIRONMENT=test")
        runtime = Runtime(settings)
        return runtime
