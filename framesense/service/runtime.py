from __future__ import annotations

import threading
from typing import Dict, Optional
from urllib.parse import urlparse, urlunparse

from framesense.config import Settings, get_settings, reset_settings_cache
from framesense.logging import get_logger
from framesense.service.auth import AuthService
from framesense.service.billing import BillingReconciler
from framesense.service.credentials import CredentialStore
from framesense.service.sessions import SessionRegistry
from framesense.service.tiers import TierResolver
from framesense.service.tokens import TokenCodec
from framesense.storage.memory import MemoryStore
from framesense.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***`` for logging."""
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
    """Holds the wired service instances for the FastAPI app and scripts."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore()
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

        self.credentials = CredentialStore(self.store, self.settings)
        self.sessions = SessionRegistry(self.store, self.settings)
        self.tokens = TokenCodec(self.settings)
        self.auth = AuthService(self.credentials, self.sessions, self.tokens)
        self.tiers = TierResolver(self.credentials)
        self.billing = BillingReconciler(self.credentials, self.sessions, self.settings)

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            default_tier=self.settings.default_tier.value,
            session_ttl_days=self.settings.session_ttl_days,
            webhook_signing=bool(self.settings.billing_webhook_secret),
        )

    def run_maintenance(self) -> Dict[str, int]:
        """Sweep expired sessions and roll over stale daily usage counters."""
        swept = self.sessions.sweep_expired()
        reset = self.credentials.reset_daily_usage()
        logger.info("maintenance_completed", sessions_swept=swept, usage_reset=reset)
        return {"sessions_swept": swept, "usage_reset": reset}

    def close(self) -> None:
        self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked: the unlocked read is the fast path once the runtime
    exists; the locked re-check keeps concurrent first callers from each
    building one.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from a fresh read of the environment. TEST_MODE only."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None:
            runtime.close()
        runtime = Runtime(settings)
        return runtime


def shutdown_runtime() -> None:
    """Close the store and drop the singleton so the next caller rebuilds it."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()
            runtime = None
