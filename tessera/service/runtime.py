from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from tessera.config import get_settings, reset_settings_cache
from tessera.logging import get_logger
from tessera.service.passwords import PasswordHasher
from tessera.service.refresh_tokens import RefreshTokenManager
from tessera.service.sessions import SessionService
from tessera.service.tokens import TokenIssuer
from tessera.service.validation import CredentialValidator
from tessera.storage.memory import MemoryStore
from tessera.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a DSN for logging.

    Example: postgresql://app:hunter2@db/tessera -> postgresql://app:***@db/tessera
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (
            parsed.scheme,
            netloc,
            parsed.path,
            parsed.params,
            parsed.query,
            parsed.fragment,
        )
    )


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
            self.store = (
                MemoryStore(
                    fs_root=self.settings.state_root,
                    timeout_seconds=self.settings.store_timeout_seconds,
                )
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    timeout_seconds=self.settings.store_timeout_seconds,
                )
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        token_config = self.settings.token_config()
        self.token_issuer = TokenIssuer(token_config)
        self.refresh_tokens = RefreshTokenManager(self.store, token_config)
        self.sessions = SessionService(
            self.store,
            self.token_issuer,
            self.refresh_tokens,
            hasher=PasswordHasher(),
            validator=CredentialValidator(),
        )
        logger.info(
            "runtime_init_completed",
            access_token_ttl_seconds=token_config.access_token_ttl_seconds,
            refresh_token_ttl_seconds=token_config.refresh_token_ttl_seconds,
        )

    def close(self) -> None:
        close = getattr(self.store, "close", None)
        if callable(close):
            close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild settings and the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        runtime = Runtime()
        return runtime
