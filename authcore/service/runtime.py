from __future__ import annotations

import threading
from datetime import timedelta
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from authcore.config import Settings, get_settings, reset_settings_cache
from authcore.logging import get_logger
from authcore.service.credentials import CredentialService
from authcore.service.email import EmailService
from authcore.service.hasher import SecretHasher
from authcore.service.one_time import OneTimeTokenManager
from authcore.service.sessions import RefreshSessionManager
from authcore.service.tokens import TokenCodec
from authcore.storage.memory import MemoryStore
from authcore.storage.models import TokenPurpose
from authcore.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a DSN for logging."""
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
    """Holds the store and service singletons for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        use_memory = self.settings.use_memory_store or self.settings.test_mode
        logger.info(
            "runtime_init_started",
            use_memory_store=use_memory,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(
                    fs_root=self.settings.shared_fs_root,
                    lock_timeout=self.settings.store_timeout_seconds,
                )
                if use_memory
                else PostgresStore(
                    self.settings.database_url,
                    min_size=self.settings.db_pool_min_size,
                    max_size=self.settings.db_pool_max_size,
                    timeout=self.settings.store_timeout_seconds,
                )
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if use_memory else "postgres",
                database_url=None if use_memory else _mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        if self.settings.test_mode:
            # Minimum argon2 cost keeps test suites fast
            self.hasher = SecretHasher(time_cost=1, memory_cost=8, parallelism=1)
        else:
            self.hasher = SecretHasher(
                time_cost=self.settings.argon2_time_cost,
                memory_cost=self.settings.argon2_memory_cost,
                parallelism=self.settings.argon2_parallelism,
            )

        self.codec = TokenCodec(
            self.settings.jwt_access_secret,
            self.settings.jwt_refresh_secret,
            self.settings.jwt_issuer,
            access_ttl=timedelta(minutes=self.settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(minutes=self.settings.refresh_token_ttl_minutes),
        )
        self.sessions = RefreshSessionManager(
            self.store, ttl=timedelta(minutes=self.settings.refresh_token_ttl_minutes)
        )
        self.verification_tokens = OneTimeTokenManager(
            self.store,
            TokenPurpose.EMAIL_VERIFICATION,
            timedelta(minutes=self.settings.email_verification_ttl_minutes),
        )
        self.reset_tokens = OneTimeTokenManager(
            self.store,
            TokenPurpose.PASSWORD_RESET,
            timedelta(minutes=self.settings.password_reset_ttl_minutes),
        )
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
        )
        self.credentials = CredentialService(
            self.store,
            self.hasher,
            self.codec,
            self.sessions,
            self.verification_tokens,
            self.reset_tokens,
            mailer=self.email,
        )
        logger.info(
            "runtime_initialized",
            store_type="memory" if use_memory else "postgres",
            email_configured=self.email.is_configured,
        )

    def close(self) -> None:
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


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
