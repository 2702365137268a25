from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from tradedesk.config import Settings, StorageBackend, get_settings, reset_settings_cache
from tradedesk.logging import get_logger
from tradedesk.service.auth import AuthService
from tradedesk.service.email import EmailService
from tradedesk.service.passwords import PasswordHasher
from tradedesk.service.tokens import TokenCodec
from tradedesk.storage.backends import PersistenceBackend, backend_from_settings
from tradedesk.storage.memory import CredentialStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***`` for logging."""
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
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Owns the credential store and the services built on it.

    Built once per process (or per test) and handed to the FastAPI app; nothing
    else holds a reference to the store.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        backend: Optional[PersistenceBackend] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            storage_backend=self.settings.storage_backend.value,
            environment=self.settings.environment,
        )
        try:
            self.backend = backend or backend_from_settings(self.settings)
            self.store = CredentialStore(self.backend)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                storage_backend=self.settings.storage_backend.value,
                redis_url=(
                    _mask_url_password(self.settings.redis_url)
                    if self.settings.storage_backend == StorageBackend.REDIS
                    else None
                ),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.hasher = PasswordHasher(
            time_cost=self.settings.password_time_cost,
            memory_cost=self.settings.password_memory_cost,
            parallelism=self.settings.password_parallelism,
        )
        self.codec = TokenCodec(self.settings.token_secret)
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
        self.auth = AuthService(self.store, self.hasher, self.codec, self.settings)
        if self.settings.seed_admin_enabled:
            self.auth.ensure_default_admin()
        logger.info(
            "runtime_initialized",
            backend=type(self.backend).__name__,
            users=self.store.count_users(),
            email_configured=self.email.is_configured,
        )


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the process-wide Runtime."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> None:
    """Drop the process-wide Runtime and cached settings."""
    global runtime
    with _runtime_lock:
        runtime = None
        reset_settings_cache()
