from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from sigil.config import Settings, get_settings, reset_settings_cache
from sigil.logging import get_logger
from sigil.service.auth import AuthService
from sigil.service.email import EmailService
from sigil.storage.ephemeral import EphemeralStore
from sigil.storage.memory import MemoryStore
from sigil.storage.memory_cache import MemoryEphemeralStore
from sigil.storage.redis_cache import RedisStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
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
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds the store and service instances shared by one process."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_cache=self.settings.use_memory_cache,
            test_mode=self.settings.test_mode,
        )
        self.store = MemoryStore(
            self.settings.state_dir,
            mfa_encryption_key=self.settings.mfa_encryption_key,
        )
        self.cache = self._build_cache()
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
        self.auth = AuthService(
            self.store,
            self.cache,
            self.settings,
            notifier=self.email,
        )
        logger.info(
            "runtime_initialized",
            cache_type="redis" if isinstance(self.cache, RedisStore) else "memory",
            email_configured=self.email.is_configured,
            max_sessions_per_user=self.settings.max_sessions_per_user,
        )

    def _build_cache(self) -> EphemeralStore:
        if self.settings.use_memory_cache:
            return MemoryEphemeralStore()

        redis_error: Exception | None = None
        if self.settings.redis_url:
            cache = RedisStore(self.settings.redis_url)
            try:
                cache.verify_connection()
                return cache
            except (RedisError, OSError) as exc:
                redis_error = exc

        if not self.settings.test_mode:
            raise RuntimeError(
                "Redis is required for sessions, revocations and login limits; "
                "start Redis or set USE_MEMORY_CACHE=true for a single process."
            ) from redis_error

        # Revocations and limits held in memory are invisible to other processes
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            mode="TEST_MODE",
        )
        return MemoryEphemeralStore()

    async def close(self) -> None:
        if isinstance(self.cache, RedisStore):
            await self.cache.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton with double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime singleton from a fresh read of the environment."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
