from __future__ import annotations

import math
import threading
import time
from datetime import timedelta
from typing import Dict, Optional, Tuple
from urllib.parse import urlparse, urlunparse

from rebelauth.config import get_settings, reset_settings_cache
from rebelauth.logging import get_logger
from rebelauth.service.attempts import AttemptGuard
from rebelauth.service.auth import AuthService
from rebelauth.service.email import EmailService
from rebelauth.service.identity import IdentityResolver
from rebelauth.service.linking import AccountLinkGuard
from rebelauth.service.notifications import StoreNotificationSink
from rebelauth.service.providers import build_provider_registry
from rebelauth.service.referrals import ReferralCodeGenerator
from rebelauth.service.sessions import SessionManager
from rebelauth.service.tokens import TokenLifecycle
from rebelauth.storage.memory import MemoryStore
from rebelauth.storage.models import TOKEN_PURPOSE_PASSWORD_RESET, TOKEN_PURPOSE_VERIFY_EMAIL
from rebelauth.storage.postgres import PostgresStore
from rebelauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with '***' for logging."""
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
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        settings = self.settings
        logger.info(
            "runtime_init_started",
            use_memory_store=settings.use_memory_store,
            test_mode=settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore()
                if settings.use_memory_store
                else PostgresStore(settings.database_url)
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        if settings.redis_url and not settings.test_mode:
            try:
                cache = RedisCache(settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(settings.redis_url),
                    error=str(exc),
                    message=(
                        "Login attempts and OAuth states use the primary store; "
                        "rate limits are per process."
                    ),
                )
        # Token buckets used when Redis is absent: key -> (tokens, last refill)
        self._local_rate_limits: Dict[str, Tuple[float, float]] = {}
        self._local_rate_limit_lock = threading.Lock()

        self.email = EmailService(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            base_url=settings.app_base_url,
        )
        self.notifications = StoreNotificationSink(self.store)
        self.providers = build_provider_registry(settings)

        self.referrals = ReferralCodeGenerator(
            self.store,
            self.notifications,
            max_attempts=settings.referral_code_max_attempts,
        )
        self.sessions = SessionManager(
            self.store, ttl=timedelta(days=settings.session_ttl_days)
        )
        self.attempts = AttemptGuard(
            self.store,
            cache=self.cache,
            max_failures=settings.login_max_failures,
            window=timedelta(minutes=settings.login_window_minutes),
            lock_duration=timedelta(minutes=settings.login_lock_minutes),
            retention=timedelta(hours=settings.login_attempt_retention_hours),
        )
        self.tokens = TokenLifecycle(
            self.store,
            ttls={
                TOKEN_PURPOSE_VERIFY_EMAIL: timedelta(hours=settings.verification_token_ttl_hours),
                TOKEN_PURPOSE_PASSWORD_RESET: timedelta(minutes=settings.reset_token_ttl_minutes),
            },
        )
        self.identity = IdentityResolver(
            self.store,
            self.referrals,
            admin_telegram_id=settings.telegram_admin_id,
            max_attempts=settings.account_create_max_attempts,
        )
        self.link_guard = AccountLinkGuard(self.store)
        self.auth = AuthService(
            self.store,
            settings,
            sessions=self.sessions,
            attempts=self.attempts,
            tokens=self.tokens,
            identity=self.identity,
            referrals=self.referrals,
            link_guard=self.link_guard,
            email=self.email,
            providers=self.providers,
            cache=self.cache,
        )
        logger.info(
            "runtime_init_completed",
            providers=sorted(self.providers),
            redis_enabled=self.cache is not None,
        )

    async def close(self) -> None:
        """Release the Redis client and database pool."""
        if self.cache is not None:
            await self.cache.close()
        close_store = getattr(self.store, "close", None)
        if callable(close_store):
            close_store()


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
    """Reinitialize the runtime singleton from the current environment."""
    global runtime
    with _runtime_lock:
        reset_settings_cache()
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    now: Optional[float] = None,
) -> Tuple[bool, int, int]:
    """Consume one request from ``key``'s token bucket.

    The bucket holds ``limit`` requests and refills evenly over
    ``window_seconds``. Redis keeps the buckets shared across replicas; without
    it each process keeps its own. A limit of zero disables the check.

    Returns:
        (allowed, remaining, retry_after_seconds)
    """
    if limit <= 0:
        return True, limit, 0
    if runtime.cache:
        return await runtime.cache.check_rate_limit(key, limit, window_seconds)
    current = time.time() if now is None else now
    refill_rate = float(limit) / float(window_seconds)
    with runtime._local_rate_limit_lock:
        tokens, last = runtime._local_rate_limits.get(key, (float(limit), current))
        tokens = min(float(limit), tokens + max(0.0, current - last) * refill_rate)
        allowed = tokens >= 1
        if allowed:
            tokens -= 1
        runtime._local_rate_limits[key] = (tokens, current)
    retry_after = 0 if allowed else math.ceil((1 - tokens) / refill_rate)
    return allowed, int(tokens), retry_after
