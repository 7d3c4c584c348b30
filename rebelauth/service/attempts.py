from __future__ import annotations

import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Tuple

from rebelauth.logging import get_logger
from rebelauth.storage.models import LoginAttempt, utcnow
from rebelauth.storage.protocol import AuthStore
from rebelauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def normalize_identifier(identifier: str) -> str:
    return identifier.strip().lower()


@dataclass(frozen=True)
class AttemptStatus:
    blocked: bool
    remaining_attempts: int
    lock_remaining_minutes: int = 0


class AttemptGuard:
    """Sliding-window failed-login counter with a rolling lockout.

    Failures inside ``window`` are counted at check time. Once they reach
    ``max_failures`` the identifier stays locked for ``lock_duration`` measured
    from the most recent failure. A successful login must call ``reset``.

    The failure log lives in the store by default. Passing a ``RedisCache``
    moves it to an atomic sorted set with the same observable behaviour.
    """

    def __init__(
        self,
        store: AuthStore,
        *,
        cache: Optional[RedisCache] = None,
        max_failures: int = 5,
        window: timedelta = timedelta(minutes=15),
        lock_duration: timedelta = timedelta(minutes=30),
        retention: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.cache = cache
        self.max_failures = max_failures
        self.window = window
        self.lock_duration = lock_duration
        self.retention = retention
        self._clock = clock

    async def _failure_window(self, identifier: str, since: datetime) -> Tuple[int, Optional[datetime]]:
        if self.cache:
            return await self.cache.login_failure_window(identifier, since)
        failures = self.store.count_login_failures(identifier, since)
        if not failures:
            return 0, None
        return failures, self.store.latest_login_failure(identifier, since)

    async def check(self, identifier: str) -> AttemptStatus:
        identifier = normalize_identifier(identifier)
        now = self._clock()
        failures, latest = await self._failure_window(identifier, now - self.window)

        if failures >= self.max_failures and latest is not None:
            elapsed_minutes = (now - latest).total_seconds() / 60
            lock_minutes = self.lock_duration.total_seconds() / 60
            if elapsed_minutes < lock_minutes:
                remaining = max(1, math.ceil(lock_minutes - elapsed_minutes))
                return AttemptStatus(
                    blocked=True, remaining_attempts=0, lock_remaining_minutes=remaining
                )

        return AttemptStatus(
            blocked=False, remaining_attempts=max(0, self.max_failures - failures)
        )

    async def record(self, identifier: str, origin: Optional[str], success: bool) -> None:
        identifier = normalize_identifier(identifier)
        now = self._clock()
        if self.cache:
            if not success:
                await self.cache.record_login_failure(
                    identifier, now, int(self.retention.total_seconds())
                )
        else:
            self.store.add_login_attempt(
                LoginAttempt(
                    id=str(uuid.uuid4()),
                    identifier=identifier,
                    origin=origin,
                    success=success,
                    created_at=now,
                )
            )
            pruned = self.store.prune_login_attempts(now - self.retention)
            if pruned:
                logger.debug("login_attempts_pruned", count=pruned)
        if not success:
            logger.info("login_failure_recorded", identifier=identifier, origin=origin)

    async def reset(self, identifier: str) -> None:
        identifier = normalize_identifier(identifier)
        if self.cache:
            await self.cache.clear_login_failures(identifier)
        else:
            self.store.delete_login_failures(identifier)
