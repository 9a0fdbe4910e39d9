"""Per-user single-flight guard for generation requests.

At most one "decide and charge" section may run per user at a time. Flags
carry an acquisition time; a flag older than max_age_seconds is stale (its
holder crashed or hung) and is force-released on the next acquire or sweep.

Backends:
- InMemoryGenerationGuard: dict + threading.Lock, single process
- RedisGenerationGuard: SET NX EX, shared across processes
"""

import itertools
import logging
import threading
import time
import uuid
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from redis import Redis

from smachno_api.billing.errors import GenerationInProgressError
from smachno_api.config.env import BillingSettings, get_billing_settings
from smachno_api.observability.metrics import log_stale_lock_recovered

logger = logging.getLogger(__name__)


class GenerationGuard:
    """Common interface; see the concrete backends below."""

    backend = "base"

    def _acquire(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def _release(self, key: str, token: Optional[str]) -> None:
        raise NotImplementedError

    def is_held(self, user_id: int | str) -> bool:
        raise NotImplementedError

    def sweep_stale(self) -> int:
        return 0

    def try_acquire(self, user_id: int | str) -> bool:
        """Set the flag for user_id. False if a live flag already exists."""
        return self._acquire(str(user_id)) is not None

    def release(self, user_id: int | str) -> None:
        """Clear the flag for user_id unconditionally. Idempotent."""
        self._release(str(user_id), None)

    @contextmanager
    def hold(self, user_id: int | str) -> Iterator[None]:
        """Hold the flag for the duration of the block.

        Release happens on every exit path and only clears the flag this
        block set: if the flag went stale and another caller took over, the
        newer holder keeps it.

        Raises:
            GenerationInProgressError: A live flag already exists
        """
        key = str(user_id)
        token = self._acquire(key)
        if token is None:
            raise GenerationInProgressError(key)
        try:
            yield
        finally:
            self._release(key, token)


class InMemoryGenerationGuard(GenerationGuard):
    """Process-local guard keyed by user id.

    Besides the per-key check on acquire, every acquire at least max_age
    after the previous sweep drops all stale flags, so abandoned entries of
    users who never come back do not accumulate.
    """

    backend = "memory"

    def __init__(
        self,
        max_age_seconds: float = 300,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_age_seconds <= 0:
            raise ValueError("max_age_seconds must be positive")
        self.max_age_seconds = max_age_seconds
        self._clock = clock
        self._lock = threading.Lock()
        # user key -> (acquired_at, token)
        self._held: dict[str, tuple[float, str]] = {}
        self._tokens = itertools.count(1)
        self._last_sweep = clock()

    def _acquire(self, key: str) -> Optional[str]:
        now = self._clock()
        with self._lock:
            if now - self._last_sweep >= self.max_age_seconds:
                self._sweep_locked(now)
            entry = self._held.get(key)
            if entry is not None:
                age = now - entry[0]
                if age < self.max_age_seconds:
                    return None
                del self._held[key]
                log_stale_lock_recovered(key, age, self.backend)
            token = str(next(self._tokens))
            self._held[key] = (now, token)
            return token

    def _release(self, key: str, token: Optional[str]) -> None:
        with self._lock:
            entry = self._held.get(key)
            if entry is None:
                return
            if token is None or entry[1] == token:
                del self._held[key]

    def _sweep_locked(self, now: float) -> int:
        removed = 0
        for key, (acquired_at, _token) in list(self._held.items()):
            age = now - acquired_at
            if age >= self.max_age_seconds:
                del self._held[key]
                log_stale_lock_recovered(key, age, self.backend)
                removed += 1
        self._last_sweep = now
        return removed

    def is_held(self, user_id: int | str) -> bool:
        now = self._clock()
        with self._lock:
            entry = self._held.get(str(user_id))
            return entry is not None and now - entry[0] < self.max_age_seconds

    def sweep_stale(self) -> int:
        """Drop every stale flag. Returns the number removed."""
        now = self._clock()
        with self._lock:
            return self._sweep_locked(now)

    def __len__(self) -> int:
        with self._lock:
            return len(self._held)


# Delete only if the stored token is ours (atomic compare-and-delete)
_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


class RedisGenerationGuard(GenerationGuard):
    """Cross-process guard: SET key token NX EX max_age.

    Staleness is enforced by key expiry, so sweep_stale is a no-op.
    """

    backend = "redis"

    def __init__(self, redis: Redis, max_age_seconds: int = 300, prefix: str = "gen_lock"):
        if max_age_seconds <= 0:
            raise ValueError("max_age_seconds must be positive")
        self.redis = redis
        self.max_age_seconds = int(max_age_seconds)
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    def _acquire(self, key: str) -> Optional[str]:
        token = uuid.uuid4().hex
        was_set = self.redis.set(self._key(key), token, nx=True, ex=self.max_age_seconds)
        return token if was_set else None

    def _release(self, key: str, token: Optional[str]) -> None:
        if token is None:
            self.redis.delete(self._key(key))
        else:
            self.redis.eval(_RELEASE_SCRIPT, 1, self._key(key), token)

    def is_held(self, user_id: int | str) -> bool:
        return bool(self.redis.exists(self._key(str(user_id))))


def build_generation_guard(settings: BillingSettings) -> GenerationGuard:
    """Build the guard selected by GENERATION_GUARD_BACKEND.

    Raises:
        ValueError: Unknown backend name
    """
    backend = settings.generation_guard_backend
    if backend == "memory":
        return InMemoryGenerationGuard(max_age_seconds=settings.generation_lock_max_age_seconds)
    if backend == "redis":
        from smachno_api.db.redis_client import get_redis

        return RedisGenerationGuard(
            get_redis(), max_age_seconds=settings.generation_lock_max_age_seconds
        )
    raise ValueError(
        f"Invalid GENERATION_GUARD_BACKEND value: {backend}. Must be 'memory' or 'redis'."
    )


# Global guard instance (singleton)
_generation_guard: Optional[GenerationGuard] = None


def get_generation_guard() -> GenerationGuard:
    """Get global generation guard (singleton)."""
    global _generation_guard
    if _generation_guard is None:
        _generation_guard = build_generation_guard(get_billing_settings())
        logger.info(
            "Generation guard initialized",
            extra={"event": "guard.initialized", "backend": _generation_guard.backend},
        )
    return _generation_guard


def reset_generation_guard() -> None:
    """Drop the global guard (for testing)."""
    global _generation_guard
    _generation_guard = None
