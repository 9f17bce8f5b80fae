"""Compare-and-swap updates over single JSON documents in the shared store.

Every mutation of a race or fault document goes through
:meth:`AtomicDocumentStore.atomic_update`, a WATCH/MULTI/EXEC loop.
"""

from __future__ import annotations

import copy
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Generic, TypeVar, Union

import redis
from redis.backoff import ExponentialBackoff
from redis.exceptions import WatchError
from redis.retry import Retry

from .errors import ConflictError
from .settings import Settings, settings as default_settings

log = logging.getLogger(__name__)

MAX_ATOMIC_RETRIES = 5

T = TypeVar("T")


@dataclass
class Write(Generic[T]):
    """Write ``data`` back and hand ``result`` to the caller."""
    data: Any
    result: T


@dataclass
class Abort(Generic[T]):
    """Release the watch without writing and hand ``result`` to the caller."""
    result: T


UpdateOutcome = Union[Write[T], Abort[T]]


def create_redis(cfg: Settings = default_settings) -> redis.Redis:
    """Build a client carrying its own reconnect policy."""
    retry = Retry(
        ExponentialBackoff(cap=cfg.RACESYNC_REDIS_RECONNECT_DELAY),
        cfg.RACESYNC_REDIS_RETRIES,
    )
    return redis.Redis.from_url(
        cfg.RACESYNC_REDIS_URL,
        decode_responses=True,
        socket_timeout=cfg.RACESYNC_REDIS_SOCKET_TIMEOUT,
        socket_connect_timeout=cfg.RACESYNC_REDIS_SOCKET_TIMEOUT,
        retry=retry,
        retry_on_error=[redis.exceptions.ConnectionError, redis.exceptions.TimeoutError],
    )


def safe_json_parse(raw: str | bytes | None, default: Any) -> Any:
    """Parse stored JSON; absent or corrupt values yield a copy of ``default``."""
    if raw is None:
        return copy.deepcopy(default)
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        log.warning("corrupt_json", extra={"raw": str(raw)[:100]})
        return copy.deepcopy(default)
    if isinstance(default, dict) and not isinstance(value, dict):
        return copy.deepcopy(default)
    return value


class AtomicDocumentStore:
    def __init__(
        self,
        client: redis.Redis,
        *,
        expiry_seconds: int = default_settings.RACESYNC_CACHE_EXPIRY_SECONDS,
        max_retries: int = MAX_ATOMIC_RETRIES,
    ) -> None:
        self.client = client
        self.expiry_seconds = expiry_seconds
        self.max_retries = max_retries

    def read_json(self, key: str, default: Any) -> Any:
        return safe_json_parse(self.client.get(key), default)

    def atomic_update(
        self,
        key: str,
        default: Any,
        update_fn: Callable[[Any], UpdateOutcome[T]],
        label: str,
    ) -> T:
        """Read-modify-write ``key`` until the conditional write lands.

        ``update_fn`` receives the parsed current value (or a fresh copy of
        ``default``) and returns :class:`Write` or :class:`Abort`. It may be
        called more than once, so it must not have side effects beyond its
        argument. Raises :class:`ConflictError` after ``max_retries`` lost
        races; nothing is written in that case.
        """
        pipe = self.client.pipeline()
        try:
            for attempt in range(1, self.max_retries + 1):
                pipe.watch(key)
                current = safe_json_parse(pipe.get(key), default)
                outcome = update_fn(current)

                if isinstance(outcome, Abort):
                    pipe.unwatch()
                    return outcome.result

                pipe.multi()
                pipe.set(key, json.dumps(outcome.data), ex=self.expiry_seconds)
                try:
                    pipe.execute()
                except WatchError:
                    log.warning(
                        "atomic_update_retry",
                        extra={"label": label, "retry": attempt, "max_retries": self.max_retries},
                    )
                    continue
                return outcome.result

            # A watch left behind here would fail the next unrelated
            # MULTI/EXEC on this connection.
            if pipe.watching:
                pipe.unwatch()
            log.error("atomic_update_exhausted", extra={"label": label, "key": key})
            raise ConflictError(label, self.max_retries)
        finally:
            pipe.reset()
