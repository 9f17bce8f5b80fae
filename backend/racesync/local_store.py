"""Device-side state cache with deferred, coalesced write-back.

State is split into named slices. Changing a slice marks it dirty and
schedules one flush shortly after; every change made before that flush
fires is written together, and untouched slices are never rewritten.
"""

from __future__ import annotations

import copy
import json
import logging
import threading
from typing import Any, Callable, Optional

from sqlalchemy import select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from . import models
from .db import init_db, make_engine
from .errors import StorageError
from .settings import settings

log = logging.getLogger(__name__)

ENTRIES_SLICE = "entries"
FAULTS_SLICE = "faults"
SETTINGS_SLICE = "settings"
SESSION_SLICE = "session"

FLUSH_DELAY = 0.05  # seconds


class LocalPersistence:
    def __init__(
        self,
        url: str = settings.RACESYNC_LOCAL_DB_URL,
        *,
        engine: Optional[Engine] = None,
        delay: float = FLUSH_DELAY,
        on_error: Optional[Callable[[StorageError], None]] = None,
    ) -> None:
        self.engine = engine if engine is not None else make_engine(url)
        self._sessions = init_db(self.engine)
        self.delay = delay
        self.on_error = on_error
        self.last_error: Optional[StorageError] = None

        self._lock = threading.RLock()
        # Held from snapshot to last commit; flushes never overlap
        self._flush_lock = threading.Lock()
        self._cache: dict[str, Any] = {}
        self._dirty: set[str] = set()
        self._timer: Optional[threading.Timer] = None
        self.load()

    def load(self) -> None:
        """Fill the cache from disk. Unreadable slices are skipped."""
        with self._sessions() as session:
            rows = session.execute(select(models.LocalSlice)).scalars().all()
        with self._lock:
            for row in rows:
                try:
                    self._cache[row.name] = json.loads(row.payload)
                except ValueError:
                    log.warning("local_slice_corrupt", extra={"slice": row.name})

    def get(self, name: str, default: Any = None) -> Any:
        with self._lock:
            if name not in self._cache:
                return copy.deepcopy(default)
            return copy.deepcopy(self._cache[name])

    def set(self, name: str, value: Any) -> None:
        with self._lock:
            self._cache[name] = copy.deepcopy(value)
            self._dirty.add(name)
            self._schedule()

    @property
    def dirty(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._dirty)

    def _schedule(self) -> None:
        if self._timer is not None:
            return
        self._timer = threading.Timer(self.delay, self._flush_in_background)
        self._timer.daemon = True
        self._timer.start()

    def _flush_in_background(self) -> None:
        try:
            self.flush()
        except StorageError as exc:
            # Failed slices stay dirty; the next explicit flush raises again
            self.last_error = exc
            log.error("local_flush_failed", extra={"error": str(exc)})
            if self.on_error:
                self.on_error(exc)

    def flush(self) -> None:
        """Write every dirty slice now.

        Flushes run one at a time. Each slice is written on its own, so one
        failure does not stop the others. Raises :class:`StorageError` for
        the first failure; slices that failed stay dirty.
        """
        with self._flush_lock:
            self._flush_pending()

    def _flush_pending(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            pending = {name: self._cache.get(name) for name in self._dirty}
            self._dirty = set()

        first_error: Optional[Exception] = None
        failed: set[str] = set()
        for name, value in pending.items():
            try:
                payload = json.dumps(value)
                with self._sessions() as session, session.begin():
                    session.merge(models.LocalSlice(name=name, payload=payload, updated_at=models.utcnow()))
            except (SQLAlchemyError, TypeError, ValueError) as exc:
                failed.add(name)
                if first_error is None:
                    first_error = exc

        if failed:
            with self._lock:
                self._dirty |= failed
        if first_error is not None:
            raise StorageError(f"Saving local data failed: {first_error}") from first_error

    def close(self) -> None:
        try:
            self.flush()
        finally:
            self.engine.dispose()
