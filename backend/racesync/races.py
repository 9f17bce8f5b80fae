"""Race deletion via tombstones, and listing of the races in the shared store."""

from __future__ import annotations

import json
import logging
import re
from typing import Callable, Optional

import redis

from . import keys
from .devices import DeviceRegistry, now_ms
from .errors import NotFoundError, ValidationError
from .schemas import RaceSummary, Tombstone
from .settings import settings
from .store import safe_json_parse

log = logging.getLogger(__name__)

TOMBSTONE_MESSAGE = "Race deleted by administrator"
SCAN_COUNT = 100

# Ids read back from store keys may predate the 50-char limit
MAX_BATCH_ID_LENGTH = 100
_BATCH_ID_RE = re.compile(r"^[a-zA-Z0-9_-]+$")


class RaceLifecycle:
    def __init__(
        self,
        client: redis.Redis,
        devices: DeviceRegistry,
        *,
        tombstone_seconds: int = settings.RACESYNC_TOMBSTONE_EXPIRY_SECONDS,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.client = client
        self.devices = devices
        self.tombstone_seconds = tombstone_seconds
        self.clock = clock

    def get_tombstone(self, race_id: str) -> Optional[Tombstone]:
        """Live tombstone for a normalized race id; check this before trusting the document."""
        raw = self.client.get(keys.tombstone_key(race_id))
        if not raw:
            return None
        data = safe_json_parse(raw, {})
        return Tombstone(
            deleted_at=data.get("deletedAt") or self.clock(),
            message=data.get("message") or TOMBSTONE_MESSAGE,
        )

    def is_deleted(self, race_id: str) -> bool:
        return self.get_tombstone(race_id) is not None

    def exists(self, race_id: str) -> bool:
        return bool(self.client.exists(keys.race_key(race_id)))

    def delete_race(self, race_id: str) -> str:
        """Tombstone the race, then drop its document and derived keys.

        Older clients wrote keys with the caller's casing; those are
        removed too. Returns the id that was found.
        """
        if not race_id or not isinstance(race_id, str) or not race_id.strip():
            raise ValidationError("Invalid race ID")

        normalized = race_id.lower()
        if self.client.exists(keys.race_key(race_id)):
            actual = race_id
        elif self.client.exists(keys.race_key(normalized)):
            actual = normalized
        else:
            raise NotFoundError("Race not found")

        tombstone = Tombstone(deleted_at=self.clock(), message=TOMBSTONE_MESSAGE)
        self.client.set(
            keys.tombstone_key(normalized),
            json.dumps(tombstone.to_wire()),
            ex=self.tombstone_seconds,
        )

        doomed = set(keys.derived_keys(actual)) | set(keys.derived_keys(normalized))
        if race_id != normalized:
            doomed |= set(keys.derived_keys(race_id))
        self.client.delete(*sorted(doomed))

        log.info("race_deleted", extra={"race": actual})
        return actual

    def list_races(self) -> list[RaceSummary]:
        races: list[RaceSummary] = []
        seen: set[str] = set()

        for key in self.client.scan_iter(match=f"{keys.RACE_PREFIX}*", count=SCAN_COUNT):
            if keys.is_derived_key(key):
                continue
            race_id = key[len(keys.RACE_PREFIX):]
            normalized = race_id.lower()
            if normalized in seen:
                continue

            raw = self.client.get(key)
            if not raw:
                continue
            try:
                doc = json.loads(raw)
                entries = doc.get("entries")
                last_updated = doc.get("lastUpdated")
            except (ValueError, AttributeError) as exc:
                log.error("race_parse_failed", extra={"key": key, "error": str(exc)})
                continue

            if not isinstance(last_updated, int) or isinstance(last_updated, bool):
                last_updated = None

            seen.add(normalized)
            races.append(
                RaceSummary(
                    race_id=race_id,
                    entry_count=len(entries) if isinstance(entries, list) else 0,
                    device_count=self.devices.count_active(race_id),
                    last_updated=last_updated,
                )
            )

        races.sort(key=lambda r: r.last_updated or 0, reverse=True)
        return races

    def delete_all(self) -> list[dict]:
        """Delete every listed race; one result per race, failures included."""
        results = []
        for race in self.list_races():
            if not _BATCH_ID_RE.match(race.race_id) or len(race.race_id) > MAX_BATCH_ID_LENGTH:
                results.append({"raceId": race.race_id, "success": False, "error": "Invalid race ID format"})
                continue
            try:
                actual = self.delete_race(race.race_id)
            except NotFoundError as exc:
                results.append({"raceId": race.race_id, "success": False, "error": str(exc)})
                continue
            results.append({"raceId": actual, "success": True})
        return results
