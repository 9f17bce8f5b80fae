"""Timing entry sync between one device and the server.

Entries are recorded and persisted locally first; everything that talks to
the server is best-effort and reports failures through the session.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

import pydantic

from .api_client import SYNC_PATH, ApiClient
from .devices import now_ms
from .entries import (
    EntryParams,
    GpsClock,
    create_entry,
    find_cross_device_duplicate,
    is_duplicate,
    mark_entry_synced,
    merge_entries_from_cloud,
    remove_deleted_cloud_entries,
)
from .errors import HttpStatusError, NotFoundError, Outcome, SyncError, ValidationError
from .local_store import ENTRIES_SLICE, FAULTS_SLICE, LocalPersistence
from .races import TOMBSTONE_MESSAGE
from .schemas import CrossDeviceDuplicate, Entry, Point
from .session import RaceDeleted, SyncSession

log = logging.getLogger(__name__)


@dataclass
class RecordedEntry:
    entry: Entry
    duplicate: bool
    synced: bool


def _int_field(data: dict[str, Any], name: str) -> Optional[int]:
    value = data.get(name)
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return None


class EntrySyncChannel:
    def __init__(
        self,
        api: ApiClient,
        session: SyncSession,
        persistence: Optional[LocalPersistence] = None,
    ) -> None:
        self.api = api
        self.session = session
        self.persistence = persistence

    def restore(self) -> int:
        """Load persisted entries into the session; unreadable ones are dropped."""
        if self.persistence is None:
            return 0
        restored = []
        for raw in self.persistence.get(ENTRIES_SLICE, []) or []:
            try:
                restored.append(Entry.model_validate(raw))
            except pydantic.ValidationError:
                log.warning("local_entry_invalid", extra={"raw": str(raw)[:200]})
        self.session.entries = restored
        return len(restored)

    def _entries_changed(self) -> None:
        if self.persistence is not None:
            self.persistence.set(ENTRIES_SLICE, [e.to_wire() for e in self.session.entries])

    def _failed(self, action: str, error: SyncError) -> Outcome:
        log.warning("entry_sync_failed", extra={"action": action, "race": self.session.race_id, "error": str(error)})
        self.session.report_error(error)
        return Outcome.from_error(error)

    def _apply_counters(self, data: dict[str, Any]) -> None:
        count = _int_field(data, "deviceCount")
        if count is not None:
            self.session.cloud_device_count = count
        highest = _int_field(data, "highestBib")
        if highest is not None:
            self.session.cloud_highest_bib = highest

    def _race_deleted(self, data: dict[str, Any]) -> Outcome:
        s = self.session
        notice = RaceDeleted(
            race_id=s.race_id,
            deleted_at=_int_field(data, "deletedAt"),
            message=str(data.get("message") or TOMBSTONE_MESSAGE),
        )
        log.info("race_deleted_remotely", extra={"race": s.race_id, "deleted_at": notice.deleted_at})

        s.entries = []
        s.faults = []
        if self.persistence is not None:
            self.persistence.set(ENTRIES_SLICE, [])
            self.persistence.set(FAULTS_SLICE, [])
        if s.on_race_deleted:
            s.on_race_deleted(notice)
        return Outcome.from_error(NotFoundError(notice.message))

    def fetch_cloud_entries(self) -> Outcome:
        """Pull the race, apply deletions and merge other devices' entries.

        On success the outcome's value is how many local entries changed.
        A deleted race clears the local entries and faults and comes back
        as a ``not_found`` outcome.
        """
        s = self.session
        if not s.can_sync:
            return Outcome.success(0)

        try:
            data = self.api.get(SYNC_PATH, params={"raceId": s.race_id, "deviceId": s.device_id, "deviceName": s.device_name})
        except HttpStatusError as exc:
            if exc.status_code == 401 and exc.expired:
                # Drop the stale token; the caller re-authenticates
                self.api.token = None
            return self._failed("fetch", exc)
        except SyncError as exc:
            return self._failed("fetch", exc)

        if not isinstance(data, dict):
            return self._failed("fetch", ValidationError("Invalid data structure"))
        if data.get("deleted") is True:
            return self._race_deleted(data)

        cloud_entries = data.get("entries") if isinstance(data.get("entries"), list) else []
        raw_deleted = data.get("deletedIds") if isinstance(data.get("deletedIds"), list) else []
        deleted_ids = [d for d in raw_deleted if isinstance(d, str) and d]
        self._apply_counters(data)

        changed = 0
        if deleted_ids:
            s.entries, removed = remove_deleted_cloud_entries(s.entries, deleted_ids)
            changed += removed
        if cloud_entries:
            before = s.entries
            s.entries, added = merge_entries_from_cloud(before, cloud_entries, deleted_ids, s.device_id)
            changed += len(added)
            if added and s.on_entries_merged:
                s.on_entries_merged(len(added))
            if s.on_cross_device_duplicate:
                for entry in added:
                    dup = find_cross_device_duplicate(entry, before, entry.device_id)
                    if dup:
                        s.on_cross_device_duplicate(dup)

        s.last_sync_timestamp = _int_field(data, "lastUpdated") or now_ms()
        if changed:
            self._entries_changed()
        return Outcome.success(changed)

    def send_entry_to_cloud(self, entry: Entry) -> bool:
        s = self.session
        if not s.can_sync:
            return False
        payload = {"entry": entry.to_wire(), "deviceId": s.device_id, "deviceName": s.device_name}
        try:
            data = self.api.post(SYNC_PATH, payload, params={"raceId": s.race_id})
        except SyncError as exc:
            self._failed("send", exc)
            return False

        if isinstance(data, dict):
            if data.get("deleted") is True:
                self._race_deleted(data)
                return False
            self._apply_counters(data)
            if data.get("crossDeviceDuplicate") and s.on_cross_device_duplicate:
                try:
                    s.on_cross_device_duplicate(CrossDeviceDuplicate.model_validate(data["crossDeviceDuplicate"]))
                except pydantic.ValidationError:
                    log.warning("cross_device_duplicate_unreadable", extra={"race": s.race_id})

        s.entries = mark_entry_synced(s.entries, entry.sync_key, now_ms())
        self._entries_changed()
        s.reset_fast_polling()
        return True

    def delete_entry_from_cloud(self, entry_id: str, entry_device_id: Optional[str] = None) -> bool:
        s = self.session
        if not s.can_sync:
            return False
        payload = {
            "entryId": entry_id,
            "deviceId": entry_device_id or s.device_id,
            "deviceName": s.device_name,
        }
        try:
            self.api.delete(SYNC_PATH, payload, params={"raceId": s.race_id})
        except SyncError as exc:
            self._failed("delete", exc)
            return False
        return True

    def push_local_entries(self) -> int:
        """Send this device's unsynced entries; returns how many went through."""
        s = self.session
        if not s.can_sync:
            return 0
        pending = [e for e in s.entries if e.device_id == s.device_id and not e.synced_at]
        return sum(1 for e in pending if self.send_entry_to_cloud(e))

    def record_entry(self, bib: str, point: Point, run: int = 1, gps: Optional[GpsClock] = None) -> RecordedEntry:
        """Stamp, store and persist a new entry, then try to send it."""
        s = self.session
        entry = create_entry(
            EntryParams(bib=bib, point=point, run=run, device_id=s.device_id, device_name=s.device_name),
            gps,
        )
        duplicate = is_duplicate(entry, s.entries)
        s.entries = [*s.entries, entry]
        self._entries_changed()
        return RecordedEntry(entry=entry, duplicate=duplicate, synced=self.send_entry_to_cloud(entry))

    def cleanup(self) -> None:
        self.session.clear()
