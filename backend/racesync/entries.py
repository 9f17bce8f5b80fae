"""Timing entry creation and duplicate detection.

There is no global sequence number for entries: two punches are the same
physical event when they share ``(bib, point, run)``, whichever device
recorded them.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Optional, Protocol

import pydantic

from .schemas import CrossDeviceDuplicate, Entry, GpsCoords, Point, TimeSource

log = logging.getLogger(__name__)

BIB_DIGITS = 3


class GpsClock(Protocol):
    def get_time_offset(self) -> Optional[float]:
        """Milliseconds to add to the system clock, or None without a fix."""

    def get_coordinates(self) -> Optional[GpsCoords]: ...

    def get_timestamp(self) -> Optional[float]: ...


class SystemClock:
    """GpsClock stand-in for devices without a receiver."""

    def get_time_offset(self) -> Optional[float]:
        return None

    def get_coordinates(self) -> Optional[GpsCoords]:
        return None

    def get_timestamp(self) -> Optional[float]:
        return None


def generate_entry_id(device_id: str) -> str:
    return f"{device_id}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


def generate_device_id() -> str:
    return f"dev_{uuid.uuid4().hex[:12]}"


def pad_bib(bib: str) -> str:
    return bib.zfill(BIB_DIGITS) if bib else ""


def _iso_ms(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def capture_timestamp(gps: GpsClock, now: Optional[float] = None) -> tuple[str, TimeSource]:
    """Current time as ISO-8601, GPS-corrected when an offset is known."""
    now = time.time() if now is None else now
    offset = gps.get_time_offset()
    if offset is not None:
        return _iso_ms(datetime.fromtimestamp(now + offset / 1000, tz=timezone.utc)), "gps"
    return _iso_ms(datetime.fromtimestamp(now, tz=timezone.utc)), "system"


@dataclass
class EntryParams:
    bib: str
    point: Point
    run: int
    device_id: str
    device_name: str


def create_entry(params: EntryParams, gps: Optional[GpsClock] = None) -> Entry:
    """Build an entry at the moment of the tap.

    Call this before anything slow (photo capture, network) so the
    timestamp reflects the tap and not the work that followed it.
    """
    gps = gps or SystemClock()
    timestamp, source = capture_timestamp(gps)
    return Entry(
        id=generate_entry_id(params.device_id),
        bib=pad_bib(params.bib),
        point=params.point,
        run=params.run,
        timestamp=timestamp,
        status="ok",
        device_id=params.device_id,
        device_name=params.device_name,
        gps_coords=gps.get_coordinates(),
        gps_timestamp=gps.get_timestamp(),
        time_source=source,
    )


def same_event(a: Entry, b: Entry) -> bool:
    return a.bib == b.bib and a.point == b.point and a.effective_run == b.effective_run


def is_duplicate(candidate: Entry, existing: Iterable[Entry]) -> bool:
    """True when a non-empty bib already has a punch at this point and run."""
    if not candidate.bib:
        return False
    return any(same_event(candidate, e) for e in existing)


def find_cross_device_duplicate(
    candidate: Entry, existing: Iterable[Entry], device_id: str
) -> Optional[CrossDeviceDuplicate]:
    """Like :func:`is_duplicate` but only against other devices' entries, with details."""
    if not candidate.bib:
        return None
    for e in existing:
        if e.device_id != device_id and same_event(candidate, e):
            return CrossDeviceDuplicate(
                bib=e.bib,
                point=e.point,
                run=e.effective_run,
                device_name=e.device_name or "Unknown device",
                timestamp=e.timestamp,
            )
    return None

# ---------------------------
# Cloud merge
# ---------------------------

def _is_deleted(entry: Entry, deleted: set[str]) -> bool:
    return entry.sync_key in deleted or entry.id in deleted


def _sort_key(entry: Entry) -> datetime:
    ts = datetime.fromisoformat(entry.timestamp.replace("Z", "+00:00"))
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


def merge_entries_from_cloud(
    entries: list[Entry],
    cloud_entries: Iterable[Any],
    deleted_ids: Iterable[str],
    local_device_id: str,
) -> tuple[list[Entry], list[Entry]]:
    """Add other devices' entries that are not already held locally.

    An entry is identified by ``(id, device_id)``; this device's own entries
    and deleted ones are skipped. Returns the new list, sorted by timestamp,
    and the entries that were added.
    """
    deleted = set(deleted_ids)
    known = {e.sync_key for e in entries}
    added: list[Entry] = []

    for raw in cloud_entries:
        try:
            entry = Entry.model_validate(raw)
        except pydantic.ValidationError:
            log.warning("cloud_entry_invalid", extra={"raw": str(raw)[:200]})
            continue
        if entry.device_id == local_device_id or _is_deleted(entry, deleted):
            continue
        if entry.sync_key in known:
            continue
        known.add(entry.sync_key)
        added.append(entry.model_copy(update={"run": entry.effective_run}))

    if not added:
        return entries, []
    merged = sorted([*entries, *added], key=_sort_key)
    return merged, added


def remove_deleted_cloud_entries(entries: list[Entry], deleted_ids: Iterable[str]) -> tuple[list[Entry], int]:
    deleted = set(deleted_ids)
    kept = [e for e in entries if not _is_deleted(e, deleted)]
    return kept, len(entries) - len(kept)


def mark_entry_synced(entries: list[Entry], sync_key: str, synced_at: int) -> list[Entry]:
    return [e.model_copy(update={"synced_at": synced_at}) if e.sync_key == sync_key else e for e in entries]
