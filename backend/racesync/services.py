from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Optional

import pydantic
import redis

from . import keys
from .devices import DeviceRegistry, now_ms
from .entries import find_cross_device_duplicate
from .errors import ConflictError, ValidationError
from .races import RaceLifecycle
from .schemas import (
    MAX_DEVICE_NAME_LENGTH,
    Entry,
    FaultEntry,
    FaultVersion,
    GateAssignment,
    sanitize_string,
)
from .settings import Settings, settings
from .store import Abort, AtomicDocumentStore, Write

log = logging.getLogger(__name__)

MAX_ENTRIES_PER_RACE = 10_000
MAX_FAULTS_PER_RACE = 5_000
DEFAULT_PAGE_LIMIT = 500
MAX_PAGE_LIMIT = 2_000

MAX_DEVICE_ID_LENGTH = 50
MAX_SERVER_VERSION_HISTORY = 100
MAX_GATE = 100
GATE_ASSIGNMENT_STALE_MS = 60_000


@dataclass
class Backend:
    """Everything a request needs from the shared store."""
    store: AtomicDocumentStore
    devices: DeviceRegistry
    races: RaceLifecycle

    @property
    def client(self) -> redis.Redis:
        return self.store.client

    @classmethod
    def from_client(cls, client: redis.Redis, cfg: Settings = settings) -> "Backend":
        devices = DeviceRegistry(client, expiry_seconds=cfg.RACESYNC_CACHE_EXPIRY_SECONDS)
        return cls(
            store=AtomicDocumentStore(client, expiry_seconds=cfg.RACESYNC_CACHE_EXPIRY_SECONDS),
            devices=devices,
            races=RaceLifecycle(client, devices, tombstone_seconds=cfg.RACESYNC_TOMBSTONE_EXPIRY_SECONDS),
        )


def _deleted_response(backend: Backend, race_id: str) -> Optional[dict[str, Any]]:
    tombstone = backend.races.get_tombstone(race_id)
    if tombstone is None:
        return None
    return {"deleted": True, **tombstone.to_wire()}


def _parse_int(value: Any) -> Optional[int]:
    # Leading digits only, like a lenient form field
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    m = re.match(r"\s*(-?\d+)", str(value or ""))
    return int(m.group(1)) if m else None


def _record_deletion(backend: Backend, set_key: str, item_id: str, device_id: str) -> None:
    backend.client.sadd(set_key, keys.delete_key(item_id, device_id))
    backend.client.expire(set_key, backend.store.expiry_seconds)


def _sanitize_device(device_id: Any, device_name: Any) -> tuple[str, str]:
    return (
        sanitize_string(device_id, MAX_DEVICE_ID_LENGTH),
        sanitize_string(device_name, MAX_DEVICE_NAME_LENGTH),
    )

# ---------------------------
# Entries
# ---------------------------

def _load_entries(raw: list[Any]) -> list[Entry]:
    loaded = []
    for item in raw:
        try:
            loaded.append(Entry.model_validate(item))
        except pydantic.ValidationError:
            continue
    return loaded


def get_highest_bib(backend: Backend, race_id: str) -> int:
    return _parse_int(backend.client.get(keys.highest_bib_key(race_id))) or 0


def update_highest_bib(backend: Backend, race_id: str, bib: str) -> bool:
    """Raise the race's highest bib. False only when the CAS loop gave up."""
    bib_num = _parse_int(bib)
    if not bib_num or bib_num <= 0:
        return True

    def bump(current: Any) -> Write[bool] | Abort[bool]:
        if bib_num <= (_parse_int(current) or 0):
            return Abort(True)
        return Write(bib_num, True)

    try:
        return backend.store.atomic_update(keys.highest_bib_key(race_id), 0, bump, "updateHighestBib")
    except ConflictError:
        log.warning("highest_bib_update_failed", extra={"race": race_id, "bib": bib})
        return False


def add_entry(
    backend: Backend,
    race_id: str,
    raw_entry: Optional[dict[str, Any]],
    device_id: Any = None,
    device_name: Any = None,
) -> dict[str, Any]:
    deleted = _deleted_response(backend, race_id)
    if deleted:
        return deleted

    if not raw_entry:
        raise ValidationError("entry is required")
    try:
        entry = Entry.model_validate(raw_entry)
    except pydantic.ValidationError:
        raise ValidationError("Invalid entry format")

    device_id, device_name = _sanitize_device(device_id, device_name)
    entry = entry.model_copy(
        update={
            "bib": sanitize_string(entry.bib, 10),
            "device_id": device_id,
            "device_name": device_name,
            "synced_at": now_ms(),
        }
    )
    stored = entry.to_wire()

    def add(doc: dict[str, Any]) -> Write[dict] | Abort[dict]:
        if not isinstance(doc.get("entries"), list):
            doc["entries"] = []

        if len(doc["entries"]) >= MAX_ENTRIES_PER_RACE:
            return Abort({"error": f"Maximum entries limit ({MAX_ENTRIES_PER_RACE}) reached for this race"})

        is_dup = any(
            isinstance(e, dict) and str(e.get("id")) == entry.id and e.get("deviceId") == device_id
            for e in doc["entries"]
        )
        cross = find_cross_device_duplicate(entry, _load_entries(doc["entries"]), device_id)
        result = {"doc": doc, "isDuplicate": is_dup, "crossDeviceDuplicate": cross.to_wire() if cross else None}
        if is_dup:
            return Abort(result)

        doc["entries"].append(stored)
        doc["lastUpdated"] = now_ms()
        return Write(doc, result)

    outcome = backend.store.atomic_update(
        keys.race_key(race_id), {"entries": [], "lastUpdated": None}, add, "atomicAddEntry"
    )
    if "error" in outcome:
        raise ValidationError(outcome["error"])

    backend.devices.record_heartbeat(race_id, device_id, device_name)
    bib_ok = update_highest_bib(backend, race_id, entry.bib)

    doc = outcome["doc"]
    return {
        "success": True,
        "entries": doc["entries"],
        "lastUpdated": doc.get("lastUpdated"),
        "deviceCount": backend.devices.count_active(race_id),
        "highestBib": get_highest_bib(backend, race_id),
        "isDuplicate": outcome["isDuplicate"],
        "crossDeviceDuplicate": outcome["crossDeviceDuplicate"],
        "highestBibUpdateFailed": not bib_ok,
    }


def delete_entry(
    backend: Backend,
    race_id: str,
    entry_id: Any,
    device_id: Any = None,
    device_name: Any = None,
) -> dict[str, Any]:
    if entry_id is None or entry_id == "" or entry_id == 0:
        raise ValidationError("entryId is required")
    entry_id = str(entry_id)
    device_id, device_name = _sanitize_device(device_id, device_name)

    def remove(doc: dict[str, Any]) -> Write[bool] | Abort[bool]:
        entries = doc.get("entries") if isinstance(doc.get("entries"), list) else []
        kept = [
            e for e in entries
            if not (
                isinstance(e, dict)
                and str(e.get("id")) == entry_id
                and (not device_id or e.get("deviceId") == device_id)
            )
        ]
        if len(kept) == len(entries):
            return Abort(False)
        doc["entries"] = kept
        doc["lastUpdated"] = now_ms()
        return Write(doc, True)

    removed = backend.store.atomic_update(
        keys.race_key(race_id), {"entries": [], "lastUpdated": None}, remove, "atomicDeleteEntry"
    )
    _record_deletion(backend, keys.deleted_entries_key(race_id), entry_id, device_id)

    if device_id:
        backend.devices.record_heartbeat(race_id, device_id, device_name)

    return {
        "success": True,
        "deleted": removed,
        "entryId": entry_id,
        "deviceCount": backend.devices.count_active(race_id),
    }


def check_race(backend: Backend, race_id: str) -> dict[str, Any]:
    deleted = _deleted_response(backend, race_id)
    if deleted:
        return deleted
    doc = backend.store.read_json(keys.race_key(race_id), None)
    exists = isinstance(doc, dict)
    entries = doc.get("entries") if exists else None
    return {"exists": exists, "entryCount": len(entries) if isinstance(entries, list) else 0}


def get_race_snapshot(
    backend: Backend,
    race_id: str,
    *,
    device_id: Optional[str] = None,
    device_name: Optional[str] = None,
    offset: Any = None,
    limit: Any = None,
) -> dict[str, Any]:
    """Current entries plus everything a device needs to reconcile.

    Pagination applies only when ``limit`` is given.
    """
    deleted = _deleted_response(backend, race_id)
    if deleted:
        return deleted

    if device_id:
        backend.devices.record_heartbeat(race_id, device_id, device_name or "")

    doc = backend.store.read_json(keys.race_key(race_id), {"entries": [], "lastUpdated": None})
    all_entries = doc.get("entries") if isinstance(doc.get("entries"), list) else []
    total = len(all_entries)

    snapshot: dict[str, Any] = {
        "entries": all_entries,
        "lastUpdated": doc.get("lastUpdated") or None,
        "total": total,
        "deviceCount": backend.devices.count_active(race_id),
        "highestBib": get_highest_bib(backend, race_id),
        "deletedIds": sorted(backend.client.smembers(keys.deleted_entries_key(race_id))),
    }

    if limit is not None:
        start = max(0, _parse_int(offset) or 0)
        size = min(MAX_PAGE_LIMIT, max(1, _parse_int(limit) or DEFAULT_PAGE_LIMIT))
        snapshot["entries"] = all_entries[start:start + size]
        snapshot["pagination"] = {
            "offset": start,
            "limit": size,
            "total": total,
            "hasMore": start + size < total,
        }
    return snapshot

# ---------------------------
# Gate assignments
# ---------------------------

def parse_gate_range(start: Any, end: Any) -> Optional[tuple[int, int]]:
    s, e = _parse_int(start), _parse_int(end)
    if s is None or e is None:
        return None
    if not (1 <= s <= e <= MAX_GATE):
        return None
    return s, e


def update_gate_assignment(
    backend: Backend,
    race_id: str,
    device_id: str,
    device_name: str,
    gate_range: tuple[int, int],
    is_ready: bool = False,
    first_gate_color: Any = "red",
) -> None:
    if not device_id:
        return
    assignment = GateAssignment(
        device_id=device_id,
        device_name=device_name or "Unknown",
        gate_start=gate_range[0],
        gate_end=gate_range[1],
        last_seen=now_ms(),
        is_ready=is_ready is True,
        first_gate_color=first_gate_color if first_gate_color in ("red", "blue") else "red",
    )
    key = keys.gate_assignments_key(race_id)
    backend.client.hset(key, device_id, json.dumps(assignment.to_wire(), separators=(",", ":")))
    backend.client.expire(key, backend.store.expiry_seconds)


def list_gate_assignments(backend: Backend, race_id: str, now: Optional[int] = None) -> list[GateAssignment]:
    """Assignments heard from within the last minute. Unreadable ones are ignored."""
    now = now_ms() if now is None else now
    found = []
    for device_id, raw in backend.client.hgetall(keys.gate_assignments_key(race_id)).items():
        try:
            data = json.loads(raw)
            assignment = GateAssignment.model_validate({**data, "deviceId": device_id})
        except (ValueError, TypeError, pydantic.ValidationError):
            continue
        if now - assignment.last_seen <= GATE_ASSIGNMENT_STALE_MS:
            found.append(assignment)
    return found

# ---------------------------
# Faults
# ---------------------------

def _sanitize_value(value: Any) -> Any:
    if isinstance(value, str):
        return sanitize_string(value, 200)
    if isinstance(value, (bool, int, float)):
        return value
    return None


def _sanitize_history(raw: Any) -> list[dict[str, Any]]:
    if not isinstance(raw, list):
        return []
    cleaned = []
    for item in raw[:MAX_SERVER_VERSION_HISTORY]:
        if not isinstance(item, dict):
            continue
        version: dict[str, Any] = {}
        for k, v in item.items():
            if isinstance(v, dict):
                version[k] = {nk: nv for nk, nv in ((nk, _sanitize_value(nv)) for nk, nv in v.items()) if nv is not None}
            elif _sanitize_value(v) is not None:
                version[k] = _sanitize_value(v)
        try:
            cleaned.append(FaultVersion.model_validate(version).to_wire())
        except pydantic.ValidationError:
            continue
    return cleaned


def _optional(value: Any, max_length: int) -> Optional[str]:
    return sanitize_string(value, max_length) if value else None


def _enrich_fault(raw: dict[str, Any], device_id: str, device_name: str) -> FaultEntry:
    body = dict(raw)
    history = _sanitize_history(body.pop("versionHistory", None))
    try:
        fault = FaultEntry.model_validate(body)
    except pydantic.ValidationError as exc:
        raise ValidationError(f"Invalid fault: {exc.errors()[0].get('msg', 'invalid')}")

    return fault.model_copy(
        update={
            "bib": sanitize_string(fault.bib, 10),
            "device_id": device_id,
            "device_name": device_name,
            "synced_at": now_ms(),
            "notes": _optional(fault.notes, 500),
            "notes_timestamp": _optional(fault.notes_timestamp, 64),
            "current_version": fault.current_version or 1,
            "version_history": [FaultVersion.model_validate(v) for v in history],
            "marked_for_deletion_at": _optional(fault.marked_for_deletion_at, 64),
            "marked_for_deletion_by": sanitize_string(fault.marked_for_deletion_by, 100),
            "marked_for_deletion_by_device_id": sanitize_string(fault.marked_for_deletion_by_device_id, 50),
            "deletion_approved_at": _optional(fault.deletion_approved_at, 64),
            "deletion_approved_by": sanitize_string(fault.deletion_approved_by, 100),
        }
    )


def get_faults(
    backend: Backend,
    race_id: str,
    *,
    device_id: Optional[str] = None,
    device_name: Optional[str] = None,
    gate_start: Any = None,
    gate_end: Any = None,
    is_ready: bool = False,
    first_gate_color: Any = None,
) -> dict[str, Any]:
    doc = backend.store.read_json(keys.faults_key(race_id), {"faults": [], "lastUpdated": None})
    assignments = list_gate_assignments(backend, race_id)

    if device_id and gate_start and gate_end:
        gate_range = parse_gate_range(gate_start, gate_end)
        if gate_range:
            update_gate_assignment(
                backend, race_id, device_id, device_name or "", gate_range, is_ready, first_gate_color
            )

    return {
        "faults": doc["faults"] if isinstance(doc.get("faults"), list) else [],
        "lastUpdated": doc.get("lastUpdated") or None,
        "deletedIds": sorted(backend.client.smembers(keys.deleted_faults_key(race_id))),
        "gateAssignments": [a.to_wire() for a in assignments],
    }


def add_fault(
    backend: Backend,
    race_id: str,
    raw_fault: Optional[dict[str, Any]],
    device_id: Any = None,
    device_name: Any = None,
    *,
    gate_range: Any = None,
    is_ready: Any = None,
    first_gate_color: Any = None,
) -> dict[str, Any]:
    if not raw_fault:
        raise ValidationError("fault is required")
    device_id, device_name = _sanitize_device(device_id, device_name)
    fault = _enrich_fault(raw_fault, device_id, device_name)
    stored = fault.to_wire()

    def add(doc: dict[str, Any]) -> Write[dict] | Abort[dict]:
        if not isinstance(doc.get("faults"), list):
            doc["faults"] = []
        if len(doc["faults"]) >= MAX_FAULTS_PER_RACE:
            return Abort({"error": f"Maximum faults limit ({MAX_FAULTS_PER_RACE}) reached for this race"})

        for i, existing in enumerate(doc["faults"]):
            if not isinstance(existing, dict):
                continue
            if str(existing.get("id")) != fault.id or existing.get("deviceId") != device_id:
                continue
            newer = fault.current_version > (existing.get("currentVersion") or 1)
            flag_changed = fault.marked_for_deletion != bool(existing.get("markedForDeletion"))
            if not (newer or flag_changed):
                return Abort({"doc": doc, "isDuplicate": True})
            doc["faults"][i] = stored
            break
        else:
            doc["faults"].append(stored)

        doc["lastUpdated"] = now_ms()
        return Write(doc, {"doc": doc, "isDuplicate": False})

    outcome = backend.store.atomic_update(
        keys.faults_key(race_id), {"faults": [], "lastUpdated": None}, add, "atomicAddFault"
    )
    if "error" in outcome:
        raise ValidationError(outcome["error"])

    if isinstance(gate_range, (list, tuple)) and len(gate_range) == 2:
        parsed = parse_gate_range(*gate_range)
        if parsed:
            update_gate_assignment(
                backend, race_id, device_id, device_name, parsed, is_ready is True, first_gate_color
            )

    doc = outcome["doc"]
    return {
        "success": True,
        "faults": doc["faults"],
        "lastUpdated": doc.get("lastUpdated"),
        "isDuplicate": outcome["isDuplicate"],
        "gateAssignments": [a.to_wire() for a in list_gate_assignments(backend, race_id)],
    }


def delete_fault(
    backend: Backend,
    race_id: str,
    fault_id: Any,
    device_id: Any = None,
    device_name: Any = None,
    approved_by: Any = None,
) -> dict[str, Any]:
    """Remove a fault. Callers check the chief-judge role first."""
    if fault_id is None or fault_id == "" or fault_id == 0:
        raise ValidationError("faultId is required")
    fault_id = str(fault_id)
    device_id, device_name = _sanitize_device(device_id, device_name)

    log.info(
        "fault_deleted",
        extra={
            "race": race_id,
            "fault_id": fault_id,
            "device_id": device_id,
            "device_name": device_name,
            "approved_by": sanitize_string(approved_by, MAX_DEVICE_NAME_LENGTH),
        },
    )

    def remove(doc: dict[str, Any]) -> Write[bool] | Abort[bool]:
        faults = doc.get("faults") if isinstance(doc.get("faults"), list) else []
        kept = [
            f for f in faults
            if not (
                isinstance(f, dict)
                and str(f.get("id")) == fault_id
                and (not device_id or f.get("deviceId") == device_id)
            )
        ]
        if len(kept) == len(faults):
            return Abort(False)
        doc["faults"] = kept
        doc["lastUpdated"] = now_ms()
        return Write(doc, True)

    removed = backend.store.atomic_update(
        keys.faults_key(race_id), {"faults": [], "lastUpdated": None}, remove, "atomicDeleteFault"
    )
    _record_deletion(backend, keys.deleted_faults_key(race_id), fault_id, device_id)
    return {"success": True, "deleted": removed, "faultId": fault_id}
