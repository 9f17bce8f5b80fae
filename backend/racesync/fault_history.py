"""Fault edits with an append-only version history.

Every function takes the device's fault list and returns a new list; the
input is never mutated. ``None`` means the change was refused (unknown id,
or the fault is awaiting deletion).
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

import pydantic

from .schemas import ChangeType, FaultEntry, FaultVersion

log = logging.getLogger(__name__)

MAX_VERSION_HISTORY = 50

# Fields a version snapshot records, and the subset a restore brings back
SNAPSHOT_FIELDS = (
    "id", "bib", "run", "gate_number", "fault_type", "timestamp", "device_id",
    "device_name", "gate_range", "synced_at", "notes", "notes_source", "notes_timestamp",
)
RESTORABLE_FIELDS = ("bib", "run", "gate_number", "fault_type", "notes", "notes_source", "notes_timestamp")
EDITABLE_FIELDS = frozenset(RESTORABLE_FIELDS)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def snapshot(fault: FaultEntry) -> dict[str, Any]:
    data = fault.model_dump(include=set(SNAPSHOT_FIELDS), by_alias=True, exclude_none=True)
    if "gateRange" in data:
        data["gateRange"] = list(data["gateRange"])
    return data


def new_version(
    version: int,
    change_type: ChangeType,
    data: dict[str, Any],
    edited_by: str,
    edited_by_device_id: str,
    description: Optional[str] = None,
) -> FaultVersion:
    return FaultVersion(
        version=version,
        timestamp=_now_iso(),
        edited_by=edited_by,
        edited_by_device_id=edited_by_device_id,
        change_type=change_type,
        data=data,
        change_description=description,
    )


def append_version(history: list[FaultVersion], version: FaultVersion) -> list[FaultVersion]:
    return [*history, version][-MAX_VERSION_HISTORY:]


def _index_of(faults: list[FaultEntry], fault_id: str) -> Optional[int]:
    for i, f in enumerate(faults):
        if f.id == fault_id:
            return i
    return None


def _replace(faults: list[FaultEntry], index: int, fault: FaultEntry) -> list[FaultEntry]:
    return [*faults[:index], fault, *faults[index + 1:]]


def create_fault(faults: list[FaultEntry], fault: FaultEntry) -> list[FaultEntry]:
    """Add a freshly recorded fault at version 1."""
    created = fault.model_copy(
        update={
            "current_version": 1,
            "version_history": [new_version(1, "create", snapshot(fault), fault.device_name, fault.device_id)],
            "marked_for_deletion": False,
        }
    )
    return [*faults, created]


def update_fault_with_history(
    faults: list[FaultEntry],
    fault_id: str,
    updates: dict[str, Any],
    device_name: str,
    device_id: str,
    description: Optional[str] = None,
) -> Optional[list[FaultEntry]]:
    index = _index_of(faults, fault_id)
    if index is None:
        return None
    old = faults[index]
    if old.marked_for_deletion:
        return None

    unknown = set(updates) - EDITABLE_FIELDS
    if unknown:
        raise ValueError(f"Fields cannot be edited: {', '.join(sorted(unknown))}")

    edited = old.model_copy(update=updates)
    number = old.current_version + 1
    record = new_version(number, "edit", snapshot(edited), device_name, device_id, description)
    edited = edited.model_copy(
        update={"current_version": number, "version_history": append_version(old.version_history, record)}
    )
    return _replace(faults, index, edited)


def restore_fault_version(
    faults: list[FaultEntry],
    fault_id: str,
    version_number: int,
    device_name: str,
    device_id: str,
) -> Optional[list[FaultEntry]]:
    index = _index_of(faults, fault_id)
    if index is None:
        return None
    old = faults[index]
    if old.marked_for_deletion:
        return None

    target = next((v for v in old.version_history if v.version == version_number), None)
    if target is None:
        return None

    try:
        restored_from = FaultEntry.model_validate({**snapshot(old), **target.data})
    except pydantic.ValidationError:
        log.warning("fault_version_unrestorable", extra={"fault_id": fault_id, "version": version_number})
        return None

    number = old.current_version + 1
    record = new_version(
        number, "restore", dict(target.data), device_name, device_id, f"Restored to version {version_number}"
    )
    restored = old.model_copy(
        update={
            **{name: getattr(restored_from, name) for name in RESTORABLE_FIELDS},
            "current_version": number,
            "version_history": append_version(old.version_history, record),
        }
    )
    return _replace(faults, index, restored)


def mark_fault_for_deletion(
    faults: list[FaultEntry], fault_id: str, device_name: str, device_id: str
) -> Optional[list[FaultEntry]]:
    index = _index_of(faults, fault_id)
    if index is None:
        return None
    marked = faults[index].model_copy(
        update={
            "marked_for_deletion": True,
            "marked_for_deletion_at": _now_iso(),
            "marked_for_deletion_by": device_name,
            "marked_for_deletion_by_device_id": device_id,
        }
    )
    return _replace(faults, index, marked)


def reject_fault_deletion(
    faults: list[FaultEntry], fault_id: str, device_name: str, device_id: str
) -> Optional[list[FaultEntry]]:
    index = _index_of(faults, fault_id)
    if index is None:
        return None
    old = faults[index]
    number = old.current_version + 1
    record = new_version(
        number, "edit", snapshot(old), device_name, device_id, "Deletion rejected by Chief Judge"
    )
    kept = old.model_copy(
        update={
            "marked_for_deletion": False,
            "marked_for_deletion_at": None,
            "marked_for_deletion_by": None,
            "marked_for_deletion_by_device_id": None,
            "current_version": number,
            "version_history": append_version(old.version_history, record),
        }
    )
    return _replace(faults, index, kept)


def approve_fault_deletion(
    faults: list[FaultEntry], fault_id: str, device_name: str
) -> tuple[list[FaultEntry], Optional[FaultEntry]]:
    """Drop a fault marked for deletion; returns the list and the approved copy."""
    index = _index_of(faults, fault_id)
    if index is None or not faults[index].marked_for_deletion:
        return faults, None
    approved = faults[index].model_copy(
        update={"deletion_approved_at": _now_iso(), "deletion_approved_by": device_name}
    )
    return [f for f in faults if f.id != fault_id], approved


def mark_fault_synced(faults: list[FaultEntry], fault_id: str, synced_at: int) -> list[FaultEntry]:
    index = _index_of(faults, fault_id)
    if index is None:
        return faults
    return _replace(faults, index, faults[index].model_copy(update={"synced_at": synced_at}))


def _is_deleted(fault: FaultEntry, deleted: set[str]) -> bool:
    return fault.sync_key in deleted or fault.id in deleted


def _sort_key(fault: FaultEntry) -> datetime:
    ts = datetime.fromisoformat(fault.timestamp.replace("Z", "+00:00"))
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


def merge_faults_from_cloud(
    faults: list[FaultEntry],
    cloud_faults: Iterable[Any],
    deleted_ids: Iterable[str],
    local_device_id: str,
) -> tuple[list[FaultEntry], int]:
    """Fold another devices' faults into the local list.

    Returns the new list and how many faults were added or replaced.
    Applying the same cloud payload twice changes nothing the second time.
    """
    deleted = set(deleted_ids)
    by_key = {f.sync_key: f for f in faults}
    updated: dict[str, FaultEntry] = {}
    added: dict[str, FaultEntry] = {}

    for raw in cloud_faults:
        try:
            fault = FaultEntry.model_validate(raw)
        except pydantic.ValidationError:
            log.warning("cloud_fault_invalid", extra={"raw": str(raw)[:200]})
            continue
        if fault.device_id == local_device_id or _is_deleted(fault, deleted):
            continue

        existing = by_key.get(fault.sync_key)
        if existing is None:
            added[fault.sync_key] = fault
            by_key[fault.sync_key] = fault
        elif (
            fault.current_version > existing.current_version
            or fault.marked_for_deletion != existing.marked_for_deletion
        ):
            if fault.sync_key in added:
                added[fault.sync_key] = fault
            else:
                updated[fault.sync_key] = fault
            by_key[fault.sync_key] = fault

    if not added and not updated:
        return faults, 0

    merged = [updated.get(f.sync_key, f) for f in faults] + list(added.values())
    merged.sort(key=_sort_key)
    return merged, len(added) + len(updated)


def remove_deleted_cloud_faults(
    faults: list[FaultEntry], deleted_ids: Iterable[str]
) -> tuple[list[FaultEntry], int]:
    deleted = set(deleted_ids)
    kept = [f for f in faults if not _is_deleted(f, deleted)]
    return kept, len(faults) - len(kept)
