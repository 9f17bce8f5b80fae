"""Fault sync between one device and the server.

Every call here is best-effort: failures are logged and reported to the
session, never raised, so recording faults keeps working offline.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import pydantic

from . import fault_history
from .api_client import FAULTS_PATH, ApiClient
from .devices import now_ms
from .errors import HttpStatusError, Outcome, SyncError, ValidationError
from .local_store import FAULTS_SLICE, LocalPersistence
from .schemas import FaultEntry, GateAssignment
from .session import SyncSession

log = logging.getLogger(__name__)


class FaultSyncChannel:
    def __init__(
        self,
        api: ApiClient,
        session: SyncSession,
        persistence: Optional[LocalPersistence] = None,
    ) -> None:
        self.api = api
        self.session = session
        self.persistence = persistence

    def _faults_changed(self) -> None:
        if self.persistence is not None:
            self.persistence.set(FAULTS_SLICE, [f.to_wire() for f in self.session.faults])

    def _failed(self, action: str, error: SyncError) -> Outcome:
        log.warning("fault_sync_failed", extra={"action": action, "race": self.session.race_id, "error": str(error)})
        self.session.report_error(error)
        return Outcome.from_error(error)

    def _fetch_params(self) -> dict[str, Any]:
        s = self.session
        params = {"raceId": s.race_id, "deviceId": s.device_id, "deviceName": s.device_name}
        if s.is_gate_judge and s.gate_assignment:
            params.update(
                gateStart=str(s.gate_assignment[0]),
                gateEnd=str(s.gate_assignment[1]),
                isReady="true" if s.is_judge_ready else "false",
                firstGateColor=s.first_gate_color,
            )
        return params

    def fetch_cloud_faults(self) -> Outcome:
        """Pull, apply deletions, merge, and refresh other judges' gates.

        On success the outcome's value is how many local faults changed.
        """
        s = self.session
        if not s.can_sync:
            return Outcome.success(0)

        try:
            data = self.api.get(FAULTS_PATH, params=self._fetch_params())
        except HttpStatusError as exc:
            if exc.status_code == 401:
                # No credential yet; the entry sync prompts for one
                return Outcome.success(0)
            return self._failed("fetch", exc)
        except SyncError as exc:
            return self._failed("fetch", exc)

        if not isinstance(data, dict):
            return self._failed("fetch", ValidationError("Invalid fault data structure"))

        cloud_faults = data.get("faults") if isinstance(data.get("faults"), list) else []
        raw_deleted = data.get("deletedIds") if isinstance(data.get("deletedIds"), list) else []
        deleted_ids = [d for d in raw_deleted if isinstance(d, str)]

        changed = 0
        if deleted_ids:
            s.faults, removed = fault_history.remove_deleted_cloud_faults(s.faults, deleted_ids)
            changed += removed
        if cloud_faults:
            s.faults, merged = fault_history.merge_faults_from_cloud(
                s.faults, cloud_faults, deleted_ids, s.device_id
            )
            changed += merged
            if merged and s.on_faults_merged:
                s.on_faults_merged(merged)

        if isinstance(data.get("gateAssignments"), list):
            s.other_gate_assignments = self._other_assignments(data["gateAssignments"])
            for a in s.other_gate_assignments:
                s.connected.seen(a.device_id, a.device_name, a.last_seen)
            s.connected.prune()

        if changed:
            self._faults_changed()
        return Outcome.success(changed)

    def _other_assignments(self, raw: list[Any]) -> list[GateAssignment]:
        found = []
        for item in raw:
            try:
                assignment = GateAssignment.model_validate(item)
            except pydantic.ValidationError:
                continue
            if assignment.device_id != self.session.device_id:
                found.append(assignment)
        return found

    def send_fault_to_cloud(self, fault: FaultEntry) -> bool:
        s = self.session
        if not s.can_sync:
            return False
        payload = {
            "fault": fault.to_wire(),
            "deviceId": s.device_id,
            "deviceName": s.device_name,
            "gateRange": list(s.gate_assignment) if s.gate_assignment else None,
            "isReady": s.is_judge_ready,
            "firstGateColor": s.first_gate_color,
        }
        try:
            self.api.post(FAULTS_PATH, payload, params={"raceId": s.race_id})
        except SyncError as exc:
            self._failed("send", exc)
            return False

        s.faults = fault_history.mark_fault_synced(s.faults, fault.id, now_ms())
        self._faults_changed()
        s.reset_fast_polling()
        return True

    def delete_fault_from_cloud_api(
        self,
        fault_id: str,
        fault_device_id: Optional[str] = None,
        approved_by: Optional[str] = None,
    ) -> bool:
        """Ask the server to remove a fault. Only chief judges are allowed to."""
        s = self.session
        if not s.can_sync:
            return False
        payload = {
            "faultId": fault_id,
            "deviceId": fault_device_id or s.device_id,
            "deviceName": s.device_name,
            "approvedBy": approved_by or s.device_name,
        }
        try:
            self.api.delete(FAULTS_PATH, payload, params={"raceId": s.race_id})
        except SyncError as exc:
            self._failed("delete", exc)
            return False
        return True

    def push_local_faults(self) -> int:
        """Send this device's unsynced faults; returns how many went through."""
        s = self.session
        if not s.can_sync:
            return 0
        pending = [f for f in s.faults if f.device_id == s.device_id and not f.synced_at]
        return sum(1 for f in pending if self.send_fault_to_cloud(f))

    def get_other_gate_assignments(self) -> list[GateAssignment]:
        return self.session.other_gate_assignments

    def cleanup(self) -> None:
        self.session.clear()
