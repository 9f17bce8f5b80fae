"""Per-race device state: who we are, what we hold, and how often we poll."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Callable, Optional

from .devices import now_ms
from .entries import generate_device_id
from .errors import Outcome, SyncError
from .schemas import CrossDeviceDuplicate, Entry, FaultEntry, GateAssignment, Role

# How long a device stays in the connected list after we last heard of it.
# Separate from the server's 30s heartbeat freshness.
CONNECTED_DEVICE_STALE_MS = 120_000

POLL_INTERVAL_NORMAL = 15.0
POLL_INTERVAL_ERROR = 30.0
POLL_INTERVALS_IDLE = (15.0, 20.0, 30.0, 45.0, 60.0)
IDLE_THRESHOLD = 6
ERROR_THRESHOLD = 2


@dataclass
class ConnectedDevice:
    name: str
    last_seen: int


class ConnectedDevices:
    def __init__(self, stale_ms: int = CONNECTED_DEVICE_STALE_MS, clock: Callable[[], int] = now_ms) -> None:
        self.stale_ms = stale_ms
        self.clock = clock
        self._devices: dict[str, ConnectedDevice] = {}

    def seen(self, device_id: str, name: str, last_seen: Optional[int] = None) -> None:
        if device_id:
            self._devices[device_id] = ConnectedDevice(name=name, last_seen=self.clock() if last_seen is None else last_seen)

    def prune(self, now: Optional[int] = None) -> list[str]:
        now = self.clock() if now is None else now
        stale = [d for d, info in self._devices.items() if now - info.last_seen > self.stale_ms]
        for device_id in stale:
            del self._devices[device_id]
        return stale

    def get(self, device_id: str) -> Optional[ConnectedDevice]:
        return self._devices.get(device_id)

    def __contains__(self, device_id: object) -> bool:
        return device_id in self._devices

    def __len__(self) -> int:
        return len(self._devices)

    def clear(self) -> None:
        self._devices.clear()


@dataclass
class RaceDeleted:
    race_id: str
    deleted_at: Optional[int]
    message: str


@dataclass
class SyncSession:
    """Everything one device knows about one race.

    Create one per race context; nothing here is shared between sessions.
    """
    race_id: str = ""
    device_id: str = field(default_factory=generate_device_id)
    device_name: str = ""
    role: Role = "timer"
    gate_assignment: Optional[tuple[int, int]] = None
    is_judge_ready: bool = False
    first_gate_color: str = "red"
    sync_enabled: bool = True

    entries: list[Entry] = field(default_factory=list)
    faults: list[FaultEntry] = field(default_factory=list)
    other_gate_assignments: list[GateAssignment] = field(default_factory=list)
    connected: ConnectedDevices = field(default_factory=ConnectedDevices)

    # Last values reported by the server
    cloud_device_count: int = 0
    cloud_highest_bib: int = 0
    last_sync_timestamp: int = 0

    on_reset_fast_polling: Optional[Callable[[], None]] = None
    on_faults_merged: Optional[Callable[[int], None]] = None
    on_sync_error: Optional[Callable[[SyncError], None]] = None
    on_entries_merged: Optional[Callable[[int], None]] = None
    on_cross_device_duplicate: Optional[Callable[[CrossDeviceDuplicate], None]] = None
    on_race_deleted: Optional[Callable[[RaceDeleted], None]] = None

    @property
    def can_sync(self) -> bool:
        return self.sync_enabled and bool(self.race_id)

    @property
    def is_gate_judge(self) -> bool:
        return self.role == "gateJudge"

    def reset_fast_polling(self) -> None:
        if self.on_reset_fast_polling:
            self.on_reset_fast_polling()

    def report_error(self, error: SyncError) -> None:
        if self.on_sync_error:
            self.on_sync_error(error)

    def clear(self) -> None:
        self.other_gate_assignments = []
        self.connected.clear()
        self.on_reset_fast_polling = None
        self.on_faults_merged = None
        self.on_sync_error = None
        self.on_entries_merged = None
        self.on_cross_device_duplicate = None
        self.on_race_deleted = None
        self.last_sync_timestamp = 0


class PollingSchedule:
    """Adaptive poll interval: fast while things change, slower when idle."""

    def __init__(
        self,
        intervals: tuple[float, ...] = POLL_INTERVALS_IDLE,
        base_interval: float = POLL_INTERVAL_NORMAL,
        idle_threshold: int = IDLE_THRESHOLD,
        error_interval: float = POLL_INTERVAL_ERROR,
    ) -> None:
        self.intervals = intervals
        self.base_interval = base_interval
        self.idle_threshold = idle_threshold
        self.error_interval = error_interval
        self.consecutive_errors = 0
        self.consecutive_no_changes = 0
        self.idle_level = 0

    @property
    def interval(self) -> float:
        if self.consecutive_errors > ERROR_THRESHOLD:
            return self.error_interval
        if self.consecutive_no_changes < self.idle_threshold:
            return self.base_interval
        return self.intervals[self.idle_level]

    def record(self, success: bool, has_changes: bool = False) -> float:
        """Account for one poll and return the interval before the next."""
        if not success:
            self.consecutive_errors += 1
            return self.interval

        self.consecutive_errors = 0
        if has_changes:
            self.consecutive_no_changes = 0
            self.idle_level = 0
        else:
            self.consecutive_no_changes += 1
            if self.consecutive_no_changes >= self.idle_threshold:
                self.idle_level = min(self.idle_level + 1, len(self.intervals) - 1)
        return self.interval

    def reset_fast(self) -> None:
        self.consecutive_no_changes = 0
        self.idle_level = 0


def run_polling(poll: Callable[[], Outcome], schedule: PollingSchedule, stop: threading.Event) -> None:
    """Call ``poll`` until ``stop`` is set, waiting ``schedule.interval`` between calls.

    ``poll`` reports through its :class:`Outcome`; a truthy value on success
    counts as a change.
    """
    while not stop.is_set():
        outcome = poll()
        schedule.record(outcome.ok, bool(outcome.ok and outcome.value))
        stop.wait(schedule.interval)
