import threading

from racesync.errors import NetworkError, Outcome
from racesync.session import (
    CONNECTED_DEVICE_STALE_MS,
    POLL_INTERVAL_ERROR,
    POLL_INTERVAL_NORMAL,
    ConnectedDevices,
    PollingSchedule,
    SyncSession,
    run_polling,
)


def test_interval_stays_fast_while_changes_arrive():
    schedule = PollingSchedule()
    for _ in range(20):
        assert schedule.record(True, has_changes=True) == POLL_INTERVAL_NORMAL


def test_idle_backoff_climbs_and_caps():
    schedule = PollingSchedule()
    seen = [schedule.record(True) for _ in range(12)]
    assert seen[:5] == [POLL_INTERVAL_NORMAL] * 5
    assert seen[5:10] == [20.0, 30.0, 45.0, 60.0, 60.0]
    assert seen[-1] == 60.0

    assert schedule.record(True, has_changes=True) == POLL_INTERVAL_NORMAL


def test_reset_fast_drops_idle_level():
    schedule = PollingSchedule()
    for _ in range(8):
        schedule.record(True)
    schedule.reset_fast()
    assert schedule.interval == POLL_INTERVAL_NORMAL


def test_error_interval_after_repeated_failures():
    schedule = PollingSchedule()
    assert schedule.record(False) == POLL_INTERVAL_NORMAL
    assert schedule.record(False) == POLL_INTERVAL_NORMAL
    assert schedule.record(False) == POLL_INTERVAL_ERROR
    assert schedule.record(True) == POLL_INTERVAL_NORMAL


def test_connected_devices_prune():
    now = 10_000_000
    devices = ConnectedDevices(clock=lambda: now)
    devices.seen("a", "Start", now - CONNECTED_DEVICE_STALE_MS)
    devices.seen("b", "Finish", now - CONNECTED_DEVICE_STALE_MS - 1)
    devices.seen("", "ignored")
    assert devices.prune() == ["b"]
    assert "a" in devices and len(devices) == 1
    assert devices.get("a").name == "Start"


def test_session_defaults():
    s = SyncSession()
    assert s.device_id.startswith("dev_")
    assert not s.can_sync
    assert SyncSession(race_id="r").can_sync
    assert not SyncSession(race_id="r", sync_enabled=False).can_sync
    assert SyncSession(role="gateJudge").is_gate_judge
    assert SyncSession().device_id != s.device_id


def test_report_error_reaches_callback():
    errors = []
    s = SyncSession(on_sync_error=errors.append)
    s.report_error(NetworkError("offline"))
    assert str(errors[0]) == "offline"


def test_run_polling_feeds_schedule():
    stop = threading.Event()
    outcomes = [Outcome.success(3), Outcome.from_error(NetworkError("x")), Outcome.success(0)]
    schedule = PollingSchedule(base_interval=0.0, error_interval=0.0, intervals=(0.0,))

    def poll():
        outcome = outcomes.pop(0)
        if not outcomes:
            stop.set()
        return outcome

    run_polling(poll, schedule, stop)
    assert outcomes == []
    assert schedule.consecutive_no_changes == 1
    assert schedule.consecutive_errors == 0
