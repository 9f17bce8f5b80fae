import json

from racesync.devices import DEVICE_STALE_THRESHOLD_MS, DeviceRegistry

RACE = "devices-race"
KEY = f"race:{RACE}:devices"


class FakeClock:
    def __init__(self, now=1_000_000):
        self.now = now

    def __call__(self):
        return self.now


def test_heartbeat_writes_name_and_last_seen(redis_client):
    clock = FakeClock()
    registry = DeviceRegistry(redis_client, expiry_seconds=120, clock=clock)
    registry.record_heartbeat(RACE, "dev_a", "Start timer")
    stored = json.loads(redis_client.hget(KEY, "dev_a"))
    assert stored == {"name": "Start timer", "lastSeen": clock.now}
    assert 0 < redis_client.ttl(KEY) <= 120


def test_heartbeat_without_device_id_is_ignored(redis_client):
    DeviceRegistry(redis_client).record_heartbeat(RACE, "", "Nobody")
    assert not redis_client.exists(KEY)


def test_count_active_prunes_stale_devices(redis_client):
    clock = FakeClock()
    registry = DeviceRegistry(redis_client, clock=clock)
    registry.record_heartbeat(RACE, "old", "Old")
    clock.now += DEVICE_STALE_THRESHOLD_MS + 1
    registry.record_heartbeat(RACE, "fresh", "Fresh")

    assert registry.count_active(RACE) == 1
    assert set(redis_client.hkeys(KEY)) == {"fresh"}


def test_heartbeat_exactly_at_threshold_still_counts(redis_client):
    clock = FakeClock()
    registry = DeviceRegistry(redis_client, clock=clock)
    registry.record_heartbeat(RACE, "edge", "Edge")
    assert registry.count_active(RACE, now=clock.now + DEVICE_STALE_THRESHOLD_MS) == 1
    assert registry.count_active(RACE, now=clock.now + DEVICE_STALE_THRESHOLD_MS + 1) == 0


def test_corrupt_device_entry_is_dropped(redis_client):
    registry = DeviceRegistry(redis_client, clock=FakeClock())
    redis_client.hset(KEY, "broken", "{oops")
    redis_client.hset(KEY, "no-last-seen", json.dumps({"name": "x"}))
    assert registry.count_active(RACE) == 0
    assert redis_client.hlen(KEY) == 0


def test_count_active_on_unknown_race(redis_client):
    assert DeviceRegistry(redis_client).count_active("nothing-here") == 0
