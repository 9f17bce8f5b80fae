import json

import pytest

from racesync.errors import NotFoundError, ValidationError


def put_race(client, race_id, entries, last_updated):
    client.set(f"race:{race_id}", json.dumps({"entries": entries, "lastUpdated": last_updated}))


def test_list_races_skips_derived_keys_and_sorts_newest_first(redis_client, backend):
    put_race(redis_client, "a", [{"id": "e1"}, {"id": "e2"}], 1000)
    put_race(redis_client, "b", [{"id": "e1"}], 2000)
    redis_client.hset("race:a:devices", "dev", json.dumps({"name": "x", "lastSeen": 0}))
    redis_client.set("race:a:highestBib", "12")

    races = backend.races.list_races()
    assert [(r.race_id, r.entry_count) for r in races] == [("b", 1), ("a", 2)]


def test_race_ids_that_start_like_a_suffix_are_listed(redis_client, backend):
    put_race(redis_client, "deleted-heats", [], 2)
    put_race(redis_client, "faults_cup", [], 1)
    redis_client.set("race:faults_cup:deleted", json.dumps({"deletedAt": 1}))

    assert [r.race_id for r in backend.races.list_races()] == ["deleted-heats", "faults_cup"]


def test_list_races_puts_never_updated_last_and_skips_corrupt(redis_client, backend):
    put_race(redis_client, "fresh", [], 500)
    put_race(redis_client, "never", [], None)
    redis_client.set("race:broken", "{not json")

    assert [r.race_id for r in backend.races.list_races()] == ["fresh", "never"]


def test_list_races_counts_active_devices(redis_client, backend):
    put_race(redis_client, "busy", [], 1)
    backend.devices.record_heartbeat("busy", "dev_1", "One")
    backend.devices.record_heartbeat("busy", "dev_2", "Two")
    assert backend.races.list_races()[0].device_count == 2


def test_delete_race_writes_tombstone_and_removes_keys(redis_client, backend):
    put_race(redis_client, "gone", [{"id": "e1"}], 1)
    redis_client.set("race:gone:highestBib", "3")
    redis_client.set("race:gone:faults", json.dumps({"faults": [], "lastUpdated": None}))

    assert backend.races.delete_race("gone") == "gone"
    assert backend.races.is_deleted("gone")
    assert not redis_client.exists("race:gone", "race:gone:highestBib", "race:gone:faults")
    assert 0 < redis_client.ttl("race:gone:deleted") <= 300


def test_delete_race_finds_mixed_case_keys(redis_client, backend):
    put_race(redis_client, "MixedCase", [], 1)
    assert backend.races.delete_race("MixedCase") == "MixedCase"
    assert not redis_client.exists("race:MixedCase")
    assert backend.races.is_deleted("mixedcase")


def test_delete_race_missing(backend):
    with pytest.raises(NotFoundError):
        backend.races.delete_race("nope")
    with pytest.raises(ValidationError):
        backend.races.delete_race("   ")


def test_tombstone_wins_over_leftover_document(redis_client, backend):
    put_race(redis_client, "zombie", [{"id": "e1"}], 1)
    redis_client.set("race:zombie:deleted", json.dumps({"deletedAt": 123, "message": "Race deleted by administrator"}))

    tombstone = backend.races.get_tombstone("zombie")
    assert tombstone.deleted_at == 123
    assert backend.races.exists("zombie")
    assert backend.races.is_deleted("zombie")


def test_delete_all(redis_client, backend):
    put_race(redis_client, "one", [], 1)
    put_race(redis_client, "two", [], 2)
    results = backend.races.delete_all()
    assert sorted(r["raceId"] for r in results) == ["one", "two"]
    assert all(r["success"] for r in results)
    assert backend.races.list_races() == []
