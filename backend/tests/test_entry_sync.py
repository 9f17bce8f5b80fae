import json

import httpx
import pytest

from racesync.api_client import ApiClient
from racesync.db import make_engine
from racesync.entry_sync import EntrySyncChannel
from racesync.errors import OutcomeKind
from racesync.local_store import ENTRIES_SLICE, FAULTS_SLICE, LocalPersistence
from racesync.schemas import Entry, FaultEntry
from racesync.session import SyncSession


def cloud_entry(entry_id="e1", device="dev_other", bib="042", point="S", **kw):
    data = {
        "id": entry_id,
        "bib": bib,
        "point": point,
        "run": 1,
        "timestamp": "2024-02-01T10:00:00.000Z",
        "deviceId": device,
        "deviceName": "Start B",
    }
    data.update(kw)
    return data


def respond(status, body):
    def handler(request: httpx.Request) -> httpx.Response:
        handler.requests.append(request)
        return httpx.Response(status, json=body)
    handler.requests = []
    return handler


@pytest.fixture
def persistence():
    store = LocalPersistence(engine=make_engine("sqlite://"), delay=60.0)
    yield store
    store.engine.dispose()


def make_channel(handler, persistence=None, **session_kw):
    session_kw.setdefault("race_id", "race-1")
    session_kw.setdefault("device_id", "dev_me")
    session_kw.setdefault("device_name", "Finish")
    session = SyncSession(**session_kw)
    api = ApiClient("http://sync.test", transport=httpx.MockTransport(handler), token="tok")
    return EntrySyncChannel(api, session, persistence), session


def own_entry(entry_id="mine", **kw):
    return Entry(
        id=entry_id,
        bib="007",
        point="F",
        run=1,
        timestamp="2024-02-01T10:02:00.000Z",
        device_id="dev_me",
        device_name="Finish",
        **kw,
    )

# ---------------------------
# Fetch
# ---------------------------

def test_fetch_merges_counts_and_persists(persistence):
    merged = []
    handler = respond(
        200,
        {
            "entries": [
                cloud_entry("e2", timestamp="2024-02-01T10:05:00.000Z"),
                cloud_entry("e1", bib="041"),
                cloud_entry("mine", device="dev_me"),
                {"id": "broken"},
            ],
            "deletedIds": [],
            "deviceCount": 3,
            "highestBib": 42,
            "lastUpdated": 1234,
        },
    )
    channel, session = make_channel(handler, persistence, on_entries_merged=merged.append)

    outcome = channel.fetch_cloud_entries()
    assert outcome.ok and outcome.value == 2
    assert [e.id for e in session.entries] == ["e1", "e2"]
    assert merged == [2]
    assert (session.cloud_device_count, session.cloud_highest_bib, session.last_sync_timestamp) == (3, 42, 1234)

    params = handler.requests[0].url.params
    assert (params["raceId"], params["deviceId"], params["deviceName"]) == ("race-1", "dev_me", "Finish")

    persistence.flush()
    assert [e["id"] for e in persistence.get(ENTRIES_SLICE)] == ["e1", "e2"]

    assert channel.fetch_cloud_entries().value == 0
    assert merged == [2]


def test_fetch_keeps_both_punches_of_the_same_event_and_reports_it():
    dups = []
    handler = respond(200, {"entries": [cloud_entry("e9", bib="007", point="F")], "deletedIds": []})
    channel, session = make_channel(handler, on_cross_device_duplicate=dups.append)
    session.entries = [own_entry()]

    assert channel.fetch_cloud_entries().value == 1
    assert len(session.entries) == 2
    assert dups[0].device_name == "Finish"


def test_fetch_applies_deletions_and_skips_junk_ids():
    handler = respond(200, {"entries": [cloud_entry("e1")], "deletedIds": ["e1:dev_other", "mine", 5, ""]})
    channel, session = make_channel(handler)
    session.entries = [own_entry(), Entry.model_validate(cloud_entry("e1")), own_entry("kept")]

    outcome = channel.fetch_cloud_entries()
    assert outcome.value == 2
    assert [e.id for e in session.entries] == ["kept"]


def test_deleted_race_clears_local_state(persistence):
    notices = []
    handler = respond(200, {"deleted": True, "deletedAt": 99, "message": "Race deleted by administrator"})
    channel, session = make_channel(handler, persistence, on_race_deleted=notices.append)
    session.entries = [own_entry()]
    session.faults = [
        FaultEntry(
            id="f1", bib="007", run=1, gate_number=3, fault_type="MG",
            timestamp="2024-02-01T10:03:00.000Z", device_id="dev_me", gate_range=(1, 5),
        )
    ]
    persistence.set(ENTRIES_SLICE, [own_entry().to_wire()])
    persistence.flush()

    outcome = channel.fetch_cloud_entries()
    assert outcome.kind is OutcomeKind.NOT_FOUND
    assert session.entries == [] and session.faults == []
    assert notices[0].race_id == "race-1" and notices[0].deleted_at == 99

    persistence.flush()
    reloaded = LocalPersistence(engine=persistence.engine, delay=60.0)
    assert reloaded.get(ENTRIES_SLICE) == []
    assert reloaded.get(FAULTS_SLICE) == []


def test_expired_token_is_dropped():
    errors = []
    handler = respond(401, {"error": "Token expired. Please re-authenticate.", "expired": True})
    channel, _ = make_channel(handler, on_sync_error=errors.append)

    outcome = channel.fetch_cloud_entries()
    assert outcome.kind is OutcomeKind.AUTH
    assert channel.api.token is None
    assert errors[0].expired is True


def test_fetch_failures_do_not_raise():
    def offline(request):
        raise httpx.ConnectError("no route")

    channel, session = make_channel(offline)
    session.entries = [own_entry()]
    assert channel.fetch_cloud_entries().kind is OutcomeKind.TRANSPORT
    assert [e.id for e in session.entries] == ["mine"]

    channel, _ = make_channel(respond(200, ["nope"]))
    assert channel.fetch_cloud_entries().kind is OutcomeKind.VALIDATION

# ---------------------------
# Push, delete, record
# ---------------------------

def test_send_marks_synced_and_reports_counters():
    dups, resets = [], []
    handler = respond(
        200,
        {
            "success": True,
            "deviceCount": 2,
            "highestBib": 7,
            "crossDeviceDuplicate": {"bib": "007", "point": "F", "run": 1, "deviceName": "Finish B", "timestamp": "2024-02-01T10:02:01.000Z"},
        },
    )
    channel, session = make_channel(
        handler, on_cross_device_duplicate=dups.append, on_reset_fast_polling=lambda: resets.append(1)
    )
    session.entries = [own_entry()]

    assert channel.send_entry_to_cloud(session.entries[0]) is True
    assert session.entries[0].synced_at
    assert (session.cloud_device_count, session.cloud_highest_bib) == (2, 7)
    assert dups[0].device_name == "Finish B"
    assert resets == [1]
    body = json.loads(handler.requests[0].content)
    assert body["entry"]["id"] == "mine" and body["deviceId"] == "dev_me"
    assert handler.requests[0].url.params["raceId"] == "race-1"


def test_send_into_deleted_race_clears_it():
    notices = []
    handler = respond(200, {"deleted": True, "deletedAt": 5, "message": "Race deleted by administrator"})
    channel, session = make_channel(handler, on_race_deleted=notices.append)
    session.entries = [own_entry()]
    assert channel.send_entry_to_cloud(session.entries[0]) is False
    assert session.entries == []
    assert len(notices) == 1


def test_send_failure_leaves_entry_unsynced():
    channel, session = make_channel(respond(503, {"error": "Database connection failed. Please try again."}))
    session.entries = [own_entry()]
    assert channel.send_entry_to_cloud(session.entries[0]) is False
    assert session.entries[0].synced_at is None


def test_push_only_sends_own_unsynced_entries():
    handler = respond(200, {"success": True})
    channel, session = make_channel(handler)
    session.entries = [
        own_entry("pending"),
        own_entry("done", synced_at=10),
        Entry.model_validate(cloud_entry("theirs")),
    ]
    assert channel.push_local_entries() == 1
    assert [json.loads(r.content)["entry"]["id"] for r in handler.requests] == ["pending"]


def test_delete_scopes_to_entry_owner():
    handler = respond(200, {"success": True, "deleted": True})
    channel, _ = make_channel(handler)
    assert channel.delete_entry_from_cloud("e1", "dev_other") is True
    request = handler.requests[0]
    assert request.method == "DELETE"
    assert json.loads(request.content) == {"entryId": "e1", "deviceId": "dev_other", "deviceName": "Finish"}


def test_record_entry_is_local_first(persistence):
    def offline(request):
        raise httpx.ConnectError("no route")

    channel, session = make_channel(offline, persistence)
    session.entries = [own_entry()]

    recorded = channel.record_entry("7", "F")
    assert recorded.entry.bib == "007"
    assert recorded.duplicate is True
    assert recorded.synced is False
    assert session.entries[-1] == recorded.entry

    persistence.flush()
    assert [e["id"] for e in persistence.get(ENTRIES_SLICE)] == ["mine", recorded.entry.id]


def test_restore_reads_persisted_entries(persistence):
    persistence.set(ENTRIES_SLICE, [own_entry().to_wire(), {"id": "bad"}])
    channel, session = make_channel(respond(200, {}), persistence)
    assert channel.restore() == 1
    assert session.entries == [own_entry()]


def test_nothing_is_sent_without_a_race():
    handler = respond(200, {})
    channel, session = make_channel(handler, race_id="")
    assert channel.fetch_cloud_entries().value == 0
    assert channel.push_local_entries() == 0
    assert channel.delete_entry_from_cloud("e1") is False
    assert handler.requests == []
