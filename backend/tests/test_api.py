import time

import pytest

from racesync.auth import generate_token

RACE = "api-race"


def entry_body(entry_id="e1", bib="7", device="dev_a"):
    return {
        "entry": {"id": entry_id, "bib": bib, "point": "S", "run": 1, "timestamp": "2024-02-01T10:00:00.000Z"},
        "deviceId": device,
        "deviceName": "Start",
    }


def fault_body(fault_id="f1", device="dev_j"):
    return {
        "fault": {
            "id": fault_id,
            "bib": "7",
            "run": 1,
            "gateNumber": 3,
            "faultType": "STR",
            "timestamp": "2024-02-01T10:05:00.000Z",
            "gateRange": [1, 6],
        },
        "deviceId": device,
        "deviceName": "Judge",
        "gateRange": [1, 6],
        "isReady": True,
    }


def token_for(api, pin, role=None):
    body = {"pin": pin}
    if role:
        body["role"] = role
    res = api.post("/api/v1/auth/token", json=body)
    assert res.status_code == 200, res.text
    return res.json()["token"]


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def tokens(api):
    return {
        "chiefJudge": token_for(api, "1234", "chiefJudge"),
        "timer": token_for(api, "5678"),
        "gateJudge": token_for(api, "5678", "gateJudge"),
    }


def test_health(api):
    res = api.get("/health")
    assert res.status_code == 200
    assert res.json()["status"] == "ok"


def test_open_sync_before_any_pin(api):
    res = api.post("/api/v1/sync", params={"raceId": RACE}, json=entry_body())
    assert res.status_code == 200
    assert res.json()["success"] is True

    res = api.get("/api/v1/sync", params={"raceId": RACE, "deviceId": "dev_b"})
    body = res.json()
    assert [e["id"] for e in body["entries"]] == ["e1"]
    assert body["deviceCount"] == 2


def test_race_id_is_required_and_validated(api):
    assert api.get("/api/v1/sync").json() == {"error": "raceId is required"}
    res = api.get("/api/v1/sync", params={"raceId": "bad id!"})
    assert res.status_code == 400
    assert "Invalid raceId format" in res.json()["error"]


def test_race_id_is_case_insensitive(api):
    api.post("/api/v1/sync", params={"raceId": "Slalom-A"}, json=entry_body())
    res = api.get("/api/v1/sync", params={"raceId": "slalom-a", "checkOnly": "true"})
    assert res.json() == {"exists": True, "entryCount": 1}


def test_bad_entry_is_400(api):
    res = api.post("/api/v1/sync", params={"raceId": RACE}, json={"entry": {"id": "x"}})
    assert res.status_code == 400
    assert res.json()["error"] == "Invalid entry format"


def test_pin_required_once_configured(api, tokens):
    res = api.get("/api/v1/sync", params={"raceId": RACE})
    assert res.status_code == 401
    assert "Authorization required" in res.json()["error"]

    res = api.get("/api/v1/sync", params={"raceId": RACE}, headers=bearer(tokens["timer"]))
    assert res.status_code == 200

    res = api.get("/api/v1/sync", params={"raceId": RACE}, headers={"Authorization": tokens["timer"]})
    assert res.status_code == 401


def test_wrong_pin_rejected(api, tokens):
    res = api.post("/api/v1/auth/token", json={"pin": "0000"})
    assert res.status_code == 401
    assert res.json()["error"] == "Invalid PIN"

    res = api.post("/api/v1/auth/token", json={"pin": "5678", "role": "chiefJudge"})
    assert res.json()["error"] == "Invalid Chief Judge PIN"

    res = api.post("/api/v1/auth/token", json={"pin": "12a4"})
    assert res.status_code == 400


def test_expired_token_flagged(api, cfg, tokens):
    stale = generate_token({"role": "timer"}, cfg=cfg, now=int(time.time()) - 2 * cfg.RACESYNC_JWT_EXPIRY_SECONDS)
    res = api.get("/api/v1/sync", params={"raceId": RACE}, headers=bearer(stale))
    assert res.status_code == 401
    assert res.json()["expired"] is True


def test_token_endpoint_needs_secret(redis_client):
    from fastapi.testclient import TestClient

    from racesync.main import create_app
    from racesync.settings import Settings

    client = TestClient(create_app(redis_client, Settings(RACESYNC_JWT_SECRET="")))
    res = client.post("/api/v1/auth/token", json={"pin": "1234"})
    assert res.status_code == 500
    assert res.json() == {"error": "Server configuration error"}


def test_fault_write_needs_credential(api):
    res = api.post("/api/v1/faults", params={"raceId": RACE}, json=fault_body())
    assert res.status_code == 401
    assert res.json()["error"] == "Authentication required to write data"


def test_fault_round_trip_with_gate_assignment(api, tokens):
    res = api.post("/api/v1/faults", params={"raceId": RACE}, json=fault_body(), headers=bearer(tokens["gateJudge"]))
    assert res.status_code == 200
    assert res.json()["isDuplicate"] is False

    res = api.get("/api/v1/faults", params={"raceId": RACE}, headers=bearer(tokens["timer"]))
    body = res.json()
    assert [f["id"] for f in body["faults"]] == ["f1"]
    (assignment,) = body["gateAssignments"]
    assert assignment["deviceId"] == "dev_j"
    assert (assignment["gateStart"], assignment["gateEnd"]) == (1, 6)
    assert assignment["isReady"] is True


@pytest.mark.parametrize("role,status", [("timer", 403), ("gateJudge", 403), ("chiefJudge", 200)])
def test_only_chief_judge_deletes_faults(api, tokens, role, status):
    api.post("/api/v1/faults", params={"raceId": RACE}, json=fault_body(), headers=bearer(tokens["gateJudge"]))
    res = api.request(
        "DELETE",
        "/api/v1/faults",
        params={"raceId": RACE},
        json={"faultId": "f1", "deviceId": "dev_j", "approvedBy": "Chief"},
        headers=bearer(tokens[role]),
    )
    assert res.status_code == status
    if status == 403:
        assert res.json()["error"] == "Fault deletion requires Chief Judge role"
    else:
        faults = api.get("/api/v1/faults", params={"raceId": RACE}, headers=bearer(tokens["timer"])).json()
        assert faults["faults"] == []
        assert faults["deletedIds"] == ["f1:dev_j"]


def test_delete_entry(api):
    api.post("/api/v1/sync", params={"raceId": RACE}, json=entry_body())
    res = api.request("DELETE", "/api/v1/sync", params={"raceId": RACE}, json={"entryId": "e1", "deviceId": "dev_a"})
    assert res.json()["deleted"] is True
    snapshot = api.get("/api/v1/sync", params={"raceId": RACE}).json()
    assert snapshot["deletedIds"] == ["e1:dev_a"]


def test_race_admin(api, tokens):
    chief = bearer(tokens["chiefJudge"])
    for race in ("race-one", "race-two"):
        api.post("/api/v1/sync", params={"raceId": race}, json=entry_body(), headers=chief)

    listed = api.get("/api/v1/admin/races", headers=bearer(tokens["timer"])).json()["races"]
    assert {r["raceId"] for r in listed} == {"race-one", "race-two"}

    res = api.delete("/api/v1/admin/races", params={"raceId": "race-one"}, headers=bearer(tokens["timer"]))
    assert res.status_code == 403

    res = api.delete("/api/v1/admin/races", params={"raceId": "race-one"}, headers=chief)
    assert res.json() == {"success": True, "raceId": "race-one"}

    gone = api.get("/api/v1/sync", params={"raceId": "race-one"}, headers=chief).json()
    assert gone["deleted"] is True
    assert gone["message"] == "Race deleted by administrator"

    assert api.delete("/api/v1/admin/races", params={"raceId": "nope"}, headers=chief).status_code == 404
    assert api.delete("/api/v1/admin/races", headers=chief).status_code == 400


def test_delete_all_races(api, tokens):
    chief = bearer(tokens["chiefJudge"])
    for race in ("r1", "r2", "r3"):
        api.post("/api/v1/sync", params={"raceId": race}, json=entry_body(), headers=chief)
    body = api.delete("/api/v1/admin/races", params={"deleteAll": "true"}, headers=chief).json()
    assert body["deleted"] == body["total"] == 3
    assert api.get("/api/v1/admin/races", headers=chief).json() == {"races": []}


def test_store_outage_is_503(api, redis_client, monkeypatch):
    import redis

    def down(*args, **kwargs):
        raise redis.exceptions.ConnectionError("connection refused")

    monkeypatch.setattr(redis_client, "get", down)
    res = api.get("/api/v1/sync", params={"raceId": RACE})
    assert res.status_code == 503
