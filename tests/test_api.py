import json

import pytest
from fastapi.testclient import TestClient

from classtrack import capture, ledger
from classtrack.config import settings
from classtrack.errors import OracleUnavailable
from classtrack.main import app
from classtrack.models import AttendanceRecord, OracleVerdict
from classtrack.state import service
from classtrack.store import JsonSnapshotStore

from conftest import ALICE, BOB, CAPTURE, FRONT, LEFT, RIGHT, StubOracle


@pytest.fixture
def store(tmp_path, enrolled):
    store = JsonSnapshotStore(str(tmp_path / "data.json"))
    store.save(enrolled)
    return store


@pytest.fixture
def oracle():
    return StubOracle(OracleVerdict(match=True, confidence=0.92))


@pytest.fixture
def client(monkeypatch, store, oracle):
    monkeypatch.setattr(settings, "ENROLLMENT_PACING_SECONDS", 0.0)
    service.reset()
    service.store = store
    service.oracle = oracle
    capture.scan_sessions.clear()
    with TestClient(app) as client:
        yield client
    service.reset()
    capture.scan_sessions.clear()


def test_health(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_mark_attendance_records_and_persists(client, store):
    response = client.post("/attendance/mark", json={"image": CAPTURE, "class_id": "c1"})

    assert response.status_code == 200
    body = response.json()
    assert body["outcome"] == "present"
    assert body["student_id"] == ALICE
    assert body["degraded"] is False

    records = client.get("/classes/c1/attendance").json()
    assert [(r["student_id"], r["confidence"]) for r in records] == [(ALICE, 0.92)]
    assert store.load().attendance[0].student_id == ALICE


def test_second_capture_goes_to_next_student(client):
    client.post("/attendance/mark", json={"image": CAPTURE, "class_id": "c1"})
    second = client.post("/attendance/mark", json={"image": CAPTURE, "class_id": "c1"}).json()
    third = client.post("/attendance/mark", json={"image": CAPTURE, "class_id": "c1"}).json()

    assert second["student_id"] == BOB
    assert third["outcome"] == "no_eligible_subject"
    assert [r["class_id"] for r in client.get(f"/students/{BOB}/attendance").json()] == ["c1"]


def test_rejected_capture_leaves_ledger_alone(client, oracle):
    oracle.script = [OracleVerdict(match=True, confidence=0.4)]

    body = client.post("/attendance/mark", json={"image": CAPTURE, "class_id": "c1"}).json()

    assert body["outcome"] == "not_matched"
    assert client.get("/classes/c1/attendance").json() == []


def test_oracle_outage_is_reported_as_degraded(client, oracle):
    oracle.script = [OracleUnavailable("quota exceeded")]

    body = client.post("/attendance/mark", json={"image": CAPTURE, "class_id": "c1"}).json()

    assert body["degraded"] is True
    assert body["source"] == "fallback"
    assert body["outcome"] in ("present", "not_matched")


def test_mark_attendance_errors(client):
    assert client.post("/attendance/mark", json={"image": CAPTURE, "class_id": "zz"}).status_code == 404
    assert "zz" not in service.class_locks
    assert client.post("/attendance/mark", json={"image": " ", "class_id": "c1"}).status_code == 422
    response = client.post("/attendance/mark", json={"image": CAPTURE, "class_id": "c1", "scan_token": "nope"})
    assert response.status_code == 404


def test_signup_then_enroll(client):
    user = client.post("/users", json={"name": "Dana Reed", "email": "dana@school.com"}).json()
    assert user["role"] == "STUDENT"
    assert user["enrolled"] is False

    start = client.post(f"/enrollment/{user['id']}/start")
    assert start.status_code == 200
    assert start.json()["title"] == "Front View"

    progress = None
    for image in (FRONT, LEFT, RIGHT):
        progress = client.post(f"/enrollment/{user['id']}/capture", json={"image": image}).json()

    assert progress["complete"] is True
    assert progress["references"] == [FRONT, LEFT, RIGHT]
    assert client.get(f"/users/{user['id']}").json()["enrolled"] is True
    assert client.get(f"/enrollment/{user['id']}").status_code == 404


def test_cancelled_enrollment_changes_nothing(client):
    user = client.post("/users", json={"name": "Eli Park"}).json()
    client.post(f"/enrollment/{user['id']}/start")
    client.post(f"/enrollment/{user['id']}/capture", json={"image": FRONT})

    cancelled = client.delete(f"/enrollment/{user['id']}")

    assert cancelled.json()["state"] == "CANCELLED"
    assert client.get(f"/users/{user['id']}").json()["enrolled"] is False
    assert client.post(f"/enrollment/{user['id']}/capture", json={"image": LEFT}).status_code == 404


def test_reenrollment_requires_grant(client):
    assert client.post(f"/enrollment/{ALICE}/start").status_code == 403

    granted = client.post(f"/users/{ALICE}/reenroll", json={"allowed": True})
    assert granted.json()["reenroll_allowed"] is True
    assert client.post(f"/enrollment/{ALICE}/start").status_code == 200


def test_delete_user_keeps_their_records(client):
    client.post("/attendance/mark", json={"image": CAPTURE, "class_id": "c1"})

    assert client.delete(f"/users/{ALICE}").status_code == 200
    assert client.get(f"/users/{ALICE}").status_code == 404
    assert len(client.get(f"/students/{ALICE}/attendance").json()) == 1
    assert client.get("/stats").json()["students"] == 1


def test_stats(client):
    assert client.get("/stats").json() == {
        "students": 2,
        "teachers": 1,
        "admins": 1,
        "classes": 2,
        "records": 0,
    }


def test_scan_session_notifies_watchers(client):
    token = client.post("/scan/start", json={"class_id": "c1"}).json()["token"]
    assert client.get(f"/scan/validate/{token}").json()["valid"] is True

    with client.websocket_connect(f"/ws/scan/{token}") as ws:
        relayed = client.post(f"/scan/upload/{token}", json={"image": CAPTURE}).json()
        assert relayed["delivered"] == 1
        assert ws.receive_json()["type"] == "image_received"

        body = client.post("/attendance/mark", json={"image": CAPTURE, "class_id": "c1", "scan_token": token}).json()
        message = ws.receive_json()

    assert body["outcome"] == "present"
    assert message["type"] == "attendance_result"
    assert message["result"]["student_id"] == ALICE


def test_scan_token_bound_to_its_class(client):
    token = client.post("/scan/start", json={"class_id": "c1"}).json()["token"]

    response = client.post("/attendance/mark", json={"image": CAPTURE, "class_id": "c2", "scan_token": token})

    assert response.status_code == 400


def test_result_discarded_when_session_ends_mid_verification(client, oracle):
    token = client.post("/scan/start", json={"class_id": "c1"}).json()["token"]

    def end_session_then_match(captured, reference):
        capture.scan_sessions.pop(token, None)
        return OracleVerdict(match=True, confidence=0.99)

    oracle.compare = end_session_then_match

    response = client.post("/attendance/mark", json={"image": CAPTURE, "class_id": "c1", "scan_token": token})

    assert response.status_code == 410
    assert client.get("/classes/c1/attendance").json() == []


def test_busy_scan_session_rejects_second_capture(client):
    token = client.post("/scan/start", json={"class_id": "c1"}).json()["token"]
    capture.scan_sessions[token]["busy"] = True

    response = client.post("/attendance/mark", json={"image": CAPTURE, "class_id": "c1", "scan_token": token})

    assert response.status_code == 409


def test_ended_scan_session(client, oracle):
    token = client.post("/scan/start", json={"class_id": "c1"}).json()["token"]

    assert client.delete(f"/scan/session/{token}").json() == {"status": "ended"}
    assert oracle.cleared == 1
    assert client.get(f"/scan/validate/{token}").status_code == 404
    assert client.post("/scan/start", json={"class_id": "zz"}).status_code == 404


def test_record_written_during_verification_is_already_present(client, oracle):
    earlier = AttendanceRecord(student_id=ALICE, class_id="c1", confidence=0.81)

    def record_elsewhere_then_match(captured, reference):
        service.snapshot, _ = ledger.append(service.snapshot, earlier)
        return OracleVerdict(match=True, confidence=0.97)

    oracle.compare = record_elsewhere_then_match

    body = client.post("/attendance/mark", json={"image": CAPTURE, "class_id": "c1"}).json()

    assert body["outcome"] == "already_present"
    assert body["success"] is True
    assert body["record_id"] == earlier.id
    records = client.get("/classes/c1/attendance").json()
    assert [(r["id"], r["confidence"]) for r in records] == [(earlier.id, 0.81)]


def test_invalid_data_file_is_never_overwritten(tmp_path, oracle):
    path = tmp_path / "data.json"
    path.write_text(json.dumps({"users": [{"id": "9", "name": "Half", "enrolled_references": ["one"]}]}))
    original = path.read_text()

    service.reset()
    service.store = JsonSnapshotStore(str(path))
    service.oracle = oracle
    try:
        with TestClient(app) as client:
            assert service.store is None
            assert client.post("/users", json={"name": "Fay Lin"}).status_code == 201
    finally:
        service.reset()

    assert path.read_text() == original
