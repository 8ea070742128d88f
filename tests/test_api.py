"""Tests for REST API endpoints."""

from datetime import UTC, datetime

from app.models.enums import ChecklistPhase, NurseDocPhase
from app.services.who_checklist import PHASE_TEMPLATES

NURSE_HEADERS = {"X-User-Id": "nurse-7", "X-User-Role": "nurse"}


def booking_today(hour: int = 9) -> dict:
    start = datetime.now(UTC).replace(hour=hour, minute=0, second=0, microsecond=0)
    return {
        "theaterId": "th-1",
        "theaterName": "Theatre 1",
        "startTime": start.isoformat(),
        "endTime": start.replace(hour=hour + 2).isoformat(),
    }


async def create(async_client, **overrides) -> dict:
    body = {
        "patientId": "pat-1",
        "patientName": "Grace Mwangi",
        "primarySurgeonId": "doc-1",
        "primarySurgeonName": "Dr. Otieno",
        "procedureName": "Total knee arthroplasty",
        "side": "LEFT",
        "booking": booking_today(),
        **overrides,
    }
    resp = await async_client.post("/api/surgical-cases", json=body)
    assert resp.status_code == 201
    return resp.json()


def all_items(phase: ChecklistPhase) -> list[dict]:
    return [{"key": k, "confirmed": True} for k in PHASE_TEMPLATES[phase].keys]


async def test_create_and_get_case(async_client):
    """Test registering a case and reading it back."""
    created = await create(async_client)
    assert created["status"] == "SCHEDULED"
    assert created["urgency"] == "ELECTIVE"
    assert created["booking"]["theaterName"] == "Theatre 1"

    resp = await async_client.get(f"/api/surgical-cases/{created['id']}")
    assert resp.status_code == 200
    assert resp.json()["procedureName"] == "Total knee arthroplasty"


async def test_get_case_not_found(async_client):
    resp = await async_client.get("/api/surgical-cases/nope")
    assert resp.status_code == 404
    data = resp.json()
    assert data["error"] == "not_found"
    assert data["caseId"] == "nope"


async def test_create_case_validation(async_client):
    resp = await async_client.post("/api/surgical-cases", json={"patientId": "p"})
    assert resp.status_code == 422


async def test_transition_blocked(async_client):
    case = await create(async_client)
    resp = await async_client.post(
        f"/api/surgical-cases/{case['id']}/transition",
        json={"action": "IN_PREP"},
        headers=NURSE_HEADERS,
    )
    assert resp.status_code == 422
    data = resp.json()
    assert data["error"] == "transition_blocked"
    assert "Consents signed: 0 of 0" in data["missingItems"]
    assert all(r["severity"] == "BLOCKED" for r in data["reasons"])


async def test_transition_invalid(async_client):
    case = await create(async_client)
    resp = await async_client.post(
        f"/api/surgical-cases/{case['id']}/transition",
        json={"action": "COMPLETED"},
    )
    assert resp.status_code == 409
    assert resp.json()["allowedAction"] == "IN_PREP"


async def test_transition_success_and_audit(async_client, clinical):
    case = await create(async_client)
    await clinical.ready_for_theatre(case["id"])

    resp = await async_client.post(
        f"/api/surgical-cases/{case['id']}/transition",
        json={"action": "IN_PREP", "reason": "On the ward"},
        headers=NURSE_HEADERS,
    )
    assert resp.status_code == 200
    data = resp.json()
    assert data["previousStatus"] == "SCHEDULED"
    assert data["newStatus"] == "IN_PREP"
    assert data["transitionedBy"] == "nurse-7"

    audit = (await async_client.get(f"/api/surgical-cases/{case['id']}/audit")).json()
    assert len(audit) == 1
    assert audit[0]["actorRole"] == "NURSE"
    assert audit[0]["reason"] == "On the ward"


async def test_readiness_endpoint(async_client, clinical):
    case = await create(async_client)
    await clinical.plan(case["id"])
    await clinical.consents(case["id"], signed=1, total=1)

    resp = await async_client.get(f"/api/surgical-cases/{case['id']}/readiness")
    assert resp.status_code == 200
    data = resp.json()
    assert data["action"] == "IN_PREP"
    assert data["level"] == "WARNING"
    assert data["reasons"][0]["category"] == "nurse-documentation"

    resp = await async_client.get(f"/api/surgical-cases/{case['id']}/readiness", params={"action": "IN_THEATER"})
    assert resp.json()["level"] == "BLOCKED"


async def test_checklist_flow(async_client):
    case = await create(async_client)
    base = f"/api/surgical-cases/{case['id']}/checklist"

    resp = await async_client.get(base)
    assert resp.status_code == 200
    assert resp.json()["signInCompleted"] is False

    resp = await async_client.put(f"{base}/sign-in", json={"items": all_items(ChecklistPhase.SIGN_IN)[:2]})
    assert resp.status_code == 200
    assert len(resp.json()["signIn"]["items"]) == 8

    resp = await async_client.post(f"{base}/SIGN_IN/finalize", json={"items": all_items(ChecklistPhase.SIGN_IN)[:5]})
    assert resp.status_code == 422
    assert len(resp.json()["missingItems"]) == 3

    resp = await async_client.post(
        f"{base}/SIGN_IN/finalize", json={"items": all_items(ChecklistPhase.SIGN_IN)}, headers=NURSE_HEADERS,
    )
    assert resp.status_code == 200
    data = resp.json()
    assert data["signInCompleted"] is True
    assert data["signIn"]["completedByUserId"] == "nurse-7"

    resp = await async_client.put(f"{base}/SIGN_IN", json={"items": [{"key": "site_marked"}]})
    assert resp.status_code == 409
    assert resp.json()["error"] == "already_finalized"


async def test_finalize_saved_draft_with_empty_items(async_client):
    case = await create(async_client)
    base = f"/api/surgical-cases/{case['id']}/checklist"
    await async_client.put(f"{base}/TIME_OUT", json={"items": all_items(ChecklistPhase.TIME_OUT)})

    resp = await async_client.post(f"{base}/TIME_OUT/finalize", json={"items": []}, headers=NURSE_HEADERS)
    assert resp.status_code == 200
    assert resp.json()["timeOutCompleted"] is True

    other = await create(async_client)
    resp = await async_client.post(f"/api/surgical-cases/{other['id']}/checklist/TIME_OUT/finalize", json={})
    assert resp.status_code == 422
    assert resp.json()["error"] == "incomplete_checklist"
    assert len(resp.json()["missingItems"]) == 8


async def test_checklist_errors(async_client):
    case = await create(async_client)
    base = f"/api/surgical-cases/{case['id']}/checklist"

    resp = await async_client.put(f"{base}/DEBRIEF", json={"items": [{"key": "x"}]})
    assert resp.status_code == 400

    resp = await async_client.put(f"{base}/SIGN_OUT", json={"items": [{"key": "x"}]})
    assert resp.status_code == 422
    assert resp.json()["unknownKeys"] == ["x"]

    resp = await async_client.put(f"{base}/SIGN_OUT", json={"items": []})
    assert resp.status_code == 422


async def test_timeline_endpoints(async_client):
    case = await create(async_client)
    url = f"/api/surgical-cases/{case['id']}/timeline"

    resp = await async_client.patch(url, json={"wheelsIn": "now"})
    assert resp.status_code == 200
    assert resp.json()["fields"]["wheelsIn"] is not None

    resp = await async_client.patch(url, json={"wheelsOut": "not a time", "bogus": "now"})
    assert resp.status_code == 422
    errors = resp.json()["errors"]
    assert {e["field"] for e in errors} == {"wheels_out", "bogus"}

    resp = await async_client.get(url)
    assert resp.json()["fields"]["wheelsOut"] is None
    assert resp.json()["caseStatus"] == "SCHEDULED"


async def test_dayboard_endpoint(async_client, clinical):
    case = await create(async_client)
    await clinical.nurse_doc(case["id"], NurseDocPhase.PRE_OP)

    today = datetime.now(UTC).date().isoformat()
    resp = await async_client.get("/api/theater/dayboard", params={"date": today, "theaterId": "th-1"})
    assert resp.status_code == 200
    data = resp.json()
    assert data["date"] == today
    entry = data["theaters"][0]["cases"][0]
    assert entry["id"] == case["id"]
    assert entry["blockers"]["nursePreopStatus"] == "FINAL"
    assert data["summary"]["totalCases"] == 1

    resp = await async_client.get("/api/theater/dayboard", params={"date": "not-a-date"})
    assert resp.status_code == 422


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}
