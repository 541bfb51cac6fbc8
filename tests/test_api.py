import pytest
from fastapi.testclient import TestClient

from spotmerge.main import app

ALICE = {"X-User-Id": "alice", "X-User-Name": "Alice"}
BOB = {"X-User-Id": "bob"}
MOD = {"X-User-Id": "mod"}


@pytest.fixture
def client(backend, service, make_spot):
    backend.add_spot(make_spot("1", 0, country="FR"))
    backend.add_spot(make_spot("2", 8, country="FR"))
    backend.add_spot(make_spot("3", 900, from_label="Grenoble", to_label="Turin"))
    app.state.merge_service = service
    with TestClient(app) as test_client:
        yield test_client
    app.state.merge_service = None


def test_health(client) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_metrics_exposes_merge_counters(client) -> None:
    client.post("/merges", json={"spot_id1": "1", "spot_id2": "2"}, headers=ALICE)
    response = client.get("/metrics")
    assert response.status_code == 200
    assert "spotmerge_merge_proposals_total" in response.text


def test_identity_header_is_required(client) -> None:
    response = client.post("/merges", json={"spot_id1": "1", "spot_id2": "2"})
    assert response.status_code == 401


def test_duplicates_and_scan(client) -> None:
    duplicates = client.get("/spots/1/duplicates").json()
    assert [c["spot"]["id"] for c in duplicates["candidates"]] == ["2"]
    assert duplicates["candidates"][0]["confidence"] == 90
    assert [r["code"] for r in duplicates["candidates"][0]["reasons"]] == [
        "DUP_DISTANCE_VERY_CLOSE",
        "DUP_NAME_MATCH",
        "DUP_SAME_REGION",
    ]

    scan = client.get("/merges/scan").json()
    assert scan["count"] == 1
    assert (scan["pairs"][0]["primary"]["id"], scan["pairs"][0]["duplicate"]["id"]) == ("1", "2")
    assert scan["pairs"][0]["reasons"][0]["detail"] == "Less than 10 m apart"

    assert client.get("/spots/1/duplicates", params={"radius": 0}).status_code == 422
    assert client.get("/spots/404/duplicates").json()["code"] == "SPOT_NOT_FOUND"


def test_proposal_lifecycle_over_http(client) -> None:
    created = client.post("/merges", json={"spot_id1": 1, "spot_id2": 2, "reason": "same lay-by"}, headers=ALICE)
    assert created.status_code == 200
    proposal = created.json()
    assert proposal["status"] == "pending"
    assert proposal["proposed_by_name"] == "Alice"

    again = client.post("/merges", json={"spot_id1": "2", "spot_id2": "1"}, headers=BOB).json()
    assert again["id"] == proposal["id"]

    voted = client.post(f"/merges/{proposal['id']}/vote", json={"choice": "approve"}, headers=BOB).json()
    assert voted["votes"] == {"approve": ["bob"], "reject": []}
    assert voted["vote_counts"] == {"approve": 1, "reject": 0}

    denied = client.post(f"/merges/{proposal['id']}/approve", headers=ALICE)
    assert denied.status_code == 403
    assert denied.json()["code"] == "PERMISSION_DENIED"

    approved = client.post(f"/merges/{proposal['id']}/approve", headers=MOD).json()
    assert approved["status"] == "approved"

    assert client.post(f"/merges/{proposal['id']}/execute", headers=ALICE).status_code == 403
    executed = client.post(f"/merges/{proposal['id']}/execute", headers=MOD).json()
    assert executed["spot"]["id"] == "1"
    assert executed["spot"]["merged_from"] == ["2"]

    assert client.get("/spots/2/resolve").json() == {"spot_id": "2", "canonical_id": "1", "redirected": True}
    assert client.get(f"/merges/{proposal['id']}").json()["status"] == "executed"
    assert len(client.get("/merges", params={"status": "executed"}).json()) == 1
    assert client.get("/merges/stats").json()["executed"] == 1
    assert client.get("/merges/history").json()[0]["absorbed_id"] == "2"
    assert client.get("/merges/redirects").json()[0]["to_spot_id"] == "1"


def test_reject_and_cancel(client) -> None:
    first = client.post("/merges", json={"spot_id1": "1", "spot_id2": "2"}, headers=ALICE).json()
    rejected = client.post(f"/merges/{first['id']}/reject", json={"reason": "two exits"}, headers=MOD).json()
    assert rejected["rejection_reason"] == "two exits"

    late_vote = client.post(f"/merges/{first['id']}/vote", json={"choice": "reject"}, headers=BOB)
    assert late_vote.status_code == 409
    assert late_vote.json()["code"] == "PROPOSAL_NOT_PENDING"

    second = client.post("/merges", json={"spot_id1": "1", "spot_id2": "3"}, headers=ALICE).json()
    assert client.post(f"/merges/{second['id']}/cancel", headers=BOB).status_code == 403
    assert client.post(f"/merges/{second['id']}/cancel", headers=ALICE).json()["status"] == "cancelled"


def test_domain_errors_map_to_status_codes(client) -> None:
    self_merge = client.post("/merges", json={"spot_id1": "1", "spot_id2": "1"}, headers=ALICE)
    assert self_merge.status_code == 409
    assert self_merge.json()["code"] == "SELF_MERGE_REJECTED"

    missing = client.get("/merges/merge_missing")
    assert missing.status_code == 404
    assert missing.json()["code"] == "PROPOSAL_NOT_FOUND"

    assert client.post("/merges/execute", json={"spot_id1": "1", "spot_id2": "2"}, headers=ALICE).status_code == 403


def test_direct_execution_by_moderator(client) -> None:
    response = client.post("/merges/execute", json={"spot_id1": "1", "spot_id2": "2"}, headers=MOD)
    assert response.status_code == 200
    assert response.json()["spot"]["total_reviews"] == 0
    assert client.get("/merges/stats").json() == {
        "pending": 0,
        "approved": 0,
        "executed": 1,
        "rejected": 0,
        "cancelled": 0,
        "total_proposed": 0,
    }
