import pytest
from fastapi.testclient import TestClient

from blockdesk.main import create_app
from blockdesk.security.roles import RoleDirectory
from blockdesk.services.blob_stores import InMemoryBlobStore
from blockdesk.services.content_store import ContentStoreClient, compute_digest
from blockdesk.tickets.policy import Role

from factories import AGENT, MANAGER, USER


def _headers(address: str) -> dict[str, str]:
    return {"X-Actor-Address": address}


@pytest.fixture
def api(service, content_store, ledger, metrics):
    app = create_app()
    app.state.ticket_service = service
    app.state.content_store = content_store
    app.state.metrics_registry = metrics
    app.state.role_directory = RoleDirectory(assignments={MANAGER: Role.MANAGER, AGENT: Role.AGENT})
    client = TestClient(app)
    yield client, ledger


def _create(client, title: str = "Laptop will not boot", description: str = "Fans spin, screen stays black") -> dict:
    response = client.post(
        "/tickets",
        json={"title": title, "description": description},
        headers=_headers(USER),
    )
    assert response.status_code == 201, response.text
    return response.json()


def test_requests_need_a_valid_actor_address(api):
    client, _ = api

    assert client.get("/tickets").status_code == 401
    assert client.get("/tickets", headers=_headers("not-an-address")).status_code == 401


def test_create_and_fetch_ticket(api):
    client, _ = api

    created = _create(client)
    ticket_id = created["ticket_id"]
    response = client.get(f"/tickets/{ticket_id}", headers=_headers(USER))

    assert created["outcome"] == "accepted"
    assert created["ticket"]["status"] == "open"
    assert response.status_code == 200
    body = response.json()
    assert body["title"] == "Laptop will not boot"
    assert body["description"]["text"] == "Fans spin, screen stays black"
    assert body["status_label"] == "Open"
    assert body["actions"] == ["comment"]


def test_manager_sees_assign_action(api):
    client, _ = api
    ticket_id = _create(client)["ticket_id"]

    body = client.get(f"/tickets/{ticket_id}", headers=_headers(MANAGER)).json()

    assert body["actions"] == ["assign", "comment"]


def test_create_validates_payload(api):
    client, _ = api

    response = client.post("/tickets", json={"title": "Hi", "description": "short"}, headers=_headers(USER))

    assert response.status_code == 422


def test_user_cannot_assign(api):
    client, _ = api
    ticket_id = _create(client)["ticket_id"]

    response = client.post(
        f"/tickets/{ticket_id}/transitions",
        json={"action": "assign", "assignee": USER},
        headers=_headers(USER),
    )

    assert response.status_code == 403
    assert response.json()["detail"]["reason"] == "unauthorized"


def test_invalid_transition_is_a_conflict(api):
    client, _ = api
    ticket_id = _create(client)["ticket_id"]

    response = client.post(f"/tickets/{ticket_id}/transitions", json={"action": "close"}, headers=_headers(MANAGER))

    assert response.status_code == 409
    assert response.json()["detail"] == {
        "reason": "invalid_transition",
        "message": "Cannot close a ticket that is Open",
        "retryable": False,
    }


def test_assign_then_resolve(api):
    client, _ = api
    ticket_id = _create(client)["ticket_id"]

    assigned = client.post(
        f"/tickets/{ticket_id}/transitions",
        json={"action": "assign", "assignee": AGENT},
        headers=_headers(MANAGER),
    )
    resolved = client.post(f"/tickets/{ticket_id}/transitions", json={"action": "resolve"}, headers=_headers(AGENT))

    assert assigned.status_code == 200
    assert assigned.json()["ticket"]["assignee"] == AGENT
    assert resolved.status_code == 200
    assert resolved.json()["ticket"]["status"] == "resolved"


def test_unknown_ticket_is_not_found(api):
    client, _ = api

    assert client.get("/tickets/999", headers=_headers(USER)).status_code == 404
    response = client.post("/tickets/999/transitions", json={"action": "close"}, headers=_headers(MANAGER))
    assert response.status_code == 404


def test_incomplete_ticket_asks_client_to_retry(api):
    client, ledger = api
    ledger.seed_ticket("77", creator=USER)

    response = client.get("/tickets/77", headers=_headers(USER))

    assert response.status_code == 202
    assert response.headers["Retry-After"] == "2"
    assert response.json()["detail"]["reason"] == "incomplete"


def test_unconfirmed_write_is_accepted_for_processing(api):
    client, ledger = api
    ticket_id = _create(client)["ticket_id"]
    ledger.auto_confirm = False

    response = client.post(
        f"/tickets/{ticket_id}/transitions",
        json={"action": "assign", "assignee": AGENT},
        headers=_headers(MANAGER),
    )

    assert response.status_code == 202
    assert response.json()["outcome"] == "pending"


def test_comments_and_audit_trail(api):
    client, _ = api
    ticket_id = _create(client)["ticket_id"]

    comment = client.post(f"/tickets/{ticket_id}/comments", json={"content": "Tried another charger"}, headers=_headers(USER))
    audit = client.get(f"/tickets/{ticket_id}/audit", headers=_headers(USER))

    assert comment.status_code == 201
    assert comment.json()["ticket"]["comments"][0]["content"]["text"] == "Tried another charger"
    assert audit.status_code == 200
    assert [entry["summary"] for entry in audit.json()] == ['Created "Laptop will not boot"', "Comment added"]
    assert audit.json()[0]["actor"] == USER


def test_listing_filters_by_status_and_search(api):
    client, _ = api
    _create(client)
    _create(client, title="Badge reader offline", description="Door 3 badge reader is dark")

    everything = client.get("/tickets", headers=_headers(USER)).json()
    matching = client.get("/tickets", params={"q": "badge"}, headers=_headers(USER)).json()
    closed = client.get("/tickets", params={"status": "closed"}, headers=_headers(USER)).json()
    mine = client.get("/tickets", params={"mine": "true"}, headers=_headers(AGENT)).json()

    assert len(everything) == 2
    assert [ticket["title"] for ticket in matching] == ["Badge reader offline"]
    assert closed == []
    assert mine == []


def test_rebuild_requires_manager(api):
    client, _ = api
    _create(client)

    assert client.post("/tickets/rebuild", headers=_headers(USER)).status_code == 403
    response = client.post("/tickets/rebuild", headers=_headers(MANAGER))
    assert response.status_code == 200
    assert response.json() == {"tickets": 1}


def test_content_round_trip_over_http(api):
    client, _ = api

    stored = client.post("/content", content=b"screenshot bytes", headers=_headers(USER))
    digest = stored.json()["digest"]
    fetched = client.get(f"/content/{digest}", headers=_headers(USER))

    assert stored.status_code == 201
    assert digest == compute_digest(b"screenshot bytes")
    assert fetched.content == b"screenshot bytes"
    assert client.get("/content/not-a-digest", headers=_headers(USER)).status_code == 400
    assert client.get(f"/content/{compute_digest(b'nothing')}", headers=_headers(USER)).status_code == 404


def test_oversized_upload_is_refused_from_its_declared_length(api):
    client, _ = api
    remote = InMemoryBlobStore()
    client.app.state.content_store = ContentStoreClient(remote, max_content_bytes=8)

    refused = client.post("/content", content=b"sixteen byte blob", headers=_headers(USER))
    accepted = client.post("/content", content=b"8 bytes!", headers=_headers(USER))

    assert refused.status_code == 413
    assert "limit is 8 bytes" in refused.json()["detail"]
    assert accepted.status_code == 201
    assert list(remote.blobs) == [accepted.json()["digest"]]


def test_ping_and_metrics(api):
    client, _ = api
    _create(client)

    assert client.get("/ping").json() == {"status": "ok"}
    assert client.get("/ping/secure", headers=_headers(USER)).status_code == 403
    assert client.get("/ping/secure", headers=_headers(AGENT)).json()["role"] == "agent"
    assert client.get("/ping/ledger").json()["backend"] == "memory"
    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert "ticket_reconciliations_total" in metrics.text
