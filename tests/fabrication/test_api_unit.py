"""Unit tests for the FastAPI surface and its error mapping."""

import pytest
from fastapi.testclient import TestClient

from src.fabrication.config import FabricationSettings
from src.fabrication.errors import (
    AccessDeniedError,
    DatabaseError,
    ExternalPermanentError,
    ExternalTransientError,
    InputValidationError,
    InvalidTransitionError,
    IssueKilledError,
    IssueNotFoundError,
    RateLimitError,
    RunLookupError,
    VersionConflictError,
)
from src.fabrication.events import NullEventEmitter
from src.fabrication.main import build_services, create_app, status_for_error
from src.fabrication.state import IssueState


class UnhealthyStore:
    async def health_check(self) -> bool:
        return False


@pytest.fixture
def services(fake_github):
    return build_services(
        FabricationSettings(),
        github_client=fake_github,
        event_emitter=NullEventEmitter(),
    )


@pytest.fixture
def client(services):
    with TestClient(create_app(services)) as test_client:
        yield test_client


def _create(client, canonical_id="I-1", **overrides):
    payload = {"canonical_id": canonical_id, "title": "Widget", "owner": "acme", "repo": "widgets"}
    payload.update(overrides)
    response = client.post("/issues", json=payload)
    assert response.status_code == 201
    return response.json()


class TestProbes:
    def test_health(self, client):
        assert client.get("/health").json() == {"status": "healthy"}

    def test_ready_reports_stores(self, client):
        response = client.get("/ready")

        assert response.status_code == 200
        assert response.json()["dependencies"] == {
            "InMemoryIssueRepository": "healthy",
            "InMemoryRunLedger": "healthy",
        }

    def test_ready_fails_when_a_store_is_unhealthy(self, services, client):
        services.stores.append(UnhealthyStore())

        response = client.get("/ready")

        assert response.status_code == 503
        assert response.json()["status"] == "not_ready"

    def test_metrics(self, client):
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "text/plain" in response.headers["content-type"]


class TestIssues:
    def test_create_and_get(self, client):
        created = _create(client)

        assert created["state"] == "CREATED"
        assert created["canonical_id"] == "I-1"
        fetched = client.get(f"/issues/{created['id']}").json()
        assert fetched["id"] == created["id"]

    def test_unknown_issue_is_404(self, client):
        response = client.get("/issues/missing")

        assert response.status_code == 404
        assert response.json()["error"] == "IssueNotFoundError"
        assert response.json()["context"] == {"issue_id": "missing"}

    def test_blank_canonical_id_is_400(self, client):
        response = client.post("/issues", json={"canonical_id": "  "})
        assert response.status_code == 400

    def test_invalid_transition_is_409(self, client):
        created = _create(client)

        response = client.post(f"/issues/{created['id']}/transitions", json={"to_state": "DONE"})

        assert response.status_code == 409
        assert response.json()["error"] == "InvalidTransitionError"

    def test_unknown_state_is_rejected_by_validation(self, client):
        created = _create(client)

        response = client.post(f"/issues/{created['id']}/transitions", json={"to_state": "SHIPPED"})

        assert response.status_code == 422

    def test_implementing_dispatches_and_sync_applies_outcome(self, client, fake_github):
        created = _create(client)
        issue_url = f"/issues/{created['id']}"

        client.post(f"{issue_url}/transitions", json={"to_state": "SPEC_READY"})
        response = client.post(f"{issue_url}/transitions", json={"to_state": "IMPLEMENTING"})

        assert response.status_code == 200
        outcome = response.json()
        assert outcome["issue"]["state"] == "IMPLEMENTING"
        assert outcome["mirror"]["created"] is True
        run_id = outcome["dispatch"]["external_run_id"]
        assert fake_github.triggers[0]["workflow_id"] == "ci.yml"

        fake_github.set_run_status(run_id, "completed", "success")
        synced = client.post(f"{issue_url}/runs/sync").json()["results"]

        assert len(synced) == 1
        assert synced[0]["applied_state"] == "VERIFIED"
        assert client.get(issue_url).json()["state"] == IssueState.VERIFIED.value


class TestRunsAndMirrors:
    def test_resolve_mirror(self, client, fake_github):
        issue = fake_github.add_issue("[CID:I-7] Widget", "Canonical-ID: I-7")

        response = client.get(
            "/mirrors/resolve",
            params={"owner": "acme", "repo": "widgets", "canonical_id": "I-7"},
        )

        assert response.status_code == 200
        assert response.json()["found"] is True
        assert response.json()["artifact_id"] == issue["number"]
        assert response.json()["matched_by"] == "body"

    def test_dispatch_poll_and_ingest(self, client, fake_github):
        payload = {
            "owner": "acme",
            "repo": "widgets",
            "workflow_id": "ci.yml",
            "ref": "main",
            "correlation_key": "nightly-2026-10-19",
        }
        first = client.post("/runs/dispatch", json=payload).json()
        second = client.post("/runs/dispatch", json=payload).json()

        assert first["is_existing"] is False
        assert second["is_existing"] is True
        assert second["external_run_id"] == first["external_run_id"]

        run_id = first["external_run_id"]
        early = client.post(f"/runs/{run_id}/ingest")
        assert early.status_code == 409
        assert early.json()["error"] == "RunNotTerminalError"

        fake_github.set_run_status(run_id, "completed", "failure")
        polled = client.post(f"/runs/{run_id}/poll").json()
        assert polled["poll"]["status"] == "FAILED"
        assert polled["issue"] is None

        ingested = client.post(f"/runs/{run_id}/ingest").json()
        assert ingested["summary"]["status"] == "FAILED"

    def test_dispatch_for_killed_issue_is_409(self, client, fake_github):
        created = _create(client, canonical_id="I-9")
        client.post(f"/issues/{created['id']}/transitions", json={"to_state": "KILLED"})

        response = client.post(
            "/runs/dispatch",
            json={
                "owner": "acme",
                "repo": "widgets",
                "workflow_id": "ci.yml",
                "ref": "main",
                "correlation_key": "I-9",
            },
        )

        assert response.status_code == 409
        assert response.json()["error"] == "IssueKilledError"
        assert fake_github.triggers == []

    def test_unknown_run_is_404(self, client):
        assert client.post("/runs/424242/poll").status_code == 404
        assert client.post("/runs/424242/ingest").status_code == 404

    def test_reserved_input_is_400(self, client, fake_github):
        response = client.post(
            "/runs/dispatch",
            json={
                "owner": "acme",
                "repo": "widgets",
                "workflow_id": "ci.yml",
                "ref": "main",
                "correlation_key": "I-1",
                "inputs": {"correlation_id": "mine"},
            },
        )

        assert response.status_code == 400
        assert fake_github.triggers == []


@pytest.mark.parametrize(
    "error,status_code",
    [
        (InputValidationError("bad"), 400),
        (AccessDeniedError("denied"), 403),
        (IssueNotFoundError("x"), 404),
        (InvalidTransitionError(IssueState.DONE, IssueState.HOLD), 409),
        (IssueKilledError(), 409),
        (VersionConflictError("x", 1), 409),
        (ExternalPermanentError("gone"), 502),
        (ExternalTransientError("timeout"), 503),
        (RateLimitError("slow down"), 503),
        (RunLookupError("not visible"), 503),
        (DatabaseError("down"), 500),
    ],
)
def test_status_for_error(error, status_code):
    assert status_for_error(error) == status_code
