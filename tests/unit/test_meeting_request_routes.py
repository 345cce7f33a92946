"""
Tests for the meeting request HTTP API, including the error-to-status
mapping.
"""

import asyncio

import pytest

from stina.errors import (
    ConcurrentModificationError,
    ExtractionError,
    InvalidTransitionError,
    MeetingRequestNotFoundError,
    OrchestrationError,
    PersistenceError,
    PlanningExhaustedError,
    RequestBusyError,
    SchedulingError,
    ValidationError,
)
from stina.routes.meeting_requests import to_http_error
from tests.fakes import GUEST_EMAIL, USER_EMAIL, decision_call, reply, sample_intent


def _create(client, source="manual", communication=True, **extra):
    body = {
        "creator_email": USER_EMAIL,
        "source": source,
        "participants": [{"email": GUEST_EMAIL, "name": "Sam Lee"}],
        "summary": "Quarterly planning",
        **extra,
    }
    if communication:
        body["communication"] = {
            "id": "comm-1",
            "content": "Could we meet early next week?",
            "sender": GUEST_EMAIL,
            "thread_id": "thread-1",
        }
    response = client.post("/meeting-requests", json=body)
    assert response.status_code == 201
    return response.json()


class TestCreateAndRead:
    def test_create_manual_request(self, client):
        created = _create(client)

        assert created["status"] == "context_collection"
        assert created["summary"] == "Quarterly planning"
        assert created["pending_communications"] == 1
        assert created["communications"][0]["processed"] is False

    def test_email_request_starts_analysing(self, client):
        assert _create(client, source="email")["status"] == "analysing_email"

    def test_create_requires_participants(self, client):
        response = client.post(
            "/meeting-requests", json={"creator_email": USER_EMAIL, "participants": []}
        )
        assert response.status_code == 422

    def test_get_unknown_request(self, client):
        response = client.get("/meeting-requests/meeting_missing")

        assert response.status_code == 404
        assert response.json()["detail"]["error_type"] == "not_found"

    def test_get_checks_caller_when_identified(self, client):
        created = _create(client)
        url = f"/meeting-requests/{created['id']}"

        assert client.get(url, headers={"X-User-Email": GUEST_EMAIL}).status_code == 200
        assert client.get(url, headers={"X-User-Email": "eve@example.com"}).status_code == 403
        assert client.get(url).status_code == 200

    def test_list_filters(self, client):
        manual = _create(client)
        _create(client, source="email")

        response = client.get(
            "/meeting-requests", params={"status": "context_collection,pending_reply"}
        )

        data = response.json()
        assert data["count"] == 1
        assert data["meeting_requests"][0]["id"] == manual["id"]

        by_thread = client.get("/meeting-requests", params={"thread_id": "thread-1"}).json()
        assert by_thread["count"] == 2

    def test_list_rejects_unknown_status(self, client):
        response = client.get("/meeting-requests", params={"status": "archived"})
        assert response.status_code == 422


class TestCommunications:
    def test_append(self, client):
        created = _create(client)

        response = client.post(
            f"/meeting-requests/{created['id']}/communications",
            json={"id": "comm-2", "content": "Tuesday works better", "sender": GUEST_EMAIL},
        )

        assert response.status_code == 200
        assert response.json()["pending_communications"] == 2

    def test_duplicate_is_unprocessable(self, client):
        created = _create(client)

        response = client.post(
            f"/meeting-requests/{created['id']}/communications",
            json={"id": "comm-1", "content": "again", "sender": GUEST_EMAIL},
        )

        assert response.status_code == 422
        assert response.json()["detail"]["field"] == "communications.id"


class TestStages:
    def test_extraction(self, client, language_model):
        created = _create(client, source="email")
        language_model.structured = [sample_intent()]

        response = client.post(f"/meeting-requests/{created['id']}/extraction")

        assert response.status_code == 200
        assert response.json()["status"] == "succeeded"
        stored = client.get(f"/meeting-requests/{created['id']}").json()
        assert stored["status"] == "context_collection"

    def test_extraction_failure_is_bad_gateway(self, client, language_model):
        created = _create(client, source="email")
        language_model.structured = ["{", "{"]

        response = client.post(f"/meeting-requests/{created['id']}/extraction")

        assert response.status_code == 502
        assert response.json()["detail"]["error_type"] == "extraction_error"

    def test_orchestration(self, client, language_model):
        created = _create(client)
        language_model.replies = [reply(decision_call("request_clarification", reason="Need a day"))]

        response = client.post(f"/meeting-requests/{created['id']}/orchestration")

        assert response.status_code == 200
        data = response.json()
        assert data["decision"] == "request_clarification"
        assert data["status"] == "pending_reply"
        assert data["processed_communication_ids"] == ["comm-1"]
        assert data["reason"] == "Need a day"

    def test_orchestration_exhausted_is_bad_gateway(self, client):
        created = _create(client)

        response = client.post(f"/meeting-requests/{created['id']}/orchestration")

        assert response.status_code == 502
        assert response.json()["detail"]["error_type"] == "planning_exhausted"

    def test_orchestration_busy_is_conflict(self, client, guard):
        created = _create(client)
        asyncio.run(guard.acquire(created["id"]))

        response = client.post(f"/meeting-requests/{created['id']}/orchestration")

        assert response.status_code == 409
        assert response.json()["detail"]["error_type"] == "request_busy"

    def test_process_is_accepted(self, client, language_model):
        created = _create(client)
        language_model.structured = [sample_intent()]
        language_model.replies = [reply(decision_call("request_clarification"))]

        response = client.post(f"/meeting-requests/{created['id']}/process")

        assert response.status_code == 202
        assert response.json()["meeting_request_id"] == created["id"]

    def test_process_unknown_request(self, client):
        assert client.post("/meeting-requests/meeting_missing/process").status_code == 404


class TestTransitionsAndCancel:
    def test_transition(self, client):
        created = _create(client)

        response = client.post(
            f"/meeting-requests/{created['id']}/transitions",
            json={"status": "pending_reply", "progress": {"percent": 30, "note": "Asked Sam"}},
        )

        assert response.status_code == 200
        assert response.json()["status"] == "pending_reply"
        assert response.json()["progress"]["percent"] == 30

    def test_invalid_transition_is_conflict(self, client):
        created = _create(client)

        response = client.post(
            f"/meeting-requests/{created['id']}/transitions", json={"status": "completed"}
        )

        assert response.status_code == 409
        assert response.json()["detail"]["error_type"] == "invalid_transition"

    def test_cancel(self, client):
        created = _create(client)

        response = client.request(
            "DELETE", f"/meeting-requests/{created['id']}", json={"reason": "No longer needed"}
        )

        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"
        assert response.json()["progress"]["note"] == "No longer needed"
        assert client.delete(f"/meeting-requests/{created['id']}").status_code == 409

    def test_cancel_by_stranger_is_forbidden(self, client):
        created = _create(client)

        response = client.delete(
            f"/meeting-requests/{created['id']}", headers={"X-User-Email": "eve@example.com"}
        )

        assert response.status_code == 403


@pytest.mark.parametrize(
    "error, status_code",
    [
        (ValidationError("bad", field="x"), 422),
        (MeetingRequestNotFoundError("m"), 404),
        (InvalidTransitionError("scheduled", "pending_reply"), 409),
        (RequestBusyError("m"), 409),
        (ConcurrentModificationError("m", "a", "b"), 409),
        (ExtractionError("no structure"), 502),
        (PlanningExhaustedError(8), 502),
        (OrchestrationError("commit failed"), 503),
        (PersistenceError("db down"), 503),
        (SchedulingError("other"), 500),
    ],
)
def test_error_status_mapping(error, status_code):
    exception = to_http_error(error)

    assert exception.status_code == status_code
    assert exception.detail["reason"] == error.reason
