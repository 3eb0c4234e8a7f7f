"""Tests for the HTTP surface.

Every error response carries a JSON body with ``detail`` and ``error_type``.
"""

import base64
import time
from typing import Any, Dict

import pytest
from fastapi.testclient import TestClient
from hypothesis import given, settings, strategies as st
from pydantic import ValidationError

from recipeflow.api.routes import JobStatusResponse, SubmitJobRequest
from recipeflow.config import Settings
from recipeflow.main import create_app
from recipeflow.models.job import ErrorCode, Job, JobStatus, SourceKind

URL = "https://example.com/pancakes"
PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16
OWNER = {"X-User-Id": "u1"}


@pytest.fixture
def client(make_service, tmp_path):
    test_settings = Settings(
        temp_dir=str(tmp_path),
        reaper_interval_seconds=3600,
        shutdown_grace_seconds=2,
    )
    app = create_app(settings=test_settings, job_service_factory=lambda: make_service())
    with TestClient(app) as test_client:
        yield test_client


def poll_until_terminal(client: TestClient, job_id: str, headers: Dict[str, str] = OWNER) -> Dict[str, Any]:
    deadline = time.monotonic() + 5
    while time.monotonic() < deadline:
        body = client.get(f"/jobs/{job_id}", headers=headers).json()
        if body["status"] in ("completed", "failed", "cancelled"):
            return body
        time.sleep(0.02)
    raise AssertionError(f"job {job_id} did not finish")


class TestSubmitAndPoll:
    def test_submit_returns_pending_job(self, client: TestClient) -> None:
        response = client.post("/jobs", json={"sourceKind": "webpage", "sourceLocator": URL}, headers=OWNER)

        assert response.status_code == 201
        body = response.json()
        assert set(body) == {"jobId", "status"}
        assert body["status"] == "pending"

        final = poll_until_terminal(client, body["jobId"])
        assert final["status"] == "completed"
        assert final["progressPercent"] == 100
        assert final["resultRecipeId"]
        assert final["errorCode"] is None
        assert final["retryable"] is False
        assert final["sourceKind"] == "webpage"

    def test_idempotent_resubmit_returns_same_job(self, client: TestClient) -> None:
        payload = {"sourceKind": "webpage", "sourceLocator": URL, "idempotencyKey": "k1"}
        first = client.post("/jobs", json=payload, headers=OWNER)
        second = client.post("/jobs", json=payload, headers=OWNER)

        assert first.status_code == 201
        assert second.status_code == 200
        assert first.json()["jobId"] == second.json()["jobId"]
        poll_until_terminal(client, first.json()["jobId"])

    def test_image_upload_submission(self, client: TestClient) -> None:
        payload = {
            "sourceKind": "image",
            "images": [{"data": base64.b64encode(PNG).decode(), "mimeType": "image/png"}],
        }
        response = client.post("/jobs", json=payload, headers=OWNER)

        assert response.status_code == 201
        poll_until_terminal(client, response.json()["jobId"])

    def test_list_jobs_most_recent_first(self, client: TestClient) -> None:
        ids = [
            client.post("/jobs", json={"sourceKind": "webpage", "sourceLocator": URL}, headers=OWNER).json()["jobId"]
            for _ in range(3)
        ]
        for job_id in ids:
            poll_until_terminal(client, job_id)

        response = client.get("/jobs", params={"limit": 2}, headers=OWNER)

        assert response.status_code == 200
        assert [j["jobId"] for j in response.json()["jobs"]] == list(reversed(ids))[:2]
        assert client.get("/jobs", headers={"X-User-Id": "u2"}).json() == {"jobs": []}

    def test_cancel_own_job(self, client: TestClient) -> None:
        job_id = client.post("/jobs", json={"sourceKind": "webpage", "sourceLocator": URL}, headers=OWNER).json()["jobId"]

        response = client.post(f"/jobs/{job_id}/cancel", headers=OWNER)

        assert response.status_code == 204
        assert poll_until_terminal(client, job_id)["status"] in ("cancelled", "completed")

    def test_health_reports_limiter(self, client: TestClient) -> None:
        body = client.get("/health").json()
        assert body["status"] == "ok"
        assert body["slotCapacity"] == 5
        assert body["slotsInUse"] == 0


class TestErrorResponses:
    def test_missing_owner_is_401(self, client: TestClient) -> None:
        response = client.post("/jobs", json={"sourceKind": "webpage", "sourceLocator": URL})
        assert response.status_code == 401
        assert response.json()["error_type"] == "HTTPException"

    def test_unknown_job_is_404(self, client: TestClient) -> None:
        for response in (
            client.get("/jobs/does-not-exist", headers=OWNER),
            client.post("/jobs/does-not-exist/cancel", headers=OWNER),
        ):
            assert response.status_code == 404
            assert response.json()["error_type"] == "JobNotFoundError"

    def test_other_owners_job_is_404(self, client: TestClient) -> None:
        job_id = client.post("/jobs", json={"sourceKind": "webpage", "sourceLocator": URL}, headers=OWNER).json()["jobId"]
        poll_until_terminal(client, job_id)

        response = client.get(f"/jobs/{job_id}", headers={"X-User-Id": "intruder"})
        assert response.status_code == 404

    def test_invalid_locator_is_422(self, client: TestClient) -> None:
        response = client.post("/jobs", json={"sourceKind": "video", "sourceLocator": "not-a-url"}, headers=OWNER)
        assert response.status_code == 422
        assert response.json()["error_type"] == "InvalidSubmissionError"

    def test_unknown_source_kind_is_422(self, client: TestClient) -> None:
        response = client.post("/jobs", json={"sourceKind": "pdf", "sourceLocator": URL}, headers=OWNER)
        assert response.status_code == 422
        body = response.json()
        assert body["error_type"] == "ValidationError"
        assert body["errors"]

    def test_bad_base64_is_422(self, client: TestClient) -> None:
        payload = {"sourceKind": "image", "images": [{"data": "!!!not base64!!!"}]}
        response = client.post("/jobs", json=payload, headers=OWNER)
        assert response.status_code == 422

    @pytest.mark.parametrize("params", [{"limit": 0}, {"limit": 101}, {"offset": -1}])
    def test_list_bounds_are_422(self, client: TestClient, params: dict) -> None:
        response = client.get("/jobs", params=params, headers=OWNER)
        assert response.status_code == 422


class TestRequestModels:
    @given(kind=st.text(max_size=10).filter(lambda k: k not in {"video", "webpage", "image"}))
    @settings(max_examples=100)
    def test_unknown_kinds_rejected(self, kind: str) -> None:
        with pytest.raises(ValidationError):
            SubmitJobRequest(sourceKind=kind, sourceLocator=URL)

    @given(code=st.sampled_from(list(ErrorCode)))
    @settings(max_examples=30)
    def test_status_projection_marks_retryable_codes(self, code: ErrorCode) -> None:
        job = Job(
            owner_id="u1",
            source_kind=SourceKind.VIDEO,
            source_locator=URL,
            status=JobStatus.FAILED,
            error_code=code,
            error_message="x",
        )
        projected = JobStatusResponse.from_job(job).model_dump(by_alias=True)

        assert projected["jobId"] == job.id
        assert projected["retryable"] == (code in (ErrorCode.DOWNLOAD_FAILED, ErrorCode.TIMEOUT))
