"""
Tests for the /api/v1/scans endpoints.

Write paths use a mocked orchestrator; read paths go through the test
database.
"""
from datetime import datetime, timezone

import pytest

from app.features.scan.models.scan import Scan, ScanStatus
from app.features.scan.models.scan_result import ScanResult
from app.features.scan.schemas.scan import (
    JobHandle,
    JobStatus,
    QueueStats,
    ScanCreateResponse,
    ScanOut,
    ScanStatusResponse,
)
from app.platform.exceptions import (
    ConflictError,
    InsufficientCreditsError,
    NotFoundError,
    ResourceUnavailableError,
)

SITEMAP_URL = "https://example.com/sitemap.xml"


def scan_out(user_id, status=ScanStatus.pending, **values):
    return ScanOut(id="scan-1", user_id=user_id, sitemap_url=SITEMAP_URL, status=status, total_urls=0, **values)


@pytest.fixture
def stored_scan(db_session, user_id):
    scan = Scan(
        user_id=user_id,
        sitemap_url=SITEMAP_URL,
        status=ScanStatus.success,
        total_urls=3,
        finished_at=datetime.now(timezone.utc),
    )
    db_session.add(scan)
    db_session.commit()
    db_session.add_all([
        ScanResult(scan_id=scan.id, url="https://example.com/a", errors=[], warnings=[]),
        ScanResult(
            scan_id=scan.id,
            url="https://example.com/b",
            errors=[{"type": "error", "message": "Bad", "severity": "high"}],
            warnings=[],
        ),
        ScanResult(
            scan_id=scan.id,
            url="https://example.com/c",
            errors=[],
            warnings=[{"type": "info", "message": "Hint", "severity": "medium"}],
        ),
    ])
    db_session.commit()
    return scan.id


class TestCreateScan:
    def test_create_returns_201(self, auth_client, mock_orchestrator, user_id):
        mock_orchestrator.create_scan.return_value = ScanCreateResponse(
            scan=scan_out(user_id, job_id="job-1"),
            job=JobHandle(id="job-1"),
        )

        response = auth_client.post("/api/v1/scans", json={"sitemap_url": SITEMAP_URL})

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "success"
        assert body["data"]["scan"]["status"] == "pending"
        assert body["data"]["job"] == {"id": "job-1", "state": "waiting", "progress": 0}
        mock_orchestrator.create_scan.assert_called_once_with(user_id, SITEMAP_URL)

    def test_insufficient_credits_is_402(self, auth_client, mock_orchestrator):
        mock_orchestrator.create_scan.side_effect = InsufficientCreditsError(
            "No credits available. Please purchase credits to start scanning.", required=1, current=0
        )

        response = auth_client.post("/api/v1/scans", json={"sitemap_url": SITEMAP_URL})

        assert response.status_code == 402
        body = response.json()
        assert body["status"] == "error"
        assert body["message"] == "No credits available. Please purchase credits to start scanning."
        assert body["data"]["required"] == 1
        assert body["data"]["deficit"] == 1

    def test_unreachable_sitemap_is_503(self, auth_client, mock_orchestrator):
        mock_orchestrator.create_scan.side_effect = ResourceUnavailableError(
            "Sitemap is not accessible: HTTP 404: Not Found"
        )

        response = auth_client.post("/api/v1/scans", json={"sitemap_url": SITEMAP_URL})

        assert response.status_code == 503
        assert response.json()["message"] == "Sitemap is not accessible: HTTP 404: Not Found"

    def test_missing_body_is_422(self, auth_client, mock_orchestrator):
        response = auth_client.post("/api/v1/scans", json={})

        assert response.status_code == 422
        mock_orchestrator.create_scan.assert_not_called()

    def test_requires_authentication(self, client, mock_orchestrator):
        response = client.post("/api/v1/scans", json={"sitemap_url": SITEMAP_URL})

        assert response.status_code in (401, 403)
        mock_orchestrator.create_scan.assert_not_called()


class TestStatusAndCancel:
    def test_status(self, auth_client, mock_orchestrator, user_id):
        mock_orchestrator.get_scan_status.return_value = ScanStatusResponse(
            scan_id="scan-1", status=ScanStatus.processing, progress=50, total_urls=4
        )

        response = auth_client.get("/api/v1/scans/scan-1/status")

        assert response.status_code == 200
        assert response.json()["data"]["progress"] == 50
        mock_orchestrator.get_scan_status.assert_called_once_with("scan-1", user_id)

    def test_status_not_found(self, auth_client, mock_orchestrator):
        mock_orchestrator.get_scan_status.side_effect = NotFoundError("Scan not found")

        response = auth_client.get("/api/v1/scans/missing/status")

        assert response.status_code == 404
        assert response.json()["message"] == "Scan not found"

    def test_cancel(self, auth_client, mock_orchestrator, user_id):
        mock_orchestrator.cancel_scan.return_value = scan_out(
            user_id, status=ScanStatus.failed, error_message="Cancelled by user"
        )

        response = auth_client.post("/api/v1/scans/scan-1/cancel")

        assert response.status_code == 200
        assert response.json()["data"]["error_message"] == "Cancelled by user"

    def test_cancel_conflict(self, auth_client, mock_orchestrator):
        mock_orchestrator.cancel_scan.side_effect = ConflictError("Cannot cancel scan with status: success")

        response = auth_client.post("/api/v1/scans/scan-1/cancel")

        assert response.status_code == 409
        assert response.json()["message"] == "Cannot cancel scan with status: success"

    def test_queue_stats(self, auth_client, mock_orchestrator):
        mock_orchestrator.queue.get_stats.return_value = QueueStats(waiting=2, active=1)

        response = auth_client.get("/api/v1/scans/queue/stats")

        assert response.status_code == 200
        assert response.json()["data"] == {"waiting": 2, "active": 1, "completed": 0, "failed": 0, "delayed": 0}

    def test_job_status(self, auth_client, mock_orchestrator, user_id):
        mock_orchestrator.get_job_status.return_value = JobStatus(
            id="job-1",
            name="process-sitemap-scan",
            payload={"scan_id": "scan-1", "user_id": user_id},
            state="active",
            progress=40,
            attempts_made=1,
            max_attempts=3,
        )

        response = auth_client.get("/api/v1/scans/jobs/job-1")

        assert response.status_code == 200
        assert response.json()["data"]["state"] == "active"
        mock_orchestrator.get_job_status.assert_called_once_with("job-1", user_id)


class TestReadEndpoints:
    def test_details_include_summary(self, auth_client, stored_scan):
        response = auth_client.get(f"/api/v1/scans/{stored_scan}")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["scan"]["status"] == "success"
        assert [r["url"] for r in data["results"]] == [
            "https://example.com/a",
            "https://example.com/b",
            "https://example.com/c",
        ]
        assert data["summary"]["total"] == 3
        assert data["summary"]["valid"] == 2
        assert data["summary"]["valid_percentage"] == 67
        assert data["summary"]["severity_breakdown"]["high"] == 1

    def test_details_of_other_users_scan_is_404(self, client, test_app, stored_scan, other_user_id):
        from app.features.auth.dependencies.current_user import get_current_user_id

        test_app.dependency_overrides[get_current_user_id] = lambda: other_user_id
        try:
            response = client.get(f"/api/v1/scans/{stored_scan}")
        finally:
            test_app.dependency_overrides.pop(get_current_user_id, None)

        assert response.status_code == 404

    @pytest.mark.parametrize(
        "result_filter,expected",
        [
            ("all", ["https://example.com/a", "https://example.com/b", "https://example.com/c"]),
            ("errors", ["https://example.com/b"]),
            ("valid", ["https://example.com/a", "https://example.com/c"]),
            ("warnings", ["https://example.com/c"]),
        ],
    )
    def test_results_filter(self, auth_client, stored_scan, result_filter, expected):
        response = auth_client.get(f"/api/v1/scans/{stored_scan}/results", params={"filter": result_filter})

        assert response.status_code == 200
        assert [r["url"] for r in response.json()["data"]] == expected

    def test_results_unknown_filter_is_422(self, auth_client, stored_scan):
        response = auth_client.get(f"/api/v1/scans/{stored_scan}/results", params={"filter": "broken"})

        assert response.status_code == 422

    def test_history_paginated(self, auth_client, stored_scan):
        response = auth_client.get("/api/v1/scans", params={"page": 1, "limit": 10})

        assert response.status_code == 200
        body = response.json()
        assert [s["id"] for s in body["data"]] == [stored_scan]
        assert body["pagination"] == {"page": 1, "limit": 10, "total": 1, "total_pages": 1}

    def test_history_status_filter(self, auth_client, stored_scan):
        response = auth_client.get("/api/v1/scans", params={"status": "failed"})

        assert response.json()["data"] == []

    def test_history_unknown_status_is_400(self, auth_client, session_factory):
        response = auth_client.get("/api/v1/scans", params={"status": "exploded"})

        assert response.status_code == 400
        assert response.json()["message"] == "Unknown scan status: exploded"

    def test_statistics(self, auth_client, stored_scan):
        response = auth_client.get("/api/v1/scans/statistics")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["total_scans"] == 1
        assert data["scans_by_status"]["success"] == 1
        assert data["pages_validated"] == 3
        assert data["total_errors"] == 1
        assert data["success_rate"] == 100.0


class TestDelete:
    def test_delete_finished_scan(self, auth_client, stored_scan, db_session):
        response = auth_client.delete(f"/api/v1/scans/{stored_scan}")

        assert response.status_code == 200
        db_session.expire_all()
        assert db_session.get(Scan, stored_scan) is None
        assert db_session.query(ScanResult).filter_by(scan_id=stored_scan).count() == 0

    def test_delete_active_scan_conflicts(self, auth_client, db_session, user_id):
        scan = Scan(user_id=user_id, sitemap_url=SITEMAP_URL, status=ScanStatus.processing)
        db_session.add(scan)
        db_session.commit()

        response = auth_client.delete(f"/api/v1/scans/{scan.id}")

        assert response.status_code == 409

    def test_delete_missing_scan(self, auth_client, session_factory):
        response = auth_client.delete("/api/v1/scans/missing")

        assert response.status_code == 404
