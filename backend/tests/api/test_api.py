"""HTTP tests for the attendance and admin routers."""

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from attendance_ledger.core.database import get_db
from attendance_ledger.main import app

TEACHER_HEADERS = {"X-Actor-Id": "1", "X-Actor-Kind": "teacher", "X-School-Id": "1"}
ADMIN_HEADERS = {"X-Actor-Id": "99", "X-Actor-Kind": "admin", "X-School-Id": "1"}


@pytest_asyncio.fixture
async def client(session_factory, seed):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http_client:
        yield http_client
    app.dependency_overrides.clear()


def mark_payload(day, **overrides):
    payload = {
        "class_id": 1,
        "subject_id": 1,
        "teacher_id": 1,
        "student_id": 1,
        "date": day.isoformat(),
        "session": "Lecture 1",
        "status": "present",
    }
    payload.update(overrides)
    return payload


class TestAttendanceRoutes:

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_mark_and_remark(self, client, school_day):
        response = await client.post("/api/v1/attendance/mark", json=mark_payload(school_day), headers=TEACHER_HEADERS)
        assert response.status_code == 200
        body = response.json()
        assert body["action"] == "create"
        assert body["record"]["status"] == "present"
        assert body["record"]["session"] == "Lecture 1"

        response = await client.post(
            "/api/v1/attendance/mark", json=mark_payload(school_day, status="late"), headers=TEACHER_HEADERS
        )
        assert response.json()["action"] == "update"

        record_id = body["record"]["id"]
        history = await client.get(f"/api/v1/attendance/{record_id}/history", headers=TEACHER_HEADERS)
        assert [entry["action"] for entry in history.json()] == ["update", "create"]

        summary = await client.get("/api/v1/attendance/students/1/summary", headers=TEACHER_HEADERS)
        assert summary.json()[0]["attendance_percentage"] == 50.0

    @pytest.mark.asyncio
    async def test_domain_errors_map_to_status_codes(self, client, school_day):
        response = await client.post(
            "/api/v1/attendance/mark", json=mark_payload(school_day, session="Seminar"), headers=TEACHER_HEADERS
        )
        assert response.status_code == 400
        assert response.json()["category"] == "validation"

        response = await client.post(
            "/api/v1/attendance/mark", json=mark_payload(school_day, subject_id=2), headers=TEACHER_HEADERS
        )
        assert response.status_code == 403

        response = await client.post(
            "/api/v1/attendance/mark", json=mark_payload(school_day, student_id=404), headers=TEACHER_HEADERS
        )
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_actor_headers_required(self, client, school_day):
        response = await client.post("/api/v1/attendance/mark", json=mark_payload(school_day))
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_bulk_and_delete(self, client, school_day):
        response = await client.post(
            "/api/v1/attendance/bulk",
            json={
                "class_id": 1,
                "subject_id": 1,
                "teacher_id": 1,
                "date": school_day.isoformat(),
                "session": "Lab",
                "students": [{"student_id": 1, "status": "present"}, {"student_id": 3, "status": "present"}],
            },
            headers=TEACHER_HEADERS
        )
        body = response.json()
        assert body["success_count"] == 1
        assert body["failure_count"] == 1

        record_id = body["successful"][0]["record_id"]
        response = await client.delete(
            f"/api/v1/attendance/{record_id}", params={"reason": "Marked by mistake"}, headers=TEACHER_HEADERS
        )
        assert response.json() == {"deleted": True, "record_id": record_id}

        response = await client.delete(f"/api/v1/attendance/{record_id}", headers=TEACHER_HEADERS)
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_class_summary_and_alerts(self, client, school_day):
        await client.post("/api/v1/attendance/mark", json=mark_payload(school_day, status="absent"), headers=TEACHER_HEADERS)

        summary = await client.get("/api/v1/attendance/classes/1/subjects/1/summary", headers=TEACHER_HEADERS)
        assert summary.json()["total_students"] == 1

        alerts = await client.get("/api/v1/attendance/classes/1/alerts", headers=TEACHER_HEADERS)
        # One session is below the minimum needed to raise an alert
        assert alerts.json() == []


class TestAdminRoutes:

    @pytest.mark.asyncio
    async def test_teacher_rejected(self, client):
        response = await client.get("/api/v1/admin/audit/verify", headers=TEACHER_HEADERS)
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_assign_by_pattern(self, client):
        response = await client.post(
            "/api/v1/admin/bulk/assign",
            json={"pattern": "CSE2021*", "target_class_id": 1, "subject_ids": []},
            headers=ADMIN_HEADERS
        )
        body = response.json()
        assert body["success_count"] == 0
        assert body["failure_count"] == 2
        assert body["failed"][0]["reason"] == "Student already assigned to target class"

        stats = await client.get("/api/v1/admin/bulk/stats", headers=ADMIN_HEADERS)
        assert stats.json()["total_operations"] == 0

    @pytest.mark.asyncio
    async def test_transfer_validation_error(self, client):
        response = await client.post(
            "/api/v1/admin/bulk/transfer",
            json={"student_ids": [1, 3], "from_class_id": 1, "to_class_id": 2},
            headers=ADMIN_HEADERS
        )
        assert response.status_code == 400
        assert response.json()["details"]["student_ids"] == [3]

    @pytest.mark.asyncio
    async def test_reassign_teacher(self, client):
        response = await client.post(
            "/api/v1/admin/bulk/reassign-teacher",
            json={"teacher_id": 2, "assignments": [{"subject_id": 2, "class_id": 1}]},
            headers=ADMIN_HEADERS
        )
        assert response.json()["success_count"] == 1

        response = await client.post(
            "/api/v1/admin/bulk/reassign-teacher",
            json={"teacher_id": 2, "assignments": []},
            headers=ADMIN_HEADERS
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_maintenance_endpoints(self, client, school_day):
        await client.post("/api/v1/attendance/mark", json=mark_payload(school_day), headers=TEACHER_HEADERS)

        recompute = await client.post("/api/v1/admin/summaries/recompute", headers=ADMIN_HEADERS)
        assert recompute.json()["processed"] == 1

        verify = await client.get("/api/v1/admin/audit/verify", headers=ADMIN_HEADERS)
        assert verify.json()["verified"] is True

        analytics = await client.get("/api/v1/admin/analytics", headers=ADMIN_HEADERS)
        assert analytics.json()["overall_stats"]["attendance_rate"] == 100.0

        status = await client.get("/api/v1/admin/migration/status", headers=ADMIN_HEADERS)
        body = status.json()
        assert body["has_data_integrity_issues"] is False
        assert body["row_counts"]["attendance_records"] == 1
