"""
Tests for the HTTP layer: caller identity, role gates and error rendering.
"""
import pytest
from fastapi.testclient import TestClient

from app.database import get_db
from app.main import app
from app.models.enums import Role


@pytest.fixture
def client(db_session):
    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def as_(person):
    return {"X-Person-Id": person.id}


class TestCallerIdentity:

    def test_missing_identity_is_unauthorized(self, client):
        response = client.post("/api/memberships", json={})
        assert response.status_code == 401
        assert response.json()["kind"] == "unauthorized"

    def test_unknown_identity_is_unauthorized(self, client):
        response = client.post("/api/presence/heartbeat", headers={"X-Person-Id": "nobody"})
        assert response.status_code == 401

    def test_student_cannot_remove(self, client, student, active_record):
        response = client.post(
            f"/api/memberships/{active_record.id}/remove",
            json={"reason": "I don't like them"},
            headers=as_(student),
        )
        assert response.status_code == 403
        assert response.json()["kind"] == "forbidden"


class TestMembershipFlow:

    def test_apply_approve_remove_restore(self, client, student, officer, leader):
        response = client.post("/api/memberships", json={"motivation": "Volunteering"}, headers=as_(student))
        assert response.status_code == 201
        membership = response.json()
        assert membership["status"] == "PENDING"
        assert membership["is_reapplication"] is False

        response = client.patch(
            f"/api/memberships/{membership['id']}/status",
            json={"status": "ACTIVE"},
            headers=as_(officer),
        )
        assert response.status_code == 200
        assert response.json()["approved_by"] == officer.id

        response = client.post(
            f"/api/memberships/{membership['id']}/remove",
            json={"reason": "policy violation"},
            headers=as_(officer),
        )
        assert response.status_code == 200
        removed = response.json()
        assert removed["status"] == "REMOVED"
        assert removed["removed_by"]["display_name"] == "Tran Thi Binh"
        assert len(removed["removal_history"]) == 1

        response = client.post(
            f"/api/memberships/{membership['id']}/restore",
            json={"reason": "appeal accepted"},
            headers=as_(officer),
        )
        assert response.status_code == 403

        response = client.post(
            f"/api/memberships/{membership['id']}/restore",
            json={"reason": "appeal accepted"},
            headers=as_(leader),
        )
        assert response.status_code == 200
        restored = response.json()
        assert restored["status"] == "ACTIVE"
        assert restored["removal_reason_current"] == "policy violation"
        assert restored["removal_history"][0]["restoration_reason"] == "appeal accepted"

        response = client.get(f"/api/persons/{student.id}/membership-history", headers=as_(student))
        assert response.status_code == 200
        assert [m["id"] for m in response.json()] == [membership["id"]]

    def test_cooldown_error_carries_hours(self, client, sm, student, active_record, officer, leader):
        sm.remove(active_record.id, officer.id, "policy violation")

        response = client.post("/api/memberships", json={}, headers=as_(student))
        assert response.status_code == 409
        body = response.json()
        assert body["kind"] == "cooldown_not_elapsed"
        assert body["hours_remaining"] == 24

        response = client.post(f"/api/memberships/{active_record.id}/reset-cooldown", headers=as_(leader))
        assert response.status_code == 200

        response = client.post("/api/memberships", json={}, headers=as_(student))
        assert response.status_code == 201
        assert response.json()["is_reapplication"] is True

    def test_invalid_transition_names_current_status(self, client, active_record, leader):
        response = client.post(
            f"/api/memberships/{active_record.id}/restore",
            json={"reason": "why not"},
            headers=as_(leader),
        )
        assert response.status_code == 409
        assert response.json()["kind"] == "invalid_transition"
        assert response.json()["current_status"] == "ACTIVE"

    def test_missing_reason_names_the_field(self, client, active_record, officer):
        response = client.post(f"/api/memberships/{active_record.id}/remove", json={}, headers=as_(officer))
        assert response.status_code == 422
        assert response.json() == {
            "kind": "validation_error",
            "message": "reason is required",
            "field": "reason",
        }

    def test_list_hides_removed_unless_asked(self, client, sm, active_record, officer):
        sm.remove(active_record.id, officer.id, "policy violation")

        assert client.get("/api/memberships", headers=as_(officer)).json() == []
        removed = client.get("/api/memberships?status_filter=REMOVED", headers=as_(officer)).json()
        assert [m["id"] for m in removed] == [active_record.id]

    def test_stats(self, client, pending_record, officer):
        stats = client.get("/api/memberships/stats", headers=as_(officer)).json()
        assert stats["PENDING"] == 1
        assert stats["total"] == 1

    def test_withdraw(self, client, student, pending_record):
        response = client.delete(f"/api/memberships/{pending_record.id}", headers=as_(student))
        assert response.status_code == 200
        assert response.json() == {"deleted": True}


class TestPersonEndpoints:

    def test_removed_deputy_is_a_student(self, client, sm, make_person, leader):
        deputy = make_person(Role.CLUB_DEPUTY)
        record = sm.approve(sm.apply(deputy.id).id, leader.id)
        sm.remove(record.id, leader.id, "policy violation")

        body = client.get(f"/api/persons/{deputy.id}/authorization", headers=as_(deputy)).json()

        assert body["assigned_role"] == "CLUB_DEPUTY"
        assert body["effective_role"] == "STUDENT"
        assert body["redirect_target"] == "/student/dashboard"

        # The demotion applies to their own requests right away
        response = client.get("/api/memberships", headers=as_(deputy))
        assert response.status_code == 403

    def test_removal_status(self, client, sm, student, active_record, officer):
        assert client.get(
            f"/api/persons/{student.id}/removal-status", headers=as_(student)
        ).json() == {"removal_info": None}

        sm.remove(active_record.id, officer.id, "policy violation")
        info = client.get(
            f"/api/persons/{student.id}/removal-status", headers=as_(student)
        ).json()["removal_info"]
        assert info["removal_reason"] == "policy violation"
        assert info["removed_by"]["id"] == officer.id

    def test_cannot_read_other_persons_membership(self, client, make_person, student):
        other = make_person(Role.STUDENT)
        response = client.get(f"/api/persons/{other.id}/membership", headers=as_(student))
        assert response.status_code == 403

    def test_membership_lookup(self, client, student, pending_record):
        body = client.get(f"/api/persons/{student.id}/membership", headers=as_(student)).json()
        assert body["has_membership"] is True
        assert body["membership"]["id"] == pending_record.id

    def test_delete_and_restore_person(self, client, student, leader, active_record):
        response = client.post(f"/api/persons/{student.id}/delete", json={"reason": "Duplicate"}, headers=as_(leader))
        assert response.status_code == 200
        assert response.json()["soft_deleted"] is True

        # A deleted person can no longer act
        response = client.post("/api/presence/heartbeat", headers=as_(student))
        assert response.status_code == 401

        response = client.post(f"/api/persons/{student.id}/restore", headers=as_(leader))
        assert response.status_code == 200
        assert response.json()["soft_deleted"] is False

    def test_removal_status_clears_after_reapplication(self, client, sm, student, active_record, officer, leader):
        sm.remove(active_record.id, officer.id, "policy violation")
        sm.reset_cooldown(active_record.id, leader.id)
        sm.apply(student.id)

        body = client.get(f"/api/persons/{student.id}/removal-status", headers=as_(student)).json()
        assert body == {"removal_info": None}

    def test_list_persons_by_role(self, client, student, officer):
        response = client.get("/api/persons?role=STUDENT&role=CLUB_STUDENT", headers=as_(officer))
        assert response.status_code == 200
        assert [p["id"] for p in response.json()] == [student.id]

        response = client.get("/api/persons?role=OFFICER", headers=as_(officer))
        assert response.status_code == 422
        assert response.json()["field"] == "role"

    def test_list_deleted_persons(self, client, student, leader):
        client.post(f"/api/persons/{student.id}/delete", json={"reason": "Duplicate"}, headers=as_(leader))

        response = client.get("/api/persons/deleted", headers=as_(leader))
        assert [p["id"] for p in response.json()] == [student.id]

    def test_change_role_requires_admin(self, client, make_person, student, leader):
        response = client.patch(f"/api/persons/{student.id}/role", json={"role": "CLUB_STUDENT"}, headers=as_(leader))
        assert response.status_code == 403

        admin = make_person(Role.ADMIN)
        response = client.patch(f"/api/persons/{student.id}/role", json={"role": "CLUB_STUDENT"}, headers=as_(admin))
        assert response.status_code == 200
        assert response.json()["assigned_role"] == "CLUB_STUDENT"

        response = client.patch(f"/api/persons/{admin.id}/role", json={"role": "STUDENT"}, headers=as_(admin))
        assert response.status_code == 403


class TestPresenceEndpoints:

    def test_heartbeat_counts_and_sign_off(self, client, student, officer):
        assert client.post("/api/presence/heartbeat", headers=as_(student)).status_code == 204
        assert client.post("/api/presence/heartbeat", headers=as_(officer)).status_code == 204

        counts = client.get("/api/presence/counts").json()
        assert counts == {"admin": 0, "officer": 1, "club_student": 0, "student": 1}

        assert client.delete("/api/presence", headers=as_(student)).status_code == 204
        assert client.get("/api/presence/counts").json()["student"] == 0


def test_health(client):
    assert client.get("/health").json()["status"] == "healthy"
