from datetime import timedelta

from labbo.core.utils import utc_now
from labbo.models.enum import ApprovalStatus, BorrowingStatus, UserRole
from labbo.models.user import User
from labbo.services.email import email_service

from .conftest import create_user


async def test_only_admins_manage_users(client, staff, student, headers):
    assert (await client.get("/api/v1/users/", headers=headers(student))).status_code == 403
    assert (await client.get("/api/v1/users/", headers=headers(staff))).status_code == 403


async def test_list_and_filter_users(client, admin, student, lecturer, headers):
    response = await client.get("/api/v1/users/", headers=headers(admin))
    assert response.status_code == 200
    assert {u["email"] for u in response.json()} == {admin.email, student.email, lecturer.email}

    response = await client.get("/api/v1/users/", params={"role": "lecturer"}, headers=headers(admin))
    assert [u["email"] for u in response.json()] == [lecturer.email]

    response = await client.get("/api/v1/users/", params={"search": "2101001"}, headers=headers(admin))
    assert [u["email"] for u in response.json()] == [student.email]


async def test_admin_creates_preapproved_user(client, admin, headers):
    payload = {"email": "Tech@Campus.ac.id", "full_name": "Lab Technician", "password": "Techn1cian",
               "role": "lab_staff"}
    response = await client.post("/api/v1/users/", json=payload, headers=headers(admin))
    assert response.status_code == 201
    data = response.json()
    assert data["email"] == "tech@campus.ac.id"
    assert data["approval_status"] == "approved"
    assert data["email_verified"] is True
    assert email_service.outbox[-1].to == "tech@campus.ac.id"

    response = await client.post("/api/v1/users/", json=payload, headers=headers(admin))
    assert response.status_code == 400


async def test_pending_registrations_approve_and_reject(client, admin, headers):
    pending = await create_user("pending@campus.ac.id", approval_status=ApprovalStatus.PENDING)
    other = await create_user("pending2@campus.ac.id", approval_status=ApprovalStatus.PENDING)

    response = await client.get("/api/v1/users/pending", headers=headers(admin))
    assert {u["email"] for u in response.json()} == {pending.email, other.email}

    response = await client.post(f"/api/v1/users/{pending.id}/approve", headers=headers(admin))
    assert response.json()["approval_status"] == "approved"
    response = await client.post(f"/api/v1/users/{pending.id}/approve", headers=headers(admin))
    assert response.status_code == 400

    response = await client.post(f"/api/v1/users/{other.id}/reject", json={"reason": "Not a student"},
                                 headers=headers(admin))
    assert response.json()["approval_status"] == "rejected"
    assert "Not a student" in email_service.outbox[-1].html


async def test_update_user_and_password_change_revokes_tokens(client, admin, student, headers):
    student_headers = headers(student)
    response = await client.put(f"/api/v1/users/{student.id}", json={"role": "lecturer", "password": "Res3tPassword"},
                                headers=headers(admin))
    assert response.status_code == 200
    assert response.json()["role"] == "lecturer"
    assert (await client.get("/api/v1/auth/me", headers=student_headers)).status_code == 401


async def test_admin_cannot_demote_disable_or_delete_self(client, admin, headers):
    response = await client.put(f"/api/v1/users/{admin.id}", json={"role": "student"}, headers=headers(admin))
    assert response.status_code == 403
    response = await client.patch(f"/api/v1/users/{admin.id}/disable", headers=headers(admin))
    assert response.status_code == 403
    response = await client.delete(f"/api/v1/users/{admin.id}", headers=headers(admin))
    assert response.status_code == 403


async def test_disable_and_enable(client, admin, student, headers):
    response = await client.patch(f"/api/v1/users/{student.id}/disable", headers=headers(admin))
    assert response.json()["disabled"] is True
    refreshed = await User.get(student.id)
    assert (await client.get("/api/v1/auth/me", headers=headers(refreshed))).status_code == 403

    response = await client.patch(f"/api/v1/users/{student.id}/enable", headers=headers(admin))
    assert response.json()["disabled"] is False


async def test_ban_and_unlock(client, admin, student, headers):
    response = await client.post(f"/api/v1/users/{student.id}/ban",
                                 json={"banned_until": (utc_now() - timedelta(days=1)).isoformat()},
                                 headers=headers(admin))
    assert response.status_code == 400

    until = utc_now() + timedelta(days=7)
    response = await client.post(f"/api/v1/users/{student.id}/ban",
                                 json={"banned_until": until.isoformat(), "reason": "Late returns"},
                                 headers=headers(admin))
    assert response.status_code == 200
    assert response.json()["banned_until"] is not None

    response = await client.post(f"/api/v1/users/{student.id}/unban", headers=headers(admin))
    assert response.json()["banned_until"] is None

    await student.update({"$set": {"locked_until": utc_now() + timedelta(minutes=10), "failed_login_attempts": 3}})
    response = await client.post(f"/api/v1/users/{student.id}/unlock", headers=headers(admin))
    assert response.json()["locked_until"] is None


async def test_delete_user_guards(client, admin, student, make_equipment, make_borrowing, headers):
    equipment = await make_equipment()
    await make_borrowing(student, equipment, status=BorrowingStatus.PENDING)
    response = await client.delete(f"/api/v1/users/{student.id}", headers=headers(admin))
    assert response.status_code == 409

    spare = await create_user("spare@campus.ac.id")
    response = await client.delete(f"/api/v1/users/{spare.id}", headers=headers(admin))
    assert response.status_code == 204
    assert await User.get(spare.id) is None


async def test_invalid_and_unknown_ids(client, admin, headers):
    assert (await client.get("/api/v1/users/not-an-id", headers=headers(admin))).status_code == 400
    assert (await client.get("/api/v1/users/665f1c2b9d1e4a0012345678", headers=headers(admin))).status_code == 404


async def test_last_admin_is_protected(client, admin, headers):
    second = await create_user("admin2@campus.ac.id", UserRole.ADMIN)
    response = await client.delete(f"/api/v1/users/{admin.id}", headers=headers(second))
    assert response.status_code == 204
    # second is now the only admin and cannot delete itself
    response = await client.delete(f"/api/v1/users/{second.id}", headers=headers(second))
    assert response.status_code == 403
