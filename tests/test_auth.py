import re
from datetime import timedelta

from labbo.core.utils import utc_now
from labbo.models.enum import ApprovalStatus, TokenPurpose
from labbo.models.notification import Notification
from labbo.models.token import AuthToken
from labbo.models.user import User
from labbo.services.email import email_service

from .conftest import PASSWORD, create_user

REGISTRATION = {
    "email": "New.Student@Campus.ac.id",
    "full_name": "New Student",
    "password": "Str0ngPass",
    "role": "student",
    "nim": "2101099",
}


def last_token_sent_to(email: str) -> str:
    message = [m for m in email_service.outbox if m.to == email][-1]
    return re.search(r"token=([\w-]+)", message.html).group(1)


async def test_register_verify_approve_and_login(client, admin, headers):
    response = await client.post("/api/v1/auth/register", json=REGISTRATION)
    assert response.status_code == 201
    data = response.json()
    assert data["email"] == "new.student@campus.ac.id"
    assert data["approval_status"] == "pending"
    assert data["email_verified"] is False
    assert "hashed_password" not in data

    credentials = {"email": "new.student@campus.ac.id", "password": "Str0ngPass"}
    response = await client.post("/api/v1/auth/login", json=credentials)
    assert response.status_code == 403
    assert "verify your email" in response.json()["detail"]

    token = last_token_sent_to("new.student@campus.ac.id")
    response = await client.post("/api/v1/auth/verify-email", json={"token": token})
    assert response.status_code == 200
    assert "waiting for administrator approval" in response.json()["message"]

    response = await client.post("/api/v1/auth/verify-email", json={"token": token})
    assert response.status_code == 400

    response = await client.post("/api/v1/auth/login", json=credentials)
    assert response.status_code == 403
    assert "approval" in response.json()["detail"]

    response = await client.post(f"/api/v1/users/{data['id']}/approve", headers=headers(admin))
    assert response.status_code == 200

    response = await client.post("/api/v1/auth/login", json=credentials)
    assert response.status_code == 200
    body = response.json()
    assert body["token_type"] == "bearer"
    assert body["user"]["login_count"] == 1
    assert "session" in response.cookies


async def test_register_rejects_duplicates_staff_roles_and_weak_passwords(client):
    assert (await client.post("/api/v1/auth/register", json=REGISTRATION)).status_code == 201
    response = await client.post("/api/v1/auth/register", json=REGISTRATION)
    assert response.status_code == 400
    assert "already registered" in response.json()["detail"]

    response = await client.post("/api/v1/auth/register", json={**REGISTRATION, "email": "x@campus.ac.id", "role": "admin"})
    assert response.status_code == 422
    response = await client.post("/api/v1/auth/register", json={**REGISTRATION, "email": "y@campus.ac.id", "password": "weak"})
    assert response.status_code == 422


async def test_registration_notifies_staff(client, staff):
    await client.post("/api/v1/auth/register", json=REGISTRATION)
    notifications = await Notification.find({"user_id": staff.id}).to_list()
    assert [n.title for n in notifications] == ["New registration"]


async def test_login_with_wrong_password_and_unknown_email(client, student):
    response = await client.post("/api/v1/auth/login", json={"email": student.email, "password": "Wrong1234"})
    assert response.status_code == 401
    response = await client.post("/api/v1/auth/login", json={"email": "nobody@campus.ac.id", "password": "Wrong1234"})
    assert response.status_code == 401
    assert response.json()["detail"] == "Incorrect email or password"


async def test_account_locks_after_repeated_failures(client, student):
    for _ in range(4):
        response = await client.post("/api/v1/auth/login", json={"email": student.email, "password": "Wrong1234"})
        assert response.status_code == 401
    response = await client.post("/api/v1/auth/login", json={"email": student.email, "password": "Wrong1234"})
    assert response.status_code == 423

    # correct password is refused while locked
    response = await client.post("/api/v1/auth/login", json={"email": student.email, "password": PASSWORD})
    assert response.status_code == 423
    assert any("locked" in m.subject for m in email_service.outbox)

    user = await User.get(student.id)
    assert user.locked_until is not None


async def test_expired_lock_allows_login(client, student):
    await student.update({"$set": {"locked_until": utc_now() - timedelta(minutes=1)}})
    response = await client.post("/api/v1/auth/login", json={"email": student.email, "password": PASSWORD})
    assert response.status_code == 200


async def test_disabled_and_rejected_accounts_cannot_login(client):
    await create_user("disabled@campus.ac.id", disabled=True)
    await create_user("rejected@campus.ac.id", approval_status=ApprovalStatus.REJECTED)
    response = await client.post("/api/v1/auth/login", json={"email": "disabled@campus.ac.id", "password": PASSWORD})
    assert response.status_code == 403
    response = await client.post("/api/v1/auth/login", json={"email": "rejected@campus.ac.id", "password": PASSWORD})
    assert response.status_code == 403
    assert "not approved" in response.json()["detail"]


async def test_oauth2_token_endpoint(client, student):
    response = await client.post("/api/v1/auth/token", data={"username": student.email, "password": PASSWORD})
    assert response.status_code == 200
    token = response.json()["access_token"]
    client.cookies.clear()
    response = await client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 200
    assert response.json()["email"] == student.email


async def test_protected_routes_require_a_token(client):
    response = await client.get("/api/v1/auth/me")
    assert response.status_code == 401
    response = await client.get("/api/v1/auth/me", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401


async def test_session_cookie_authenticates(client, student):
    response = await client.post("/api/v1/auth/login", json={"email": student.email, "password": PASSWORD})
    assert response.status_code == 200
    response = await client.get("/api/v1/auth/me")
    assert response.status_code == 200

    await client.post("/api/v1/auth/logout")
    client.cookies.clear()
    assert (await client.get("/api/v1/auth/me")).status_code == 401


async def test_logout_all_revokes_existing_tokens(client, student, headers):
    old_headers = headers(student)
    response = await client.post("/api/v1/auth/logout-all", headers=old_headers)
    assert response.status_code == 200
    client.cookies.clear()
    assert (await client.get("/api/v1/auth/me", headers=old_headers)).status_code == 401

    refreshed = await User.get(student.id)
    assert (await client.get("/api/v1/auth/me", headers=headers(refreshed))).status_code == 200


async def test_password_reset_flow(client, student, headers):
    old_headers = headers(student)
    response = await client.post("/api/v1/auth/forgot-password", json={"email": student.email})
    assert response.status_code == 202
    token = last_token_sent_to(student.email)

    response = await client.post("/api/v1/auth/reset-password", json={"token": token, "new_password": "N3wPassword"})
    assert response.status_code == 200
    response = await client.post("/api/v1/auth/reset-password", json={"token": token, "new_password": "N3wPassword"})
    assert response.status_code == 400

    assert (await client.get("/api/v1/auth/me", headers=old_headers)).status_code == 401
    response = await client.post("/api/v1/auth/login", json={"email": student.email, "password": "N3wPassword"})
    assert response.status_code == 200


async def test_forgot_password_does_not_reveal_unknown_emails(client):
    response = await client.post("/api/v1/auth/forgot-password", json={"email": "ghost@campus.ac.id"})
    assert response.status_code == 202
    assert email_service.outbox == []


async def test_expired_reset_token_is_rejected(client, student):
    await client.post("/api/v1/auth/forgot-password", json={"email": student.email})
    token = last_token_sent_to(student.email)
    stored = await AuthToken.find_one({"user_id": student.id, "purpose": TokenPurpose.PASSWORD_RESET.value})
    await stored.update({"$set": {"expires_at": utc_now() - timedelta(minutes=1)}})
    response = await client.post("/api/v1/auth/reset-password", json={"token": token, "new_password": "N3wPassword"})
    assert response.status_code == 400
    assert "expired" in response.json()["detail"]


async def test_new_reset_request_invalidates_the_previous_link(client, student):
    await client.post("/api/v1/auth/forgot-password", json={"email": student.email})
    first = last_token_sent_to(student.email)
    await client.post("/api/v1/auth/forgot-password", json={"email": student.email})
    response = await client.post("/api/v1/auth/reset-password", json={"token": first, "new_password": "N3wPassword"})
    assert response.status_code == 400


async def test_profile_update_and_change_password(client, student, headers):
    response = await client.put("/api/v1/auth/me", json={"department": "Biology", "phone": "0812"},
                                headers=headers(student))
    assert response.status_code == 200
    assert response.json()["department"] == "Biology"

    response = await client.post("/api/v1/auth/me/change-password",
                                 json={"current_password": "Wrong1234", "new_password": "An0therPass"},
                                 headers=headers(student))
    assert response.status_code == 400

    old_headers = headers(student)
    response = await client.post("/api/v1/auth/me/change-password",
                                 json={"current_password": PASSWORD, "new_password": "An0therPass"},
                                 headers=old_headers)
    assert response.status_code == 200
    new_token = response.json()["access_token"]
    client.cookies.clear()
    assert (await client.get("/api/v1/auth/me", headers=old_headers)).status_code == 401
    assert (await client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {new_token}"})).status_code == 200
