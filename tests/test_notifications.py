from labbo.models.enum import NotificationType
from labbo.models.notification import Notification
from labbo.services.notifications import create_notification, notify_staff


async def test_notify_staff_reaches_admins_and_lab_staff(admin, staff, student):
    sent = await notify_staff("New borrowing request", "Someone wants a microscope.")
    assert sent == 2
    recipients = {n.user_id for n in await Notification.find_all().to_list()}
    assert recipients == {admin.id, staff.id}


async def test_list_and_unread_count(client, student, other_student, headers):
    await create_notification(student.id, "Borrowing approved", "Pick it up at Lab A.", NotificationType.SUCCESS)
    await create_notification(student.id, "Return reminder", "Due tomorrow.", NotificationType.WARNING)
    await create_notification(other_student.id, "Not yours", "Hidden.")

    response = await client.get("/api/v1/notifications/", headers=headers(student))
    assert response.status_code == 200
    assert {n["title"] for n in response.json()} == {"Borrowing approved", "Return reminder"}

    response = await client.get("/api/v1/notifications/unread-count", headers=headers(student))
    assert response.json() == {"unread": 2}


async def test_mark_read_and_delete(client, student, other_student, headers):
    notification = await create_notification(student.id, "Borrowing approved", "Pick it up at Lab A.")
    url = f"/api/v1/notifications/{notification.id}"

    assert (await client.patch(f"{url}/read", headers=headers(other_student))).status_code == 404
    response = await client.patch(f"{url}/read", headers=headers(student))
    assert response.status_code == 200
    assert response.json()["is_read"] is True

    response = await client.get("/api/v1/notifications/", params={"unread_only": True}, headers=headers(student))
    assert response.json() == []

    assert (await client.delete(url, headers=headers(other_student))).status_code == 404
    assert (await client.delete(url, headers=headers(student))).status_code == 204
    assert await Notification.get(notification.id) is None


async def test_mark_all_read(client, student, other_student, headers):
    for title in ("One", "Two", "Three"):
        await create_notification(student.id, title, "...")
    await create_notification(other_student.id, "Theirs", "...")

    response = await client.post("/api/v1/notifications/read-all", headers=headers(student))
    assert response.json()["updated"] == 3
    assert await Notification.find({"user_id": other_student.id, "is_read": False}).count() == 1
