from labbo.core.utils import utc_now
from labbo.models.enum import BorrowingStatus, EquipmentStatus


async def test_analytics_is_staff_only(client, student, headers):
    response = await client.get("/api/v1/analytics/summary", headers=headers(student))
    assert response.status_code == 403


async def test_dashboard_summary(client, staff, student, make_equipment, make_borrowing, headers):
    microscope = await make_equipment(stock=3)
    await make_equipment(name="Hot Plate", stock=1, status=EquipmentStatus.MAINTENANCE)
    await make_equipment(name="Old Scope", stock=5, status=EquipmentStatus.RETIRED)
    await make_borrowing(student, microscope, status=BorrowingStatus.PENDING)
    await make_borrowing(student, microscope, due_in_days=-2, return_requested=True)
    await make_borrowing(student, microscope, status=BorrowingStatus.RETURNED, penalty_amount=5000)

    response = await client.get("/api/v1/analytics/summary", headers=headers(staff))
    assert response.status_code == 200
    summary = response.json()
    assert summary["total_equipment"] == 2
    assert summary["total_units_in_stock"] == 4
    assert summary["available_equipment"] == 1
    assert summary["maintenance_equipment"] == 1
    assert summary["total_users"] == 2
    assert summary["pending_requests"] == 1
    assert summary["active_borrowings"] == 1
    assert summary["overdue_borrowings"] == 1
    assert summary["pending_returns"] == 1
    assert summary["unpaid_penalties"] == 1


async def test_equipment_status_and_category_buckets(client, staff, category, make_equipment, headers):
    await make_equipment()
    await make_equipment(name="Spare", status=EquipmentStatus.BORROWED)
    response = await client.get("/api/v1/analytics/equipment-status", headers=headers(staff))
    counts = {b["key"]: b["count"] for b in response.json()}
    assert counts == {"available": 1, "borrowed": 1, "maintenance": 0, "retired": 0}

    response = await client.get("/api/v1/analytics/categories", headers=headers(staff))
    assert response.json() == [{"key": str(category.id), "label": "Microscopes", "count": 2}]


async def test_top_equipment_and_borrowers(client, staff, student, other_student, make_equipment, make_borrowing,
                                           headers):
    popular = await make_equipment(name="Popular")
    quiet = await make_equipment(name="Quiet")
    await make_borrowing(student, popular)
    await make_borrowing(other_student, popular, status=BorrowingStatus.RETURNED, quantity=2)
    await make_borrowing(student, quiet, status=BorrowingStatus.RETURNED)
    await make_borrowing(student, quiet, status=BorrowingStatus.REJECTED)

    response = await client.get("/api/v1/analytics/top-equipment", params={"limit": 5}, headers=headers(staff))
    report = response.json()
    assert [(i["name"], i["borrow_count"], i["total_quantity"]) for i in report["items"]] == [
        ("Popular", 2, 3), ("Quiet", 1, 1),
    ]

    response = await client.get("/api/v1/analytics/top-borrowers", headers=headers(staff))
    assert [(b["email"], b["borrow_count"]) for b in response.json()] == [
        (student.email, 2), (other_student.email, 1),
    ]

    response = await client.get("/api/v1/analytics/top-equipment",
                                params={"start_date": "2024-02-01T00:00:00Z", "end_date": "2024-01-01T00:00:00Z"},
                                headers=headers(staff))
    assert response.status_code == 400


async def test_activity_series(client, staff, student, make_equipment, make_borrowing, headers):
    equipment = await make_equipment()
    await make_borrowing(student, equipment, status=BorrowingStatus.RETURNED, actual_return_date=utc_now())

    response = await client.get("/api/v1/analytics/activity/daily", params={"days": 7}, headers=headers(staff))
    points = response.json()
    assert len(points) == 7
    assert points[-1]["period"] == utc_now().date().isoformat()
    assert sum(p["borrowings"] for p in points) == 1
    assert points[-1]["returns"] == 1

    response = await client.get("/api/v1/analytics/activity/monthly", params={"months": 3}, headers=headers(staff))
    points = response.json()
    assert len(points) == 3
    assert points[-1]["period"] == utc_now().strftime("%Y-%m")


async def test_return_conditions_and_penalty_summary(client, staff, student, make_equipment, make_borrowing,
                                                     headers):
    equipment = await make_equipment()
    await make_borrowing(student, equipment, status=BorrowingStatus.RETURNED, return_condition="good",
                         penalty_amount=10000, penalty_paid=True)
    await make_borrowing(student, equipment, status=BorrowingStatus.RETURNED, return_condition="damaged",
                         penalty_amount=5000)
    await make_borrowing(student, equipment, status=BorrowingStatus.RETURNED, return_condition="good")
    await make_borrowing(student, equipment, due_in_days=-2)

    response = await client.get("/api/v1/analytics/return-conditions", headers=headers(staff))
    assert {b["key"]: b["count"] for b in response.json()} == {"good": 2, "damaged": 1}

    response = await client.get("/api/v1/analytics/penalties", headers=headers(staff))
    summary = response.json()
    assert summary["currency"] == "Rp"
    assert (summary["paid_amount"], summary["unpaid_amount"], summary["total_amount"]) == (10000, 5000, 15000)
    assert (summary["paid_count"], summary["unpaid_count"]) == (1, 1)
    assert summary["projected_outstanding"] == 10000
