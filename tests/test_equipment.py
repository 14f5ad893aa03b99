import json
from datetime import timedelta

from beanie import PydanticObjectId

from labbo.core.utils import utc_now
from labbo.models.enum import BorrowingStatus, EquipmentStatus
from labbo.models.equipment import Equipment, EquipmentImage
from labbo.services import qr_labels, storage

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


async def test_create_generates_serial_from_category_code(client, staff, category, headers):
    payload = {"name": "Stereo Microscope", "category_id": str(category.id), "stock": 3, "location": "Lab B"}
    response = await client.post("/api/v1/equipment/", json=payload, headers=headers(staff))
    assert response.status_code == 201
    data = response.json()
    assert data["serial_number"] == "MIC-00001"
    assert data["status"] == "available"
    assert data["category"]["category_code"] == "MIC"

    response = await client.post("/api/v1/equipment/", json=payload, headers=headers(staff))
    assert response.json()["serial_number"] == "MIC-00002"


async def test_manual_serial_must_be_unique(client, staff, category, make_equipment, headers):
    existing = await make_equipment()
    payload = {"name": "Spare", "category_id": str(category.id), "serial_number": existing.serial_number}
    response = await client.post("/api/v1/equipment/", json=payload, headers=headers(staff))
    assert response.status_code == 409


async def test_students_cannot_create(client, student, category, headers):
    payload = {"name": "Spare", "category_id": str(category.id)}
    response = await client.post("/api/v1/equipment/", json=payload, headers=headers(student))
    assert response.status_code == 403


async def test_list_search_and_available_only(client, student, make_equipment, headers):
    await make_equipment(name="Binocular Microscope")
    await make_equipment(name="Digital Microscope", stock=0)
    await make_equipment(name="Hot Plate", status=EquipmentStatus.MAINTENANCE)

    response = await client.get("/api/v1/equipment/", params={"search": "microscope"}, headers=headers(student))
    assert [e["name"] for e in response.json()] == ["Binocular Microscope", "Digital Microscope"]

    response = await client.get("/api/v1/equipment/", params={"available_only": True}, headers=headers(student))
    assert [e["name"] for e in response.json()] == ["Binocular Microscope"]

    response = await client.get("/api/v1/equipment/", params={"status": "maintenance"}, headers=headers(student))
    assert [e["name"] for e in response.json()] == ["Hot Plate"]


async def test_update_equipment(client, staff, make_equipment, headers):
    equipment = await make_equipment()
    other = await make_equipment(name="Other")
    response = await client.put(f"/api/v1/equipment/{equipment.id}",
                                json={"condition": "fair", "stock": 5, "location": "Store Room"},
                                headers=headers(staff))
    assert response.status_code == 200
    data = response.json()
    assert (data["condition"], data["stock"], data["location"]) == ("fair", 5, "Store Room")

    response = await client.put(f"/api/v1/equipment/{equipment.id}", json={"serial_number": other.serial_number},
                                headers=headers(staff))
    assert response.status_code == 409


async def test_retire_blocked_by_open_borrowings(client, staff, student, make_equipment, make_borrowing, headers):
    equipment = await make_equipment()
    borrowing = await make_borrowing(student, equipment, status=BorrowingStatus.PENDING)
    response = await client.delete(f"/api/v1/equipment/{equipment.id}", headers=headers(staff))
    assert response.status_code == 409

    await borrowing.update({"$set": {"status": BorrowingStatus.REJECTED.value}})
    response = await client.delete(f"/api/v1/equipment/{equipment.id}", headers=headers(staff))
    assert response.status_code == 204
    assert (await Equipment.get(equipment.id)).status == EquipmentStatus.RETIRED

    response = await client.get("/api/v1/equipment/", headers=headers(student))
    assert response.json() == []
    assert (await client.get(f"/api/v1/equipment/{equipment.id}", headers=headers(student))).status_code == 404
    assert (await client.get(f"/api/v1/equipment/{equipment.id}", headers=headers(staff))).status_code == 200
    response = await client.get("/api/v1/equipment/", params={"include_retired": True}, headers=headers(staff))
    assert len(response.json()) == 1


async def test_qr_label_and_scan(client, student, make_equipment, headers):
    equipment = await make_equipment()
    response = await client.get(f"/api/v1/equipment/{equipment.id}/qr", headers=headers(student))
    assert response.status_code == 200
    body = response.json()
    assert body["payload"]["serial"] == equipment.serial_number
    assert body["payload"]["category"] == "Microscopes"
    assert body["qr_code"].startswith("data:image/png;base64,")

    response = await client.get(f"/api/v1/equipment/{equipment.id}/qr", params={"format": "png"},
                                headers=headers(student))
    assert response.headers["content-type"] == "image/png"
    assert response.content.startswith(b"\x89PNG")

    raw = qr_labels.encode_payload(body["payload"])
    response = await client.post("/api/v1/equipment/qr/scan", json={"data": raw}, headers=headers(student))
    assert response.status_code == 200
    assert response.json()["id"] == str(equipment.id)


async def test_scan_rejects_foreign_or_stale_labels(client, student, make_equipment, headers):
    equipment = await make_equipment()
    response = await client.post("/api/v1/equipment/qr/scan", json={"data": "https://example.com"},
                                 headers=headers(student))
    assert response.status_code == 400

    stale = qr_labels.build_equipment_payload(equipment)
    stale["serial"] = "MIC-OLD"
    response = await client.post("/api/v1/equipment/qr/scan", json={"data": json.dumps(stale)},
                                 headers=headers(student))
    assert response.status_code == 409


async def test_csv_import_reports_bad_rows(client, staff, category, headers):
    csv_body = (
        "Name,Category,Stock,Condition,Serial\n"
        "Compound Microscope,microscopes,4,good,\n"
        "Mystery Box,Unknown,x,broken,\n"
        "Phase Microscope,Microscopes,,fair,MIC-CUSTOM\n"
    ).encode()
    files = {"file": ("equipment.csv", csv_body, "text/csv")}

    response = await client.post("/api/v1/equipment/import", params={"dry_run": True}, files=files,
                                 headers=headers(staff))
    assert response.status_code == 200
    result = response.json()
    assert (result["total_rows"], result["imported"], result["failed"]) == (3, 2, 1)
    assert result["errors"][0]["row"] == 3
    assert len(result["errors"][0]["errors"]) == 3
    assert await Equipment.find_all().count() == 0

    response = await client.post("/api/v1/equipment/import", files=files, headers=headers(staff))
    result = response.json()
    assert result["imported"] == 2
    serials = sorted(item["serial_number"] for item in result["items"])
    assert serials == ["MIC-00001", "MIC-CUSTOM"]

    response = await client.post("/api/v1/equipment/import", files={"file": ("notes.txt", b"x", "text/plain")},
                                 headers=headers(staff))
    assert response.status_code == 400


async def test_csv_export(client, staff, make_equipment, headers):
    equipment = await make_equipment()
    response = await client.get("/api/v1/equipment/export", headers=headers(staff))
    assert response.status_code == 200
    assert "attachment" in response.headers["content-disposition"]
    lines = response.content.decode("utf-8-sig").splitlines()
    assert lines[0].startswith("ID,Name,Serial Number,Category")
    assert equipment.serial_number in lines[1]


async def test_image_upload_and_delete(client, staff, make_equipment, headers):
    equipment = await make_equipment()
    url = f"/api/v1/equipment/{equipment.id}/images"
    response = await client.post(url, files={"file": ("a.png", PNG_BYTES, "image/png")}, headers=headers(staff))
    assert response.status_code == 201
    first = response.json()
    assert first["url"].endswith(".png")
    assert (await Equipment.get(equipment.id)).image_url == first["url"]

    response = await client.post(url, files={"file": ("b.png", PNG_BYTES, "image/png")}, headers=headers(staff))
    second = response.json()
    assert second["is_primary"] is False

    response = await client.patch(f"{url}/{second['id']}/primary", headers=headers(staff))
    assert response.status_code == 200
    assert (await Equipment.get(equipment.id)).image_url == second["url"]

    assert (await client.delete(f"{url}/{second['id']}", headers=headers(staff))).status_code == 204
    assert (await Equipment.get(equipment.id)).image_url == first["url"]
    assert (await client.delete(f"{url}/{first['id']}", headers=headers(staff))).status_code == 204
    assert (await Equipment.get(equipment.id)).image_url is None
    assert await EquipmentImage.find_all().count() == 0


async def test_image_upload_rejects_other_types(client, staff, make_equipment, headers):
    equipment = await make_equipment()
    response = await client.post(f"/api/v1/equipment/{equipment.id}/images",
                                 files={"file": ("a.txt", b"hello", "text/plain")}, headers=headers(staff))
    assert response.status_code == 415


async def test_image_file_is_written_and_removed(client, staff, make_equipment, headers):
    equipment = await make_equipment()
    url = f"/api/v1/equipment/{equipment.id}/images"
    response = await client.post(url, files={"file": ("a.png", PNG_BYTES, "image/png")}, headers=headers(staff))
    assert response.status_code == 201
    image = await EquipmentImage.get(PydanticObjectId(response.json()["id"]))
    path = storage.equipment_image_path(str(equipment.id), image.filename)
    assert path.read_bytes() == PNG_BYTES

    assert (await client.delete(f"{url}/{image.id}", headers=headers(staff))).status_code == 204
    assert not path.exists()
    # already gone
    assert await storage.delete_equipment_image(str(equipment.id), image.filename) is False


async def test_stock_change_keeps_status_in_step(client, staff, student, make_equipment, headers):
    empty = await make_equipment(stock=0, status=EquipmentStatus.BORROWED)
    response = await client.put(f"/api/v1/equipment/{empty.id}", json={"stock": 3}, headers=headers(staff))
    assert response.status_code == 200
    assert (response.json()["stock"], response.json()["status"]) == (3, "available")
    response = await client.post("/api/v1/borrowings/", headers=headers(student), json={
        "equipment_id": str(empty.id), "expected_return_date": (utc_now() + timedelta(days=3)).date().isoformat(),
        "purpose": "Practicum",
    })
    assert response.status_code == 201

    stocked = await make_equipment(name="Spectrometer")
    response = await client.put(f"/api/v1/equipment/{stocked.id}", json={"stock": 0}, headers=headers(staff))
    assert response.json()["status"] == "borrowed"

    # an explicit status wins
    response = await client.put(f"/api/v1/equipment/{stocked.id}", json={"stock": 4, "status": "maintenance"},
                                headers=headers(staff))
    assert response.json()["status"] == "maintenance"
    in_repair = await make_equipment(name="Centrifuge", status=EquipmentStatus.MAINTENANCE)
    response = await client.put(f"/api/v1/equipment/{in_repair.id}", json={"stock": 0}, headers=headers(staff))
    assert response.json()["status"] == "maintenance"
