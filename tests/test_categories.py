from labbo.models.category import Category
from labbo.models.enum import EquipmentStatus


async def test_create_category_generates_code(client, staff, headers):
    response = await client.post("/api/v1/categories/", json={"name": "Centrifuges"}, headers=headers(staff))
    assert response.status_code == 201
    assert response.json()["category_code"] == "CEN"

    response = await client.post("/api/v1/categories/", json={"name": "Centrifuge Rotors"}, headers=headers(staff))
    assert response.json()["category_code"] == "CEN2"

    response = await client.post("/api/v1/categories/", json={"name": "Glassware", "category_code": " gls "},
                                 headers=headers(staff))
    assert response.json()["category_code"] == "GLS"


async def test_duplicate_names_are_case_insensitive(client, staff, category, headers):
    response = await client.post("/api/v1/categories/", json={"name": "microscopes"}, headers=headers(staff))
    assert response.status_code == 400
    response = await client.post("/api/v1/categories/", json={"name": "Optics", "category_code": "MIC"},
                                 headers=headers(staff))
    assert response.status_code == 400


async def test_borrowers_can_read_but_not_write(client, student, category, headers):
    assert (await client.get("/api/v1/categories/", headers=headers(student))).status_code == 200
    response = await client.post("/api/v1/categories/", json={"name": "Pipettes"}, headers=headers(student))
    assert response.status_code == 403


async def test_list_includes_equipment_count(client, student, category, make_equipment, headers):
    await make_equipment()
    await make_equipment(name="Old Microscope", status=EquipmentStatus.RETIRED)
    response = await client.get("/api/v1/categories/", headers=headers(student))
    assert response.status_code == 200
    assert response.json()[0]["equipment_count"] == 1

    response = await client.get(f"/api/v1/categories/{category.id}", headers=headers(student))
    assert response.json()["equipment_count"] == 1


async def test_update_category(client, staff, category, headers):
    response = await client.put(f"/api/v1/categories/{category.id}", json={"description": "Light and stereo"},
                                headers=headers(staff))
    assert response.status_code == 200
    assert response.json()["description"] == "Light and stereo"
    response = await client.put(f"/api/v1/categories/{category.id}", json={}, headers=headers(staff))
    assert response.status_code == 400


async def test_delete_category_in_use(client, staff, category, make_equipment, headers):
    equipment = await make_equipment()
    response = await client.delete(f"/api/v1/categories/{category.id}", headers=headers(staff))
    assert response.status_code == 400

    await equipment.update({"$set": {"status": EquipmentStatus.RETIRED.value}})
    response = await client.delete(f"/api/v1/categories/{category.id}", headers=headers(staff))
    assert response.status_code == 204
    assert await Category.get(category.id) is None
