# labbo/api/v1/endpoints/equipment.py
import re
from typing import Dict, List, Literal, Optional

from beanie import PydanticObjectId
from fastapi import (
    APIRouter, Body, Depends, File, Form, HTTPException, Path, Query, Request, Response, UploadFile, status,
)
from loguru import logger
from pymongo.errors import DuplicateKeyError

from labbo.api.v1.endpoints.categories import get_category_or_404
from labbo.core import config
from labbo.core.rate_limiter import limiter
from labbo.core.security import get_current_active_user, is_staff, require_staff_or_admin
from labbo.core.utils import get_next_sequence_value, parse_object_id, to_response, utc_now
from labbo.models.borrowing import Borrowing
from labbo.models.category import Category
from labbo.models.enum import BorrowingStatus, EquipmentStatus, EquipmentCondition
from labbo.models.equipment import (
    CategoryRefSimple, Equipment, EquipmentImage, ImportResult, ImportRowError,
)
from labbo.models.user import User
from labbo.services import qr_labels, spreadsheets, storage

router = APIRouter(tags=["Equipment"])


# --- Helpers ---
async def get_equipment_or_404(equipment_id: str) -> Equipment:
    equipment = await Equipment.get(parse_object_id(equipment_id, "equipment ID"))
    if not equipment:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Equipment with ID '{equipment_id}' not found")
    return equipment


async def load_categories(ids: List[PydanticObjectId]) -> Dict[PydanticObjectId, Category]:
    if not ids:
        return {}
    categories = await Category.find({"_id": {"$in": list(set(ids))}}).to_list()
    return {c.id: c for c in categories}


def build_equipment_response(equipment: Equipment, categories: Dict[PydanticObjectId, Category]) -> Equipment.Response:
    category = categories.get(equipment.category_id)
    category_ref = None
    if category:
        category_ref = CategoryRefSimple(id=str(category.id), name=category.name, category_code=category.category_code)
    return to_response(equipment, Equipment.Response, category=category_ref)


async def equipment_response(equipment: Equipment) -> Equipment.Response:
    return build_equipment_response(equipment, await load_categories([equipment.category_id]))


async def generate_serial_number(category: Category) -> str:
    """<CATEGORY_CODE>-<5 digit sequence>, skipping numbers already taken by manual serials."""
    while True:
        seq = await get_next_sequence_value(f"equipment_serial_{category.category_code}")
        serial = f"{category.category_code}-{seq:05d}"
        if not await Equipment.find_one(Equipment.serial_number == serial):
            return serial


async def ensure_serial_available(serial: str, exclude_id: Optional[PydanticObjectId] = None) -> None:
    query = {"serial_number": serial}
    if exclude_id:
        query["_id"] = {"$ne": exclude_id}
    if await Equipment.find_one(query):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"Serial number '{serial}' already exists.")


def open_borrowings_query(equipment_id: PydanticObjectId) -> dict:
    return {"equipment_id": equipment_id,
            "status": {"$in": [BorrowingStatus.PENDING.value, BorrowingStatus.ACTIVE.value]}}


# --- Catalog ---
@router.get("/", response_model=List[Equipment.Response])
@limiter.limit("120/minute")
async def read_equipment_list(
    request: Request,
    search: Optional[str] = Query(None, max_length=100, description="Matches name or serial number"),
    category_id: Optional[str] = Query(None),
    status_filter: Optional[EquipmentStatus] = Query(None, alias="status"),
    condition: Optional[EquipmentCondition] = Query(None),
    location: Optional[str] = Query(None, max_length=200),
    available_only: bool = Query(False),
    include_retired: bool = Query(False, description="Staff only"),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
    current_user: User = Depends(get_current_active_user),
):
    query = {}
    if search:
        pattern = {"$regex": re.escape(search.strip()), "$options": "i"}
        query["$or"] = [{"name": pattern}, {"serial_number": pattern}]
    if category_id:
        query["category_id"] = parse_object_id(category_id, "category ID")
    if location:
        query["location"] = {"$regex": re.escape(location.strip()), "$options": "i"}
    if condition:
        query["condition"] = condition.value
    if available_only:
        query["status"] = EquipmentStatus.AVAILABLE.value
        query["stock"] = {"$gt": 0}
    elif status_filter:
        query["status"] = status_filter.value
    elif not (include_retired and is_staff(current_user)):
        query["status"] = {"$ne": EquipmentStatus.RETIRED.value}

    items = await Equipment.find(query).sort("+name").skip(skip).limit(limit).to_list()
    categories = await load_categories([i.category_id for i in items])
    return [build_equipment_response(i, categories) for i in items]


@router.post("/", response_model=Equipment.Response, status_code=status.HTTP_201_CREATED)
@limiter.limit("60/hour")
async def create_equipment(request: Request, equipment_in: Equipment.Create = Body(...),
                           current_user: User = Depends(require_staff_or_admin)):
    category = await get_category_or_404(equipment_in.category_id)
    if equipment_in.serial_number:
        await ensure_serial_available(equipment_in.serial_number)
        serial = equipment_in.serial_number
    else:
        serial = await generate_serial_number(category)

    equipment = Equipment(
        **equipment_in.model_dump(exclude={"category_id", "serial_number"}),
        category_id=category.id,
        serial_number=serial,
        created_by=current_user.id,
    )
    try:
        await equipment.insert()
    except DuplicateKeyError:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"Serial number '{serial}' already exists.")
    logger.info(f"User '{current_user.email}' created equipment '{equipment.name}' ({serial}).")
    return build_equipment_response(equipment, {category.id: category})


# --- Export / import (static paths before /{equipment_id}) ---
EXPORT_HEADERS = ["ID", "Name", "Serial Number", "Category", "Condition", "Status", "Stock", "Location",
                  "Purchase Date", "Purchase Price", "Created At"]


@router.get("/export")
@limiter.limit("20/hour")
async def export_equipment(request: Request, format: Literal["csv", "xlsx"] = Query("csv"),
                           include_retired: bool = Query(False),
                           current_user: User = Depends(require_staff_or_admin)):
    query = {} if include_retired else {"status": {"$ne": EquipmentStatus.RETIRED.value}}
    items = await Equipment.find(query).sort("+name").to_list()
    categories = await load_categories([i.category_id for i in items])
    rows = [
        [str(i.id), i.name, i.serial_number,
         categories[i.category_id].name if i.category_id in categories else "",
         i.condition, i.status, i.stock, i.location, i.purchase_date, i.purchase_price, i.created_at]
        for i in items
    ]
    content, media_type = spreadsheets.build_export(EXPORT_HEADERS, rows, format, sheet_title="Equipment")
    filename = f"equipment_{utc_now():%Y%m%d}.{format}"
    logger.info(f"User '{current_user.email}' exported {len(rows)} equipment rows as {format}.")
    return Response(content=content, media_type=media_type,
                    headers={"Content-Disposition": f'attachment; filename="{filename}"'})


@router.post("/import", response_model=ImportResult)
@limiter.limit("10/hour")
async def import_equipment(request: Request, file: UploadFile = File(...), dry_run: bool = Query(False),
                           current_user: User = Depends(require_staff_or_admin)):
    """
    Bulk import from CSV or XLSX. Columns: name, category (existing category name,
    case-insensitive), stock (default 1), condition, location, serial_number,
    description, purchase_price. Valid rows are imported, invalid rows are reported.
    """
    content = await file.read()
    try:
        rows = spreadsheets.read_rows(file.filename or "", content)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    if not rows:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="The file contains no data rows.")
    if len(rows) > config.MAX_IMPORT_ROWS:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST,
                            detail=f"Too many rows ({len(rows)}). The limit is {config.MAX_IMPORT_ROWS}.")

    categories_by_name = {c.name.lower(): c for c in await Category.find_all().to_list()}
    result = ImportResult(dry_run=dry_run, total_rows=len(rows), imported=0, failed=0)
    seen_serials = set()

    for index, row in enumerate(rows, start=2):  # row 1 is the header
        data, errors = spreadsheets.parse_import_row(row, categories_by_name)
        serial = data.get("serial_number")
        if serial:
            if serial in seen_serials:
                errors.append(f"Serial number '{serial}' appears more than once in the file")
            elif await Equipment.find_one(Equipment.serial_number == serial):
                errors.append(f"Serial number '{serial}' already exists")
            seen_serials.add(serial)
        if errors:
            result.failed += 1
            result.errors.append(ImportRowError(row=index, errors=errors))
            continue
        if dry_run:
            result.imported += 1
            continue

        category: Category = data.pop("category")
        equipment = Equipment(
            **{k: v for k, v in data.items() if v is not None and k != "serial_number"},
            serial_number=serial or await generate_serial_number(category),
            category_id=category.id,
            created_by=current_user.id,
        )
        try:
            await equipment.insert()
        except DuplicateKeyError:
            result.failed += 1
            result.errors.append(ImportRowError(row=index, errors=["Serial number already exists"]))
            continue
        result.imported += 1
        result.items.append(build_equipment_response(equipment, {category.id: category}))

    logger.info(f"Equipment import by '{current_user.email}' (dry_run={dry_run}): "
                f"{result.imported} ok, {result.failed} failed of {result.total_rows}.")
    return result


@router.post("/qr/scan", response_model=Equipment.Response)
async def scan_qr_code(payload: Equipment.QRScan = Body(...), current_user: User = Depends(get_current_active_user)):
    """Resolves the text decoded from an equipment QR label."""
    try:
        data = qr_labels.parse_payload(payload.data)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    equipment = await get_equipment_or_404(str(data["id"]))
    if equipment.serial_number != data["serial"]:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT,
                            detail="QR label does not match the equipment record. Print a new label.")
    return await equipment_response(equipment)


# --- Single item ---
@router.get("/{equipment_id}", response_model=Equipment.Response)
async def read_equipment(equipment_id: str = Path(...), current_user: User = Depends(get_current_active_user)):
    equipment = await get_equipment_or_404(equipment_id)
    if equipment.status == EquipmentStatus.RETIRED and not is_staff(current_user):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Equipment with ID '{equipment_id}' not found")
    return await equipment_response(equipment)


@router.put("/{equipment_id}", response_model=Equipment.Response)
@limiter.limit("120/hour")
async def update_equipment(request: Request, equipment_id: str = Path(...), equipment_in: Equipment.Update = Body(...),
                           current_user: User = Depends(require_staff_or_admin)):
    equipment = await get_equipment_or_404(equipment_id)
    update_data = equipment_in.model_dump(exclude_unset=True)
    if not update_data:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No update data provided.")
    if update_data.get("category_id"):
        update_data["category_id"] = (await get_category_or_404(update_data["category_id"])).id
    if update_data.get("serial_number"):
        update_data["serial_number"] = update_data["serial_number"].strip()
        await ensure_serial_available(update_data["serial_number"], exclude_id=equipment.id)
    for key in ("condition", "status"):
        if update_data.get(key) is not None:
            update_data[key] = update_data[key].value
    if update_data.get("stock") is not None and "status" not in update_data:
        if equipment.status == EquipmentStatus.BORROWED and update_data["stock"] > 0:
            update_data["status"] = EquipmentStatus.AVAILABLE.value
        elif equipment.status == EquipmentStatus.AVAILABLE and update_data["stock"] == 0:
            update_data["status"] = EquipmentStatus.BORROWED.value
    update_data["updated_at"] = utc_now()
    try:
        await equipment.update({"$set": update_data})
    except DuplicateKeyError:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Serial number already exists.")
    logger.info(f"User '{current_user.email}' updated equipment {equipment_id}: {sorted(update_data)}")
    return await equipment_response(equipment)


@router.delete("/{equipment_id}", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit("30/hour")
async def delete_equipment(request: Request, equipment_id: str = Path(...),
                           current_user: User = Depends(require_staff_or_admin)):
    """Retires the equipment (soft delete). Refused while requests or loans are open."""
    equipment = await get_equipment_or_404(equipment_id)
    open_count = await Borrowing.find(open_borrowings_query(equipment.id)).count()
    if open_count:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Equipment has {open_count} pending or active borrowing(s) and cannot be removed.",
        )
    await equipment.update({"$set": {"status": EquipmentStatus.RETIRED.value, "updated_at": utc_now()}})
    logger.warning(f"Equipment '{equipment.name}' ({equipment.serial_number}) retired by '{current_user.email}'.")
    return None


# --- QR label ---
@router.get("/{equipment_id}/qr")
async def get_equipment_qr(equipment_id: str = Path(...), format: Literal["json", "png"] = Query("json"),
                           current_user: User = Depends(get_current_active_user)):
    equipment = await get_equipment_or_404(equipment_id)
    category = await Category.get(equipment.category_id)
    payload = qr_labels.build_equipment_payload(equipment, category.name if category else None)
    png = qr_labels.make_qr_png(qr_labels.encode_payload(payload))
    if format == "png":
        return Response(content=png, media_type="image/png",
                        headers={"Content-Disposition": f'inline; filename="{equipment.serial_number}.png"'})
    return {"payload": payload, "qr_code": qr_labels.png_data_url(png)}


# --- Images ---
async def get_image_or_404(equipment: Equipment, image_id: str) -> EquipmentImage:
    image = await EquipmentImage.find_one(
        {"_id": parse_object_id(image_id, "image ID"), "equipment_id": equipment.id}
    )
    if not image:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Image '{image_id}' not found")
    return image


async def set_primary_image(equipment: Equipment, image: EquipmentImage) -> None:
    await EquipmentImage.find({"equipment_id": equipment.id}).update({"$set": {"is_primary": False}})
    await image.update({"$set": {"is_primary": True}})
    await equipment.update({"$set": {"image_url": image.url, "updated_at": utc_now()}})


@router.get("/{equipment_id}/images", response_model=List[EquipmentImage.Response])
async def list_equipment_images(equipment_id: str = Path(...), current_user: User = Depends(get_current_active_user)):
    equipment = await get_equipment_or_404(equipment_id)
    images = await EquipmentImage.find({"equipment_id": equipment.id}).sort("+created_at").to_list()
    return [to_response(i, EquipmentImage.Response) for i in images]


@router.post("/{equipment_id}/images", response_model=EquipmentImage.Response, status_code=status.HTTP_201_CREATED)
@limiter.limit("60/hour")
async def upload_equipment_image(request: Request, equipment_id: str = Path(...), file: UploadFile = File(...),
                                 is_primary: bool = Form(False),
                                 current_user: User = Depends(require_staff_or_admin)):
    equipment = await get_equipment_or_404(equipment_id)
    filename, url, size = await storage.save_equipment_image(str(equipment.id), file)
    image = EquipmentImage(
        equipment_id=equipment.id, url=url, filename=filename,
        content_type=file.content_type, size=size, uploaded_by=current_user.id,
    )
    await image.insert()
    if is_primary or not equipment.image_url:
        await set_primary_image(equipment, image)
    return to_response(image, EquipmentImage.Response)


@router.patch("/{equipment_id}/images/{image_id}/primary", response_model=EquipmentImage.Response)
async def make_primary_image(equipment_id: str = Path(...), image_id: str = Path(...),
                             current_user: User = Depends(require_staff_or_admin)):
    equipment = await get_equipment_or_404(equipment_id)
    image = await get_image_or_404(equipment, image_id)
    await set_primary_image(equipment, image)
    return to_response(image, EquipmentImage.Response)


@router.delete("/{equipment_id}/images/{image_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_equipment_image(equipment_id: str = Path(...), image_id: str = Path(...),
                                 current_user: User = Depends(require_staff_or_admin)):
    equipment = await get_equipment_or_404(equipment_id)
    image = await get_image_or_404(equipment, image_id)
    await image.delete()
    await storage.delete_equipment_image(str(equipment.id), image.filename)
    if image.is_primary or equipment.image_url == image.url:
        replacement = await EquipmentImage.find({"equipment_id": equipment.id}).sort("+created_at").first_or_none()
        if replacement:
            await set_primary_image(equipment, replacement)
        else:
            await equipment.update({"$set": {"image_url": None, "updated_at": utc_now()}})
    return None
