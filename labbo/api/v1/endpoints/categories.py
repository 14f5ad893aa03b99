# labbo/api/v1/endpoints/categories.py
import re
from typing import List

from fastapi import APIRouter, Body, Depends, HTTPException, Path, Query, Request, status
from loguru import logger
from pymongo.errors import DuplicateKeyError

from labbo.core.rate_limiter import limiter
from labbo.core.security import get_current_active_user, require_staff_or_admin
from labbo.core.utils import parse_object_id, to_response, utc_now
from labbo.models.category import Category
from labbo.models.enum import EquipmentStatus
from labbo.models.equipment import Equipment
from labbo.models.user import User

router = APIRouter(tags=["Categories"])


async def get_category_or_404(category_id: str) -> Category:
    category = await Category.get(parse_object_id(category_id, "category ID"))
    if not category:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Category with ID '{category_id}' not found")
    return category


async def generate_category_code(name: str) -> str:
    """First three letters of the name, upper-cased, with a numeric suffix on collision (LAB, LAB2, ...)."""
    base = re.sub(r"[^A-Za-z0-9]", "", name).upper()[:3] or "CAT"
    base = base.ljust(2, "X")
    code, suffix = base, 1
    while await Category.find_one(Category.category_code == code):
        suffix += 1
        code = f"{base}{suffix}"
    return code


def active_equipment_query(category: Category) -> dict:
    return {"category_id": category.id, "status": {"$ne": EquipmentStatus.RETIRED.value}}


@router.post("/", response_model=Category.Response, status_code=status.HTTP_201_CREATED)
@limiter.limit("30/hour")
async def create_category(request: Request, category_in: Category.Create = Body(...),
                          current_user: User = Depends(require_staff_or_admin)):
    name = category_in.name.strip()
    if await Category.find_one({"name": {"$regex": f"^{re.escape(name)}$", "$options": "i"}}):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Category '{name}' already exists.")
    if category_in.category_code:
        code = category_in.category_code
        if await Category.find_one(Category.category_code == code):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Category code '{code}' already exists.")
    else:
        code = await generate_category_code(name)

    category = Category(name=name, category_code=code, description=category_in.description)
    try:
        await category.insert()
    except DuplicateKeyError:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Category name or code already exists.")
    logger.info(f"User '{current_user.email}' created category '{name}' ({code}).")
    return to_response(category, Category.Response, equipment_count=0)


@router.get("/", response_model=List[Category.Response])
@limiter.limit("120/minute")
async def read_categories(request: Request, skip: int = Query(0, ge=0), limit: int = Query(200, ge=1, le=500),
                          current_user: User = Depends(get_current_active_user)):
    categories = await Category.find_all().sort("+name").skip(skip).limit(limit).to_list()
    counts = {
        row["_id"]: row["count"]
        for row in await Equipment.aggregate([
            {"$match": {"status": {"$ne": EquipmentStatus.RETIRED.value}}},
            {"$group": {"_id": "$category_id", "count": {"$sum": 1}}},
        ]).to_list()
    }
    return [to_response(c, Category.Response, equipment_count=counts.get(c.id, 0)) for c in categories]


@router.get("/{category_id}", response_model=Category.Response)
async def read_category(category_id: str = Path(...), current_user: User = Depends(get_current_active_user)):
    category = await get_category_or_404(category_id)
    count = await Equipment.find(active_equipment_query(category)).count()
    return to_response(category, Category.Response, equipment_count=count)


@router.put("/{category_id}", response_model=Category.Response)
@limiter.limit("60/hour")
async def update_category(request: Request, category_id: str = Path(...), category_in: Category.Update = Body(...),
                          current_user: User = Depends(require_staff_or_admin)):
    category = await get_category_or_404(category_id)
    update_data = category_in.model_dump(exclude_unset=True)
    if not update_data:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No update data provided.")
    if update_data.get("name"):
        update_data["name"] = update_data["name"].strip()
        if update_data["name"].lower() != category.name.lower() and await Category.find_one(
            {"name": {"$regex": f"^{re.escape(update_data['name'])}$", "$options": "i"}}
        ):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST,
                                detail=f"Category '{update_data['name']}' already exists.")
    update_data["updated_at"] = utc_now()
    await category.update({"$set": update_data})
    logger.info(f"User '{current_user.email}' updated category {category_id}.")
    return to_response(category, Category.Response)


@router.delete("/{category_id}", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit("20/hour")
async def delete_category(request: Request, category_id: str = Path(...),
                          current_user: User = Depends(require_staff_or_admin)):
    """Only categories without (non-retired) equipment can be deleted."""
    category = await get_category_or_404(category_id)
    in_use = await Equipment.find(active_equipment_query(category)).count()
    if in_use:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Cannot delete category '{category.name}': it has {in_use} equipment item(s).",
        )
    await category.delete()
    logger.warning(f"Category '{category.name}' (ID: {category_id}) deleted by '{current_user.email}'.")
    return None
