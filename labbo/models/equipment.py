# labbo/models/equipment.py
from typing import Optional, List
from datetime import datetime

from beanie import Document, PydanticObjectId
from pydantic import BaseModel, Field, field_validator
from pymongo import IndexModel, ASCENDING, DESCENDING

from labbo.core.utils import utc_now
from .enum import EquipmentStatus, EquipmentCondition


class CategoryRefSimple(BaseModel):
    id: str
    name: str
    category_code: str


class Equipment(Document):
    """A catalog entry. `stock` counts the units currently on the shelf."""
    name: str = Field(..., max_length=200)
    description: Optional[str] = None
    serial_number: str
    category_id: PydanticObjectId
    condition: EquipmentCondition = EquipmentCondition.GOOD
    status: EquipmentStatus = EquipmentStatus.AVAILABLE
    stock: int = Field(default=1, ge=0)
    location: Optional[str] = Field(None, max_length=200)
    purchase_date: Optional[datetime] = None
    purchase_price: Optional[float] = Field(None, ge=0)
    image_url: Optional[str] = None
    created_by: Optional[PydanticObjectId] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    class Settings:
        name = "equipment"
        indexes = [
            IndexModel([("serial_number", ASCENDING)], name="equipment_serial_unique_index", unique=True),
            IndexModel([("name", ASCENDING)], name="equipment_name_index"),
            IndexModel([("category_id", ASCENDING)], name="equipment_category_index"),
            IndexModel([("status", ASCENDING)], name="equipment_status_index"),
            IndexModel([("location", ASCENDING)], name="equipment_location_index", sparse=True),
            IndexModel([("created_at", DESCENDING)], name="equipment_created_at_index"),
        ]

    # --- Pydantic Schemas ---
    class Create(BaseModel):
        name: str = Field(..., min_length=1, max_length=200)
        description: Optional[str] = None
        serial_number: Optional[str] = Field(None, max_length=100, description="Generated when omitted")
        category_id: str
        condition: EquipmentCondition = EquipmentCondition.GOOD
        status: EquipmentStatus = EquipmentStatus.AVAILABLE
        stock: int = Field(default=1, ge=0)
        location: Optional[str] = Field(None, max_length=200)
        purchase_date: Optional[datetime] = None
        purchase_price: Optional[float] = Field(None, ge=0)
        image_url: Optional[str] = None

        @field_validator("serial_number")
        @classmethod
        def strip_serial(cls, v: Optional[str]) -> Optional[str]:
            v = v.strip() if v else None
            return v or None

    class Update(BaseModel):
        name: Optional[str] = Field(None, min_length=1, max_length=200)
        description: Optional[str] = None
        serial_number: Optional[str] = Field(None, min_length=1, max_length=100)
        category_id: Optional[str] = None
        condition: Optional[EquipmentCondition] = None
        status: Optional[EquipmentStatus] = None
        stock: Optional[int] = Field(None, ge=0)
        location: Optional[str] = Field(None, max_length=200)
        purchase_date: Optional[datetime] = None
        purchase_price: Optional[float] = Field(None, ge=0)
        image_url: Optional[str] = None

    class Response(BaseModel):
        id: str
        name: str
        description: Optional[str] = None
        serial_number: str
        category_id: str
        category: Optional[CategoryRefSimple] = None
        condition: EquipmentCondition
        status: EquipmentStatus
        stock: int
        location: Optional[str] = None
        purchase_date: Optional[datetime] = None
        purchase_price: Optional[float] = None
        image_url: Optional[str] = None
        created_at: datetime
        updated_at: datetime

        class Config:
            from_attributes = True
            use_enum_values = True

    class QRScan(BaseModel):
        data: str = Field(..., description="Raw text decoded from the QR label")


class EquipmentImage(Document):
    equipment_id: PydanticObjectId
    url: str
    filename: str
    content_type: str
    size: int
    is_primary: bool = False
    uploaded_by: Optional[PydanticObjectId] = None
    created_at: datetime = Field(default_factory=utc_now)

    class Settings:
        name = "equipment_images"
        indexes = [
            IndexModel([("equipment_id", ASCENDING), ("created_at", ASCENDING)], name="equipment_image_index"),
        ]

    class Response(BaseModel):
        id: str
        equipment_id: str
        url: str
        filename: str
        content_type: str
        size: int
        is_primary: bool
        created_at: datetime

        class Config:
            from_attributes = True


class ImportRowError(BaseModel):
    row: int
    errors: List[str]


class ImportResult(BaseModel):
    dry_run: bool
    total_rows: int
    imported: int
    failed: int
    errors: List[ImportRowError] = Field(default_factory=list)
    items: List[Equipment.Response] = Field(default_factory=list)
