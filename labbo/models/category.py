# labbo/models/category.py
from typing import Optional
from datetime import datetime

from beanie import Document
from pydantic import BaseModel, Field, field_validator
from pymongo import IndexModel, ASCENDING

from labbo.core.utils import utc_now


class Category(Document):
    name: str
    # Short upper-case prefix used for generated serial numbers, e.g. "MIC" -> "MIC-00012"
    category_code: str
    description: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    class Settings:
        name = "categories"
        indexes = [
            IndexModel([("name", ASCENDING)], name="category_name_unique_index", unique=True),
            IndexModel([("category_code", ASCENDING)], name="category_code_unique_index", unique=True),
        ]

    # --- Pydantic Schemas ---
    class Create(BaseModel):
        name: str = Field(..., min_length=1, max_length=100)
        category_code: Optional[str] = Field(None, min_length=2, max_length=10,
                                             description="Generated from the name when omitted")
        description: Optional[str] = None

        @field_validator("category_code")
        @classmethod
        def normalize_code(cls, v: Optional[str]) -> Optional[str]:
            if v is None:
                return v
            v = v.strip().upper()
            if not v.isalnum():
                raise ValueError("Category code must be alphanumeric")
            return v

    class Update(BaseModel):
        """Category code is fixed once created."""
        name: Optional[str] = Field(None, min_length=1, max_length=100)
        description: Optional[str] = None

    class Response(BaseModel):
        id: str
        name: str
        category_code: str
        description: Optional[str] = None
        equipment_count: Optional[int] = None
        created_at: datetime
        updated_at: datetime

        class Config:
            from_attributes = True
