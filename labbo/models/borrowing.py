# labbo/models/borrowing.py
from typing import Optional, Dict
from datetime import datetime, date

from beanie import Document, PydanticObjectId
from pydantic import BaseModel, Field, field_validator
from pymongo import IndexModel, ASCENDING, DESCENDING

from labbo.core.utils import utc_now
from .enum import BorrowingStatus, ExtensionStatus, EquipmentCondition


class EquipmentRefSimple(BaseModel):
    id: str
    name: str
    serial_number: str


class UserRefSimple(BaseModel):
    id: str
    full_name: str
    email: str
    role: str


def _require_text(v: str) -> str:
    v = (v or "").strip()
    if not v:
        raise ValueError("must not be empty")
    return v


class Borrowing(Document):
    """One equipment loan, from request through return."""
    user_id: PydanticObjectId
    equipment_id: PydanticObjectId
    quantity: int = Field(default=1, gt=0)
    borrow_date: datetime
    expected_return_date: datetime
    actual_return_date: Optional[datetime] = None
    status: BorrowingStatus = BorrowingStatus.PENDING
    purpose: str
    notes: Optional[str] = None

    # staff decision
    admin_notes: Optional[str] = None
    rejection_reason: Optional[str] = None
    approved_by: Optional[PydanticObjectId] = None
    approved_at: Optional[datetime] = None

    # return flow
    return_requested: bool = False
    return_requested_at: Optional[datetime] = None
    return_notes: Optional[str] = None
    return_proof_url: Optional[str] = None
    return_condition: Optional[EquipmentCondition] = None
    return_has_damage: bool = False
    returned_to: Optional[PydanticObjectId] = None

    # extension flow
    extension_requested: bool = False
    extension_new_date: Optional[datetime] = None
    extension_reason: Optional[str] = None
    extension_status: Optional[ExtensionStatus] = None
    extension_count: int = 0
    extension_decided_by: Optional[PydanticObjectId] = None
    extension_decided_at: Optional[datetime] = None
    extension_notes: Optional[str] = None

    # penalty
    penalty_amount: int = 0
    penalty_paid: bool = False
    penalty_paid_at: Optional[datetime] = None

    # scheduler bookkeeping
    reminder_sent_at: Optional[datetime] = None
    overdue_notified_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    class Settings:
        name = "borrowing_transactions"
        indexes = [
            IndexModel([("user_id", ASCENDING), ("status", ASCENDING)], name="borrowing_user_status_index"),
            IndexModel([("equipment_id", ASCENDING)], name="borrowing_equipment_index"),
            IndexModel([("status", ASCENDING), ("expected_return_date", ASCENDING)], name="borrowing_status_due_index"),
            IndexModel([("extension_status", ASCENDING)], name="borrowing_extension_status_index", sparse=True),
            IndexModel([("created_at", DESCENDING)], name="borrowing_created_at_index"),
        ]

    # --- Pydantic Schemas ---
    class Create(BaseModel):
        equipment_id: str
        quantity: int = Field(default=1, gt=0, le=100)
        expected_return_date: date
        purpose: str = Field(..., max_length=500)
        notes: Optional[str] = Field(None, max_length=1000)

        @field_validator("purpose")
        @classmethod
        def purpose_not_blank(cls, v: str) -> str:
            return _require_text(v)

    class Approve(BaseModel):
        admin_notes: Optional[str] = Field(None, max_length=1000)

    class Reject(BaseModel):
        reason: str = Field(..., max_length=1000)

        @field_validator("reason")
        @classmethod
        def reason_not_blank(cls, v: str) -> str:
            return _require_text(v)

    class ReturnRequest(BaseModel):
        notes: Optional[str] = Field(None, max_length=1000)
        proof_url: Optional[str] = Field(None, max_length=1000)

    class ReturnConfirm(BaseModel):
        condition: EquipmentCondition
        notes: Optional[str] = Field(None, max_length=1000)
        has_damage: bool = False
        # e.g. {"complete": true, "clean": true, "functional": true}
        checklist: Optional[Dict[str, bool]] = None

    class ExtensionRequest(BaseModel):
        new_return_date: date
        reason: str = Field(..., max_length=1000)

        @field_validator("reason")
        @classmethod
        def reason_not_blank(cls, v: str) -> str:
            return _require_text(v)

    class ExtensionDecision(BaseModel):
        notes: Optional[str] = Field(None, max_length=1000)

    # --- Response Schema ---
    class Response(BaseModel):
        id: str
        user_id: str
        equipment_id: str
        user: Optional[UserRefSimple] = None
        equipment: Optional[EquipmentRefSimple] = None
        quantity: int
        borrow_date: datetime
        expected_return_date: datetime
        actual_return_date: Optional[datetime] = None
        status: BorrowingStatus
        purpose: str
        notes: Optional[str] = None
        admin_notes: Optional[str] = None
        rejection_reason: Optional[str] = None
        approved_by: Optional[str] = None
        approved_at: Optional[datetime] = None
        return_requested: bool
        return_requested_at: Optional[datetime] = None
        return_notes: Optional[str] = None
        return_proof_url: Optional[str] = None
        return_condition: Optional[EquipmentCondition] = None
        return_has_damage: bool = False
        extension_requested: bool
        extension_new_date: Optional[datetime] = None
        extension_reason: Optional[str] = None
        extension_status: Optional[ExtensionStatus] = None
        extension_count: int = 0
        extension_notes: Optional[str] = None
        penalty_amount: int
        penalty_paid: bool
        penalty_paid_at: Optional[datetime] = None
        is_overdue: bool = False
        days_overdue: int = 0
        projected_penalty: int = 0
        created_at: datetime
        updated_at: datetime

        class Config:
            from_attributes = True
            use_enum_values = True


class PenaltyEntry(BaseModel):
    borrowing_id: str
    user: Optional[UserRefSimple] = None
    equipment: Optional[EquipmentRefSimple] = None
    status: BorrowingStatus
    expected_return_date: datetime
    actual_return_date: Optional[datetime] = None
    days_late: int
    amount: int
    amount_display: str
    paid: bool
    paid_at: Optional[datetime] = None

    class Config:
        use_enum_values = True
