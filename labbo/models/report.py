# labbo/models/report.py
from typing import List, Optional
from datetime import datetime

from pydantic import BaseModel, Field


class DashboardSummary(BaseModel):
    total_equipment: int = 0
    total_units_in_stock: int = 0
    available_equipment: int = 0
    borrowed_equipment: int = 0
    maintenance_equipment: int = 0
    total_users: int = 0
    pending_registrations: int = 0
    pending_requests: int = 0
    active_borrowings: int = 0
    overdue_borrowings: int = 0
    pending_returns: int = 0
    pending_extensions: int = 0
    unpaid_penalties: int = 0


class CountBucket(BaseModel):
    """Generic {key, count} row used by the distribution reports."""
    key: Optional[str] = None
    label: Optional[str] = None
    count: int


class TopBorrowedEquipment(BaseModel):
    equipment_id: str
    name: Optional[str] = "Equipment Not Found"
    serial_number: Optional[str] = None
    borrow_count: int
    total_quantity: int = 0


class TopBorrower(BaseModel):
    user_id: str
    full_name: Optional[str] = "User Not Found"
    email: Optional[str] = None
    borrow_count: int


class ActivityPoint(BaseModel):
    period: str  # YYYY-MM-DD or YYYY-MM
    borrowings: int = 0
    returns: int = 0


class TopBorrowedReport(BaseModel):
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    limit: int
    items: List[TopBorrowedEquipment] = Field(default_factory=list)


class PenaltySummary(BaseModel):
    currency: str
    total_amount: int = 0
    paid_amount: int = 0
    unpaid_amount: int = 0
    paid_count: int = 0
    unpaid_count: int = 0
    projected_outstanding: int = 0
