# labbo/api/v1/endpoints/analytics.py
from collections import Counter
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from loguru import logger

from labbo.core import config, policy
from labbo.core.security import require_staff_or_admin
from labbo.core.utils import ensure_utc, utc_now
from labbo.models.borrowing import Borrowing
from labbo.models.category import Category
from labbo.models.enum import ApprovalStatus, BorrowingStatus, EquipmentStatus, ExtensionStatus
from labbo.models.equipment import Equipment
from labbo.models.report import (
    ActivityPoint, CountBucket, DashboardSummary, PenaltySummary, TopBorrowedEquipment,
    TopBorrowedReport, TopBorrower,
)
from labbo.models.user import User

router = APIRouter(
    tags=["Analytics"],
    dependencies=[Depends(require_staff_or_admin)]
)

# statuses that count as an actual loan (approved at some point)
LOAN_STATUSES = [BorrowingStatus.ACTIVE.value, BorrowingStatus.RETURNED.value]


def _date_match(field: str, start_date: Optional[datetime], end_date: Optional[datetime]) -> dict:
    if start_date and end_date and end_date < start_date:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="end_date must be after start_date.")
    match = {}
    if start_date:
        match["$gte"] = ensure_utc(start_date)
    if end_date:
        match["$lte"] = ensure_utc(end_date)
    return {field: match} if match else {}


async def _active_loans() -> List[Borrowing]:
    return await Borrowing.find({"status": BorrowingStatus.ACTIVE.value}).to_list()


@router.get("/summary", response_model=DashboardSummary, summary="Dashboard Counters")
async def get_summary():
    now = utc_now()
    active = await _active_loans()
    units = await Equipment.aggregate([
        {"$match": {"status": {"$ne": EquipmentStatus.RETIRED.value}}},
        {"$group": {"_id": None, "units": {"$sum": "$stock"}}},
    ]).to_list()
    return DashboardSummary(
        total_equipment=await Equipment.find({"status": {"$ne": EquipmentStatus.RETIRED.value}}).count(),
        total_units_in_stock=units[0]["units"] if units else 0,
        available_equipment=await Equipment.find({"status": EquipmentStatus.AVAILABLE.value}).count(),
        borrowed_equipment=await Equipment.find({"status": EquipmentStatus.BORROWED.value}).count(),
        maintenance_equipment=await Equipment.find({"status": EquipmentStatus.MAINTENANCE.value}).count(),
        total_users=await User.find_all().count(),
        pending_registrations=await User.find({"approval_status": ApprovalStatus.PENDING.value}).count(),
        pending_requests=await Borrowing.find({"status": BorrowingStatus.PENDING.value}).count(),
        active_borrowings=len(active),
        overdue_borrowings=sum(1 for b in active if policy.is_overdue(b.expected_return_date, now)),
        pending_returns=sum(1 for b in active if b.return_requested),
        pending_extensions=await Borrowing.find({"extension_status": ExtensionStatus.PENDING.value}).count(),
        unpaid_penalties=await Borrowing.find(
            {"status": BorrowingStatus.RETURNED.value, "penalty_amount": {"$gt": 0}, "penalty_paid": False}
        ).count(),
    )


@router.get("/equipment-status", response_model=List[CountBucket], summary="Equipment By Status")
async def get_equipment_status_distribution():
    rows = await Equipment.aggregate([{"$group": {"_id": "$status", "count": {"$sum": 1}}}]).to_list()
    counts = {row["_id"]: row["count"] for row in rows}
    return [CountBucket(key=s.value, label=s.value.title(), count=counts.get(s.value, 0)) for s in EquipmentStatus]


@router.get("/categories", response_model=List[CountBucket], summary="Equipment By Category")
async def get_category_distribution():
    rows = await Equipment.aggregate([
        {"$match": {"status": {"$ne": EquipmentStatus.RETIRED.value}}},
        {"$group": {"_id": "$category_id", "count": {"$sum": 1}}},
    ]).to_list()
    counts = {row["_id"]: row["count"] for row in rows}
    categories = await Category.find_all().sort("+name").to_list()
    return [CountBucket(key=str(c.id), label=c.name, count=counts.get(c.id, 0)) for c in categories]


@router.get("/top-equipment", response_model=TopBorrowedReport, summary="Most Borrowed Equipment")
async def get_top_borrowed_equipment(
    limit: int = Query(10, ge=1, le=100),
    start_date: Optional[datetime] = Query(None, description="ISO date/time, filters on borrow date"),
    end_date: Optional[datetime] = Query(None),
):
    match = {"status": {"$in": LOAN_STATUSES}, **_date_match("borrow_date", start_date, end_date)}
    rows = await Borrowing.aggregate([
        {"$match": match},
        {"$group": {"_id": "$equipment_id", "borrow_count": {"$sum": 1}, "total_quantity": {"$sum": "$quantity"}}},
        {"$sort": {"borrow_count": -1, "total_quantity": -1}},
        {"$limit": limit},
    ]).to_list()
    items = {e.id: e for e in await Equipment.find({"_id": {"$in": [r["_id"] for r in rows]}}).to_list()} if rows else {}
    report_items = []
    for row in rows:
        equipment = items.get(row["_id"])
        report_items.append(TopBorrowedEquipment(
            equipment_id=str(row["_id"]),
            name=equipment.name if equipment else "Equipment Not Found",
            serial_number=equipment.serial_number if equipment else None,
            borrow_count=row["borrow_count"],
            total_quantity=row["total_quantity"],
        ))
    logger.debug(f"Top equipment report generated with {len(report_items)} rows.")
    return TopBorrowedReport(start_date=start_date, end_date=end_date, limit=limit, items=report_items)


@router.get("/top-borrowers", response_model=List[TopBorrower], summary="Most Active Borrowers")
async def get_top_borrowers(limit: int = Query(10, ge=1, le=100)):
    rows = await Borrowing.aggregate([
        {"$match": {"status": {"$in": LOAN_STATUSES}}},
        {"$group": {"_id": "$user_id", "borrow_count": {"$sum": 1}}},
        {"$sort": {"borrow_count": -1}},
        {"$limit": limit},
    ]).to_list()
    users = {u.id: u for u in await User.find({"_id": {"$in": [r["_id"] for r in rows]}}).to_list()} if rows else {}
    result = []
    for row in rows:
        user = users.get(row["_id"])
        result.append(TopBorrower(
            user_id=str(row["_id"]),
            full_name=user.full_name if user else "User Not Found",
            email=user.email if user else None,
            borrow_count=row["borrow_count"],
        ))
    return result


def _activity(borrowings: List[Borrowing], periods: List[str], fmt: str) -> List[ActivityPoint]:
    borrowed = Counter(ensure_utc(b.borrow_date).strftime(fmt) for b in borrowings
                       if b.status in (BorrowingStatus.ACTIVE, BorrowingStatus.RETURNED))
    returned = Counter(ensure_utc(b.actual_return_date).strftime(fmt) for b in borrowings if b.actual_return_date)
    return [ActivityPoint(period=p, borrowings=borrowed.get(p, 0), returns=returned.get(p, 0)) for p in periods]


@router.get("/activity/daily", response_model=List[ActivityPoint], summary="Daily Borrow/Return Activity")
async def get_daily_activity(days: int = Query(30, ge=1, le=366)):
    today = utc_now().date()
    periods = [(today - timedelta(days=offset)).isoformat() for offset in range(days - 1, -1, -1)]
    borrowings = await Borrowing.find({"status": {"$in": LOAN_STATUSES}}).to_list()
    return _activity(borrowings, periods, "%Y-%m-%d")


@router.get("/activity/monthly", response_model=List[ActivityPoint], summary="Monthly Borrow/Return Activity")
async def get_monthly_activity(months: int = Query(12, ge=1, le=60)):
    now = utc_now()
    periods: List[str] = []
    year, month = now.year, now.month
    for _ in range(months):
        periods.append(f"{year:04d}-{month:02d}")
        month -= 1
        if month == 0:
            year, month = year - 1, 12
    periods.reverse()
    borrowings = await Borrowing.find({"status": {"$in": LOAN_STATUSES}}).to_list()
    return _activity(borrowings, periods, "%Y-%m")


@router.get("/return-conditions", response_model=List[CountBucket], summary="Condition Of Returned Equipment")
async def get_return_condition_report():
    rows = await Borrowing.aggregate([
        {"$match": {"status": BorrowingStatus.RETURNED.value}},
        {"$group": {"_id": "$return_condition", "count": {"$sum": 1}}},
        {"$sort": {"count": -1}},
    ]).to_list()
    return [CountBucket(key=row["_id"], label=(row["_id"] or "unknown").title(), count=row["count"]) for row in rows]


@router.get("/penalties", response_model=PenaltySummary, summary="Penalty Totals")
async def get_penalty_summary():
    returned = await Borrowing.find(
        {"status": BorrowingStatus.RETURNED.value, "penalty_amount": {"$gt": 0}}
    ).to_list()
    paid = [b for b in returned if b.penalty_paid]
    unpaid = [b for b in returned if not b.penalty_paid]
    now = utc_now()
    projected = sum(policy.get_overdue_days(b.expected_return_date, now) for b in await _active_loans())
    totals: Dict[str, int] = {
        "paid": sum(b.penalty_amount for b in paid),
        "unpaid": sum(b.penalty_amount for b in unpaid),
    }
    return PenaltySummary(
        currency=config.PENALTY_CURRENCY,
        total_amount=totals["paid"] + totals["unpaid"],
        paid_amount=totals["paid"],
        unpaid_amount=totals["unpaid"],
        paid_count=len(paid),
        unpaid_count=len(unpaid),
        projected_outstanding=projected * config.PENALTY_RATE_PER_DAY,
    )
