# labbo/api/v1/endpoints/borrowings.py
from typing import Dict, Iterable, List, Literal, Optional

from beanie import PydanticObjectId
from fastapi import APIRouter, Body, Depends, HTTPException, Path, Query, Request, Response, status
from loguru import logger
from pymongo import DESCENDING, ReturnDocument

from labbo.core import config, policy
from labbo.core.policy import BorrowingRuleError
from labbo.core.rate_limiter import limiter
from labbo.core.security import get_current_active_user, is_staff, require_staff_or_admin
from labbo.core.utils import date_to_utc, ensure_utc, parse_object_id, to_response, utc_now
from labbo.models.borrowing import Borrowing, EquipmentRefSimple, PenaltyEntry, UserRefSimple
from labbo.models.enum import (
    BorrowingStatus, EquipmentCondition, EquipmentStatus, ExtensionStatus, NotificationType,
)
from labbo.models.equipment import Equipment
from labbo.models.user import User
from labbo.services import spreadsheets
from labbo.services.email import email_service
from labbo.services.notifications import create_notification, get_staff_users, notify_staff

router = APIRouter(tags=["Borrowings"])

OPEN_STATUSES = [BorrowingStatus.PENDING.value, BorrowingStatus.ACTIVE.value]


# --- Response helpers ---
async def load_refs(borrowings: Iterable[Borrowing]):
    borrowings = list(borrowings)
    user_ids = list({b.user_id for b in borrowings})
    equipment_ids = list({b.equipment_id for b in borrowings})
    users = await User.find({"_id": {"$in": user_ids}}).to_list() if user_ids else []
    items = await Equipment.find({"_id": {"$in": equipment_ids}}).to_list() if equipment_ids else []
    return {u.id: u for u in users}, {e.id: e for e in items}


def user_ref(user: Optional[User]) -> Optional[UserRefSimple]:
    if not user:
        return None
    return UserRefSimple(id=str(user.id), full_name=user.full_name, email=user.email, role=user.role.value)


def equipment_ref(equipment: Optional[Equipment]) -> Optional[EquipmentRefSimple]:
    if not equipment:
        return None
    return EquipmentRefSimple(id=str(equipment.id), name=equipment.name, serial_number=equipment.serial_number)


def overdue_days_of(borrowing: Borrowing, now=None) -> int:
    if borrowing.status != BorrowingStatus.ACTIVE:
        return 0
    return policy.get_overdue_days(borrowing.expected_return_date, now)


def build_borrowing_response(borrowing: Borrowing, users: Dict[PydanticObjectId, User],
                             items: Dict[PydanticObjectId, Equipment], now=None) -> Borrowing.Response:
    days = overdue_days_of(borrowing, now)
    return to_response(
        borrowing, Borrowing.Response,
        user=user_ref(users.get(borrowing.user_id)),
        equipment=equipment_ref(items.get(borrowing.equipment_id)),
        is_overdue=days > 0,
        days_overdue=days,
        projected_penalty=days * config.PENALTY_RATE_PER_DAY,
    )


async def borrowing_response(borrowing: Borrowing) -> Borrowing.Response:
    users, items = await load_refs([borrowing])
    return build_borrowing_response(borrowing, users, items)


async def get_borrowing_or_404(borrowing_id: str) -> Borrowing:
    borrowing = await Borrowing.get(parse_object_id(borrowing_id, "borrowing ID"))
    if not borrowing:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Borrowing with ID '{borrowing_id}' not found")
    return borrowing


async def get_visible_borrowing_or_404(borrowing_id: str, current_user: User) -> Borrowing:
    """Staff see every transaction, borrowers only their own."""
    borrowing = await get_borrowing_or_404(borrowing_id)
    if not is_staff(current_user) and borrowing.user_id != current_user.id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Borrowing with ID '{borrowing_id}' not found")
    return borrowing


async def get_owned_borrowing_or_404(borrowing_id: str, current_user: User) -> Borrowing:
    borrowing = await get_borrowing_or_404(borrowing_id)
    if borrowing.user_id != current_user.id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Borrowing with ID '{borrowing_id}' not found")
    return borrowing


def rule_error(e: BorrowingRuleError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


async def transition(borrowing: Borrowing, expected: dict, update: dict, conflict_detail: str) -> Borrowing:
    """
    Applies `update` only if the stored document still matches `expected`.
    Raises 409 when another request changed it first.
    """
    collection = Borrowing.get_motor_collection()
    raw = await collection.find_one_and_update(
        {"_id": borrowing.id, **expected}, update, return_document=ReturnDocument.AFTER
    )
    if raw is None:
        logger.warning(f"Borrowing {borrowing.id} transition rejected: {conflict_detail}")
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=conflict_detail)
    return await Borrowing.get(borrowing.id)


async def reserve_stock(equipment_id: PydanticObjectId, quantity: int) -> Optional[dict]:
    """Conditional decrement: succeeds only while the equipment is available with enough units."""
    collection = Equipment.get_motor_collection()
    updated = await collection.find_one_and_update(
        {"_id": equipment_id, "status": EquipmentStatus.AVAILABLE.value, "stock": {"$gte": quantity}},
        {"$inc": {"stock": -quantity}, "$set": {"updated_at": utc_now()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is not None and updated.get("stock", 0) <= 0:
        await collection.update_one(
            {"_id": equipment_id, "stock": {"$lte": 0}, "status": EquipmentStatus.AVAILABLE.value},
            {"$set": {"status": EquipmentStatus.BORROWED.value}},
        )
    return updated


async def release_stock(equipment_id: PydanticObjectId, quantity: int,
                        condition: Optional[EquipmentCondition] = None) -> None:
    collection = Equipment.get_motor_collection()
    update = {"$inc": {"stock": quantity}, "$set": {"updated_at": utc_now()}}
    if condition is not None:
        update["$set"]["condition"] = condition.value
    await collection.update_one({"_id": equipment_id}, update)
    await collection.update_one(
        {"_id": equipment_id, "status": EquipmentStatus.BORROWED.value, "stock": {"$gt": 0}},
        {"$set": {"status": EquipmentStatus.AVAILABLE.value}},
    )


# --- Submit & list ---
@router.post("/", response_model=Borrowing.Response, status_code=status.HTTP_201_CREATED)
@limiter.limit("20/hour")
async def submit_borrowing_request(request: Request, borrowing_in: Borrowing.Create = Body(...),
                                   current_user: User = Depends(get_current_active_user)):
    now = utc_now()
    banned_until = ensure_utc(current_user.banned_until)
    if banned_until and banned_until > now:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"You are banned from borrowing until {banned_until:%Y-%m-%d}."
                   + (f" Reason: {current_user.ban_reason}" if current_user.ban_reason else ""),
        )

    equipment = await Equipment.get(parse_object_id(borrowing_in.equipment_id, "equipment ID"))
    if not equipment or equipment.status == EquipmentStatus.RETIRED:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Equipment not found")
    if equipment.status != EquipmentStatus.AVAILABLE:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST,
                            detail=f"Equipment '{equipment.name}' is not available (status: {equipment.status.value}).")
    if equipment.stock < borrowing_in.quantity:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST,
                            detail=f"Insufficient stock for '{equipment.name}': {equipment.stock} available.")

    expected_return = date_to_utc(borrowing_in.expected_return_date)
    open_count = await Borrowing.find({"user_id": current_user.id, "status": {"$in": OPEN_STATUSES}}).count()
    try:
        policy.validate_open_request_count(open_count, current_user.role)
        policy.validate_borrow_window(expected_return, current_user.role, now)
    except BorrowingRuleError as e:
        raise rule_error(e) from e

    borrowing = Borrowing(
        user_id=current_user.id,
        equipment_id=equipment.id,
        quantity=borrowing_in.quantity,
        borrow_date=now,
        expected_return_date=expected_return,
        purpose=borrowing_in.purpose,
        notes=borrowing_in.notes,
    )
    await borrowing.insert()
    logger.info(f"User '{current_user.email}' requested {borrowing.quantity}x '{equipment.name}' "
                f"until {expected_return:%Y-%m-%d} (borrowing {borrowing.id}).")

    await notify_staff(
        "New borrowing request",
        f"{current_user.full_name} requested {borrowing.quantity}x {equipment.name}.",
        {"borrowing_id": str(borrowing.id)},
    )
    for staff in await get_staff_users():
        await email_service.send_borrow_request_email(
            staff.email, current_user.full_name, equipment.name, borrowing.quantity,
            expected_return, borrowing.purpose,
        )
    return build_borrowing_response(borrowing, {current_user.id: current_user}, {equipment.id: equipment}, now)


@router.get("/", response_model=List[Borrowing.Response])
@limiter.limit("120/minute")
async def read_borrowings(
    request: Request,
    status_filter: Optional[BorrowingStatus] = Query(None, alias="status"),
    return_requested: Optional[bool] = Query(None),
    extension_status: Optional[ExtensionStatus] = Query(None),
    user_id: Optional[str] = Query(None, description="Staff only"),
    equipment_id: Optional[str] = Query(None),
    overdue: Optional[bool] = Query(None, description="Active transactions past their due date"),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
    current_user: User = Depends(get_current_active_user),
):
    """Borrowers only ever see their own transactions."""
    query = {}
    if not is_staff(current_user):
        query["user_id"] = current_user.id
    elif user_id:
        query["user_id"] = parse_object_id(user_id, "user ID")
    if equipment_id:
        query["equipment_id"] = parse_object_id(equipment_id, "equipment ID")
    if status_filter:
        query["status"] = status_filter.value
    if return_requested is not None:
        query["return_requested"] = return_requested
    if extension_status:
        query["extension_status"] = extension_status.value

    now = utc_now()
    finder = Borrowing.find(query).sort([("created_at", DESCENDING)])
    if overdue is None:
        borrowings = await finder.skip(skip).limit(limit).to_list()
    else:
        # due dates are compared in Python so naive and aware datetimes behave the same
        borrowings = [b for b in await finder.to_list() if (overdue_days_of(b, now) > 0) == overdue]
        borrowings = borrowings[skip:skip + limit]

    users, items = await load_refs(borrowings)
    return [build_borrowing_response(b, users, items, now) for b in borrowings]


# --- Penalties & export (static paths before /{borrowing_id}) ---
@router.get("/penalties", response_model=List[PenaltyEntry])
async def read_penalties(paid: Optional[bool] = Query(None),
                         include_projected: bool = Query(True, description="Include active overdue loans"),
                         current_user: User = Depends(require_staff_or_admin)):
    now = utc_now()
    query = {"status": BorrowingStatus.RETURNED.value, "penalty_amount": {"$gt": 0}}
    if paid is not None:
        query["penalty_paid"] = paid
    returned = await Borrowing.find(query).sort([("actual_return_date", DESCENDING)]).to_list()
    overdue = []
    if include_projected and not paid:
        active = await Borrowing.find({"status": BorrowingStatus.ACTIVE.value}).to_list()
        overdue = [b for b in active if overdue_days_of(b, now) > 0]

    users, items = await load_refs(returned + overdue)
    entries = []
    for b in returned:
        entries.append(PenaltyEntry(
            borrowing_id=str(b.id), user=user_ref(users.get(b.user_id)), equipment=equipment_ref(items.get(b.equipment_id)),
            status=b.status, expected_return_date=ensure_utc(b.expected_return_date),
            actual_return_date=ensure_utc(b.actual_return_date),
            days_late=max(0, policy.days_between(b.expected_return_date, b.actual_return_date)),
            amount=b.penalty_amount, amount_display=policy.format_penalty(b.penalty_amount),
            paid=b.penalty_paid, paid_at=ensure_utc(b.penalty_paid_at),
        ))
    for b in overdue:
        days = overdue_days_of(b, now)
        amount = days * config.PENALTY_RATE_PER_DAY
        entries.append(PenaltyEntry(
            borrowing_id=str(b.id), user=user_ref(users.get(b.user_id)), equipment=equipment_ref(items.get(b.equipment_id)),
            status=b.status, expected_return_date=ensure_utc(b.expected_return_date),
            days_late=days, amount=amount, amount_display=policy.format_penalty(amount), paid=False,
        ))
    return entries


EXPORT_HEADERS = ["ID", "Borrower", "Email", "Equipment", "Serial Number", "Quantity", "Status",
                  "Borrow Date", "Expected Return", "Actual Return", "Purpose", "Return Condition",
                  "Extensions", "Penalty", "Penalty Paid"]


@router.get("/export")
@limiter.limit("20/hour")
async def export_borrowings(request: Request, format: Literal["csv", "xlsx"] = Query("csv"),
                            status_filter: Optional[BorrowingStatus] = Query(None, alias="status"),
                            current_user: User = Depends(require_staff_or_admin)):
    query = {"status": status_filter.value} if status_filter else {}
    borrowings = await Borrowing.find(query).sort([("created_at", DESCENDING)]).to_list()
    users, items = await load_refs(borrowings)
    rows = []
    for b in borrowings:
        user, equipment = users.get(b.user_id), items.get(b.equipment_id)
        rows.append([
            str(b.id), user.full_name if user else "", user.email if user else "",
            equipment.name if equipment else "", equipment.serial_number if equipment else "",
            b.quantity, b.status, b.borrow_date, b.expected_return_date, b.actual_return_date,
            b.purpose, b.return_condition, b.extension_count, b.penalty_amount,
            "yes" if b.penalty_paid else "no",
        ])
    content, media_type = spreadsheets.build_export(EXPORT_HEADERS, rows, format, sheet_title="Transactions")
    filename = f"transactions_{utc_now():%Y%m%d}.{format}"
    logger.info(f"User '{current_user.email}' exported {len(rows)} transactions as {format}.")
    return Response(content=content, media_type=media_type,
                    headers={"Content-Disposition": f'attachment; filename="{filename}"'})


@router.get("/{borrowing_id}", response_model=Borrowing.Response)
async def read_borrowing(borrowing_id: str = Path(...), current_user: User = Depends(get_current_active_user)):
    return await borrowing_response(await get_visible_borrowing_or_404(borrowing_id, current_user))


# --- Staff decisions ---
@router.post("/{borrowing_id}/approve", response_model=Borrowing.Response)
@limiter.limit("120/hour")
async def approve_borrowing(request: Request, borrowing_id: str = Path(...),
                            payload: Optional[Borrowing.Approve] = Body(None),
                            current_user: User = Depends(require_staff_or_admin)):
    borrowing = await get_borrowing_or_404(borrowing_id)
    original_notes, original_borrow_date = borrowing.admin_notes, borrowing.borrow_date
    now = utc_now()
    borrowing = await transition(
        borrowing,
        {"status": BorrowingStatus.PENDING.value},
        {"$set": {
            "status": BorrowingStatus.ACTIVE.value,
            "approved_by": current_user.id,
            "approved_at": now,
            "borrow_date": now,
            "admin_notes": payload.admin_notes if payload else None,
            "updated_at": now,
        }},
        "Only pending requests can be approved.",
    )

    if await reserve_stock(borrowing.equipment_id, borrowing.quantity) is None:
        await Borrowing.get_motor_collection().update_one(
            {"_id": borrowing.id, "status": BorrowingStatus.ACTIVE.value},
            {"$set": {"status": BorrowingStatus.PENDING.value, "approved_by": None, "approved_at": None,
                      "admin_notes": original_notes, "borrow_date": original_borrow_date,
                      "updated_at": utc_now()}},
        )
        logger.warning(f"Approval of borrowing {borrowing_id} rolled back: insufficient stock.")
        raise HTTPException(status_code=status.HTTP_409_CONFLICT,
                            detail="Equipment is no longer available in the requested quantity.")

    equipment = await Equipment.get(borrowing.equipment_id)
    borrower = await User.get(borrowing.user_id)
    logger.info(f"Borrowing {borrowing_id} approved by '{current_user.email}'.")
    await create_notification(
        borrowing.user_id, "Borrowing approved",
        f"Your request for {equipment.name if equipment else 'equipment'} was approved. "
        f"Return by {ensure_utc(borrowing.expected_return_date):%Y-%m-%d}.",
        NotificationType.SUCCESS, {"borrowing_id": str(borrowing.id)},
    )
    if borrower and equipment:
        await email_service.send_borrow_decision_email(
            borrower.email, borrower.full_name, equipment.name, True,
            borrowing.admin_notes, ensure_utc(borrowing.expected_return_date),
        )
    return await borrowing_response(borrowing)


@router.post("/{borrowing_id}/reject", response_model=Borrowing.Response)
@limiter.limit("120/hour")
async def reject_borrowing(request: Request, borrowing_id: str = Path(...), payload: Borrowing.Reject = Body(...),
                           current_user: User = Depends(require_staff_or_admin)):
    borrowing = await get_borrowing_or_404(borrowing_id)
    now = utc_now()
    borrowing = await transition(
        borrowing,
        {"status": BorrowingStatus.PENDING.value},
        {"$set": {
            "status": BorrowingStatus.REJECTED.value,
            "rejection_reason": payload.reason,
            "approved_by": current_user.id,
            "updated_at": now,
        }},
        "Only pending requests can be rejected.",
    )
    equipment = await Equipment.get(borrowing.equipment_id)
    borrower = await User.get(borrowing.user_id)
    logger.info(f"Borrowing {borrowing_id} rejected by '{current_user.email}': {payload.reason}")
    await create_notification(
        borrowing.user_id, "Borrowing rejected",
        f"Your request for {equipment.name if equipment else 'equipment'} was rejected: {payload.reason}",
        NotificationType.ERROR, {"borrowing_id": str(borrowing.id)},
    )
    if borrower and equipment:
        await email_service.send_borrow_decision_email(
            borrower.email, borrower.full_name, equipment.name, False, payload.reason,
        )
    return await borrowing_response(borrowing)


@router.post("/{borrowing_id}/cancel", response_model=Borrowing.Response)
async def cancel_borrowing(borrowing_id: str = Path(...), current_user: User = Depends(get_current_active_user)):
    borrowing = await get_owned_borrowing_or_404(borrowing_id, current_user)
    borrowing = await transition(
        borrowing,
        {"status": BorrowingStatus.PENDING.value},
        {"$set": {"status": BorrowingStatus.REJECTED.value, "rejection_reason": "Cancelled by borrower",
                  "updated_at": utc_now()}},
        "Only pending requests can be cancelled.",
    )
    logger.info(f"Borrowing {borrowing_id} cancelled by '{current_user.email}'.")
    return await borrowing_response(borrowing)


# --- Returns ---
@router.post("/{borrowing_id}/return-request", response_model=Borrowing.Response)
async def request_return(borrowing_id: str = Path(...), payload: Optional[Borrowing.ReturnRequest] = Body(None),
                         current_user: User = Depends(get_current_active_user)):
    borrowing = await get_owned_borrowing_or_404(borrowing_id, current_user)
    now = utc_now()
    borrowing = await transition(
        borrowing,
        {"status": BorrowingStatus.ACTIVE.value, "return_requested": {"$ne": True}},
        {"$set": {
            "return_requested": True,
            "return_requested_at": now,
            "return_notes": payload.notes if payload else None,
            "return_proof_url": payload.proof_url if payload else None,
            "updated_at": now,
        }},
        "Return can only be requested once for an active borrowing.",
    )
    equipment = await Equipment.get(borrowing.equipment_id)
    await notify_staff(
        "Return requested",
        f"{current_user.full_name} wants to return {equipment.name if equipment else 'equipment'}.",
        {"borrowing_id": str(borrowing.id)},
    )
    return await borrowing_response(borrowing)


@router.post("/{borrowing_id}/return", response_model=Borrowing.Response)
@limiter.limit("120/hour")
async def confirm_return(request: Request, borrowing_id: str = Path(...), payload: Borrowing.ReturnConfirm = Body(...),
                         current_user: User = Depends(require_staff_or_admin)):
    """
    Closes an active loan. Every checklist item must be ticked. The late
    penalty is fixed here; a zero penalty counts as paid.
    """
    if not policy.checklist_complete(payload.checklist):
        missing = [k for k, v in (payload.checklist or {}).items() if not v]
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST,
                            detail=f"Return checklist incomplete: {', '.join(missing)}")

    borrowing = await get_borrowing_or_404(borrowing_id)
    now = utc_now()
    penalty = policy.calculate_penalty(borrowing.expected_return_date, now)
    has_damage = payload.has_damage or payload.condition in (EquipmentCondition.POOR, EquipmentCondition.DAMAGED)
    set_fields = {
        "status": BorrowingStatus.RETURNED.value,
        "actual_return_date": now,
        "return_condition": payload.condition.value,
        "return_has_damage": has_damage,
        "returned_to": current_user.id,
        "penalty_amount": penalty,
        "penalty_paid": penalty == 0,
        "updated_at": now,
    }
    if payload.notes:
        set_fields["return_notes"] = payload.notes
    if borrowing.extension_status == ExtensionStatus.PENDING:
        set_fields.update({
            "extension_status": ExtensionStatus.REJECTED.value,
            "extension_requested": False,
            "extension_decided_by": current_user.id,
            "extension_decided_at": now,
            "extension_notes": "Closed because the equipment was returned.",
        })
    borrowing = await transition(borrowing, {"status": BorrowingStatus.ACTIVE.value}, {"$set": set_fields},
                                 "Only active borrowings can be returned.")

    await release_stock(borrowing.equipment_id, borrowing.quantity, payload.condition if has_damage else None)
    equipment = await Equipment.get(borrowing.equipment_id)
    borrower = await User.get(borrowing.user_id)
    penalty_text = policy.format_penalty(penalty) if penalty else None
    logger.info(f"Borrowing {borrowing_id} returned to '{current_user.email}' "
                f"(condition={payload.condition.value}, penalty={penalty}).")

    message = "Your equipment return has been confirmed."
    if penalty_text:
        message += f" Late penalty: {penalty_text}"
    await create_notification(borrowing.user_id, "Return confirmed", message,
                              NotificationType.WARNING if penalty else NotificationType.SUCCESS,
                              {"borrowing_id": str(borrowing.id)})
    if borrower and equipment:
        await email_service.send_return_confirmation_email(borrower.email, borrower.full_name, equipment.name,
                                                           penalty_text)
    return await borrowing_response(borrowing)


@router.post("/{borrowing_id}/penalty/pay", response_model=Borrowing.Response)
async def mark_penalty_paid(borrowing_id: str = Path(...), current_user: User = Depends(require_staff_or_admin)):
    borrowing = await get_borrowing_or_404(borrowing_id)
    now = utc_now()
    borrowing = await transition(
        borrowing,
        {"status": BorrowingStatus.RETURNED.value, "penalty_amount": {"$gt": 0}, "penalty_paid": False},
        {"$set": {"penalty_paid": True, "penalty_paid_at": now, "updated_at": now}},
        "No unpaid penalty on this borrowing.",
    )
    logger.info(f"Penalty of borrowing {borrowing_id} marked paid by '{current_user.email}'.")
    return await borrowing_response(borrowing)


# --- Extensions ---
@router.post("/{borrowing_id}/extension", response_model=Borrowing.Response)
@limiter.limit("10/hour")
async def request_extension(request: Request, borrowing_id: str = Path(...),
                            payload: Borrowing.ExtensionRequest = Body(...),
                            current_user: User = Depends(get_current_active_user)):
    borrowing = await get_owned_borrowing_or_404(borrowing_id, current_user)
    new_date = date_to_utc(payload.new_return_date)
    try:
        policy.check_extension_allowed(borrowing, current_user.role)
        policy.validate_extension_date(borrowing.expected_return_date, new_date)
    except BorrowingRuleError as e:
        raise rule_error(e) from e

    now = utc_now()
    borrowing = await transition(
        borrowing,
        {"status": BorrowingStatus.ACTIVE.value, "extension_status": {"$ne": ExtensionStatus.PENDING.value}},
        {"$set": {
            "extension_requested": True,
            "extension_new_date": new_date,
            "extension_reason": payload.reason,
            "extension_status": ExtensionStatus.PENDING.value,
            "extension_notes": None,
            "updated_at": now,
        }},
        "An extension request is already waiting for review.",
    )
    equipment = await Equipment.get(borrowing.equipment_id)
    await notify_staff(
        "Extension requested",
        f"{current_user.full_name} asked to keep {equipment.name if equipment else 'equipment'} "
        f"until {new_date:%Y-%m-%d}.",
        {"borrowing_id": str(borrowing.id)},
    )
    return await borrowing_response(borrowing)


async def _notify_extension_decision(borrowing: Borrowing, approved: bool, note: Optional[str]) -> None:
    equipment = await Equipment.get(borrowing.equipment_id)
    borrower = await User.get(borrowing.user_id)
    name = equipment.name if equipment else "equipment"
    new_date = ensure_utc(borrowing.expected_return_date)
    if approved:
        message = f"Your extension for {name} was approved. New return date: {new_date:%Y-%m-%d}."
    else:
        message = f"Your extension for {name} was rejected." + (f" {note}" if note else "")
    await create_notification(borrowing.user_id, f"Extension {'approved' if approved else 'rejected'}", message,
                              NotificationType.SUCCESS if approved else NotificationType.ERROR,
                              {"borrowing_id": str(borrowing.id)})
    if borrower:
        await email_service.send_extension_decision_email(borrower.email, borrower.full_name, name, approved,
                                                          new_date if approved else None, note)


@router.post("/{borrowing_id}/extension/approve", response_model=Borrowing.Response)
async def approve_extension(borrowing_id: str = Path(...), payload: Optional[Borrowing.ExtensionDecision] = Body(None),
                            current_user: User = Depends(require_staff_or_admin)):
    borrowing = await get_borrowing_or_404(borrowing_id)
    if borrowing.extension_status != ExtensionStatus.PENDING or not borrowing.extension_new_date:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="No pending extension request.")
    # the due date may have moved since the request was made
    try:
        policy.validate_extension_date(borrowing.expected_return_date, borrowing.extension_new_date)
    except BorrowingRuleError as e:
        raise rule_error(e) from e

    now = utc_now()
    note = payload.notes if payload else None
    borrowing = await transition(
        borrowing,
        {"status": BorrowingStatus.ACTIVE.value, "extension_status": ExtensionStatus.PENDING.value},
        {
            "$set": {
                "expected_return_date": ensure_utc(borrowing.extension_new_date),
                "extension_status": ExtensionStatus.APPROVED.value,
                "extension_requested": False,
                "extension_decided_by": current_user.id,
                "extension_decided_at": now,
                "extension_notes": note,
                "reminder_sent_at": None,
                "updated_at": now,
            },
            "$inc": {"extension_count": 1},
        },
        "No pending extension request on an active borrowing.",
    )
    logger.info(f"Extension of borrowing {borrowing_id} approved by '{current_user.email}'.")
    await _notify_extension_decision(borrowing, True, note)
    return await borrowing_response(borrowing)


@router.post("/{borrowing_id}/extension/reject", response_model=Borrowing.Response)
async def reject_extension(borrowing_id: str = Path(...), payload: Optional[Borrowing.ExtensionDecision] = Body(None),
                           current_user: User = Depends(require_staff_or_admin)):
    borrowing = await get_borrowing_or_404(borrowing_id)
    now = utc_now()
    note = payload.notes if payload else None
    borrowing = await transition(
        borrowing,
        {"status": BorrowingStatus.ACTIVE.value, "extension_status": ExtensionStatus.PENDING.value},
        {"$set": {
            "extension_status": ExtensionStatus.REJECTED.value,
            "extension_requested": False,
            "extension_decided_by": current_user.id,
            "extension_decided_at": now,
            "extension_notes": note,
            "updated_at": now,
        }},
        "No pending extension request on an active borrowing.",
    )
    logger.info(f"Extension of borrowing {borrowing_id} rejected by '{current_user.email}'.")
    await _notify_extension_decision(borrowing, False, note)
    return await borrowing_response(borrowing)
