# labbo/api/v1/endpoints/users.py
import re
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Path, Query, Request, status
from loguru import logger
from pymongo import DESCENDING
from pymongo.errors import DuplicateKeyError

from labbo.core.rate_limiter import limiter
from labbo.core.security import get_password_hash, require_admin
from labbo.core.utils import ensure_utc, parse_object_id, to_response, utc_now
from labbo.models.enum import ApprovalStatus, BorrowingStatus, UserRole
from labbo.models.borrowing import Borrowing
from labbo.models.user import User
from labbo.services.email import email_service

router = APIRouter(
    tags=["Users - Admin"],
    dependencies=[Depends(require_admin)]
)


async def get_user_or_404(user_id: str) -> User:
    user = await User.get(parse_object_id(user_id, "user ID"))
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"User with ID '{user_id}' not found")
    return user


@router.get("/", response_model=List[User.Response], summary="List Users (Admin Only)")
@limiter.limit("60/minute")
async def read_users(
    request: Request,
    role: Optional[UserRole] = Query(None),
    approval_status: Optional[ApprovalStatus] = Query(None),
    disabled: Optional[bool] = Query(None),
    search: Optional[str] = Query(None, max_length=100, description="Matches name, email, NIM or NIP"),
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
):
    query = {}
    if role: query["role"] = role.value
    if approval_status: query["approval_status"] = approval_status.value
    if disabled is not None: query["disabled"] = disabled
    if search:
        pattern = {"$regex": re.escape(search.strip()), "$options": "i"}
        query["$or"] = [{"full_name": pattern}, {"email": pattern}, {"nim": pattern}, {"nip": pattern}]
    users = await User.find(query).sort([("created_at", DESCENDING)]).skip(skip).limit(limit).to_list()
    return [to_response(u, User.Response) for u in users]


@router.get("/pending", response_model=List[User.Response], summary="Registrations Waiting For Approval")
async def read_pending_registrations():
    users = await User.find({"approval_status": ApprovalStatus.PENDING.value}).sort("+created_at").to_list()
    return [to_response(u, User.Response) for u in users]


@router.post("/", response_model=User.Response, status_code=status.HTTP_201_CREATED, summary="Create User (Admin Only)")
@limiter.limit("30/hour")
async def create_user_by_admin(request: Request, user_in: User.AdminCreate = Body(...),
                               current_admin: User = Depends(require_admin)):
    """Accounts created by an admin are pre-approved and pre-verified."""
    email = user_in.email.lower()
    if await User.find_one(User.email == email):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Email already registered")
    user = User(
        **user_in.model_dump(exclude={"password", "email"}),
        email=email,
        hashed_password=get_password_hash(user_in.password),
        approval_status=ApprovalStatus.APPROVED,
        email_verified=True,
        email_verified_at=utc_now(),
    )
    try:
        await user.insert()
    except DuplicateKeyError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Email already registered")
    logger.info(f"Admin '{current_admin.email}' created user '{email}' with role {user.role.value}.")
    await email_service.send_welcome_email(user.email, user.full_name)
    return to_response(user, User.Response)


@router.get("/{user_id}", response_model=User.Response, summary="Get User (Admin Only)")
async def read_user(user_id: str = Path(...)):
    return to_response(await get_user_or_404(user_id), User.Response)


@router.put("/{user_id}", response_model=User.Response, summary="Update User (Admin Only)")
@limiter.limit("60/hour")
async def update_user(request: Request, user_id: str = Path(...), user_in: User.AdminUpdate = Body(...),
                      current_admin: User = Depends(require_admin)):
    user = await get_user_or_404(user_id)
    update_data = user_in.model_dump(exclude_unset=True)
    if not update_data:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No update data provided.")

    inc = {}
    if update_data.get("email"):
        update_data["email"] = update_data["email"].lower()
        if update_data["email"] != user.email and await User.find_one(User.email == update_data["email"]):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Email already registered")
    if "password" in update_data:
        password = update_data.pop("password")
        if password:
            update_data["hashed_password"] = get_password_hash(password)
            inc["token_version"] = 1
    if user.id == current_admin.id and (update_data.get("disabled") or
                                        update_data.get("role") not in (None, UserRole.ADMIN)):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admins cannot demote or disable themselves.")
    if "role" in update_data and update_data["role"] is not None:
        update_data["role"] = update_data["role"].value

    update_data["updated_at"] = utc_now()
    update = {"$set": update_data}
    if inc:
        update["$inc"] = inc
    await user.update(update)
    logger.info(f"Admin '{current_admin.email}' updated user '{user.email}': {sorted(update_data)}")
    return to_response(user, User.Response)


async def _set_disabled(user_id: str, disabled: bool, current_admin: User) -> User:
    user = await get_user_or_404(user_id)
    if user.id == current_admin.id and disabled:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admins cannot disable themselves.")
    if user.disabled != disabled:
        update = {"$set": {"disabled": disabled, "updated_at": utc_now()}}
        if disabled:
            update["$inc"] = {"token_version": 1}
        await user.update(update)
        logger.info(f"User '{user.email}' {'disabled' if disabled else 'enabled'} by '{current_admin.email}'.")
    return user


@router.patch("/{user_id}/disable", response_model=User.Response, summary="Disable User (Admin Only)")
async def disable_user(user_id: str = Path(...), current_admin: User = Depends(require_admin)):
    return to_response(await _set_disabled(user_id, True, current_admin), User.Response)


@router.patch("/{user_id}/enable", response_model=User.Response, summary="Enable User (Admin Only)")
async def enable_user(user_id: str = Path(...), current_admin: User = Depends(require_admin)):
    return to_response(await _set_disabled(user_id, False, current_admin), User.Response)


@router.post("/{user_id}/approve", response_model=User.Response, summary="Approve Registration")
async def approve_registration(user_id: str = Path(...), current_admin: User = Depends(require_admin)):
    user = await get_user_or_404(user_id)
    if user.approval_status == ApprovalStatus.APPROVED:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="User is already approved.")
    await user.update({"$set": {"approval_status": ApprovalStatus.APPROVED.value, "updated_at": utc_now()}})
    logger.info(f"Registration of '{user.email}' approved by '{current_admin.email}'.")
    await email_service.send_welcome_email(user.email, user.full_name)
    return to_response(user, User.Response)


@router.post("/{user_id}/reject", response_model=User.Response, summary="Reject Registration")
async def reject_registration(user_id: str = Path(...), payload: Optional[User.RejectRegistration] = Body(None),
                              current_admin: User = Depends(require_admin)):
    user = await get_user_or_404(user_id)
    if user.approval_status != ApprovalStatus.PENDING:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST,
                            detail=f"Only pending registrations can be rejected (status: {user.approval_status.value}).")
    await user.update({"$set": {"approval_status": ApprovalStatus.REJECTED.value, "updated_at": utc_now()}})
    logger.info(f"Registration of '{user.email}' rejected by '{current_admin.email}'.")
    await email_service.send_registration_rejected_email(user.email, user.full_name, payload.reason if payload else None)
    return to_response(user, User.Response)


@router.post("/{user_id}/ban", response_model=User.Response, summary="Ban User From Borrowing")
async def ban_user(user_id: str = Path(...), payload: User.Ban = Body(...),
                   current_admin: User = Depends(require_admin)):
    """A banned user can still sign in but cannot submit new borrowing requests until the date passes."""
    user = await get_user_or_404(user_id)
    banned_until = ensure_utc(payload.banned_until)
    if banned_until <= utc_now():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Ban end date must be in the future.")
    await user.update({"$set": {"banned_until": banned_until, "ban_reason": payload.reason, "updated_at": utc_now()}})
    logger.warning(f"User '{user.email}' banned until {banned_until} by '{current_admin.email}'.")
    return to_response(user, User.Response)


@router.post("/{user_id}/unban", response_model=User.Response, summary="Lift Borrowing Ban")
async def unban_user(user_id: str = Path(...)):
    user = await get_user_or_404(user_id)
    await user.update({"$set": {"banned_until": None, "ban_reason": None, "updated_at": utc_now()}})
    return to_response(user, User.Response)


@router.post("/{user_id}/unlock", response_model=User.Response, summary="Clear Login Lockout")
async def unlock_user(user_id: str = Path(...)):
    user = await get_user_or_404(user_id)
    await user.update({"$set": {"locked_until": None, "failed_login_attempts": 0, "updated_at": utc_now()}})
    return to_response(user, User.Response)


@router.delete("/{user_id}", status_code=status.HTTP_204_NO_CONTENT, summary="Delete User (Admin Only)")
@limiter.limit("10/hour")
async def delete_user(request: Request, user_id: str = Path(...), current_admin: User = Depends(require_admin)):
    user = await get_user_or_404(user_id)
    if user.id == current_admin.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admins cannot delete themselves.")
    if user.role == UserRole.ADMIN and await User.find(User.role == UserRole.ADMIN).count() <= 1:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Cannot delete the last admin.")
    open_count = await Borrowing.find(
        {"user_id": user.id, "status": {"$in": [BorrowingStatus.PENDING.value, BorrowingStatus.ACTIVE.value]}}
    ).count()
    if open_count:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"User has {open_count} pending or active borrowing(s). Disable the account instead.",
        )
    await user.delete()
    logger.warning(f"User '{user.email}' (ID: {user_id}) deleted by admin '{current_admin.email}'.")
    return None
