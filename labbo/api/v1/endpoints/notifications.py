# labbo/api/v1/endpoints/notifications.py
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query, status
from loguru import logger
from pymongo import DESCENDING

from labbo.core.security import get_current_active_user
from labbo.core.utils import parse_object_id, to_response
from labbo.models.notification import MarkAllReadResult, Notification, UnreadCount
from labbo.models.user import User

router = APIRouter(tags=["Notifications"])


async def get_own_notification_or_404(notification_id: str, user: User) -> Notification:
    notification = await Notification.find_one(
        {"_id": parse_object_id(notification_id, "notification ID"), "user_id": user.id}
    )
    if not notification:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found")
    return notification


@router.get("/", response_model=List[Notification.Response])
async def read_notifications(unread_only: bool = Query(False), skip: int = Query(0, ge=0),
                             limit: int = Query(50, ge=1, le=200),
                             current_user: User = Depends(get_current_active_user)):
    query = {"user_id": current_user.id}
    if unread_only:
        query["is_read"] = False
    notifications = await Notification.find(query).sort([("created_at", DESCENDING)]).skip(skip).limit(limit).to_list()
    return [to_response(n, Notification.Response) for n in notifications]


@router.get("/unread-count", response_model=UnreadCount)
async def read_unread_count(current_user: User = Depends(get_current_active_user)):
    return UnreadCount(unread=await Notification.find({"user_id": current_user.id, "is_read": False}).count())


@router.post("/read-all", response_model=MarkAllReadResult)
async def mark_all_read(current_user: User = Depends(get_current_active_user)):
    result = await Notification.get_motor_collection().update_many(
        {"user_id": current_user.id, "is_read": False}, {"$set": {"is_read": True}}
    )
    logger.debug(f"Marked {result.modified_count} notifications read for '{current_user.email}'.")
    return MarkAllReadResult(updated=result.modified_count, message="All notifications marked as read.")


@router.patch("/{notification_id}/read", response_model=Notification.Response)
async def mark_notification_read(notification_id: str = Path(...),
                                  current_user: User = Depends(get_current_active_user)):
    notification = await get_own_notification_or_404(notification_id, current_user)
    if not notification.is_read:
        await notification.update({"$set": {"is_read": True}})
    return to_response(notification, Notification.Response)


@router.delete("/{notification_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_notification(notification_id: str = Path(...), current_user: User = Depends(get_current_active_user)):
    notification = await get_own_notification_or_404(notification_id, current_user)
    await notification.delete()
    return None
