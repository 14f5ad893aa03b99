# labbo/services/notifications.py
from typing import Any, Dict, List, Optional

from beanie import PydanticObjectId
from loguru import logger
from pymongo.errors import PyMongoError

from labbo.models.enum import NotificationType, UserRole
from labbo.models.notification import Notification
from labbo.models.user import User


async def create_notification(
    user_id: PydanticObjectId,
    title: str,
    message: str,
    type: NotificationType = NotificationType.INFO,
    data: Optional[Dict[str, Any]] = None,
) -> Optional[Notification]:
    """Stores an in-app notification. A failure is logged and never propagated to the caller."""
    notification = Notification(user_id=user_id, title=title, message=message, type=type, data=data or {})
    try:
        await notification.insert()
    except PyMongoError as e:
        logger.error(f"Failed to create notification '{title}' for user {user_id}: {e}")
        return None
    logger.debug(f"Notification '{title}' created for user {user_id}.")
    return notification


async def get_staff_users() -> List[User]:
    """Active admins and lab staff, the audience for new request alerts."""
    return await User.find(
        {"role": {"$in": [UserRole.ADMIN.value, UserRole.LAB_STAFF.value]}, "disabled": False}
    ).to_list()


async def notify_staff(title: str, message: str, data: Optional[Dict[str, Any]] = None) -> int:
    sent = 0
    for staff in await get_staff_users():
        if await create_notification(staff.id, title, message, NotificationType.INFO, data):
            sent += 1
    return sent
