# labbo/models/notification.py
from typing import Optional, Dict, Any
from datetime import datetime

from beanie import Document, PydanticObjectId
from pydantic import BaseModel, Field
from pymongo import IndexModel, ASCENDING, DESCENDING

from labbo.core.utils import utc_now
from .enum import NotificationType


class Notification(Document):
    user_id: PydanticObjectId
    title: str
    message: str
    type: NotificationType = NotificationType.INFO
    is_read: bool = False
    data: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)

    class Settings:
        name = "notifications"
        indexes = [
            IndexModel([("user_id", ASCENDING), ("is_read", ASCENDING)], name="notification_user_read_index"),
            IndexModel([("created_at", DESCENDING)], name="notification_created_at_index"),
        ]

    class Response(BaseModel):
        id: str
        title: str
        message: str
        type: NotificationType
        is_read: bool
        data: Dict[str, Any] = Field(default_factory=dict)
        created_at: datetime

        class Config:
            from_attributes = True
            use_enum_values = True


class UnreadCount(BaseModel):
    unread: int


class MarkAllReadResult(BaseModel):
    updated: int
    message: Optional[str] = None
