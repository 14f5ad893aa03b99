# labbo/scheduler/jobs.py
"""
Periodic jobs run by the APScheduler instance in labbo.main.

They share the application's Beanie initialisation, so they only work
inside the running app (or a test that has called init_beanie).
"""
from datetime import datetime
from typing import Optional

from loguru import logger
from pymongo.errors import PyMongoError

from labbo.core import config, policy
from labbo.core.utils import ensure_utc, utc_now
from labbo.models.borrowing import Borrowing
from labbo.models.enum import BorrowingStatus, NotificationType
from labbo.models.equipment import Equipment
from labbo.models.token import AuthToken
from labbo.models.user import User
from labbo.services.email import email_service
from labbo.services.notifications import create_notification


async def _load_parties(borrowing: Borrowing):
    return await User.get(borrowing.user_id), await Equipment.get(borrowing.equipment_id)


async def send_due_reminders(now: Optional[datetime] = None) -> int:
    """Reminds borrowers whose loan is due within REMINDER_DAYS_BEFORE_DUE days. Once per loan."""
    now = now or utc_now()
    logger.info(f"Running send_due_reminders job at {now}")
    sent = 0
    active = await Borrowing.find(
        {"status": BorrowingStatus.ACTIVE.value, "reminder_sent_at": None}
    ).to_list()
    for borrowing in active:
        if not policy.reminder_due(borrowing.expected_return_date, config.REMINDER_DAYS_BEFORE_DUE, now):
            continue
        user, equipment = await _load_parties(borrowing)
        name = equipment.name if equipment else "equipment"
        due = ensure_utc(borrowing.expected_return_date)
        await create_notification(
            borrowing.user_id, "Return reminder",
            f"{name} is due on {due:%Y-%m-%d}. Please return it on time.",
            NotificationType.WARNING, {"borrowing_id": str(borrowing.id)},
        )
        if user:
            await email_service.send_due_reminder_email(user.email, user.full_name, name, due)
        await borrowing.update({"$set": {"reminder_sent_at": now}})
        sent += 1
    logger.info(f"send_due_reminders finished. Checked: {len(active)}, Reminded: {sent}")
    return sent


async def notify_overdue_borrowings(now: Optional[datetime] = None) -> int:
    """Daily overdue notice with the penalty accrued so far. At most one notice per loan per day."""
    now = now or utc_now()
    logger.info(f"Running notify_overdue_borrowings job at {now}")
    notified = 0
    active = await Borrowing.find({"status": BorrowingStatus.ACTIVE.value}).to_list()
    for borrowing in active:
        days = policy.get_overdue_days(borrowing.expected_return_date, now)
        if days <= 0:
            continue
        last = ensure_utc(borrowing.overdue_notified_at)
        if last and last.date() == now.date():
            continue
        user, equipment = await _load_parties(borrowing)
        name = equipment.name if equipment else "equipment"
        penalty_text = policy.format_penalty(days * config.PENALTY_RATE_PER_DAY)
        await create_notification(
            borrowing.user_id, "Equipment overdue",
            f"{name} is {days} day(s) overdue. Current penalty: {penalty_text}.",
            NotificationType.ERROR, {"borrowing_id": str(borrowing.id), "days_overdue": days},
        )
        if user:
            await email_service.send_overdue_email(user.email, user.full_name, name, days, penalty_text)
        await borrowing.update({"$set": {"overdue_notified_at": now}})
        notified += 1
    logger.info(f"notify_overdue_borrowings finished. Checked: {len(active)}, Notified: {notified}")
    return notified


async def cleanup_expired_tokens(now: Optional[datetime] = None) -> int:
    """Deletes verification / reset tokens that are used or expired."""
    now = now or utc_now()
    query = {"$or": [{"used_at": {"$ne": None}}, {"expires_at": {"$lte": now}}]}
    try:
        result = await AuthToken.find(query).delete()
    except PyMongoError as e:
        logger.error(f"cleanup_expired_tokens failed: {e}")
        return 0
    removed = result.deleted_count if result else 0
    logger.info(f"cleanup_expired_tokens removed {removed} token(s).")
    return removed
