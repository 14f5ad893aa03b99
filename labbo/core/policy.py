# labbo/core/policy.py
"""
Borrowing rules: role limits, loan windows, extensions and late penalties.

Everything here is pure (no database access) so the same rules back the API
handlers, the scheduler jobs and the analytics projections.
"""
import math
from datetime import datetime
from typing import Any, Dict, Mapping, Optional, Union

from labbo.core.config import (
    ROLE_LIMITS, DEFAULT_ROLE_LIMITS, PENALTY_RATE_PER_DAY, PENALTY_CURRENCY,
    MAX_EXTENSION_DAYS, MIN_BORROW_DAYS,
)
from labbo.core.utils import ensure_utc, utc_now
from labbo.models.enum import BorrowingStatus, ExtensionStatus, UserRole


class BorrowingRuleError(ValueError):
    """Raised when a request breaks a borrowing rule. Handlers map it to HTTP 400."""


def _role_key(role: Union[UserRole, str, None]) -> str:
    return getattr(role, "value", role) or ""


def get_limits_for_role(role: Union[UserRole, str, None]) -> Dict[str, int]:
    return ROLE_LIMITS.get(_role_key(role), DEFAULT_ROLE_LIMITS)


# --- Dates & penalties ---
def days_between(start: datetime, end: datetime) -> int:
    """Whole calendar days (UTC) from start to end; negative when end is earlier."""
    return (ensure_utc(end).date() - ensure_utc(start).date()).days


def get_overdue_days(expected_return: datetime, now: Optional[datetime] = None) -> int:
    return max(0, days_between(expected_return, now or utc_now()))


def is_overdue(expected_return: datetime, now: Optional[datetime] = None) -> bool:
    return get_overdue_days(expected_return, now) > 0


def calculate_penalty(expected_return: datetime, actual_return: datetime,
                      rate_per_day: int = PENALTY_RATE_PER_DAY) -> int:
    """`days_late * rate_per_day` when returned after the due date, otherwise 0."""
    days_late = days_between(expected_return, actual_return)
    if days_late <= 0:
        return 0
    return days_late * rate_per_day


def format_penalty(amount: Union[int, float], currency: str = PENALTY_CURRENCY) -> str:
    """5000 -> 'Rp 5.000' (dot as the thousands separator)."""
    whole = int(math.ceil(amount))
    return f"{currency} {whole:,}".replace(",", ".")


# --- Request validation ---
def validate_borrow_window(expected_return: datetime, role: Union[UserRole, str, None],
                           now: Optional[datetime] = None) -> int:
    """Checks the requested loan length against the role limit. Returns the loan length in days."""
    now = now or utc_now()
    days = days_between(now, expected_return)
    if days < MIN_BORROW_DAYS:
        raise BorrowingRuleError(
            f"Expected return date must be at least {MIN_BORROW_DAYS} day(s) from today."
        )
    max_days = get_limits_for_role(role)["max_days"]
    if days > max_days:
        raise BorrowingRuleError(
            f"Borrowing period cannot exceed {max_days} days for role '{_role_key(role)}'."
        )
    return days


def validate_open_request_count(open_count: int, role: Union[UserRole, str, None]) -> None:
    max_items = get_limits_for_role(role)["max_items"]
    if open_count >= max_items:
        raise BorrowingRuleError(
            f"You already have {open_count} pending or active borrowing(s). "
            f"The limit for role '{_role_key(role)}' is {max_items}."
        )


def _get(borrowing: Any, field: str) -> Any:
    if isinstance(borrowing, Mapping):
        return borrowing.get(field)
    return getattr(borrowing, field, None)


def check_extension_allowed(borrowing: Any, role: Union[UserRole, str, None],
                            now: Optional[datetime] = None) -> None:
    status = _role_key(_get(borrowing, "status"))
    if status != BorrowingStatus.ACTIVE.value:
        raise BorrowingRuleError("Only active borrowings can be extended.")
    if is_overdue(_get(borrowing, "expected_return_date"), now):
        raise BorrowingRuleError("Overdue borrowings cannot be extended. Please return the equipment.")
    if _role_key(_get(borrowing, "extension_status")) == ExtensionStatus.PENDING.value:
        raise BorrowingRuleError("An extension request is already waiting for review.")
    max_extensions = get_limits_for_role(role)["max_extensions"]
    if (_get(borrowing, "extension_count") or 0) >= max_extensions:
        raise BorrowingRuleError(f"Maximum number of extensions ({max_extensions}) reached.")


def can_request_extension(borrowing: Any, role: Union[UserRole, str, None],
                          now: Optional[datetime] = None) -> bool:
    try:
        check_extension_allowed(borrowing, role, now)
    except BorrowingRuleError:
        return False
    return True


def validate_extension_date(current_expected: datetime, new_date: datetime,
                            max_extension_days: int = MAX_EXTENSION_DAYS) -> int:
    """The new due date must be strictly later than the current one and within the extension window."""
    added = days_between(current_expected, new_date)
    if added <= 0:
        raise BorrowingRuleError("New return date must be later than the current expected return date.")
    if added > max_extension_days:
        raise BorrowingRuleError(f"An extension can add at most {max_extension_days} days.")
    return added


def checklist_complete(checklist: Optional[Mapping[str, bool]]) -> bool:
    """No checklist means nothing to confirm; otherwise every item must be ticked."""
    if not checklist:
        return True
    return all(bool(v) for v in checklist.values())


def reminder_due(expected_return: datetime, days_before: int, now: Optional[datetime] = None) -> bool:
    """True when the due date falls within the next `days_before` days (inclusive, not yet overdue)."""
    left = days_between(now or utc_now(), expected_return)
    return 0 <= left <= days_before


