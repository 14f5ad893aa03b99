# labbo/models/enum.py
from enum import Enum


class UserRole(str, Enum):
    ADMIN = "admin"
    LAB_STAFF = "lab_staff"
    LECTURER = "lecturer"
    STUDENT = "student"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class EquipmentStatus(str, Enum):
    AVAILABLE = "available"
    BORROWED = "borrowed"
    MAINTENANCE = "maintenance"
    RETIRED = "retired"


class EquipmentCondition(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"
    DAMAGED = "damaged"


class BorrowingStatus(str, Enum):
    PENDING = "pending"    # submitted by borrower, waiting for staff
    ACTIVE = "active"      # approved, equipment is out
    REJECTED = "rejected"
    RETURNED = "returned"


class ExtensionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class TokenPurpose(str, Enum):
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"


class NotificationType(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
