# labbo/models/user.py
import re
from typing import Optional, List
from datetime import datetime

from beanie import Document
from pydantic import BaseModel, Field, EmailStr, field_validator
from pymongo import IndexModel, ASCENDING, DESCENDING

from labbo.core.config import PASSWORD_MIN_LENGTH
from labbo.core.utils import utc_now
from .enum import UserRole, ApprovalStatus


def check_password_strength(password: str) -> str:
    """Minimum length plus at least one upper case letter, one lower case letter and one digit."""
    if len(password) < PASSWORD_MIN_LENGTH:
        raise ValueError(f"Password must be at least {PASSWORD_MIN_LENGTH} characters long")
    if not re.search(r"[A-Z]", password):
        raise ValueError("Password must contain at least one uppercase letter")
    if not re.search(r"[a-z]", password):
        raise ValueError("Password must contain at least one lowercase letter")
    if not re.search(r"\d", password):
        raise ValueError("Password must contain at least one number")
    return password


class User(Document):
    email: EmailStr
    full_name: str
    hashed_password: str
    role: UserRole = Field(default=UserRole.STUDENT)
    department: Optional[str] = None
    phone: Optional[str] = None
    nim: Optional[str] = None   # student number
    nip: Optional[str] = None   # staff / lecturer number

    disabled: bool = Field(default=False)
    approval_status: ApprovalStatus = Field(default=ApprovalStatus.APPROVED)
    email_verified: bool = Field(default=False)
    email_verified_at: Optional[datetime] = None

    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    login_count: int = 0
    banned_until: Optional[datetime] = None
    ban_reason: Optional[str] = None

    mfa_enabled: bool = False
    mfa_secret: Optional[str] = None          # Fernet encrypted
    mfa_pending_secret: Optional[str] = None  # set during setup until the first code is verified
    backup_codes: List[str] = Field(default_factory=list)  # sha256 hashes
    token_version: int = 0

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    class Settings:
        name = "users"
        indexes = [
            IndexModel([("email", ASCENDING)], name="email_unique_index", unique=True),
            IndexModel([("role", ASCENDING)], name="role_index"),
            IndexModel([("approval_status", ASCENDING)], name="user_approval_status_index"),
            IndexModel([("disabled", ASCENDING)], name="user_disabled_index"),
            IndexModel([("created_at", DESCENDING)], name="user_created_at_index"),
        ]

    # --- Pydantic Schemas ---
    class Response(BaseModel):
        id: str
        email: EmailStr
        full_name: str
        role: UserRole
        department: Optional[str] = None
        phone: Optional[str] = None
        nim: Optional[str] = None
        nip: Optional[str] = None
        disabled: bool
        approval_status: ApprovalStatus
        email_verified: bool
        mfa_enabled: bool
        locked_until: Optional[datetime] = None
        banned_until: Optional[datetime] = None
        last_login_at: Optional[datetime] = None
        login_count: int = 0
        created_at: datetime
        updated_at: datetime

        class Config:
            from_attributes = True
            use_enum_values = True

    class Register(BaseModel):
        """Self registration. Only borrower roles can be chosen."""
        email: EmailStr
        full_name: str = Field(..., min_length=2, max_length=120)
        password: str
        role: UserRole = UserRole.STUDENT
        department: Optional[str] = Field(None, max_length=120)
        phone: Optional[str] = Field(None, max_length=30)
        nim: Optional[str] = Field(None, max_length=30)
        nip: Optional[str] = Field(None, max_length=30)

        @field_validator("password")
        @classmethod
        def password_strength(cls, v: str) -> str:
            return check_password_strength(v)

        @field_validator("role")
        @classmethod
        def borrower_roles_only(cls, v: UserRole) -> UserRole:
            if v not in (UserRole.STUDENT, UserRole.LECTURER):
                raise ValueError("Only student or lecturer accounts can be self-registered")
            return v

    class AdminCreate(BaseModel):
        email: EmailStr
        full_name: str = Field(..., min_length=2, max_length=120)
        password: str
        role: UserRole = UserRole.STUDENT
        department: Optional[str] = None
        phone: Optional[str] = None
        nim: Optional[str] = None
        nip: Optional[str] = None
        disabled: bool = False

        @field_validator("password")
        @classmethod
        def password_strength(cls, v: str) -> str:
            return check_password_strength(v)

    class AdminUpdate(BaseModel):
        email: Optional[EmailStr] = None
        full_name: Optional[str] = Field(None, min_length=2, max_length=120)
        password: Optional[str] = None
        role: Optional[UserRole] = None
        department: Optional[str] = None
        phone: Optional[str] = None
        nim: Optional[str] = None
        nip: Optional[str] = None
        disabled: Optional[bool] = None

        @field_validator("password")
        @classmethod
        def password_strength(cls, v: Optional[str]) -> Optional[str]:
            return check_password_strength(v) if v else v

    class ProfileUpdate(BaseModel):
        full_name: Optional[str] = Field(None, min_length=2, max_length=120)
        department: Optional[str] = Field(None, max_length=120)
        phone: Optional[str] = Field(None, max_length=30)
        nim: Optional[str] = Field(None, max_length=30)
        nip: Optional[str] = Field(None, max_length=30)

    class PasswordChange(BaseModel):
        current_password: str
        new_password: str

        @field_validator("new_password")
        @classmethod
        def password_strength(cls, v: str) -> str:
            return check_password_strength(v)

    class Ban(BaseModel):
        banned_until: datetime
        reason: Optional[str] = Field(None, max_length=500)

    class RejectRegistration(BaseModel):
        reason: Optional[str] = Field(None, max_length=500)
