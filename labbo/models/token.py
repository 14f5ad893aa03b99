# labbo/models/token.py
from typing import Optional, List
from datetime import datetime

from beanie import Document, PydanticObjectId
from pydantic import BaseModel, Field, EmailStr, field_validator
from pymongo import IndexModel, ASCENDING

from labbo.core.utils import utc_now
from .enum import TokenPurpose
from .user import User, check_password_strength


class AuthToken(Document):
    """Single-use token for email verification or password reset. Only the sha256 hash is stored."""
    user_id: PydanticObjectId
    purpose: TokenPurpose
    token_hash: str
    expires_at: datetime
    used_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)

    class Settings:
        name = "tokens"
        indexes = [
            IndexModel([("token_hash", ASCENDING)], name="token_hash_unique_index", unique=True),
            IndexModel([("user_id", ASCENDING), ("purpose", ASCENDING)], name="token_user_purpose_index"),
            IndexModel([("expires_at", ASCENDING)], name="token_expires_at_index"),
        ]


# --- Auth request / response schemas ---
class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: User.Response


class MFAChallenge(BaseModel):
    mfa_required: bool = True
    mfa_token: str
    token_type: str = "mfa"


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class MFALoginRequest(BaseModel):
    mfa_token: str
    code: str = Field(..., min_length=6, max_length=20, description="TOTP code or backup code")


class EmailRequest(BaseModel):
    email: EmailStr


class TokenRequest(BaseModel):
    token: str = Field(..., min_length=10)


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., min_length=10)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def password_strength(cls, v: str) -> str:
        return check_password_strength(v)


class MessageResponse(BaseModel):
    message: str


class MFASetupResponse(BaseModel):
    secret: str
    otpauth_url: str
    qr_code: str  # data:image/png;base64,...


class MFACodeRequest(BaseModel):
    code: str = Field(..., min_length=6, max_length=20)


class MFADisableRequest(BaseModel):
    password: str
    code: str = Field(..., min_length=6, max_length=20)


class BackupCodesResponse(BaseModel):
    backup_codes: List[str]
    message: Optional[str] = None
