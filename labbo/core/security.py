# labbo/core/security.py
import hashlib
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional, List, Dict, Any, Tuple

from bson import ObjectId
from fastapi import Depends, HTTPException, status, Request
from fastapi.security import OAuth2PasswordBearer
from fastapi.security.utils import get_authorization_scheme_param
from jose import JWTError, jwt
from loguru import logger
from passlib.context import CryptContext

from labbo.core.config import (
    SECRET_KEY, ALGORITHM, ACCESS_TOKEN_EXPIRE_MINUTES, MFA_TOKEN_EXPIRE_MINUTES, SESSION_COOKIE_NAME,
)
from labbo.models.user import User
from labbo.models.enum import UserRole

ACCESS_TOKEN_TYPE = "access"
MFA_TOKEN_TYPE = "mfa"

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

# auto_error=False: the session cookie is accepted as an alternative to the header
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/token", auto_error=False)


# --- Passwords ---
def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


# --- Opaque tokens (email verification, password reset, backup codes) ---
def generate_url_token() -> str:
    return secrets.token_urlsafe(32)


def hash_token(raw: str) -> str:
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


# --- JWT ---
def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire, "iat": datetime.now(timezone.utc)})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def create_user_access_token(user: User) -> Tuple[str, int]:
    """Session token for a user; `ver` ties it to the user's token_version for logout-all."""
    expires_in = ACCESS_TOKEN_EXPIRE_MINUTES * 60
    token = create_access_token(
        data={
            "sub": str(user.id),
            "role": getattr(user.role, "value", user.role),
            "ver": user.token_version,
            "type": ACCESS_TOKEN_TYPE,
        },
        expires_delta=timedelta(seconds=expires_in),
    )
    return token, expires_in


def create_mfa_token(user: User) -> str:
    """Short lived token proving the password step passed; only exchangeable at /auth/login/mfa."""
    return create_access_token(
        data={"sub": str(user.id), "ver": user.token_version, "type": MFA_TOKEN_TYPE},
        expires_delta=timedelta(minutes=MFA_TOKEN_EXPIRE_MINUTES),
    )


def decode_token(token: str, expected_type: str = ACCESS_TOKEN_TYPE) -> Dict[str, Any]:
    """Decode and check the token type. Raises JWTError on any problem."""
    payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    if payload.get("type") != expected_type:
        raise JWTError(f"Unexpected token type: {payload.get('type')!r}")
    if not payload.get("sub"):
        raise JWTError("Subject ('sub') missing in token payload.")
    return payload


def get_token_from_request(request: Request) -> Optional[str]:
    """Bearer header first, then the session cookie."""
    authorization = request.headers.get("Authorization")
    scheme, token = get_authorization_scheme_param(authorization or "")
    if authorization and scheme.lower() == "bearer" and token:
        return token
    return request.cookies.get(SESSION_COOKIE_NAME)


# --- Current user dependencies ---
async def get_current_user(
    request: Request,
    token: Optional[str] = Depends(oauth2_scheme)
) -> User:
    """
    Resolves the user from the payload AuthMiddleware stored on request.state,
    decoding the token here when the middleware did not run.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    payload: Optional[Dict[str, Any]] = getattr(request.state, "token_payload", None)
    if payload is None:
        raw_token = token or get_token_from_request(request)
        if not raw_token:
            raise credentials_exception
        try:
            payload = decode_token(raw_token)
        except JWTError:
            logger.warning("Token decode failed in get_current_user dependency.")
            raise credentials_exception

    user_id = payload.get("sub")
    if not user_id or not ObjectId.is_valid(user_id):
        raise credentials_exception

    user = await User.get(ObjectId(user_id))
    if user is None:
        logger.warning(f"User '{user_id}' from token not found in database.")
        raise credentials_exception
    if payload.get("ver", 0) != user.token_version:
        logger.info(f"Rejected revoked token for user '{user.email}'.")
        raise credentials_exception
    return user


async def get_current_active_user(
    current_user: User = Depends(get_current_user)
) -> User:
    if current_user.disabled:
        logger.warning(f"Access denied for disabled user '{current_user.email}'.")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Inactive user")
    return current_user


def is_staff(user: User) -> bool:
    return user.role in (UserRole.ADMIN, UserRole.LAB_STAFF)


def require_role(required_role: UserRole):
    """Dependency factory: the current user must have exactly this role."""
    async def role_checker(current_user: User = Depends(get_current_active_user)) -> User:
        if current_user.role != required_role:
            logger.warning(
                f"Forbidden: User '{current_user.email}' with role '{current_user.role.value}' "
                f"attempted action requiring role '{required_role.value}'."
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Operation not permitted. Required role: {required_role.value}"
            )
        return current_user
    return role_checker


def require_roles(required_roles: List[UserRole]):
    """Dependency factory: the current user must have one of the roles."""
    async def roles_checker(current_user: User = Depends(get_current_active_user)) -> User:
        if current_user.role not in required_roles:
            logger.warning(
                f"Forbidden: User '{current_user.email}' with role '{current_user.role.value}' "
                f"attempted action requiring one of roles: {[r.value for r in required_roles]}."
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Operation not permitted. Required roles: {[r.value for r in required_roles]}"
            )
        return current_user
    return roles_checker


require_admin = require_role(UserRole.ADMIN)
require_staff_or_admin = require_roles([UserRole.ADMIN, UserRole.LAB_STAFF])
