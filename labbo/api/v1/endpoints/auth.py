# labbo/api/v1/endpoints/auth.py
from datetime import timedelta
from typing import Union

from beanie import PydanticObjectId
from bson import ObjectId
from fastapi import APIRouter, Body, Depends, HTTPException, Request, Response, status
from fastapi.security import OAuth2PasswordRequestForm
from jose import JWTError
from loguru import logger
from pymongo.errors import DuplicateKeyError

from labbo.core import config
from labbo.core.rate_limiter import limiter
from labbo.core.security import (
    MFA_TOKEN_TYPE,
    create_mfa_token,
    create_user_access_token,
    decode_token,
    generate_url_token,
    get_current_active_user,
    get_current_user,
    get_password_hash,
    hash_token,
    verify_password,
)
from labbo.core.utils import ensure_utc, to_response, utc_now
from labbo.models.enum import ApprovalStatus, TokenPurpose
from labbo.models.token import (
    AuthToken,
    BackupCodesResponse,
    EmailRequest,
    LoginRequest,
    MessageResponse,
    MFAChallenge,
    MFACodeRequest,
    MFADisableRequest,
    MFALoginRequest,
    MFASetupResponse,
    ResetPasswordRequest,
    Token,
    TokenRequest,
)
from labbo.models.user import User
from labbo.services import mfa
from labbo.services.email import email_service
from labbo.services.notifications import notify_staff

router = APIRouter(tags=["Authentication"])

INVALID_CREDENTIALS = "Incorrect email or password"
GENERIC_EMAIL_MESSAGE = "If an account exists for this email, a message has been sent."


# --- Token helpers ---
async def issue_auth_token(user: User, purpose: TokenPurpose, hours: int) -> str:
    """Creates a single-use token; earlier unused tokens of the same purpose are invalidated."""
    now = utc_now()
    await AuthToken.find(
        {"user_id": user.id, "purpose": purpose.value, "used_at": None}
    ).update({"$set": {"used_at": now}})
    raw = generate_url_token()
    await AuthToken(
        user_id=user.id, purpose=purpose, token_hash=hash_token(raw), expires_at=now + timedelta(hours=hours)
    ).insert()
    return raw


async def consume_auth_token(raw: str, purpose: TokenPurpose) -> AuthToken:
    token = await AuthToken.find_one({"token_hash": hash_token(raw), "purpose": purpose.value})
    if token is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid token.")
    if token.used_at is not None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="This link has already been used.")
    if ensure_utc(token.expires_at) <= utc_now():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="This link has expired. Please request a new one.")
    # claim atomically so a token cannot be consumed twice in parallel
    claimed = await AuthToken.get_motor_collection().update_one(
        {"_id": token.id, "used_at": None}, {"$set": {"used_at": utc_now()}}
    )
    if claimed.modified_count == 0:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="This link has already been used.")
    return token


async def get_token_user_or_400(token: AuthToken) -> User:
    user = await User.get(token.user_id)
    if user is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid token.")
    return user


# --- Login helpers ---
async def register_failed_attempt(user: User) -> None:
    """Counts a failed sign-in and locks the account once the limit is reached."""
    attempts = user.failed_login_attempts + 1
    if attempts >= config.MAX_FAILED_LOGIN_ATTEMPTS:
        locked_until = utc_now() + timedelta(minutes=config.LOCKOUT_MINUTES)
        await user.update({"$set": {"failed_login_attempts": 0, "locked_until": locked_until, "updated_at": utc_now()}})
        logger.warning(f"Account '{user.email}' locked until {locked_until} after {attempts} failed attempts.")
        await email_service.send_lockout_email(user.email, user.full_name, locked_until)
        raise HTTPException(
            status_code=status.HTTP_423_LOCKED,
            detail=f"Too many failed attempts. Account locked for {config.LOCKOUT_MINUTES} minutes.",
        )
    await user.update({"$set": {"failed_login_attempts": attempts, "updated_at": utc_now()}})
    logger.info(f"Failed sign-in for '{user.email}' ({attempts}/{config.MAX_FAILED_LOGIN_ATTEMPTS}).")


def ensure_not_locked(user: User) -> None:
    locked_until = ensure_utc(user.locked_until)
    if locked_until and locked_until > utc_now():
        raise HTTPException(
            status_code=status.HTTP_423_LOCKED,
            detail="Account is temporarily locked. Try again later or reset your password.",
        )


async def authenticate_user(email: str, password: str) -> User:
    user = await User.find_one(User.email == email.lower())
    if user is None:
        # hash anyway so response time does not reveal unknown emails
        verify_password(password, get_password_hash("not-a-real-password"))
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=INVALID_CREDENTIALS,
                            headers={"WWW-Authenticate": "Bearer"})
    ensure_not_locked(user)
    if not verify_password(password, user.hashed_password):
        await register_failed_attempt(user)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=INVALID_CREDENTIALS,
                            headers={"WWW-Authenticate": "Bearer"})
    if user.disabled:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="This account has been disabled.")
    if config.REQUIRE_EMAIL_VERIFICATION and not user.email_verified:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN,
                            detail="Please verify your email address before signing in.")
    if config.REQUIRE_USER_APPROVAL and user.approval_status != ApprovalStatus.APPROVED:
        detail = ("Your registration was not approved." if user.approval_status == ApprovalStatus.REJECTED
                  else "Your account is waiting for administrator approval.")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)
    return user


def set_session_cookie(response: Response, token: str, max_age: int) -> None:
    response.set_cookie(
        key=config.SESSION_COOKIE_NAME,
        value=token,
        max_age=max_age,
        httponly=True,
        secure=config.SESSION_COOKIE_SECURE,
        samesite="lax",
        path="/",
    )


async def start_session(user: User, response: Response) -> Token:
    await user.update({"$set": {
        "failed_login_attempts": 0,
        "locked_until": None,
        "last_login_at": utc_now(),
        "login_count": user.login_count + 1,
    }})
    access_token, expires_in = create_user_access_token(user)
    set_session_cookie(response, access_token, expires_in)
    logger.info(f"User '{user.email}' signed in.")
    return Token(access_token=access_token, expires_in=expires_in, user=to_response(user, User.Response))


# --- Sign in ---
@router.post("/login", response_model=Union[Token, MFAChallenge])
@limiter.limit("10/minute")
async def login(request: Request, response: Response, credentials: LoginRequest = Body(...)):
    """Password sign-in. Accounts with MFA get a short-lived mfa_token to finish at /login/mfa."""
    user = await authenticate_user(credentials.email, credentials.password)
    if user.mfa_enabled:
        logger.info(f"MFA challenge issued for '{user.email}'.")
        return MFAChallenge(mfa_token=create_mfa_token(user))
    return await start_session(user, response)


@router.post("/token", response_model=Token)
@limiter.limit("10/minute")
async def login_for_access_token(request: Request, response: Response,
                                 form_data: OAuth2PasswordRequestForm = Depends()):
    """OAuth2 password flow (used by the interactive docs). The username field carries the email."""
    user = await authenticate_user(form_data.username, form_data.password)
    if user.mfa_enabled:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Multi-factor authentication is enabled. Sign in through /api/v1/auth/login.",
        )
    return await start_session(user, response)


@router.post("/login/mfa", response_model=Token)
@limiter.limit("10/minute")
async def login_mfa(request: Request, response: Response, payload: MFALoginRequest = Body(...)):
    invalid = HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired MFA session.")
    try:
        claims = decode_token(payload.mfa_token, expected_type=MFA_TOKEN_TYPE)
    except JWTError:
        raise invalid
    user = await User.get(PydanticObjectId(claims["sub"])) if ObjectId.is_valid(claims["sub"]) else None
    if user is None or claims.get("ver", 0) != user.token_version or not user.mfa_enabled or not user.mfa_secret:
        raise invalid
    ensure_not_locked(user)

    if mfa.verify_totp(mfa.decrypt_secret(user.mfa_secret), payload.code):
        return await start_session(user, response)
    remaining = mfa.consume_backup_code(user.backup_codes, payload.code)
    if remaining is not None:
        await user.update({"$set": {"backup_codes": remaining}})
        logger.warning(f"User '{user.email}' signed in with a backup code ({len(remaining)} left).")
        return await start_session(user, response)

    await register_failed_attempt(user)
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid authentication code.")


@router.post("/logout", response_model=MessageResponse)
async def logout(response: Response):
    response.delete_cookie(config.SESSION_COOKIE_NAME, path="/")
    return MessageResponse(message="Signed out.")


@router.post("/logout-all", response_model=MessageResponse)
async def logout_all(response: Response, current_user: User = Depends(get_current_user)):
    """Revokes every token issued to the user by bumping token_version."""
    await current_user.update({"$inc": {"token_version": 1}, "$set": {"updated_at": utc_now()}})
    response.delete_cookie(config.SESSION_COOKIE_NAME, path="/")
    logger.info(f"All sessions revoked for '{current_user.email}'.")
    return MessageResponse(message="Signed out from all devices.")


# --- Registration & email verification ---
@router.post("/register", response_model=User.Response, status_code=status.HTTP_201_CREATED)
@limiter.limit("5/hour")
async def register_user(request: Request, user_in: User.Register = Body(...)):
    email = user_in.email.lower()
    if await User.find_one(User.email == email):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Email already registered")

    user = User(
        **user_in.model_dump(exclude={"password", "email"}),
        email=email,
        hashed_password=get_password_hash(user_in.password),
        approval_status=ApprovalStatus.PENDING if config.REQUIRE_USER_APPROVAL else ApprovalStatus.APPROVED,
        email_verified=not config.REQUIRE_EMAIL_VERIFICATION,
    )
    try:
        await user.insert()
    except DuplicateKeyError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Email already registered")
    logger.info(f"New registration: '{email}' as {user.role.value}.")

    if config.REQUIRE_EMAIL_VERIFICATION:
        raw = await issue_auth_token(user, TokenPurpose.EMAIL_VERIFICATION, config.EMAIL_VERIFICATION_TOKEN_HOURS)
        await email_service.send_verification_email(user.email, user.full_name, raw)
    if config.REQUIRE_USER_APPROVAL:
        await notify_staff("New registration", f"{user.full_name} ({user.email}) is waiting for approval.",
                           {"user_id": str(user.id)})
    elif not config.REQUIRE_EMAIL_VERIFICATION:
        await email_service.send_welcome_email(user.email, user.full_name)
    return to_response(user, User.Response)


@router.post("/verify-email", response_model=MessageResponse)
@limiter.limit("20/hour")
async def verify_email(request: Request, payload: TokenRequest = Body(...)):
    token = await consume_auth_token(payload.token, TokenPurpose.EMAIL_VERIFICATION)
    user = await get_token_user_or_400(token)
    await user.update({"$set": {"email_verified": True, "email_verified_at": utc_now(), "updated_at": utc_now()}})
    logger.info(f"Email verified for '{user.email}'.")
    if user.approval_status == ApprovalStatus.APPROVED:
        await email_service.send_welcome_email(user.email, user.full_name)
        return MessageResponse(message="Email verified. You can now sign in.")
    return MessageResponse(message="Email verified. Your account is waiting for administrator approval.")


@router.post("/resend-verification", response_model=MessageResponse, status_code=status.HTTP_202_ACCEPTED)
@limiter.limit("5/hour")
async def resend_verification(request: Request, payload: EmailRequest = Body(...)):
    user = await User.find_one(User.email == payload.email.lower())
    if user and not user.email_verified and not user.disabled:
        raw = await issue_auth_token(user, TokenPurpose.EMAIL_VERIFICATION, config.EMAIL_VERIFICATION_TOKEN_HOURS)
        await email_service.send_verification_email(user.email, user.full_name, raw)
    return MessageResponse(message=GENERIC_EMAIL_MESSAGE)


# --- Password reset ---
@router.post("/forgot-password", response_model=MessageResponse, status_code=status.HTTP_202_ACCEPTED)
@limiter.limit("5/hour")
async def forgot_password(request: Request, payload: EmailRequest = Body(...)):
    user = await User.find_one(User.email == payload.email.lower())
    if user and not user.disabled:
        raw = await issue_auth_token(user, TokenPurpose.PASSWORD_RESET, config.PASSWORD_RESET_TOKEN_HOURS)
        await email_service.send_password_reset_email(user.email, user.full_name, raw)
        logger.info(f"Password reset requested for '{user.email}'.")
    return MessageResponse(message=GENERIC_EMAIL_MESSAGE)


@router.post("/reset-password", response_model=MessageResponse)
@limiter.limit("10/hour")
async def reset_password(request: Request, payload: ResetPasswordRequest = Body(...)):
    token = await consume_auth_token(payload.token, TokenPurpose.PASSWORD_RESET)
    user = await get_token_user_or_400(token)
    await user.update({
        "$set": {
            "hashed_password": get_password_hash(payload.new_password),
            "failed_login_attempts": 0,
            "locked_until": None,
            "updated_at": utc_now(),
        },
        "$inc": {"token_version": 1},
    })
    logger.info(f"Password reset completed for '{user.email}'.")
    return MessageResponse(message="Password updated. Please sign in with your new password.")


# --- Current user ---
@router.get("/me", response_model=User.Response)
async def read_users_me(current_user: User = Depends(get_current_active_user)):
    return to_response(current_user, User.Response)


@router.put("/me", response_model=User.Response)
async def update_users_me(profile: User.ProfileUpdate = Body(...),
                          current_user: User = Depends(get_current_active_user)):
    update_data = profile.model_dump(exclude_unset=True)
    if not update_data:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No update data provided.")
    update_data["updated_at"] = utc_now()
    await current_user.update({"$set": update_data})
    return to_response(current_user, User.Response)


@router.post("/me/change-password", response_model=Token)
@limiter.limit("5/hour")
async def change_password(request: Request, response: Response, payload: User.PasswordChange = Body(...),
                          current_user: User = Depends(get_current_active_user)):
    """Changes the password, revokes other sessions and returns a fresh token for this one."""
    if not verify_password(payload.current_password, current_user.hashed_password):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Current password is incorrect.")
    if verify_password(payload.new_password, current_user.hashed_password):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST,
                            detail="New password must differ from the current one.")
    await current_user.update({
        "$set": {"hashed_password": get_password_hash(payload.new_password), "updated_at": utc_now()},
        "$inc": {"token_version": 1},
    })
    access_token, expires_in = create_user_access_token(current_user)
    set_session_cookie(response, access_token, expires_in)
    return Token(access_token=access_token, expires_in=expires_in, user=to_response(current_user, User.Response))


# --- MFA management ---
@router.post("/mfa/setup", response_model=MFASetupResponse)
async def mfa_setup(current_user: User = Depends(get_current_active_user)):
    """Starts enrolment: returns a new secret and QR code. MFA stays off until /mfa/enable verifies a code."""
    if current_user.mfa_enabled:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="MFA is already enabled.")
    secret = mfa.generate_secret()
    await current_user.update({"$set": {"mfa_pending_secret": mfa.encrypt_secret(secret), "updated_at": utc_now()}})
    uri = mfa.provisioning_uri(secret, current_user.email)
    return MFASetupResponse(secret=secret, otpauth_url=uri, qr_code=mfa.qr_code_data_url(uri))


@router.post("/mfa/enable", response_model=BackupCodesResponse)
@limiter.limit("10/hour")
async def mfa_enable(request: Request, payload: MFACodeRequest = Body(...),
                     current_user: User = Depends(get_current_active_user)):
    if current_user.mfa_enabled:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="MFA is already enabled.")
    if not current_user.mfa_pending_secret:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Start MFA setup first.")
    if not mfa.verify_totp(mfa.decrypt_secret(current_user.mfa_pending_secret), payload.code):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid authentication code.")

    codes, hashes = mfa.generate_backup_codes()
    await current_user.update({"$set": {
        "mfa_enabled": True,
        "mfa_secret": current_user.mfa_pending_secret,
        "mfa_pending_secret": None,
        "backup_codes": hashes,
        "updated_at": utc_now(),
    }})
    logger.info(f"MFA enabled for '{current_user.email}'.")
    return BackupCodesResponse(backup_codes=codes, message="Store these backup codes somewhere safe. They are shown only once.")


async def verify_second_factor(user: User, code: str) -> bool:
    """TOTP first, then a backup code (which is consumed)."""
    if user.mfa_secret and mfa.verify_totp(mfa.decrypt_secret(user.mfa_secret), code):
        return True
    remaining = mfa.consume_backup_code(user.backup_codes, code)
    if remaining is None:
        return False
    await user.update({"$set": {"backup_codes": remaining}})
    return True


@router.post("/mfa/disable", response_model=MessageResponse)
@limiter.limit("10/hour")
async def mfa_disable(request: Request, payload: MFADisableRequest = Body(...),
                      current_user: User = Depends(get_current_active_user)):
    if not current_user.mfa_enabled:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="MFA is not enabled.")
    if not verify_password(payload.password, current_user.hashed_password):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Password is incorrect.")
    if not await verify_second_factor(current_user, payload.code):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid authentication code.")
    await current_user.update({"$set": {
        "mfa_enabled": False, "mfa_secret": None, "mfa_pending_secret": None, "backup_codes": [],
        "updated_at": utc_now(),
    }})
    logger.warning(f"MFA disabled for '{current_user.email}'.")
    return MessageResponse(message="Multi-factor authentication disabled.")


@router.post("/mfa/backup-codes", response_model=BackupCodesResponse)
@limiter.limit("5/hour")
async def mfa_regenerate_backup_codes(request: Request, payload: MFACodeRequest = Body(...),
                                      current_user: User = Depends(get_current_active_user)):
    if not current_user.mfa_enabled or not current_user.mfa_secret:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="MFA is not enabled.")
    if not mfa.verify_totp(mfa.decrypt_secret(current_user.mfa_secret), payload.code):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid authentication code.")
    codes, hashes = mfa.generate_backup_codes()
    await current_user.update({"$set": {"backup_codes": hashes, "updated_at": utc_now()}})
    return BackupCodesResponse(backup_codes=codes, message="Previous backup codes no longer work.")
