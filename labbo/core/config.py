# labbo/core/config.py
import os
import sys
import logging
from pathlib import Path
from typing import Dict, List

from dotenv import load_dotenv
from loguru import logger

# --- Load .env from the project root if present ---
project_root = Path(__file__).resolve().parent.parent.parent
dotenv_path = project_root / '.env'
if dotenv_path.is_file():
    logger.info(f"Loading environment variables from: {dotenv_path}")
    load_dotenv(dotenv_path=dotenv_path)
else:
    logger.debug(f".env file not found at {dotenv_path}. Relying on system environment variables.")


# --- Intercept Handler (routes stdlib logging into Loguru) ---
class InterceptHandler(logging.Handler):
    """Handler that forwards standard logging records to Loguru."""
    def emit(self, record: logging.LogRecord) -> None:
        try: level = logger.level(record.levelname).name
        except ValueError: level = record.levelno
        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1
        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging():
    """Configure Loguru sinks and intercept uvicorn/fastapi/starlette loggers."""
    log_level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    log_format = (
        "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
    )
    log_file_path = Path(os.getenv("LOG_FILE_PATH", "logs/labbo_{time:YYYY-MM-DD}.log"))
    log_rotation = os.getenv("LOG_ROTATION", "1 day")
    log_retention = os.getenv("LOG_RETENTION", "7 days")
    log_serialize = os.getenv("LOG_SERIALIZE", "False").lower() == 'true'

    logger.remove()
    logger.add(sys.stderr, level=log_level_name, format=log_format, colorize=True)

    if os.getenv("LOG_TO_FILE", "true").lower() == "true":
        try:
            log_file_path.parent.mkdir(parents=True, exist_ok=True)
            logger.add(
                log_file_path,
                level=log_level_name,
                format=log_format,
                rotation=log_rotation,
                retention=log_retention,
                serialize=log_serialize,
                enqueue=True,
                backtrace=True,
                diagnose=False,
                encoding="utf-8"
            )
            logger.info(f"File logging enabled at: {log_file_path}")
        except OSError as e:
            logger.error(f"Failed to setup file logging at {log_file_path}: {e}")

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in list(logging.root.manager.loggerDict):
        if name.startswith(("uvicorn", "fastapi", "starlette", "apscheduler")):
            existing_logger = logging.getLogger(name)
            existing_logger.handlers = [InterceptHandler()]
            existing_logger.propagate = False

    logger.info(f"Loguru logging setup complete. Level: {log_level_name}")


# --- Env helpers ---
def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Invalid {name}={raw!r}. Using default: {default}.")
        return default


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _get_list(name: str, default: str) -> List[str]:
    return [part.strip() for part in os.getenv(name, default).split(",") if part.strip()]


# --- JWT / Session ---
SECRET_KEY: str = os.getenv("SECRET_KEY")
if not SECRET_KEY:
    logger.critical("FATAL: SECRET_KEY environment variable is not set.")
    raise ValueError("SECRET_KEY environment variable is not set.")

ALGORITHM: str = os.getenv("ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES: int = _get_int("ACCESS_TOKEN_EXPIRE_MINUTES", 60)
MFA_TOKEN_EXPIRE_MINUTES: int = _get_int("MFA_TOKEN_EXPIRE_MINUTES", 5)
SESSION_COOKIE_NAME: str = os.getenv("SESSION_COOKIE_NAME", "session")
SESSION_COOKIE_SECURE: bool = _get_bool("SESSION_COOKIE_SECURE", False)

# --- Database ---
MONGODB_URL: str = os.getenv("MONGODB_URL")
if not MONGODB_URL:
    logger.critical("FATAL: MONGODB_URL environment variable is not set.")
    raise ValueError("MONGODB_URL environment variable is not set.")

_default_db_name = "labbo"
path_part = MONGODB_URL.rsplit('/', 1)[-1].split('?')[0]
if path_part and "://" in MONGODB_URL and MONGODB_URL.count('/') >= 3:
    _default_db_name = path_part
DATABASE_NAME: str = os.getenv("DATABASE_NAME", _default_db_name)

# --- HTTP ---
APP_URL: str = os.getenv("APP_URL", "http://localhost:3000").rstrip("/")
CORS_ORIGINS: List[str] = _get_list("CORS_ORIGINS", "http://localhost:3000")
RATE_LIMIT_ENABLED: bool = _get_bool("RATE_LIMIT_ENABLED", True)
SCHEDULER_ENABLED: bool = _get_bool("SCHEDULER_ENABLED", True)
SCHEDULER_TIMEZONE: str = os.getenv("SCHEDULER_TIMEZONE", "Asia/Jakarta")

# --- Uploads ---
MEDIA_ROOT: Path = Path(os.getenv("MEDIA_ROOT", str(project_root / "media")))
MEDIA_URL: str = "/media"
MAX_UPLOAD_BYTES: int = _get_int("MAX_UPLOAD_BYTES", 5 * 1024 * 1024)
ALLOWED_IMAGE_TYPES = {"image/jpeg": ".jpg", "image/png": ".png", "image/webp": ".webp", "image/gif": ".gif"}
MAX_IMPORT_ROWS: int = _get_int("MAX_IMPORT_ROWS", 1000)

# --- Borrowing rules ---
PENALTY_RATE_PER_DAY: int = _get_int("PENALTY_RATE_PER_DAY", 5000)
PENALTY_CURRENCY: str = os.getenv("PENALTY_CURRENCY", "Rp")
MAX_EXTENSION_DAYS: int = _get_int("MAX_EXTENSION_DAYS", 7)
MIN_BORROW_DAYS: int = _get_int("MIN_BORROW_DAYS", 1)
REMINDER_DAYS_BEFORE_DUE: int = _get_int("REMINDER_DAYS_BEFORE_DUE", 1)

# max concurrent (pending + active) requests, max loan length in days, max extensions
ROLE_LIMITS: Dict[str, Dict[str, int]] = {
    "student": {"max_items": 3, "max_days": 14, "max_extensions": 1},
    "lecturer": {"max_items": 7, "max_days": 30, "max_extensions": 3},
    "lab_staff": {"max_items": 5, "max_days": 21, "max_extensions": 2},
    "admin": {"max_items": 10, "max_days": 60, "max_extensions": 5},
}
DEFAULT_ROLE_LIMITS = ROLE_LIMITS["student"]

# --- Account security ---
MAX_FAILED_LOGIN_ATTEMPTS: int = _get_int("MAX_FAILED_LOGIN_ATTEMPTS", 5)
LOCKOUT_MINUTES: int = _get_int("LOCKOUT_MINUTES", 15)
EMAIL_VERIFICATION_TOKEN_HOURS: int = _get_int("EMAIL_VERIFICATION_TOKEN_HOURS", 24)
PASSWORD_RESET_TOKEN_HOURS: int = _get_int("PASSWORD_RESET_TOKEN_HOURS", 1)
REQUIRE_EMAIL_VERIFICATION: bool = _get_bool("REQUIRE_EMAIL_VERIFICATION", True)
REQUIRE_USER_APPROVAL: bool = _get_bool("REQUIRE_USER_APPROVAL", True)
PASSWORD_MIN_LENGTH: int = _get_int("PASSWORD_MIN_LENGTH", 8)

# --- MFA ---
MFA_ISSUER: str = os.getenv("MFA_ISSUER", "Lab Inventory System")
MFA_ENCRYPTION_KEY: str = os.getenv("MFA_ENCRYPTION_KEY", "")
MFA_BACKUP_CODE_COUNT: int = _get_int("MFA_BACKUP_CODE_COUNT", 8)

# --- Email ---
EMAIL_PROVIDER: str = os.getenv("EMAIL_PROVIDER", "mock").lower()
EMAIL_FROM: str = os.getenv("EMAIL_FROM", "no-reply@labbo.local")
EMAIL_FROM_NAME: str = os.getenv("EMAIL_FROM_NAME", "Lab Inventory System")
SMTP_HOST: str = os.getenv("SMTP_HOST", "smtp.gmail.com")
SMTP_PORT: int = _get_int("SMTP_PORT", 587)
SMTP_USERNAME: str = os.getenv("SMTP_USERNAME", "")
SMTP_PASSWORD: str = os.getenv("SMTP_PASSWORD", "")
SMTP_USE_TLS: bool = _get_bool("SMTP_USE_TLS", False)
SENDGRID_API_KEY: str = os.getenv("SENDGRID_API_KEY", "")
RESEND_API_KEY: str = os.getenv("RESEND_API_KEY", "")

logger.info(f"JWT Algorithm: {ALGORITHM}")
logger.info(f"Access Token Expire Minutes: {ACCESS_TOKEN_EXPIRE_MINUTES}")
logger.info(f"Database Name: {DATABASE_NAME}")
logger.info(f"Email provider: {EMAIL_PROVIDER}")
