# labbo/services/mfa.py
import base64
import hashlib
import secrets
from typing import List, Optional, Tuple

import pyotp
from cryptography.fernet import Fernet, InvalidToken
from loguru import logger

from labbo.core.config import MFA_ISSUER, MFA_ENCRYPTION_KEY, MFA_BACKUP_CODE_COUNT, SECRET_KEY
from labbo.services.qr_labels import make_qr_png, png_data_url


def _build_fernet() -> Fernet:
    """Uses MFA_ENCRYPTION_KEY when it is a valid Fernet key, otherwise derives one from it (or SECRET_KEY)."""
    if MFA_ENCRYPTION_KEY:
        try:
            return Fernet(MFA_ENCRYPTION_KEY.encode())
        except ValueError:
            logger.warning("MFA_ENCRYPTION_KEY is not a Fernet key; deriving one from it.")
    material = (MFA_ENCRYPTION_KEY or SECRET_KEY).encode()
    return Fernet(base64.urlsafe_b64encode(hashlib.sha256(material).digest()))


_fernet = _build_fernet()


# --- Secrets ---
def generate_secret() -> str:
    return pyotp.random_base32()


def encrypt_secret(secret: str) -> str:
    return _fernet.encrypt(secret.encode()).decode()


def decrypt_secret(encrypted: str) -> str:
    try:
        return _fernet.decrypt(encrypted.encode()).decode()
    except InvalidToken as e:
        raise ValueError("Stored MFA secret cannot be decrypted") from e


def provisioning_uri(secret: str, account_name: str) -> str:
    return pyotp.TOTP(secret).provisioning_uri(name=account_name, issuer_name=MFA_ISSUER)


def qr_code_data_url(uri: str) -> str:
    return png_data_url(make_qr_png(uri, box_size=6))


def verify_totp(secret: str, code: str) -> bool:
    code = (code or "").strip().replace(" ", "")
    if not code.isdigit() or len(code) != 6:
        return False
    # one step of clock drift either way
    return pyotp.TOTP(secret).verify(code, valid_window=1)


# --- Backup codes ---
def normalize_backup_code(code: str) -> str:
    return (code or "").replace("-", "").replace(" ", "").strip().upper()


def hash_backup_code(code: str) -> str:
    return hashlib.sha256(normalize_backup_code(code).encode()).hexdigest()


def generate_backup_codes(count: int = MFA_BACKUP_CODE_COUNT) -> Tuple[List[str], List[str]]:
    """Returns (plain codes shown once, hashes to store). Codes are 8 upper-case hex chars."""
    codes = [secrets.token_hex(4).upper() for _ in range(count)]
    return codes, [hash_backup_code(c) for c in codes]


def consume_backup_code(stored_hashes: List[str], code: str) -> Optional[List[str]]:
    """Returns the remaining hashes when the code matches, None otherwise."""
    candidate = hash_backup_code(code)
    for stored in stored_hashes:
        if secrets.compare_digest(stored, candidate):
            remaining = list(stored_hashes)
            remaining.remove(stored)
            return remaining
    return None
