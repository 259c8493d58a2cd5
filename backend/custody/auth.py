"""
Evidence Custody - Authentication Utilities
Password hashing, one-time code digests and signed credentials.
"""
import hashlib
import hmac
import secrets
from datetime import datetime
from typing import Dict, Any

import bcrypt
from jose import ExpiredSignatureError, JWTError, jwt

from .config import SECRET_KEY, ALGORITHM, OTP_LENGTH
from .errors import SessionExpired, SessionInvalid

SESSION_TOKEN = "session"
PENDING_LOGIN_TOKEN = "pending_login"


def hash_password(password: str) -> str:
    """Hash a password using bcrypt."""
    password_bytes = password.encode('utf-8')
    salt = bcrypt.gensalt()
    return bcrypt.hashpw(password_bytes, salt).decode('utf-8')


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password against its hash."""
    password_bytes = plain_password.encode('utf-8')
    hashed_bytes = hashed_password.encode('utf-8')
    return bcrypt.checkpw(password_bytes, hashed_bytes)


def generate_otp() -> str:
    """Numeric one-time code, always OTP_LENGTH digits."""
    low = 10 ** (OTP_LENGTH - 1)
    return str(low + secrets.randbelow(9 * low))


def hash_otp(code: str) -> str:
    """Keyed digest of a one-time code. Codes are never stored in clear."""
    return hmac.new(SECRET_KEY.encode('utf-8'), code.encode('utf-8'), hashlib.sha256).hexdigest()


def otp_matches(code: str, code_hash: str) -> bool:
    return hmac.compare_digest(hash_otp(code), code_hash)


def create_session_token(operator_id: str, role: str, case_id: str, session_id: str, expires_at: datetime) -> str:
    """Signed session credential. case_id is a bound claim."""
    to_encode = {
        "sub": operator_id,
        "role": role,
        "case_id": case_id,
        "sid": session_id,
        "type": SESSION_TOKEN,
        "exp": expires_at,
    }
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def create_pending_login_token(operator_id: str, case_id: str, expires_at: datetime) -> str:
    """Short-lived reference to a login that has passed step 1. Not a session."""
    to_encode = {
        "sub": operator_id,
        "case_id": case_id,
        "type": PENDING_LOGIN_TOKEN,
        "nonce": secrets.token_hex(8),
        "exp": expires_at,
    }
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str, expected_type: str) -> Dict[str, Any]:
    """
    Decode and validate a signed credential of the given type.

    Raises SessionExpired for an expired signature and SessionInvalid for
    anything else that does not verify.
    """
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except ExpiredSignatureError:
        raise SessionExpired()
    except JWTError:
        raise SessionInvalid()

    if payload.get("type") != expected_type or not payload.get("sub") or not payload.get("case_id"):
        raise SessionInvalid()
    return payload
