"""Security utilities - password hashing, opaque tokens, TOTP"""

from typing import Optional
import hashlib
import hmac
import secrets

import bcrypt
import pyotp

from pathary.config import settings

# Compared against when the account does not exist, so the unknown-email
# branch costs the same bcrypt work as the wrong-password branch.
_DUMMY_PASSWORD_HASH = bcrypt.hashpw(
    secrets.token_hex(16).encode('utf-8'),
    bcrypt.gensalt(rounds=settings.BCRYPT_ROUNDS)
).decode('utf-8')


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """
    Verify a password against its hash

    Args:
        plain_password: Plain text password
        hashed_password: Hashed password

    Returns:
        bool: True if password matches
    """
    try:
        return bcrypt.checkpw(
            plain_password.encode('utf-8'),
            hashed_password.encode('utf-8')
        )
    except ValueError:
        # Malformed stored hash
        return False


def get_password_hash(password: str) -> str:
    """
    Hash a password using bcrypt

    Args:
        password: Plain text password

    Returns:
        str: Hashed password
    """
    return bcrypt.hashpw(
        password.encode('utf-8'),
        bcrypt.gensalt(rounds=settings.BCRYPT_ROUNDS)
    ).decode('utf-8')


def burn_password_check(password: str) -> None:
    """Run a bcrypt comparison whose result is discarded."""
    verify_password(password, _DUMMY_PASSWORD_HASH)


def generate_token() -> str:
    """
    Generate a 256-bit opaque bearer token

    Returns:
        str: 64 hex characters
    """
    return secrets.token_hex(32)


def hash_token(token: str) -> str:
    """SHA-256 digest used to store and look up opaque tokens."""
    return hashlib.sha256(token.encode('utf-8')).hexdigest()


def tokens_match(token: str, token_hash: str) -> bool:
    return hmac.compare_digest(hash_token(token), token_hash)


def device_fingerprint(user_agent: Optional[str], ip_address: Optional[str]) -> str:
    """
    Display-only fingerprint of a device

    Never used for authorization decisions.
    """
    message = f"{user_agent or ''}|{ip_address or ''}".encode('utf-8')
    return hmac.new(settings.SECRET_KEY.encode('utf-8'), message, hashlib.sha256).hexdigest()


# --- TOTP ---

def generate_totp_secret() -> str:
    return pyotp.random_base32(length=32)


def totp_uri_from_secret(secret: str, account_name: str, issuer: Optional[str] = None) -> str:
    totp = pyotp.TOTP(secret)
    return totp.provisioning_uri(name=account_name, issuer_name=issuer or settings.TOTP_ISSUER)


def verify_totp(code: int, totp_uri: str) -> bool:
    """
    Verify a numeric TOTP code against a provisioning URI

    Args:
        code: Code as entered; leading zeros may have been lost
        totp_uri: otpauth:// URI holding the shared secret

    Returns:
        bool: True if the code is valid for the current window
    """
    if code is None or code < 0:
        return False
    try:
        totp = pyotp.parse_uri(totp_uri)
    except ValueError:
        return False
    if not isinstance(totp, pyotp.TOTP):
        return False
    return totp.verify(str(code).zfill(totp.digits), valid_window=settings.TOTP_VALID_WINDOW)
