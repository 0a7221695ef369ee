"""
Two-factor authentication utilities for the client portal.

Implements TOTP (Time-based One-Time Password) using RFC 6238 with 30-second
steps. Compatible with Google Authenticator, Authy, and other TOTP apps.

Also provides single-use backup codes. Only bcrypt hashes of backup codes are
stored; the plain codes are shown to the user once.
"""
import base64
import io
import secrets
from typing import Tuple, Optional, List

import bcrypt
import pyotp
import qrcode

ISSUER = "Generation Catalyst"

# Accept the current step and two steps either side (about +-60s of drift)
TOTP_WINDOW = 2

BACKUP_CODE_COUNT = 8
BACKUP_CODE_ROUNDS = 10


def generate_totp_secret() -> str:
    """
    Generate a new TOTP secret for 2FA enrollment.

    Returns:
        Base32-encoded secret (32 characters).
    """
    return pyotp.random_base32()


def get_totp_provisioning_uri(
    secret: str,
    identity: str,
    issuer: str = ISSUER
) -> str:
    """
    Generate a provisioning URI for TOTP apps.

    This URI can be encoded as a QR code for easy scanning.

    Args:
        secret: Base32-encoded TOTP secret.
        identity: Label shown in the authenticator app (username or email).
        issuer: Application name (displayed in authenticator app).

    Returns:
        otpauth:// URI string.
    """
    totp = pyotp.TOTP(secret)
    return totp.provisioning_uri(name=identity, issuer_name=issuer)


def generate_qr_code(uri: str) -> bytes:
    """
    Generate a QR code image for the provisioning URI.

    Returns:
        PNG image bytes.
    """
    qr = qrcode.QRCode(
        version=1,
        error_correction=qrcode.constants.ERROR_CORRECT_L,
        box_size=10,
        border=4,
    )
    qr.add_data(uri)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")

    buffer = io.BytesIO()
    img.save(buffer, format='PNG')
    buffer.seek(0)
    return buffer.read()


def generate_qr_code_base64(uri: str) -> str:
    """Base64 PNG data URI of the QR code, ready for an <img> tag."""
    png_bytes = generate_qr_code(uri)
    b64 = base64.b64encode(png_bytes).decode('utf-8')
    return f"data:image/png;base64,{b64}"


def setup_mfa(identity: str, issuer: str = ISSUER) -> Tuple[str, str, str]:
    """
    Complete 2FA setup material: secret, URI, and QR code.

    Returns:
        Tuple of (secret, provisioning_uri, qr_code_base64).
    """
    secret = generate_totp_secret()
    uri = get_totp_provisioning_uri(secret, identity, issuer)
    qr_base64 = generate_qr_code_base64(uri)

    return secret, uri, qr_base64


def verify_totp(secret: Optional[str], code: Optional[str], window: int = TOTP_WINDOW) -> bool:
    """
    Verify a TOTP code against the secret.

    Args:
        secret: Base32-encoded TOTP secret.
        code: 6-digit code entered by user.
        window: Number of 30-second steps tolerated on each side.

    Returns:
        True if code is valid, False otherwise.
    """
    if not secret or not code:
        return False

    code = ''.join(filter(str.isdigit, code))

    if len(code) != 6:
        return False

    totp = pyotp.TOTP(secret)
    return totp.verify(code, valid_window=window)


def get_current_totp(secret: str) -> str:
    """Current 6-digit code for a secret (tests and support tooling)."""
    return pyotp.TOTP(secret).now()


def _normalize_backup_code(code: str) -> str:
    return code.replace("-", "").replace(" ", "").upper()


def hash_backup_code(code: str) -> str:
    """
    Hash a backup code for storage.

    Returns:
        Bcrypt hash of the normalized code.
    """
    salt = bcrypt.gensalt(rounds=BACKUP_CODE_ROUNDS)
    return bcrypt.hashpw(_normalize_backup_code(code).encode('utf-8'), salt).decode('utf-8')


def generate_backup_codes(count: int = BACKUP_CODE_COUNT) -> Tuple[List[str], List[str]]:
    """
    Generate single-use backup codes.

    Codes are 8 uppercase hex characters formatted as XXXX-XXXX.

    Returns:
        Tuple of (plain codes, hashed codes) in the same order.
    """
    plain = []
    for _ in range(count):
        code = secrets.token_hex(4).upper()
        plain.append(f"{code[:4]}-{code[4:]}")

    hashed = [hash_backup_code(code) for code in plain]
    return plain, hashed


def _check_backup_code(code: str, hashed_code: str) -> bool:
    try:
        return bcrypt.checkpw(
            _normalize_backup_code(code).encode('utf-8'),
            hashed_code.encode('utf-8')
        )
    except ValueError:
        return False


def find_matching_backup_code(code: str, hashed_codes: List[str]) -> Optional[int]:
    """
    Find the index of a matching backup code.

    Returns:
        Index of the first matching hash, or None if not found.
    """
    if not code:
        return None
    for i, hashed in enumerate(hashed_codes):
        if _check_backup_code(code, hashed):
            return i
    return None


def verify_backup_code(code: str, hashed_codes: List[str]) -> bool:
    return find_matching_backup_code(code, hashed_codes) is not None


def consume_backup_code(code: str, hashed_codes: List[str]) -> List[str]:
    """
    Remove the entry matching code.

    Returns:
        A new list without the matched hash. Unchanged copy if nothing matched.
    """
    index = find_matching_backup_code(code, hashed_codes)
    remaining = list(hashed_codes)
    if index is not None:
        remaining.pop(index)
    return remaining
