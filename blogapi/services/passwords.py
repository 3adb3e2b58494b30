"""Password hashing with scrypt, stored as ``<hash-hex>.<salt-hex>``."""

import hashlib
import hmac
import secrets

# scrypt cost parameters (memory-hard: 128 * N * r bytes = 16 MiB)
SCRYPT_N = 2**14
SCRYPT_R = 8
SCRYPT_P = 1
KEY_LENGTH = 64
SALT_BYTES = 16


def _derive(password: str, salt: bytes) -> bytes:
    return hashlib.scrypt(
        password.encode("utf-8"),
        salt=salt,
        n=SCRYPT_N,
        r=SCRYPT_R,
        p=SCRYPT_P,
        dklen=KEY_LENGTH,
    )


def hash_password(password: str, salt: str | None = None) -> str:
    """Hash a plain-text password for storage. Never store plain passwords."""
    if not salt:
        salt = secrets.token_hex(SALT_BYTES)
    return f"{_derive(password, bytes.fromhex(salt)).hex()}.{salt}"


def verify_password(password: str, stored: str) -> bool:
    """Recompute the hash with the stored salt and compare in constant time."""
    try:
        hashed, salt = stored.split(".", 1)
        expected = bytes.fromhex(hashed)
        candidate = _derive(password, bytes.fromhex(salt))
    except (ValueError, TypeError):
        return False
    return hmac.compare_digest(candidate, expected)
