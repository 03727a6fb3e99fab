"""Password hashing utilities.

bcrypt salts automatically; passwords are truncated to 72 bytes, bcrypt's
input limit.
"""

import bcrypt

ROUNDS = 12


def hash_password(password: str) -> str:
    """Hash a password with bcrypt ("$2b$..." format)."""
    pw_bytes = password.encode("utf-8")[:72]
    return bcrypt.hashpw(pw_bytes, bcrypt.gensalt(rounds=ROUNDS)).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(
            password.encode("utf-8")[:72], password_hash.encode("utf-8")
        )
    except (ValueError, TypeError):
        return False
