from __future__ import annotations

import secrets
import string

from werkzeug.security import check_password_hash, generate_password_hash

_HASH_METHOD = "scrypt"
_TEMP_PASSWORD_ALPHABET = string.ascii_letters + string.digits


def hash_password(password: str) -> str:
    return generate_password_hash(password, method=_HASH_METHOD)


def verify_password(password: str, stored: str | None) -> bool:
    if not stored:
        return False
    return check_password_hash(stored, password)


def generate_temporary_password(length: int = 10) -> str:
    return "".join(secrets.choice(_TEMP_PASSWORD_ALPHABET) for _ in range(max(length, 8)))
