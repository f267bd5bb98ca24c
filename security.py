from typing import Optional

from passlib.context import CryptContext

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def hash_password(password: str) -> str:
    """Hash a file password for storage on the file record."""
    return pwd_context.hash(password)


def verify_password(password: Optional[str], hashed: Optional[str]) -> bool:
    """Verify plain password against stored hash. Returns False instead of raising."""
    if not password or not hashed:
        return False
    try:
        return pwd_context.verify(password, hashed)
    except (ValueError, TypeError):
        return False
