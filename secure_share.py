# secure_share.py

import base64
import hashlib
import hmac
import secrets
import time
from dataclasses import dataclass
from typing import Callable, Union

from cryptography.fernet import Fernet, InvalidToken

from errors import AuthenticationFailed, StorageFailure

ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz"
PUBLIC_ID_LENGTH = 8
LEGACY_TOKEN_LENGTH = 12
MAX_MINT_ATTEMPTS = 16


# ─── TOKEN VARIANTS ─────────────────────────────────────

@dataclass(frozen=True)
class LegacyToken:
    """Full raw token is the lookup key. No secret half."""
    raw: str


@dataclass(frozen=True)
class SplitToken:
    """Indexed public id plus the SHA-256 of the secret suffix."""
    public_id: str
    secret_hash: str


TokenRef = Union[LegacyToken, SplitToken]


# ─── MINT ─────────────────────────────────────

def to_base62(data: bytes) -> str:
    value = int.from_bytes(data, "big")
    if value == 0:
        return ALPHABET[0]
    out = []
    while value > 0:
        value, rem = divmod(value, 62)
        out.append(ALPHABET[rem])
    return "".join(reversed(out))


def generate_hashed_token(external_id: str, size: int, uploaded_at, length: int = LEGACY_TOKEN_LENGTH) -> str:
    seed = ":".join([
        str(external_id),
        str(size),
        str(uploaded_at),
        str(time.time_ns()),
        str(secrets.randbits(64)),
    ])
    encoded = to_base62(hashlib.sha256(seed.encode("utf-8")).digest())
    if len(encoded) >= length:
        return encoded[:length]
    return encoded.ljust(length, "0")


def mint_unique_token(
    external_id: str,
    size: int,
    uploaded_at,
    is_taken: Callable[[str], bool],
    length: int = LEGACY_TOKEN_LENGTH,
) -> str:
    """Regenerate until `is_taken` reports no persisted match."""
    for _ in range(MAX_MINT_ATTEMPTS):
        token = generate_hashed_token(external_id, size, uploaded_at, length)
        if not is_taken(token):
            return token
    raise StorageFailure("Could not allocate a unique share token")


# ─── SPLIT / HASH / COMPARE ─────────────────────────────────────

def split_token(raw_token: str) -> tuple[str, str]:
    """Returns (public_id, secret). Secret is empty for tokens no longer than the public id."""
    return raw_token[:PUBLIC_ID_LENGTH], raw_token[PUBLIC_ID_LENGTH:]


def hash_secret(secret: str) -> str:
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


def constant_time_equals(a: str, b: str) -> bool:
    if a is None or b is None:
        return False
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def secret_matches(candidate_secret: str, stored_digest: str) -> bool:
    # both sides are fixed-length hex digests, so the comparison time does not depend on the input
    if candidate_secret is None or not stored_digest:
        return False
    return constant_time_equals(hash_secret(candidate_secret), stored_digest.lower())


# ─── SHARE-WRAPPED PASSWORD ─────────────────────────────────────

def derive_share_key(token: str) -> bytes:
    return base64.urlsafe_b64encode(
        hashlib.sha256(f"dropvault-share:{token}".encode("utf-8")).digest()
    )


def wrap_for_share(password: str, token: str) -> str:
    """Encrypt a file password so only holders of the share token can recover it."""
    return Fernet(derive_share_key(token)).encrypt(password.encode("utf-8")).decode("ascii")


def unwrap_from_share(wrapped: str, token: str) -> str:
    try:
        return Fernet(derive_share_key(token)).decrypt(wrapped.encode("ascii")).decode("utf-8")
    except InvalidToken as e:
        raise AuthenticationFailed("Share token does not unlock the file password") from e
