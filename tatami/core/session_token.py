"""
Session token minting & verification.

Format:  {user_id}:{expiry_ts}:{hmac_sig}
- user_id    → users.id as 32-char hex
- expiry_ts  → unix timestamp when this session expires
- hmac_sig   → HMAC-SHA256(user_id:expiry_ts, secret), hex-truncated to 32 chars

The identity providers (Google, magic link) only establish who the caller
is; everything after that runs off this token.
"""

import hashlib
import hmac
import time
from dataclasses import dataclass
from uuid import UUID

from tatami.config import get_settings


def _sign(payload: str, secret: str) -> str:
    """HMAC-SHA256, truncated to 32 hex chars."""
    sig = hmac.new(secret.encode(), payload.encode(), hashlib.sha256).hexdigest()
    return sig[:32]


@dataclass(frozen=True)
class SessionToken:
    user_id: UUID
    expiry: int
    signature: str

    def __str__(self) -> str:
        return f"{self.user_id.hex}:{self.expiry}:{self.signature}"

    @property
    def is_expired(self) -> bool:
        return time.time() > self.expiry


def mint_session_token(user_id: UUID, ttl_seconds: int | None = None) -> SessionToken:
    """Create a new signed session token for a user."""
    settings = get_settings()
    ttl = ttl_seconds if ttl_seconds is not None else settings.session_expiry_seconds
    expiry = int(time.time()) + ttl
    sig = _sign(f"{user_id.hex}:{expiry}", settings.session_secret)
    return SessionToken(user_id=user_id, expiry=expiry, signature=sig)


def verify_session_token(raw: str | None) -> SessionToken | None:
    """Parse and verify a session token string.
    Returns SessionToken if valid and not expired, else None."""
    if not raw:
        return None
    settings = get_settings()
    parts = raw.split(":")
    if len(parts) != 3:
        return None

    uid, expiry_str, sig = parts
    try:
        expiry = int(expiry_str)
        user_id = UUID(hex=uid)
    except ValueError:
        return None

    expected = _sign(f"{uid}:{expiry}", settings.session_secret)
    if not hmac.compare_digest(sig, expected):
        return None

    token = SessionToken(user_id=user_id, expiry=expiry, signature=sig)
    if token.is_expired:
        return None

    return token


def hash_token(raw: str) -> str:
    """SHA-256 of a one-time token. Only the hash is ever stored."""
    return hashlib.sha256(raw.encode()).hexdigest()
