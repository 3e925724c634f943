import hashlib
import hmac
from datetime import datetime, timezone

def salted_digest(value: str, salt: str) -> str:
    return hashlib.sha256((value + salt).encode("utf-8")).hexdigest()

def safe_eq(a: str, b: str) -> bool:
    return hmac.compare_digest(a, b)

def short_ref(digest: str) -> str:
    # log-safe prefix of a digest
    return digest[:8]

def utcnow() -> datetime:
    """Naive UTC timestamp, matching what SQLite DateTime columns round-trip."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
