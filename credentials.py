import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt

from exceptions import CredentialInvalid

JWT_ALG = "HS256"


class CredentialIssuer:
    """Signs short-lived tokens asserting that a device holds a license."""

    def __init__(self, secret: str, expiry_days: int = 7):
        self.secret = secret
        self.expiry = timedelta(days=expiry_days)

    def issue(self, license_key: str, device_id: str, activation_id: str) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "license_key": license_key,
            "device_id": device_id,
            "activation_id": activation_id,
            "iat": now,
            "exp": now + self.expiry,
            "jti": uuid.uuid4().hex,
        }
        return jwt.encode(payload, self.secret, algorithm=JWT_ALG)

    def refresh(self, license_key: str, device_id: str, activation_id: str) -> str:
        return self.issue(license_key, device_id, activation_id)

    def decode(self, token: str) -> Dict[str, Any]:
        try:
            return jwt.decode(
                token,
                self.secret,
                algorithms=[JWT_ALG],
                options={"require": ["exp", "license_key", "device_id", "activation_id"]},
            )
        except jwt.ExpiredSignatureError:
            raise CredentialInvalid("License token expired", expired=True)
        except jwt.InvalidTokenError as e:
            raise CredentialInvalid(f"Invalid license token: {e}")


def token_expiry(token: str) -> Optional[datetime]:
    """Read ``exp`` without checking the signature. Client side only."""
    try:
        claims = jwt.decode(token, options={"verify_signature": False, "verify_exp": False})
    except jwt.InvalidTokenError:
        return None
    exp = claims.get("exp")
    if exp is None:
        return None
    return datetime.fromtimestamp(exp, tz=timezone.utc).replace(tzinfo=None)
