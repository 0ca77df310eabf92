from datetime import timedelta
from typing import Any, Dict, Optional

import jwt

from marketchat.core.config import settings
from marketchat.utils.timeutils import utc_now


def create_access_token(subject: str, expires_delta: timedelta = timedelta(hours=12), role: Optional[str] = None) -> str:
    payload: Dict[str, Any] = {"sub": subject, "exp": utc_now() + expires_delta}
    if role:
        payload["role"] = role
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_access_token(token: str) -> Dict[str, Any]:
    """Raises jwt.InvalidTokenError on a bad signature, expiry or missing subject."""
    payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    if not payload.get("sub"):
        raise jwt.InvalidTokenError("Token has no subject")
    return payload
