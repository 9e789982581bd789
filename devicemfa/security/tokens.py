"""Success-token issuing and verification (JWT via python-jose)."""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from devicemfa.config import settings


def create_access_token(
    data: dict,
    expires_delta: Optional[timedelta] = None
) -> str:
    """
    Create a signed token.

    Args:
        data: Token payload data
        expires_delta: Custom expiration time

    Returns:
        str: Encoded JWT token
    """
    to_encode = data.copy()

    now = datetime.now(timezone.utc)
    if expires_delta:
        expire = now + expires_delta
    else:
        expire = now + timedelta(minutes=settings.access_token_expire_minutes)

    to_encode.update({
        "exp": expire,
        "iat": now,
        "jti": str(uuid.uuid4()),
    })

    return jwt.encode(
        to_encode,
        settings.secret_key,
        algorithm=settings.algorithm
    )


def verify_token(token: str) -> Optional[dict]:
    """
    Verify and decode a token.

    Returns:
        dict: Decoded claims or None if invalid or expired
    """
    try:
        payload = jwt.decode(
            token,
            settings.secret_key,
            algorithms=[settings.algorithm]
        )
    except JWTError:
        return None

    if payload.get("sub") is None:
        return None
    return payload


def issue_success_token(username: str, device_id: Optional[str], method: str) -> str:
    """
    Issue the opaque credential returned after a successful verification.

    Clients must not interpret it; it only proves the verification happened.
    """
    claims = {
        "sub": username,
        "method": method,
    }
    if device_id:
        claims["device_id"] = device_id
    return create_access_token(claims)
