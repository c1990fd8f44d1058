import logging
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from codework.core.config import settings

logger = logging.getLogger(__name__)

_bearer = HTTPBearer(auto_error=False)


def decode_user_id(token: Optional[str]) -> Optional[str]:
    """Return the ``sub`` claim of a valid access token, or None."""
    if not token:
        return None
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=["HS256"],
            audience=settings.JWT_AUDIENCE,
            issuer=settings.JWT_ISSUER,
            options={"verify_exp": True},
        )
    except jwt.PyJWTError as e:
        logger.debug("access_token_invalid", extra={"error": str(e)})
        return None
    sub = payload.get("sub")
    return str(sub) if sub not in (None, "") else None


def get_current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
) -> str:
    user_id = decode_user_id(credentials.credentials if credentials else None)
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid access token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user_id
