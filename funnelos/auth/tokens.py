from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

from fastapi import HTTPException, status
from jose import jwt
from jose.exceptions import JWTError

from funnelos.config import settings


logger = logging.getLogger("auth.tokens")


def issue_access_token(user_id: str, *, expires_in_seconds: int = 3600, extra_claims: Optional[Dict[str, Any]] = None) -> str:
    """Sign an HS256 access token for `user_id` with the configured secret."""
    now = int(time.time())
    claims: Dict[str, Any] = {"sub": user_id, "iat": now, "exp": now + expires_in_seconds}
    if settings.AUTH_JWT_ISSUER:
        claims["iss"] = settings.AUTH_JWT_ISSUER
    if settings.AUTH_JWT_AUDIENCE:
        claims["aud"] = settings.AUTH_JWT_AUDIENCE
    claims.update(extra_claims or {})
    return jwt.encode(claims, settings.AUTH_JWT_SECRET, algorithm=settings.AUTH_JWT_ALGORITHM)


def verify_access_token(token: str) -> Dict[str, Any]:
    try:
        claims = jwt.decode(
            token,
            settings.AUTH_JWT_SECRET,
            algorithms=[settings.AUTH_JWT_ALGORITHM],
            audience=settings.AUTH_JWT_AUDIENCE,
            issuer=settings.AUTH_JWT_ISSUER,
            options={"verify_aud": bool(settings.AUTH_JWT_AUDIENCE)},
        )
    except (JWTError, ValueError) as exc:
        logger.warning("Token verification failed", exc_info=exc)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token") from exc
    logger.debug("Verified access token", extra={"sub": claims.get("sub"), "iss": claims.get("iss")})
    return claims
