import logging
from datetime import datetime, timedelta, timezone
from typing import Optional
from jose import JWTError, jwt, ExpiredSignatureError
from filevault.core.config import settings

logger = logging.getLogger(__name__)

DOWNLOAD_TOKEN_PURPOSE = "blob-download"


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    """Tạo JWT token

    Tokens are normally minted by the auth service; this helper exists for
    local development and tests.

    - Ensure `sub` is a string for portability
    - Use numeric UNIX timestamp for `exp` to avoid datetime encoding issues
    """
    to_encode = data.copy()
    if expires_delta:
        expire_dt = datetime.now(timezone.utc) + expires_delta
    else:
        expire_dt = datetime.now(timezone.utc) + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    if "sub" in to_encode:
        to_encode["sub"] = str(to_encode["sub"])

    to_encode.update({"exp": int(expire_dt.timestamp())})
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_token(token: str) -> Optional[dict]:
    """Returns payload or None on any failure"""
    try:
        return jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.ALGORITHM],
            options={"verify_exp": True, "leeway": 60},
        )
    except ExpiredSignatureError:
        try:
            claims = jwt.get_unverified_claims(token)
            logger.info("Token expired. exp=%s now=%s", claims.get("exp"), int(datetime.now(timezone.utc).timestamp()))
        except JWTError:
            logger.info("Token expired (unable to read claims)")
        return None
    except JWTError:
        logger.info("Token invalid or signature mismatch")
        return None


def create_download_token(key: str, ttl_seconds: int) -> str:
    """Sign a short-lived token granting a GET on one blob key."""
    expire_dt = datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds)
    claims = {"key": key, "purpose": DOWNLOAD_TOKEN_PURPOSE, "exp": int(expire_dt.timestamp())}
    return jwt.encode(claims, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_download_token(token: str) -> Optional[str]:
    """Return the blob key a download token grants, or None."""
    try:
        claims = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        return None
    if claims.get("purpose") != DOWNLOAD_TOKEN_PURPOSE:
        return None
    return claims.get("key")
