"""Security utilities: API bearer tokens and publish-webhook signatures."""
import base64
import hashlib
import uuid
from datetime import datetime, timedelta, timezone
from uuid import UUID

from jose import JWTError, jwt

from app.core.config import settings

WEBHOOK_SIGNATURE_ISSUER = "Upstash"


def create_access_token(subject: str | UUID) -> str:
    expire = datetime.now(timezone.utc) + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode = {"sub": str(subject), "exp": expire, "type": "access"}
    return jwt.encode(to_encode, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> dict | None:
    try:
        payload = jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
        return payload
    except JWTError:
        return None


def body_digest(body: bytes) -> str:
    """base64url SHA-256 of the raw body, without padding."""
    digest = hashlib.sha256(body).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def sign_webhook_body(body: bytes, url: str, key: str, ttl_seconds: int | None = None) -> str:
    """Produce an ``Upstash-Signature`` style JWT for a webhook delivery."""
    now = datetime.now(timezone.utc)
    ttl = ttl_seconds if ttl_seconds is not None else settings.WEBHOOK_SIGNATURE_TTL_SECONDS
    claims = {
        "iss": WEBHOOK_SIGNATURE_ISSUER,
        "sub": url,
        "iat": now,
        "nbf": now,
        "exp": now + timedelta(seconds=ttl),
        "jti": f"jwt_{uuid.uuid4().hex}",
        "body": body_digest(body),
    }
    return jwt.encode(claims, key, algorithm="HS256")


def _verify_with_key(signature: str, body: bytes, key: str, url: str | None) -> bool:
    try:
        claims = jwt.decode(
            signature,
            key,
            algorithms=["HS256"],
            issuer=WEBHOOK_SIGNATURE_ISSUER,
            options={"verify_aud": False},
        )
    except JWTError:
        return False
    if url is not None and claims.get("sub") != url:
        return False
    return (claims.get("body") or "").rstrip("=") == body_digest(body)


def verify_webhook_signature(signature: str | None, body: bytes, url: str | None = None) -> bool:
    """Check the signature against the current signing key, then the next one."""
    if not signature:
        return False
    keys = [k for k in (settings.QSTASH_CURRENT_SIGNING_KEY, settings.QSTASH_NEXT_SIGNING_KEY) if k]
    return any(_verify_with_key(signature, body, key, url) for key in keys)
