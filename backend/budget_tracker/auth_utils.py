import hashlib
import hmac
import secrets
import time


def _signature(payload: str, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256).hexdigest()


def issue_session_token(user_id: str, secret: str, ttl_seconds: int = 3600) -> str:
    expires = int(time.time()) + ttl_seconds
    payload = f"{user_id}.{expires}"
    return f"{payload}.{_signature(payload, secret)}"


def verify_session_token(token: str, secret: str) -> str | None:
    """Return the user id carried by an identity provider token, or None."""
    try:
        user_id, expires_raw, signature = token.rsplit(".", 2)
        expires = int(expires_raw)
    except ValueError:
        return None
    if not user_id:
        return None
    expected = _signature(f"{user_id}.{expires_raw}", secret)
    if not secrets.compare_digest(signature, expected):
        return None
    if expires < int(time.time()):
        return None
    return user_id
