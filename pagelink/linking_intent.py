"""Short-lived cookie that remembers which local user started a linking flow.

The OAuth round trip crosses top-level navigations, so the callback cannot
rely on the bearer session to know who asked for the link. ``begin`` drops a
signed, HttpOnly cookie before the redirect and ``consume`` reads it back
exactly once in the callback.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable

from fastapi import Request, Response
from jose import JWTError, jwt
from redis import Redis
from redis.exceptions import RedisError

from . import oauth2
from .config import settings
from .redis_client import get_redis_client

logger = logging.getLogger(__name__)

_LINKING_INTENT_TOKEN_TYPE = "linking_intent"  # nosec B105


class RedisNonceStore:
    """Claims intent ids in Redis so a replayed cookie is refused."""

    def __init__(self, redis_factory: Callable[[], Redis] = get_redis_client):
        self._redis_factory = redis_factory

    def claim(self, jti: str, ttl_seconds: int) -> bool:
        redis_client = self._redis_factory()
        return bool(
            redis_client.set(f"linking-intent:{jti}", "1", nx=True, ex=max(ttl_seconds, 1))
        )


_nonce_store = RedisNonceStore()


def set_nonce_store(nonce_store: RedisNonceStore) -> None:
    global _nonce_store
    _nonce_store = nonce_store


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def build_linking_intent(user_id: int) -> str:
    payload = {
        "token_type": _LINKING_INTENT_TOKEN_TYPE,
        "user_id": int(user_id),
        "jti": uuid.uuid4().hex,
        "exp": _now_utc() + timedelta(seconds=settings.linking_intent_ttl_seconds),
    }
    return jwt.encode(payload, oauth2.SECRET_KEY, algorithm=oauth2.ALGORITHM)


def parse_linking_intent(token: str) -> tuple[int, str, int] | None:
    """Return ``(user_id, jti, seconds_left)`` or ``None`` when unusable."""
    try:
        payload = jwt.decode(token, oauth2.SECRET_KEY, algorithms=[oauth2.ALGORITHM])
    except JWTError:
        return None

    if payload.get("token_type") != _LINKING_INTENT_TOKEN_TYPE:
        return None
    jti = payload.get("jti")
    if not isinstance(jti, str) or not jti:
        return None
    try:
        user_id = int(payload["user_id"])
    except (KeyError, TypeError, ValueError):
        return None
    if user_id <= 0:
        return None

    seconds_left = int(payload.get("exp", 0) - _now_utc().timestamp())
    return user_id, jti, max(seconds_left, 1)


def begin(response: Response, user_id: int) -> None:
    response.set_cookie(
        key=settings.linking_intent_cookie_name,
        value=build_linking_intent(user_id),
        max_age=settings.linking_intent_ttl_seconds,
        path="/",
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
    )


def clear(response: Response) -> None:
    response.delete_cookie(
        key=settings.linking_intent_cookie_name,
        path="/",
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
    )


def consume(request: Request, response: Response | None = None) -> int | None:
    raw_value = request.cookies.get(settings.linking_intent_cookie_name)
    if response is not None and raw_value is not None:
        clear(response)
    if not raw_value:
        return None

    parsed = parse_linking_intent(raw_value)
    if parsed is None:
        logger.info("Ignoring invalid or expired linking intent cookie")
        return None
    user_id, jti, seconds_left = parsed

    try:
        claimed = _nonce_store.claim(jti, seconds_left)
    except RedisError as exc:
        if not settings.linking_intent_fail_open:
            logger.warning("Linking intent store unavailable, refusing intent: %s", exc)
            return None
        logger.warning("Linking intent store unavailable, accepting intent: %s", exc)
        return user_id

    if not claimed:
        logger.info("Linking intent %s was already consumed", jti)
        return None
    return user_id
