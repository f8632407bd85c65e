from __future__ import annotations

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from . import graph_api
from .config import settings
from .database import engine
from .redis_client import ping_redis


def database_ready() -> bool:
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError:
        return False


def redis_required() -> bool:
    # Fail-closed linking intents cannot be claimed without Redis.
    return settings.redis_health_required or not settings.linking_intent_fail_open


def redis_ready() -> bool:
    if not redis_required():
        return True
    return ping_redis()


def readiness_state() -> tuple[bool, dict[str, bool]]:
    checks = {
        "database": database_ready(),
        "redis": redis_ready(),
    }
    ready = all(checks.values())
    # Reported only; sign-in through other providers still works without it.
    checks["facebook_configured"] = graph_api.is_configured()
    return ready, checks
