"""Local sessions: bearer access tokens backed by persisted refresh tokens.

A live, unrevoked refresh-token row is what counts as an active session when
reconciliation decides whether a provisioned user can be cleaned up.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jwt import InvalidTokenError
from sqlalchemy.orm import Session

from . import database, models, schemas
from .config import settings

oauth2_scheme = OAuth2PasswordBearer(tokenUrl=f"/api/{settings.api_latest_version}/login")

SECRET_KEY = settings.secret_key
ALGORITHM = settings.algorithm
TOKEN_ISSUER = settings.token_issuer
TOKEN_AUDIENCE = settings.token_audience

ACCESS_TOKEN_TYPE = "access"  # nosec B105
REFRESH_TOKEN_TYPE = "refresh"  # nosec B105
BEARER_TOKEN_TYPE = "bearer"  # nosec B105


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _to_utc_datetime(exp: Any) -> datetime:
    if isinstance(exp, datetime):
        # SQLite hands timestamps back without tzinfo; they are stored as UTC.
        if exp.tzinfo is None:
            return exp.replace(tzinfo=timezone.utc)
        return exp.astimezone(timezone.utc)
    if isinstance(exp, (int, float)):
        return datetime.fromtimestamp(exp, tz=timezone.utc)
    raise ValueError("Token expiry is invalid")


def _unauthorized(detail: str, error_code: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"detail": detail, "error_code": error_code},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _invalid_refresh_token() -> HTTPException:
    return _unauthorized("Could not validate refresh token", "invalid_refresh_token")


def _mint(
    data: dict[str, Any], *, token_type: str, lifetime: timedelta
) -> tuple[str, dict[str, Any]]:
    now = _now_utc()
    claims = {
        **data,
        "iss": TOKEN_ISSUER,
        "aud": TOKEN_AUDIENCE,
        "iat": now,
        "nbf": now,
        "exp": now + lifetime,
        "jti": uuid.uuid4().hex,
        "token_type": token_type,
    }
    return jwt.encode(claims, SECRET_KEY, algorithm=ALGORITHM), claims


def create_access_token(
    data: dict[str, Any], expires_minutes: int | None = None
) -> str:
    minutes = settings.access_token_expire_minutes if expires_minutes is None else expires_minutes
    token, _ = _mint(data, token_type=ACCESS_TOKEN_TYPE, lifetime=timedelta(minutes=minutes))
    return token


def create_refresh_token(data: dict[str, Any], expires_days: int | None = None) -> str:
    days = settings.refresh_token_expire_days if expires_days is None else expires_days
    token, _ = _mint(data, token_type=REFRESH_TOKEN_TYPE, lifetime=timedelta(days=days))
    return token


def _decode_token(token: str, *, required: tuple[str, ...] = ("exp",)) -> dict[str, Any]:
    payload = jwt.decode(
        token,
        SECRET_KEY,
        algorithms=[ALGORITHM],
        audience=TOKEN_AUDIENCE,
        issuer=TOKEN_ISSUER,
        options={"require": list(required)},
    )
    if not isinstance(payload, dict):
        raise InvalidTokenError("Invalid payload")
    return payload


def _decode_typed(token: str, token_type: str, *required: str) -> dict[str, Any]:
    payload = _decode_token(token, required=("exp", "user_id", "token_type", *required))
    if payload.get("token_type") != token_type:
        raise InvalidTokenError(f"Expected a {token_type} token")
    return payload


def verify_access_token(
    token: str, credentials_exception: HTTPException
) -> schemas.TokenData:
    try:
        payload = _decode_typed(token, ACCESS_TOKEN_TYPE)
        return schemas.TokenData(id=int(payload["user_id"]))
    except (InvalidTokenError, ValueError, TypeError):
        raise credentials_exception


def verify_refresh_token(token: str) -> dict[str, Any]:
    try:
        payload = _decode_typed(token, REFRESH_TOKEN_TYPE, "jti")
        payload["user_id"] = int(payload["user_id"])
        payload["jti"] = str(payload["jti"])
        payload["exp"] = _to_utc_datetime(payload["exp"])
    except (InvalidTokenError, ValueError, TypeError):
        raise _invalid_refresh_token()
    return payload


def _open_session(
    db: Session, user_id: int, *, rotated_from: models.RefreshToken | None = None
) -> schemas.Token:
    access_token = create_access_token({"user_id": user_id})
    refresh_token, claims = _mint(
        {"user_id": user_id},
        token_type=REFRESH_TOKEN_TYPE,
        lifetime=timedelta(days=settings.refresh_token_expire_days),
    )
    db.add(
        models.RefreshToken(
            user_id=user_id,
            jti=claims["jti"],
            expires_at=claims["exp"],
            rotated_from_jti=rotated_from.jti if rotated_from is not None else None,
        )
    )
    if rotated_from is not None:
        rotated_from.revoked = True  # type: ignore[assignment]
        rotated_from.replaced_by_jti = claims["jti"]
    db.commit()
    return schemas.Token(
        access_token=access_token,
        token_type=BEARER_TOKEN_TYPE,
        refresh_token=refresh_token,
    )


def _find_session(db: Session, refresh_token: str) -> models.RefreshToken | None:
    jti = verify_refresh_token(refresh_token)["jti"]
    return db.query(models.RefreshToken).filter(models.RefreshToken.jti == jti).first()


def issue_token_pair(db: Session, user_id: int) -> schemas.Token:
    """Open a session for ``user_id``: access token plus a persisted refresh token."""
    return _open_session(db, user_id)


def rotate_refresh_token(db: Session, refresh_token: str) -> schemas.Token:
    record = _find_session(db, refresh_token)
    if record is None or record.revoked:
        raise _invalid_refresh_token()
    if _to_utc_datetime(record.expires_at) <= _now_utc():
        record.revoked = True  # type: ignore[assignment]
        db.commit()
        raise _invalid_refresh_token()
    return _open_session(db, int(record.user_id), rotated_from=record)


def revoke_refresh_token(db: Session, refresh_token: str) -> bool:
    record = _find_session(db, refresh_token)
    if record is None:
        return False
    if not record.revoked:
        record.revoked = True  # type: ignore[assignment]
        db.commit()
    return True


def get_current_user(
    token: str = Depends(oauth2_scheme), db: Session = Depends(database.get_db)
) -> models.User:
    credentials_exception = _unauthorized("Could not validate credentials", "invalid_credentials")
    token_data = verify_access_token(token, credentials_exception)
    user = db.get(models.User, token_data.id)
    if user is None:
        raise credentials_exception
    return user
