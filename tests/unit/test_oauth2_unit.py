from datetime import datetime, timedelta, timezone

import jwt
import pytest
from fastapi import HTTPException, status
from pagelink import models, oauth2, reconciliation

pytestmark = pytest.mark.unit


def credentials_exception():
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )


def test_verify_access_token_rejects_invalid_and_wrong_type_tokens():
    with pytest.raises(HTTPException):
        oauth2.verify_access_token("not-a-jwt", credentials_exception())

    refresh_token = oauth2.create_refresh_token({"user_id": 1})
    with pytest.raises(HTTPException):
        oauth2.verify_access_token(refresh_token, credentials_exception())


def test_verify_refresh_token_requires_jti():
    incomplete_payload = {
        "user_id": 1,
        "token_type": oauth2.REFRESH_TOKEN_TYPE,
        "iss": oauth2.TOKEN_ISSUER,
        "aud": oauth2.TOKEN_AUDIENCE,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=5),
    }
    token = jwt.encode(incomplete_payload, oauth2.SECRET_KEY, algorithm=oauth2.ALGORITHM)
    with pytest.raises(HTTPException):
        oauth2.verify_refresh_token(token)


def test_decode_token_rejects_non_dict_payload(monkeypatch):
    monkeypatch.setattr(oauth2.jwt, "decode", lambda *_args, **_kwargs: "not-a-dict")
    with pytest.raises(jwt.InvalidTokenError):
        oauth2._decode_token("token-value")


def test_to_utc_datetime_treats_naive_values_as_utc():
    naive = datetime(2026, 1, 1, 12, 0, 0)
    assert oauth2._to_utc_datetime(naive) == datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
    assert oauth2._to_utc_datetime(0) == datetime(1970, 1, 1, tzinfo=timezone.utc)
    with pytest.raises(ValueError):
        oauth2._to_utc_datetime("oops")


def _provider_user(session) -> models.User:
    user = models.User(email=None, name="Provider Only")
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


@pytest.mark.integration
def test_get_current_user_rejects_unknown_user(session):
    token = oauth2.create_access_token({"user_id": 999999})
    with pytest.raises(HTTPException) as exc_info:
        oauth2.get_current_user(token=token, db=session)
    assert exc_info.value.status_code == status.HTTP_401_UNAUTHORIZED


@pytest.mark.integration
def test_issued_sessions_count_until_revoked(session):
    user = _provider_user(session)

    pair = oauth2.issue_token_pair(session, int(user.id))
    assert reconciliation.count_active_sessions(session, int(user.id)) == 1

    rotated = oauth2.rotate_refresh_token(session, pair.refresh_token)
    assert reconciliation.count_active_sessions(session, int(user.id)) == 1
    with pytest.raises(HTTPException):
        oauth2.rotate_refresh_token(session, pair.refresh_token)

    assert oauth2.revoke_refresh_token(session, rotated.refresh_token) is True
    assert reconciliation.count_active_sessions(session, int(user.id)) == 0


@pytest.mark.integration
def test_rotate_refresh_token_rejects_unknown_and_expired(session):
    user = _provider_user(session)

    unknown_refresh = oauth2.create_refresh_token({"user_id": int(user.id)})
    assert oauth2.revoke_refresh_token(session, unknown_refresh) is False
    with pytest.raises(HTTPException):
        oauth2.rotate_refresh_token(session, unknown_refresh)

    pair = oauth2.issue_token_pair(session, int(user.id))
    payload = oauth2.verify_refresh_token(pair.refresh_token)
    token_row = (
        session.query(models.RefreshToken)
        .filter(models.RefreshToken.jti == payload["jti"])
        .first()
    )
    token_row.expires_at = datetime.now(timezone.utc) - timedelta(minutes=1)
    session.commit()

    assert reconciliation.count_active_sessions(session, int(user.id)) == 0
    with pytest.raises(HTTPException):
        oauth2.rotate_refresh_token(session, pair.refresh_token)
