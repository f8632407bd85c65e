from __future__ import annotations

import base64
import hashlib
import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from urllib.parse import urlencode

import httpx
from fastapi import HTTPException, Request, status
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from . import models, oauth2, reconciliation, schemas
from .config import settings

logger = logging.getLogger(__name__)

_OAUTH_STATE_TOKEN_TYPE = "oauth_state"  # nosec B105


@dataclass(frozen=True)
class OAuthProviderConfig:
    provider: str
    display_name: str
    authorize_url: str
    token_url: str
    scopes: tuple[str, ...]
    userinfo_url: str | None
    userinfo_params: dict[str, str] | None = None
    authorize_params: dict[str, str] | None = None
    subject_field: str = "id"


@dataclass(frozen=True)
class OAuthState:
    provider: str
    code_verifier: str
    redirect_to_frontend: bool


@dataclass(frozen=True)
class ExternalIdentity:
    provider: str
    subject: str
    email: str | None
    email_verified: bool
    name: str | None = None
    access_token: str | None = None
    expires_at: datetime | None = None


@dataclass(frozen=True)
class OAuthCallbackResult:
    provider: str
    redirect_to_frontend: bool
    token: schemas.Token | None = None
    linked: bool = False
    owner_id: int | None = None


def _graph_url(path: str) -> str:
    return f"{settings.facebook_graph_url}/{path}"


_PROVIDERS: dict[str, OAuthProviderConfig] = {
    "google": OAuthProviderConfig(
        provider="google",
        display_name="Google",
        authorize_url="https://accounts.google.com/o/oauth2/v2/auth",
        token_url="https://oauth2.googleapis.com/token",
        scopes=("openid", "email", "profile"),
        userinfo_url="https://openidconnect.googleapis.com/v1/userinfo",
        subject_field="sub",
    ),
    "facebook": OAuthProviderConfig(
        provider="facebook",
        display_name="Meta",
        authorize_url=f"https://www.facebook.com/{settings.facebook_graph_api_version}/dialog/oauth",
        token_url=_graph_url("oauth/access_token"),
        scopes=(
            "email",
            "public_profile",
            "pages_read_engagement",
            "pages_show_list",
            "pages_manage_posts",
            "instagram_basic",
            "instagram_manage_comments",
        ),
        userinfo_url=_graph_url("me"),
        userinfo_params={"fields": "id,name,email"},
    ),
}

_PROVIDER_CREDENTIAL_ATTRS: dict[str, tuple[str, str]] = {
    "google": ("oauth_google_client_id", "oauth_google_client_secret"),
    "facebook": ("oauth_facebook_client_id", "oauth_facebook_client_secret"),
}


def _oauth_error(
    detail: str,
    *,
    error_code: str,
    status_code: int = status.HTTP_400_BAD_REQUEST,
) -> HTTPException:
    return HTTPException(
        status_code=status_code,
        detail={"detail": detail, "error_code": error_code},
    )


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _provider_credentials(provider: str) -> tuple[str, str]:
    attrs = _PROVIDER_CREDENTIAL_ATTRS.get(provider)
    if attrs is None:
        raise _oauth_error(
            f"Unsupported OAuth provider: {provider}",
            error_code="oauth_provider_unsupported",
            status_code=status.HTTP_404_NOT_FOUND,
        )

    client_id = getattr(settings, attrs[0], None)
    client_secret = getattr(settings, attrs[1], None)
    if not client_id or not client_secret:
        raise _oauth_error(
            f"OAuth provider '{provider}' is not configured",
            error_code="oauth_provider_not_configured",
            status_code=status.HTTP_404_NOT_FOUND,
        )
    return str(client_id), str(client_secret)


def get_provider(provider: str) -> OAuthProviderConfig:
    config = _PROVIDERS.get(provider)
    if config is None:
        raise _oauth_error(
            f"Unsupported OAuth provider: {provider}",
            error_code="oauth_provider_unsupported",
            status_code=status.HTTP_404_NOT_FOUND,
        )
    _provider_credentials(provider)
    return config


def list_enabled_providers() -> list[OAuthProviderConfig]:
    enabled: list[OAuthProviderConfig] = []
    for provider, config in _PROVIDERS.items():
        try:
            _provider_credentials(provider)
        except HTTPException:
            continue
        enabled.append(config)
    return enabled


def _base_url(request: Request) -> str:
    base = settings.oauth_public_base_url
    if base:
        return str(base).rstrip("/")
    return str(request.base_url).rstrip("/")


def callback_url(request: Request, provider: str) -> str:
    return f"{_base_url(request)}/api/{settings.api_latest_version}/auth/oauth/{provider}/callback"


def _build_code_verifier() -> str:
    return secrets.token_urlsafe(64)


def _build_code_challenge(code_verifier: str) -> str:
    digest = hashlib.sha256(code_verifier.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def build_oauth_state(
    *,
    provider: str,
    code_verifier: str,
    redirect_to_frontend: bool,
) -> str:
    payload = {
        "token_type": _OAUTH_STATE_TOKEN_TYPE,
        "provider": provider,
        "code_verifier": code_verifier,
        "redirect_to_frontend": redirect_to_frontend,
        "jti": uuid.uuid4().hex,
        "exp": _now_utc() + timedelta(seconds=settings.oauth_state_expire_seconds),
    }
    return jwt.encode(payload, oauth2.SECRET_KEY, algorithm=oauth2.ALGORITHM)


def parse_oauth_state(state_token: str, *, expected_provider: str) -> OAuthState:
    try:
        payload = jwt.decode(
            state_token,
            oauth2.SECRET_KEY,
            algorithms=[oauth2.ALGORITHM],
        )
    except JWTError:
        raise _oauth_error("Invalid OAuth state", error_code="invalid_oauth_state")

    if payload.get("token_type") != _OAUTH_STATE_TOKEN_TYPE:
        raise _oauth_error("Invalid OAuth state", error_code="invalid_oauth_state")

    provider = payload.get("provider")
    if provider != expected_provider:
        raise _oauth_error("Invalid OAuth provider state", error_code="invalid_oauth_state")

    code_verifier = payload.get("code_verifier")
    if not isinstance(code_verifier, str) or not code_verifier:
        raise _oauth_error("Invalid OAuth state", error_code="invalid_oauth_state")

    return OAuthState(
        provider=provider,
        code_verifier=code_verifier,
        redirect_to_frontend=bool(payload.get("redirect_to_frontend", True)),
    )


def build_authorization_url(
    provider: str,
    request: Request,
    *,
    redirect_to_frontend: bool,
) -> str:
    config = get_provider(provider)
    client_id, _ = _provider_credentials(provider)
    code_verifier = _build_code_verifier()
    state = build_oauth_state(
        provider=provider,
        code_verifier=code_verifier,
        redirect_to_frontend=redirect_to_frontend,
    )

    params: dict[str, str] = {
        "response_type": "code",
        "client_id": client_id,
        "redirect_uri": callback_url(request, provider),
        "scope": " ".join(config.scopes),
        "state": state,
        "code_challenge": _build_code_challenge(code_verifier),
        "code_challenge_method": "S256",
    }
    if config.authorize_params:
        params.update(config.authorize_params)
    return f"{config.authorize_url}?{urlencode(params)}"


def _exchange_code_for_token(
    provider: str, request: Request, *, code: str, code_verifier: str
) -> dict[str, Any]:
    config = get_provider(provider)
    client_id, client_secret = _provider_credentials(provider)
    payload = {
        "grant_type": "authorization_code",
        "client_id": client_id,
        "client_secret": client_secret,
        "code": code,
        "redirect_uri": callback_url(request, provider),
        "code_verifier": code_verifier,
    }

    try:
        response = httpx.post(
            config.token_url,
            data=payload,
            headers={"Accept": "application/json"},
            timeout=settings.provider_http_timeout_seconds,
        )
    except httpx.HTTPError:
        raise _oauth_error(
            "Could not reach OAuth provider",
            error_code="oauth_provider_unreachable",
            status_code=status.HTTP_502_BAD_GATEWAY,
        )

    try:
        token_payload = response.json()
    except ValueError:
        token_payload = {}
    if not isinstance(token_payload, dict):
        token_payload = {}

    if response.status_code >= 400 or "error" in token_payload:
        error = token_payload.get("error")
        if isinstance(error, dict):
            # Graph API nests the message inside an error object.
            error = error.get("message")
        message = str(token_payload.get("error_description") or error or "OAuth code exchange failed")
        raise _oauth_error(message, error_code="oauth_exchange_failed")

    access_token = token_payload.get("access_token")
    if not isinstance(access_token, str) or not access_token:
        raise _oauth_error(
            "OAuth provider did not return an access token",
            error_code="oauth_invalid_token_response",
            status_code=status.HTTP_502_BAD_GATEWAY,
        )

    return token_payload


def _fetch_json(
    url: str,
    *,
    access_token: str,
    params: dict[str, str] | None = None,
) -> dict[str, Any]:
    try:
        response = httpx.get(
            url,
            params=params,
            headers={"Authorization": f"Bearer {access_token}"},
            timeout=settings.provider_http_timeout_seconds,
        )
    except httpx.HTTPError:
        raise _oauth_error(
            "Could not fetch OAuth profile",
            error_code="oauth_profile_fetch_failed",
            status_code=status.HTTP_502_BAD_GATEWAY,
        )

    if response.status_code >= 400:
        raise _oauth_error(
            "OAuth profile lookup failed",
            error_code="oauth_profile_fetch_failed",
            status_code=status.HTTP_502_BAD_GATEWAY,
        )

    try:
        payload = response.json()
    except ValueError:
        payload = None

    if not isinstance(payload, dict):
        raise _oauth_error(
            "OAuth profile response was invalid",
            error_code="oauth_profile_fetch_failed",
            status_code=status.HTTP_502_BAD_GATEWAY,
        )
    return payload


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.lower() in {"true", "1", "yes"}
    if isinstance(value, int):
        return value != 0
    return False


def _token_expiry(token_payload: dict[str, Any]) -> datetime | None:
    expires_in = token_payload.get("expires_in")
    try:
        seconds = int(expires_in)
    except (TypeError, ValueError):
        return None
    if seconds <= 0:
        return None
    return _now_utc() + timedelta(seconds=seconds)


def _identity_from_userinfo(
    *,
    config: OAuthProviderConfig,
    payload: dict[str, Any],
    token_payload: dict[str, Any],
) -> ExternalIdentity:
    raw_subject = payload.get(config.subject_field)
    subject = str(raw_subject) if raw_subject is not None else ""
    if not subject:
        raise _oauth_error(
            "OAuth profile did not include subject",
            error_code="oauth_profile_fetch_failed",
            status_code=status.HTTP_502_BAD_GATEWAY,
        )

    email = payload.get("email")
    resolved_email = str(email) if isinstance(email, str) and email else None
    email_verified = _to_bool(payload.get("email_verified"))
    if config.provider == "facebook" and resolved_email:
        email_verified = True

    name = payload.get("name")
    return ExternalIdentity(
        provider=config.provider,
        subject=subject,
        email=resolved_email,
        email_verified=email_verified,
        name=str(name) if isinstance(name, str) and name else None,
        access_token=str(token_payload["access_token"]),
        expires_at=_token_expiry(token_payload),
    )


def fetch_external_identity(provider: str, token_payload: dict[str, Any]) -> ExternalIdentity:
    config = get_provider(provider)
    if not config.userinfo_url:
        raise _oauth_error(
            "OAuth provider profile endpoint is not configured",
            error_code="oauth_profile_fetch_failed",
            status_code=status.HTTP_502_BAD_GATEWAY,
        )
    userinfo = _fetch_json(
        config.userinfo_url,
        access_token=token_payload["access_token"],
        params=config.userinfo_params,
    )
    return _identity_from_userinfo(
        config=config, payload=userinfo, token_payload=token_payload
    )


def provision_identity(
    db: Session, identity: ExternalIdentity
) -> reconciliation.ProvisionalIdentity:
    """Persist the sign-in the way a plain OAuth login would.

    Reuses the identity's current owner, else a user with the same verified
    email, else creates a new user. The fresh provider token is stored as-is;
    nothing is committed here.
    """
    now = _now_utc()
    account = (
        db.query(models.OAuthAccount)
        .filter(
            models.OAuthAccount.provider == identity.provider,
            models.OAuthAccount.provider_account_id == identity.subject,
        )
        .first()
    )
    if account is not None:
        account.last_login_at = now  # type: ignore[assignment]
        account.access_token = identity.access_token  # type: ignore[assignment]
        account.token_expires_at = identity.expires_at  # type: ignore[assignment]
        if identity.email:
            account.provider_email = identity.email  # type: ignore[assignment]
        db.flush()
        return reconciliation.ProvisionalIdentity(
            user_id=int(account.user_id),
            provider=identity.provider,
            provider_account_id=identity.subject,
            access_token=identity.access_token,
        )

    email_owner = None
    if identity.email:
        email_owner = (
            db.query(models.User).filter(models.User.email == identity.email).first()
        )
    user = email_owner if email_owner is not None and identity.email_verified else None
    user_created = user is None
    if user is None:
        # An unverified address already taken locally is not claimed.
        email = identity.email if email_owner is None else None
        user = models.User(email=email, name=identity.name)
        db.add(user)
        db.flush()

    db.add(
        models.OAuthAccount(
            user_id=int(user.id),
            provider=identity.provider,
            provider_account_id=identity.subject,
            provider_email=identity.email,
            access_token=identity.access_token,
            token_expires_at=identity.expires_at,
            last_login_at=now,
        )
    )
    db.flush()
    return reconciliation.ProvisionalIdentity(
        user_id=int(user.id),
        provider=identity.provider,
        provider_account_id=identity.subject,
        access_token=identity.access_token,
        user_created=user_created,
    )


def complete_oauth_callback(
    db: Session,
    request: Request,
    *,
    provider: str,
    code: str,
    state: OAuthState,
    linking_user_id: int | None = None,
    claim_linking_intent: Callable[[], int | None] | None = None,
) -> OAuthCallbackResult:
    """Finish a provider sign-in and issue the local session.

    ``claim_linking_intent`` is only called once the provider has accepted
    the code, so a failed exchange leaves the intent usable for a retry.
    """
    token_payload = _exchange_code_for_token(
        provider,
        request,
        code=code,
        code_verifier=state.code_verifier,
    )
    identity = fetch_external_identity(provider, token_payload)
    if linking_user_id is None and claim_linking_intent is not None:
        linking_user_id = claim_linking_intent()

    provisional = provision_identity(db, identity)
    final = reconciliation.reconcile(db, provisional, linking_user_id)
    db.commit()

    reconciliation.post_commit_sweep(
        db,
        provider=final.provider,
        provider_account_id=final.provider_account_id,
        user_id=final.owner_id,
        original_token=provisional.access_token,
    )

    if final.linked:
        logger.info(
            "OAuth %s sign-in linked to user %s (orphan cleanup: %s)",
            provider,
            final.owner_id,
            final.orphan_cleanup,
        )
    token_pair = oauth2.issue_token_pair(db, final.owner_id)
    return OAuthCallbackResult(
        provider=provider,
        redirect_to_frontend=state.redirect_to_frontend,
        token=token_pair,
        linked=final.linked,
        owner_id=final.owner_id,
    )


def build_frontend_success_redirect(
    provider: str, token: schemas.Token, *, linked: bool = False
) -> str:
    target = settings.oauth_frontend_callback_url or "/"
    params = {
        "provider": provider,
        "access_token": token.access_token,
        "token_type": token.token_type,
    }
    if token.refresh_token:
        params["refresh_token"] = token.refresh_token
    if linked:
        params["linked"] = "true"
    return f"{target}#{urlencode(params)}"


def build_frontend_error_redirect(provider: str, *, error: str) -> str:
    target = settings.oauth_frontend_callback_url or "/"
    params = {"provider": provider, "error": error}
    return f"{target}#{urlencode(params)}"


def provider_config_status(provider: str, request: Request) -> dict[str, Any]:
    attrs = _PROVIDER_CREDENTIAL_ATTRS.get(provider)
    if attrs is None or provider not in _PROVIDERS:
        raise _oauth_error(
            f"Unsupported OAuth provider: {provider}",
            error_code="oauth_provider_unsupported",
            status_code=status.HTTP_404_NOT_FOUND,
        )
    details = {
        "has_client_id": bool(getattr(settings, attrs[0], None)),
        "has_client_secret": bool(getattr(settings, attrs[1], None)),
        "has_public_base_url": bool(settings.oauth_public_base_url),
        "has_secret_key": settings.secret_key != "replace-this-in-production",
    }
    configured = all(details.values())
    return {
        "provider": provider,
        "configured": configured,
        "details": details,
        "redirect_uri": callback_url(request, provider),
        "message": (
            f"{_PROVIDERS[provider].display_name} OAuth is properly configured"
            if configured
            else f"{_PROVIDERS[provider].display_name} OAuth is missing required settings"
        ),
    }
