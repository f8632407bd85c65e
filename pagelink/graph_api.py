"""Thin client for the Facebook Graph endpoints the linking core depends on.

Every call is a plain ``httpx.get`` so callers can retry or fan out as they
see fit. Failures are raised as :class:`GraphAPIError`; nothing here touches
the database.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from .config import settings

logger = logging.getLogger(__name__)

_RAW_BODY_PREVIEW = 300


class ProviderNotConfiguredError(Exception):
    def __init__(self, provider: str) -> None:
        super().__init__(f"OAuth provider '{provider}' is not configured")
        self.provider = provider


class GraphAPIError(Exception):
    def __init__(
        self,
        reason: str,
        *,
        raw_body: str = "",
        status_code: int | None = None,
    ) -> None:
        super().__init__(reason)
        self.reason = reason
        self.raw_body = raw_body
        self.status_code = status_code

    @property
    def transient(self) -> bool:
        if self.status_code is None:
            return True
        return self.status_code == 429 or self.status_code >= 500

    @property
    def permission(self) -> bool:
        return not self.transient


@dataclass(frozen=True)
class TokenExchangeResult:
    access_token: str
    expires_at: datetime | None = None


@dataclass(frozen=True)
class TokenIntrospection:
    valid: bool
    scopes: frozenset[str] = field(default_factory=frozenset)
    expires_at: datetime | None = None

    def has_scopes(self, *required: str) -> bool:
        return self.valid and set(required) <= self.scopes


@dataclass(frozen=True)
class ProviderPage:
    id: str
    name: str
    access_token: str | None


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _client_credentials() -> tuple[str, str]:
    client_id = settings.oauth_facebook_client_id
    client_secret = settings.oauth_facebook_client_secret
    if not client_id or not client_secret:
        raise ProviderNotConfiguredError("facebook")
    return str(client_id), str(client_secret)


def is_configured() -> bool:
    try:
        _client_credentials()
    except ProviderNotConfiguredError:
        return False
    return True


def _get(url: str, *, params: dict[str, Any] | None, action: str) -> dict[str, Any]:
    try:
        response = httpx.get(
            url,
            params=params,
            timeout=settings.provider_http_timeout_seconds,
        )
    except httpx.HTTPError as exc:
        logger.warning("Graph API %s request failed: %s", action, exc)
        raise GraphAPIError(f"Could not reach provider during {action}")

    if response.status_code >= 400:
        raw_body = response.text[:_RAW_BODY_PREVIEW]
        logger.warning(
            "Graph API %s returned %s: %s", action, response.status_code, raw_body
        )
        raise GraphAPIError(
            f"Provider rejected {action}",
            raw_body=raw_body,
            status_code=response.status_code,
        )

    try:
        payload = response.json()
    except ValueError:
        raise GraphAPIError(
            f"Provider returned an invalid {action} response",
            raw_body=response.text[:_RAW_BODY_PREVIEW],
            status_code=response.status_code,
        )
    if not isinstance(payload, dict):
        raise GraphAPIError(
            f"Provider returned an invalid {action} response",
            status_code=response.status_code,
        )
    return payload


def _timestamp_to_datetime(value: Any) -> datetime | None:
    # debug_token reports 0 for tokens that never expire.
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def exchange_token(short_lived_token: str) -> TokenExchangeResult:
    client_id, client_secret = _client_credentials()
    payload = _get(
        f"{settings.facebook_graph_url}/oauth/access_token",
        params={
            "grant_type": "fb_exchange_token",
            "client_id": client_id,
            "client_secret": client_secret,
            "fb_exchange_token": short_lived_token,
        },
        action="token exchange",
    )
    access_token = payload.get("access_token")
    if not isinstance(access_token, str) or not access_token:
        raise GraphAPIError("Provider did not return an access token")

    expires_at = None
    expires_in = payload.get("expires_in")
    if isinstance(expires_in, (int, float)) and not isinstance(expires_in, bool):
        expires_at = _now_utc() + timedelta(seconds=int(expires_in))
    return TokenExchangeResult(access_token=access_token, expires_at=expires_at)


def introspect_token(token: str, *, app_token: str | None = None) -> TokenIntrospection:
    payload = _get(
        f"{settings.facebook_graph_url}/debug_token",
        params={"input_token": token, "access_token": app_token or token},
        action="token introspection",
    )
    data = payload.get("data")
    if not isinstance(data, dict):
        raise GraphAPIError("Provider returned an invalid token introspection response")

    raw_scopes = data.get("scopes") or []
    scopes = frozenset(str(scope) for scope in raw_scopes if isinstance(scope, str))
    return TokenIntrospection(
        valid=bool(data.get("is_valid", False)),
        scopes=scopes,
        expires_at=_timestamp_to_datetime(data.get("expires_at")),
    )


def list_pages(parent_token: str) -> list[ProviderPage]:
    """Return every page the parent identity can manage, following pagination."""
    pages: list[ProviderPage] = []
    next_url: str | None = f"{settings.facebook_graph_url}/me/accounts"
    params: dict[str, Any] | None = {
        "access_token": parent_token,
        "fields": "id,name,access_token",
        "limit": settings.provider_page_limit,
    }
    seen_urls: set[str] = set()
    while next_url:
        payload = _get(next_url, params=params, action="page listing")
        for item in payload.get("data") or []:
            if not isinstance(item, dict) or not item.get("id"):
                continue
            access_token = item.get("access_token")
            pages.append(
                ProviderPage(
                    id=str(item["id"]),
                    name=str(item.get("name") or item["id"]),
                    access_token=str(access_token) if access_token else None,
                )
            )

        paging = payload.get("paging")
        candidate = paging.get("next") if isinstance(paging, dict) else None
        if not isinstance(candidate, str) or not candidate or candidate in seen_urls:
            break
        seen_urls.add(candidate)
        # The next URL already carries the token and cursor.
        next_url, params = candidate, None
    return pages


def fetch_profile(access_token: str) -> dict[str, Any]:
    return _get(
        f"{settings.facebook_graph_url}/me",
        params={"access_token": access_token, "fields": "id,name,email"},
        action="profile lookup",
    )
