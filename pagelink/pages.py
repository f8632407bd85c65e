from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from . import graph_api, models

logger = logging.getLogger(__name__)

# Page types that only exist through a parent identity's grant. Revoking the
# parent removes every page stored under any provider of its family.
PROVIDER_FAMILIES: dict[str, tuple[str, ...]] = {
    "facebook": ("facebook", "instagram"),
}

PAGE_PROVIDERS = frozenset({"facebook", "instagram"})

# Dependent page providers are listed and refreshed through this identity.
PARENT_PROVIDERS: dict[str, str] = {"instagram": "facebook"}


class IdentityNotFoundError(Exception):
    def __init__(self, provider: str) -> None:
        super().__init__(f"No {provider} account connected")
        self.provider = provider


@dataclass(frozen=True)
class PageListing:
    connected: list[models.ConnectedPage]
    available: list[graph_api.ProviderPage] = field(default_factory=list)
    error: str | None = None


@dataclass(frozen=True)
class DisconnectResult:
    provider: str
    deleted_pages: dict[str, int]

    @property
    def total_deleted_pages(self) -> int:
        return sum(self.deleted_pages.values())


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def provider_family(provider: str) -> tuple[str, ...]:
    return PROVIDER_FAMILIES.get(provider, (provider,))


def parent_provider(provider: str) -> str:
    return PARENT_PROVIDERS.get(provider, provider)


def find_user_identity(
    db: Session, user_id: int, provider: str
) -> models.OAuthAccount | None:
    return (
        db.query(models.OAuthAccount)
        .filter(
            models.OAuthAccount.user_id == user_id,
            models.OAuthAccount.provider == provider,
        )
        .first()
    )


def get_connected_pages(
    db: Session, user_id: int, provider: str | None = None
) -> list[models.ConnectedPage]:
    query = db.query(models.ConnectedPage).filter(models.ConnectedPage.user_id == user_id)
    if provider is not None:
        query = query.filter(models.ConnectedPage.provider == provider)
    return query.order_by(models.ConnectedPage.id.asc()).all()


def list_pages(db: Session, user_id: int) -> PageListing:
    """Stored pages plus the live pages the parent identity can see.

    Stored rows are always returned; trouble reaching the provider only
    empties ``available`` and sets ``error``.
    """
    connected = get_connected_pages(db, user_id)

    identity = find_user_identity(db, user_id, "facebook")
    if identity is None or not identity.access_token:
        return PageListing(connected=connected, error="No Facebook account connected")

    try:
        available = graph_api.list_pages(str(identity.access_token))
    except graph_api.GraphAPIError as exc:
        logger.warning("Could not list provider pages for user %s: %s", user_id, exc.reason)
        return PageListing(connected=connected, error="Failed to fetch pages from Facebook")
    return PageListing(connected=connected, available=available)


def connect_page(
    db: Session,
    *,
    user_id: int,
    provider: str,
    page_id: str,
    page_name: str,
    page_token: str,
) -> models.ConnectedPage:
    page = (
        db.query(models.ConnectedPage)
        .filter(
            models.ConnectedPage.user_id == user_id,
            models.ConnectedPage.provider == provider,
            models.ConnectedPage.page_id == page_id,
        )
        .first()
    )
    now = _now_utc()
    if page is None:
        page = models.ConnectedPage(
            user_id=user_id,
            provider=provider,
            page_id=page_id,
            page_name=page_name,
            page_access_token=page_token,
            created_at=now,
            updated_at=now,
        )
        db.add(page)
    else:
        page.page_name = page_name  # type: ignore[assignment]
        page.page_access_token = page_token  # type: ignore[assignment]
        page.updated_at = now  # type: ignore[assignment]
    db.commit()
    db.refresh(page)
    return page


def disconnect_page(db: Session, *, user_id: int, page_id: str, provider: str) -> bool:
    deleted = (
        db.query(models.ConnectedPage)
        .filter(
            models.ConnectedPage.user_id == user_id,
            models.ConnectedPage.provider == provider,
            models.ConnectedPage.page_id == page_id,
        )
        .delete(synchronize_session=False)
    )
    db.commit()
    return bool(deleted)


def disconnect_parent_identity(
    db: Session, *, user_id: int, provider: str
) -> DisconnectResult:
    identity = find_user_identity(db, user_id, provider)
    if identity is None:
        raise IdentityNotFoundError(provider)

    deleted_pages: dict[str, int] = {}
    for family_provider in provider_family(provider):
        deleted_pages[family_provider] = (
            db.query(models.ConnectedPage)
            .filter(
                models.ConnectedPage.user_id == user_id,
                models.ConnectedPage.provider == family_provider,
            )
            .delete(synchronize_session=False)
        )
    db.delete(identity)
    db.commit()

    logger.info(
        "Disconnected %s identity for user %s, removed pages %s",
        provider,
        user_id,
        deleted_pages,
    )
    return DisconnectResult(provider=provider, deleted_pages=deleted_pages)
