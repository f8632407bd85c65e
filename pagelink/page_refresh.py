from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from . import graph_api, models, pages
from .config import settings

logger = logging.getLogger(__name__)

# Only Facebook Pages come back from the me/accounts listing.
REFRESH_PROVIDER = "facebook"

REFRESHED = "refreshed"
VERIFIED_SCOPES = "verified-scopes"
ERROR = "error"


@dataclass(frozen=True)
class PageRefreshOutcome:
    page_id: str
    page_name: str
    status: str
    detail: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status in {REFRESHED, VERIFIED_SCOPES}

    def describe(self) -> str:
        if self.status == ERROR:
            return f"error: {self.detail}"
        return self.status


@dataclass(frozen=True)
class RefreshReport:
    provider: str
    outcomes: list[PageRefreshOutcome] = field(default_factory=list)

    @property
    def refreshed(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.succeeded)

    @property
    def verified(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == VERIFIED_SCOPES)

    @property
    def errors(self) -> list[str]:
        return [
            f"{outcome.page_name} ({outcome.page_id}): {outcome.detail}"
            for outcome in self.outcomes
            if outcome.detail
        ]


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _refresh_one(
    db: Session,
    page: models.ConnectedPage,
    live_pages: dict[str, graph_api.ProviderPage],
    *,
    parent_token: str,
    required_scope: str,
) -> PageRefreshOutcome:
    page_id = str(page.page_id)
    page_name = str(page.page_name)
    live_page = live_pages.get(page_id)
    if live_page is None or not live_page.access_token:
        return PageRefreshOutcome(
            page_id, page_name, ERROR, "page not found in the connected account"
        )

    try:
        introspection = graph_api.introspect_token(
            live_page.access_token, app_token=parent_token
        )
    except graph_api.GraphAPIError as exc:
        return PageRefreshOutcome(
            page_id, page_name, ERROR, f"failed to verify token - {exc.reason}"
        )
    if not introspection.valid:
        return PageRefreshOutcome(page_id, page_name, ERROR, "provider reports the token as invalid")

    page.page_access_token = live_page.access_token  # type: ignore[assignment]
    page.updated_at = _now_utc()  # type: ignore[assignment]
    db.flush()

    if introspection.has_scopes(required_scope):
        return PageRefreshOutcome(page_id, page_name, VERIFIED_SCOPES)
    logger.warning("Page %s refreshed but is missing %s", page_id, required_scope)
    return PageRefreshOutcome(
        page_id,
        page_name,
        REFRESHED,
        f"token refreshed but missing {required_scope} permission",
    )


def refresh_page_tokens(db: Session, user_id: int) -> RefreshReport:
    """Re-fetch and scope-check the cached token of every connected Facebook page.

    One page failing never aborts the batch; each page gets its own outcome.
    Raises :class:`pages.IdentityNotFoundError` when there is no parent
    identity and :class:`graph_api.GraphAPIError` when the live page list
    cannot be fetched at all.
    """
    identity = pages.find_user_identity(db, user_id, REFRESH_PROVIDER)
    if identity is None or not identity.access_token:
        raise pages.IdentityNotFoundError(REFRESH_PROVIDER)

    connected = pages.get_connected_pages(db, user_id, REFRESH_PROVIDER)
    if not connected:
        return RefreshReport(provider=REFRESH_PROVIDER)

    parent_token = str(identity.access_token)
    live_pages = {page.id: page for page in graph_api.list_pages(parent_token)}
    required_scope = settings.facebook_required_page_scope

    outcomes: list[PageRefreshOutcome] = []
    for page in connected:
        try:
            outcome = _refresh_one(
                db,
                page,
                live_pages,
                parent_token=parent_token,
                required_scope=required_scope,
            )
        except Exception as exc:
            logger.exception("Unexpected error refreshing page %s", page.page_id)
            outcome = PageRefreshOutcome(str(page.page_id), str(page.page_name), ERROR, str(exc))
        outcomes.append(outcome)
        logger.info("Page %s refresh: %s", page.page_id, outcome.describe())

    db.commit()
    return RefreshReport(provider=REFRESH_PROVIDER, outcomes=outcomes)
