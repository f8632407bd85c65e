"""Attach freshly completed OAuth logins to the account that asked for them.

The OAuth callback provisions a ``(user, identity)`` pair the way any
sign-in would, possibly creating a brand new user. Before that work is
committed :func:`reconcile` decides who really owns the identity: when a
linking intent names a different, existing user the identity is moved to
that user and the throwaway user is cleaned up. The returned
:class:`FinalIdentity` is what the session step must use.

Turning the short-lived provider token into a long-lived one goes through
:func:`ensure_long_lived_token` from both the pre-commit path and
:func:`post_commit_sweep`; the stored token still being bit-for-bit the
original short-lived token is the only signal that an exchange is owed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import graph_api, models
from .config import settings

logger = logging.getLogger(__name__)

TOKEN_EXCHANGE_PROVIDERS = frozenset({"facebook"})

EXCHANGED = "exchanged"
NOT_NEEDED = "not_needed"
UNSUPPORTED = "unsupported"
FAILED = "failed"
MISSING = "missing"


class RecentIdentityNotFoundError(Exception):
    pass


@dataclass(frozen=True)
class ProvisionalIdentity:
    user_id: int
    provider: str
    provider_account_id: str
    access_token: str | None
    user_created: bool = False


@dataclass(frozen=True)
class BestEffort:
    """Outcome of a cleanup step whose failure is tolerated."""

    attempted: bool
    succeeded: bool = False
    reason: str | None = None

    @classmethod
    def skipped(cls, reason: str) -> "BestEffort":
        return cls(attempted=False, succeeded=False, reason=reason)


@dataclass(frozen=True)
class ExchangeOutcome:
    status: str
    access_token: str | None = None
    reason: str | None = None

    @property
    def exchanged(self) -> bool:
        return self.status == EXCHANGED


@dataclass(frozen=True)
class FinalIdentity:
    owner_id: int
    provider: str
    provider_account_id: str
    access_token: str | None
    exchange: ExchangeOutcome
    linked: bool = False
    reconnected: bool = False
    orphan_cleanup: BestEffort = field(
        default_factory=lambda: BestEffort.skipped("no linking")
    )


@dataclass(frozen=True)
class LinkOutcome:
    owner_id: int
    already_linked: bool = False
    orphan_cleanup: BestEffort = field(
        default_factory=lambda: BestEffort.skipped("no linking")
    )


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def needs_exchange(stored_token: str | None, original_token: str | None) -> bool:
    return bool(original_token) and stored_token == original_token


def ensure_long_lived_token(
    db: Session, account: models.OAuthAccount, original_token: str | None
) -> ExchangeOutcome:
    """Exchange ``original_token`` once and store the result on ``account``.

    Safe to call any number of times: once the stored token differs from the
    original short-lived token this is a no-op. Provider failures are logged
    and reported, never raised, so sign-in is not blocked on token freshness.
    The caller owns the commit.
    """
    if account.provider not in TOKEN_EXCHANGE_PROVIDERS:
        return ExchangeOutcome(UNSUPPORTED, account.access_token)
    if not needs_exchange(account.access_token, original_token):
        return ExchangeOutcome(NOT_NEEDED, account.access_token)

    try:
        result = graph_api.exchange_token(str(original_token))
    except graph_api.ProviderNotConfiguredError as exc:
        logger.error("Cannot exchange %s token: %s", account.provider, exc)
        return ExchangeOutcome(FAILED, account.access_token, reason=str(exc))
    except graph_api.GraphAPIError as exc:
        logger.warning(
            "Token exchange failed for %s account %s: %s %s",
            account.provider,
            account.provider_account_id,
            exc.reason,
            exc.raw_body,
        )
        return ExchangeOutcome(FAILED, account.access_token, reason=exc.reason)

    account.access_token = result.access_token  # type: ignore[assignment]
    if result.expires_at is not None:
        account.token_expires_at = result.expires_at  # type: ignore[assignment]
    db.flush()
    logger.info(
        "Exchanged %s token for a long-lived token (account %s)",
        account.provider,
        account.provider_account_id,
    )
    return ExchangeOutcome(EXCHANGED, result.access_token)


def _find_identity(
    db: Session, *, provider: str, provider_account_id: str
) -> models.OAuthAccount | None:
    return (
        db.query(models.OAuthAccount)
        .filter(
            models.OAuthAccount.provider == provider,
            models.OAuthAccount.provider_account_id == provider_account_id,
        )
        .first()
    )


def count_active_sessions(db: Session, user_id: int) -> int:
    return (
        db.query(func.count(models.RefreshToken.id))
        .filter(
            models.RefreshToken.user_id == user_id,
            models.RefreshToken.revoked.is_(False),
            models.RefreshToken.expires_at > _now_utc(),
        )
        .scalar()
        or 0
    )


def _count_identities(db: Session, user_id: int) -> int:
    return (
        db.query(func.count(models.OAuthAccount.id))
        .filter(models.OAuthAccount.user_id == user_id)
        .scalar()
        or 0
    )


def delete_orphan_user(db: Session, user_id: int) -> BestEffort:
    """Delete ``user_id`` if nothing references it any more.

    Runs inside a savepoint so a blocked delete leaves the surrounding
    linking work intact.
    """
    user = db.get(models.User, user_id)
    if user is None:
        return BestEffort.skipped("user already gone")
    if user.password:
        return BestEffort.skipped("user has local credentials")
    if _count_identities(db, user_id) > 0:
        return BestEffort.skipped("user still owns identities")
    if count_active_sessions(db, user_id) > 0:
        return BestEffort.skipped("user has active sessions")

    try:
        with db.begin_nested():
            db.delete(user)
    except SQLAlchemyError as exc:
        logger.info("Could not delete orphaned user %s, leaving it in place: %s", user_id, exc)
        return BestEffort(attempted=True, succeeded=False, reason=str(exc))

    logger.info("Deleted orphaned user %s created by OAuth provisioning", user_id)
    return BestEffort(attempted=True, succeeded=True)


def _drop_other_provider_identities(
    db: Session, *, user_id: int, provider: str, keep_id: int
) -> None:
    stale = (
        db.query(models.OAuthAccount)
        .filter(
            models.OAuthAccount.user_id == user_id,
            models.OAuthAccount.provider == provider,
            models.OAuthAccount.id != keep_id,
        )
        .all()
    )
    for account in stale:
        logger.info(
            "Replacing %s identity %s of user %s with a newer grant",
            provider,
            account.provider_account_id,
            user_id,
        )
        db.delete(account)


def _move_identity(
    db: Session, account: models.OAuthAccount, target_user: models.User
) -> None:
    _drop_other_provider_identities(
        db, user_id=int(target_user.id), provider=str(account.provider), keep_id=int(account.id)
    )
    account.user = target_user
    account.last_login_at = _now_utc()  # type: ignore[assignment]
    db.flush()


def reconcile(
    db: Session,
    provisional: ProvisionalIdentity,
    linking_user_id: int | None,
) -> FinalIdentity:
    account = _find_identity(
        db,
        provider=provisional.provider,
        provider_account_id=provisional.provider_account_id,
    )
    if account is None:
        logger.error(
            "Provisioned %s identity %s was not found; skipping reconciliation",
            provisional.provider,
            provisional.provider_account_id,
        )
        return FinalIdentity(
            owner_id=provisional.user_id,
            provider=provisional.provider,
            provider_account_id=provisional.provider_account_id,
            access_token=provisional.access_token,
            exchange=ExchangeOutcome(MISSING, provisional.access_token),
        )

    target_user: models.User | None = None
    if linking_user_id is not None and linking_user_id != provisional.user_id:
        target_user = db.get(models.User, linking_user_id)
        if target_user is None:
            logger.warning(
                "Linking intent names unknown user %s; keeping OAuth owner %s",
                linking_user_id,
                provisional.user_id,
            )

    exchange = ensure_long_lived_token(db, account, provisional.access_token)

    if target_user is None:
        _drop_other_provider_identities(
            db,
            user_id=int(account.user_id),
            provider=str(account.provider),
            keep_id=int(account.id),
        )
        db.flush()
        return FinalIdentity(
            owner_id=provisional.user_id,
            provider=provisional.provider,
            provider_account_id=provisional.provider_account_id,
            access_token=exchange.access_token,
            exchange=exchange,
            reconnected=linking_user_id == provisional.user_id,
        )

    _move_identity(db, account, target_user)
    logger.info(
        "Linked %s identity %s to user %s (provisioned as user %s)",
        provisional.provider,
        provisional.provider_account_id,
        target_user.id,
        provisional.user_id,
    )

    if provisional.user_created:
        cleanup = delete_orphan_user(db, provisional.user_id)
    else:
        cleanup = BestEffort.skipped("provisional user existed before sign-in")

    return FinalIdentity(
        owner_id=int(target_user.id),
        provider=provisional.provider,
        provider_account_id=provisional.provider_account_id,
        access_token=exchange.access_token,
        exchange=exchange,
        linked=True,
        orphan_cleanup=cleanup,
    )


def post_commit_sweep(
    db: Session,
    *,
    provider: str,
    provider_account_id: str,
    user_id: int,
    original_token: str | None,
) -> ExchangeOutcome:
    """Repair a token exchange that did not stick before commit."""
    account = (
        db.query(models.OAuthAccount)
        .filter(
            models.OAuthAccount.provider == provider,
            models.OAuthAccount.provider_account_id == provider_account_id,
            models.OAuthAccount.user_id == user_id,
        )
        .first()
    )
    if account is None:
        return ExchangeOutcome(MISSING)

    outcome = ensure_long_lived_token(db, account, original_token)
    if outcome.exchanged:
        db.commit()
        logger.info(
            "Post-commit sweep upgraded %s token for account %s",
            provider,
            provider_account_id,
        )
    return outcome


def link_recent_identity(
    db: Session, *, target_user_id: int, provider: str = "facebook"
) -> LinkOutcome:
    """Attach the most recently provisioned identity to ``target_user_id``.

    Manual fallback for flows where the callback could not see the linking
    intent. Only identities whose owner was created within the linking
    window are candidates.
    """
    existing = (
        db.query(models.OAuthAccount)
        .filter(
            models.OAuthAccount.user_id == target_user_id,
            models.OAuthAccount.provider == provider,
        )
        .first()
    )
    if existing is not None:
        return LinkOutcome(owner_id=target_user_id, already_linked=True)

    target_user = db.get(models.User, target_user_id)
    if target_user is None:
        raise RecentIdentityNotFoundError(f"User {target_user_id} does not exist")

    window_start = _now_utc() - timedelta(seconds=settings.linking_intent_ttl_seconds)
    candidate = (
        db.query(models.OAuthAccount)
        .join(models.User, models.User.id == models.OAuthAccount.user_id)
        .filter(
            models.OAuthAccount.provider == provider,
            models.OAuthAccount.user_id != target_user_id,
            models.User.created_at >= window_start,
        )
        .order_by(models.OAuthAccount.created_at.desc(), models.OAuthAccount.id.desc())
        .first()
    )
    if candidate is None:
        raise RecentIdentityNotFoundError(
            f"No recent {provider} identity found to link"
        )

    previous_owner_id = int(candidate.user_id)
    _move_identity(db, candidate, target_user)
    cleanup = delete_orphan_user(db, previous_owner_id)
    db.commit()
    logger.info(
        "Linked recent %s identity %s to user %s",
        provider,
        candidate.provider_account_id,
        target_user_id,
    )
    return LinkOutcome(owner_id=target_user_id, orphan_cleanup=cleanup)
