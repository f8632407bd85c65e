from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from pagelink import graph_api, models, oauth2, oauth_external, reconciliation
from sqlalchemy.exc import SQLAlchemyError

pytestmark = pytest.mark.integration


class FakeExchange:
    """Stands in for the Graph token exchange, failing the first ``failures`` calls."""

    def __init__(self, failures: int = 0, status_code: int = 500):
        self.failures = failures
        self.status_code = status_code
        self.calls: list[str] = []

    def __call__(self, short_lived_token: str) -> graph_api.TokenExchangeResult:
        self.calls.append(short_lived_token)
        if len(self.calls) <= self.failures:
            raise graph_api.GraphAPIError(
                "Provider rejected token exchange", status_code=self.status_code
            )
        return graph_api.TokenExchangeResult(
            access_token=f"long-{short_lived_token}",
            expires_at=datetime.now(timezone.utc) + timedelta(days=60),
        )


@pytest.fixture
def exchange(monkeypatch):
    fake = FakeExchange()
    monkeypatch.setattr(reconciliation.graph_api, "exchange_token", fake)
    return fake


def _identity(subject="pa1", token="short-1", *, provider="facebook", email=None, verified=False):
    return oauth_external.ExternalIdentity(
        provider=provider,
        subject=subject,
        email=email,
        email_verified=verified,
        name="Provider User",
        access_token=token,
    )


def _accounts(session, provider_account_id="pa1"):
    return (
        session.query(models.OAuthAccount)
        .filter(models.OAuthAccount.provider_account_id == provider_account_id)
        .all()
    )


def _complete(session, identity, linking_user_id):
    provisional = oauth_external.provision_identity(session, identity)
    final = reconciliation.reconcile(session, provisional, linking_user_id)
    session.commit()
    reconciliation.post_commit_sweep(
        session,
        provider=final.provider,
        provider_account_id=final.provider_account_id,
        user_id=final.owner_id,
        original_token=provisional.access_token,
    )
    return provisional, final


@pytest.mark.unit
@pytest.mark.parametrize(
    "stored, original, expected",
    [
        ("short", "short", True),
        ("long", "short", False),
        (None, "short", False),
        (None, None, False),
        ("", "", False),
    ],
)
def test_needs_exchange_only_when_stored_token_is_the_original(stored, original, expected):
    assert reconciliation.needs_exchange(stored, original) is expected


def test_plain_sign_in_keeps_provisioned_owner_and_exchanges(session, exchange):
    provisional, final = _complete(session, _identity(), None)

    assert final.owner_id == provisional.user_id
    assert final.linked is False
    assert final.exchange.status == reconciliation.EXCHANGED
    assert _accounts(session)[0].access_token == "long-short-1"
    assert exchange.calls == ["short-1"]


def test_linking_moves_identity_and_deletes_orphan(session, exchange, test_user):
    provisional, final = _complete(session, _identity(), test_user["id"])

    assert final.owner_id == test_user["id"]
    assert final.linked is True
    assert final.orphan_cleanup == reconciliation.BestEffort(attempted=True, succeeded=True)
    accounts = _accounts(session)
    assert len(accounts) == 1
    assert accounts[0].user_id == test_user["id"]
    assert session.get(models.User, provisional.user_id) is None


def test_linking_twice_is_idempotent(session, exchange, test_user):
    _complete(session, _identity(token="short-1"), test_user["id"])
    provisional, final = _complete(session, _identity(token="short-2"), test_user["id"])

    assert provisional.user_id == test_user["id"]
    assert final.reconnected is True
    accounts = _accounts(session)
    assert len(accounts) == 1
    assert accounts[0].user_id == test_user["id"]
    assert accounts[0].access_token == "long-short-2"
    assert session.query(models.User).count() == 1


def test_intent_for_unknown_user_falls_back_to_provisioned_owner(session, exchange):
    provisional, final = _complete(session, _identity(), 999_999)

    assert final.owner_id == provisional.user_id
    assert final.linked is False
    assert session.get(models.User, provisional.user_id) is not None


def test_newest_grant_replaces_targets_previous_identity(session, exchange, test_user):
    _complete(session, _identity(subject="pa-old"), test_user["id"])
    _complete(session, _identity(subject="pa-new"), test_user["id"])

    owned = (
        session.query(models.OAuthAccount)
        .filter(models.OAuthAccount.user_id == test_user["id"])
        .all()
    )
    assert [account.provider_account_id for account in owned] == ["pa-new"]


@pytest.mark.parametrize("with_intent", [True, False])
def test_email_matched_grant_replaces_previous_identity(
    session, exchange, test_user, with_intent
):
    _complete(session, _identity(subject="pa1"), test_user["id"])
    intent = test_user["id"] if with_intent else None

    provisional, final = _complete(
        session,
        _identity(subject="pa2", token="short-2", email=test_user["email"], verified=True),
        intent,
    )

    assert provisional.user_id == test_user["id"]
    assert final.owner_id == test_user["id"]
    owned = (
        session.query(models.OAuthAccount)
        .filter(
            models.OAuthAccount.user_id == test_user["id"],
            models.OAuthAccount.provider == "facebook",
        )
        .all()
    )
    assert [account.provider_account_id for account in owned] == ["pa2"]
    assert owned[0].access_token == "long-short-2"


def test_pre_existing_owner_is_never_deleted(session, exchange, test_user, test_user2):
    session.add(
        models.OAuthAccount(
            user_id=test_user2["id"],
            provider="facebook",
            provider_account_id="pa1",
            access_token="old",
        )
    )
    session.commit()

    provisional, final = _complete(session, _identity(), test_user["id"])

    assert provisional.user_id == test_user2["id"]
    assert provisional.user_created is False
    assert final.owner_id == test_user["id"]
    assert final.orphan_cleanup.attempted is False
    assert session.get(models.User, test_user2["id"]) is not None


def test_orphan_with_active_session_is_kept(session, exchange, test_user):
    provisional = oauth_external.provision_identity(session, _identity())
    session.commit()
    oauth2.issue_token_pair(session, provisional.user_id)

    final = reconciliation.reconcile(session, provisional, test_user["id"])
    session.commit()

    assert final.owner_id == test_user["id"]
    assert final.orphan_cleanup == reconciliation.BestEffort.skipped("user has active sessions")
    assert session.get(models.User, provisional.user_id) is not None


def test_orphan_delete_failure_is_reported_not_raised(session, exchange, test_user, monkeypatch):
    provisional = oauth_external.provision_identity(session, _identity())

    def failing_delete(_instance):
        raise SQLAlchemyError("delete blocked")

    with monkeypatch.context() as patch:
        patch.setattr(session, "delete", failing_delete)
        final = reconciliation.reconcile(session, provisional, test_user["id"])
    session.commit()

    assert final.orphan_cleanup.attempted is True
    assert final.orphan_cleanup.succeeded is False
    assert "delete blocked" in final.orphan_cleanup.reason
    assert _accounts(session)[0].user_id == test_user["id"]


def test_failed_exchange_converges_in_post_commit_sweep(session, monkeypatch):
    fake = FakeExchange(failures=1)
    monkeypatch.setattr(reconciliation.graph_api, "exchange_token", fake)

    provisional = oauth_external.provision_identity(session, _identity(token="short-1"))
    final = reconciliation.reconcile(session, provisional, None)
    session.commit()

    assert final.exchange.status == reconciliation.FAILED
    assert _accounts(session)[0].access_token == "short-1"

    sweep = reconciliation.post_commit_sweep(
        session,
        provider="facebook",
        provider_account_id="pa1",
        user_id=final.owner_id,
        original_token="short-1",
    )

    assert sweep.exchanged is True
    session.expire_all()
    assert _accounts(session)[0].access_token != "short-1"


def test_sweep_is_a_no_op_once_token_was_exchanged(session, exchange):
    provisional, final = _complete(session, _identity(), None)

    again = reconciliation.post_commit_sweep(
        session,
        provider="facebook",
        provider_account_id="pa1",
        user_id=final.owner_id,
        original_token=provisional.access_token,
    )

    assert again.status == reconciliation.NOT_NEEDED
    assert exchange.calls == ["short-1"]


def test_sweep_reports_missing_identity(session, exchange):
    outcome = reconciliation.post_commit_sweep(
        session,
        provider="facebook",
        provider_account_id="ghost",
        user_id=1,
        original_token="short",
    )
    assert outcome.status == reconciliation.MISSING


def test_unconfigured_provider_does_not_block_sign_in(session, monkeypatch):
    def not_configured(_token):
        raise graph_api.ProviderNotConfiguredError("facebook")

    monkeypatch.setattr(reconciliation.graph_api, "exchange_token", not_configured)
    provisional = oauth_external.provision_identity(session, _identity())

    final = reconciliation.reconcile(session, provisional, None)

    assert final.exchange.status == reconciliation.FAILED
    assert final.owner_id == provisional.user_id


def test_sign_in_only_providers_skip_exchange(session, exchange):
    _, final = _complete(session, _identity(subject="g-1", provider="google"), None)

    assert final.exchange.status == reconciliation.UNSUPPORTED
    assert exchange.calls == []


def test_reconcile_reports_missing_identity(session, exchange):
    provisional = reconciliation.ProvisionalIdentity(
        user_id=1, provider="facebook", provider_account_id="ghost", access_token="t"
    )
    final = reconciliation.reconcile(session, provisional, None)

    assert final.exchange.status == reconciliation.MISSING
    assert final.owner_id == 1


def test_link_recent_identity_moves_newest_candidate(session, exchange, test_user):
    orphan = oauth_external.provision_identity(session, _identity())
    session.commit()

    outcome = reconciliation.link_recent_identity(session, target_user_id=test_user["id"])

    assert outcome.already_linked is False
    assert outcome.orphan_cleanup.succeeded is True
    assert _accounts(session)[0].user_id == test_user["id"]
    assert session.get(models.User, orphan.user_id) is None


def test_link_recent_identity_when_already_linked(session, exchange, test_user):
    _complete(session, _identity(), test_user["id"])

    outcome = reconciliation.link_recent_identity(session, target_user_id=test_user["id"])

    assert outcome.already_linked is True


def test_link_recent_identity_ignores_stale_owners(session, exchange, test_user):
    provisional = oauth_external.provision_identity(session, _identity())
    stale_owner = session.get(models.User, provisional.user_id)
    stale_owner.created_at = datetime.now(timezone.utc) - timedelta(hours=2)
    session.commit()

    with pytest.raises(reconciliation.RecentIdentityNotFoundError):
        reconciliation.link_recent_identity(session, target_user_id=test_user["id"])


def test_link_recent_identity_requires_existing_target(session):
    with pytest.raises(reconciliation.RecentIdentityNotFoundError):
        reconciliation.link_recent_identity(session, target_user_id=424242)
