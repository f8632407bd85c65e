from datetime import datetime, timezone

import pytest
from pagelink import graph_api, models, pages
from pagelink.routers import accounts
from sqlalchemy.exc import SQLAlchemyError

pytestmark = pytest.mark.integration


@pytest.fixture
def facebook_identity(session, test_user):
    account = models.OAuthAccount(
        user_id=test_user["id"],
        provider="facebook",
        provider_account_id="pa1",
        access_token="EAAB-long-lived-user-token",
    )
    session.add(account)
    session.commit()
    return account


def _connect(session, user_id, page_id, provider="facebook"):
    pages.connect_page(
        session,
        user_id=user_id,
        provider=provider,
        page_id=page_id,
        page_name=f"Page {page_id}",
        page_token=f"token-{page_id}",
    )


def test_disconnect_removes_identity_and_pages(authorized_client, session, test_user, facebook_identity):
    _connect(session, test_user["id"], "p1")
    _connect(session, test_user["id"], "ig1", provider="instagram")

    response = authorized_client.delete("/api/v1/account/disconnect")

    assert response.status_code == 200
    payload = response.json()
    assert payload["message"] == "Disconnected facebook and removed 2 page(s)"
    assert payload["deleted_pages"] == {"facebook": 1, "instagram": 1}
    assert pages.get_connected_pages(session, test_user["id"]) == []
    assert pages.find_user_identity(session, test_user["id"], "facebook") is None


def test_disconnect_without_identity_is_not_found(authorized_client):
    response = authorized_client.delete("/api/v1/account/disconnect")

    assert response.status_code == 404
    assert response.json()["error_code"] == "identity_not_found"


def test_disconnect_database_failure_is_reported(authorized_client, facebook_identity, monkeypatch):
    def failing(*_args, **_kwargs):
        raise SQLAlchemyError("connection lost")

    monkeypatch.setattr(accounts.pages, "disconnect_parent_identity", failing)

    response = authorized_client.delete("/api/v1/account/disconnect")

    assert response.status_code == 500
    assert response.json()["error_code"] == "disconnect_failed"
    assert response.json()["error"] == "Could not disconnect account. Please try again."


def test_refresh_identity_token_stores_exchange(authorized_client, session, facebook_identity, monkeypatch):
    expires_at = datetime(2030, 1, 1, tzinfo=timezone.utc)
    monkeypatch.setattr(
        accounts.graph_api,
        "exchange_token",
        lambda token: graph_api.TokenExchangeResult(access_token=f"renewed-{token}", expires_at=expires_at),
    )

    response = authorized_client.post("/api/v1/account/refresh-token")

    assert response.status_code == 200
    assert response.json()["message"] == "Token refreshed successfully"
    session.expire_all()
    refreshed = session.get(models.OAuthAccount, facebook_identity.id)
    assert refreshed.access_token == "renewed-EAAB-long-lived-user-token"


def test_refresh_identity_token_without_identity(authorized_client):
    response = authorized_client.post("/api/v1/account/refresh-token")

    assert response.status_code == 404
    assert response.json()["error"] == "No facebook account connected"


def test_refresh_identity_token_provider_unavailable(authorized_client, facebook_identity, monkeypatch):
    def unavailable(_token):
        raise graph_api.GraphAPIError("Could not reach provider during token exchange")

    monkeypatch.setattr(accounts.graph_api, "exchange_token", unavailable)

    response = authorized_client.post("/api/v1/account/refresh-token")

    assert response.status_code == 502
    assert response.json()["error_code"] == "provider_unavailable"


def test_debug_token_without_identity(authorized_client):
    response = authorized_client.get("/api/v1/account/debug-token")

    assert response.status_code == 200
    assert response.json()["has_account"] is False
    assert response.json()["error"] == "No Facebook account connected"


def test_debug_token_reports_scopes_and_profile(authorized_client, facebook_identity, monkeypatch):
    monkeypatch.setattr(
        accounts.graph_api,
        "introspect_token",
        lambda _token: graph_api.TokenIntrospection(
            valid=True, scopes=frozenset({"pages_show_list", "email"})
        ),
    )
    monkeypatch.setattr(
        accounts.graph_api, "fetch_profile", lambda _token: {"id": "pa1", "name": "Page Admin"}
    )

    response = authorized_client.get("/api/v1/account/debug-token")

    payload = response.json()
    assert payload["has_account"] is True
    assert payload["is_valid"] is True
    assert payload["scopes"] == ["email", "pages_show_list"]
    assert payload["token_preview"] == "EAAB-long-lived-user..."
    assert payload["profile"] == {"id": "pa1", "name": "Page Admin"}
    assert payload["token_debug_error"] is None


def test_debug_token_collects_partial_failures(authorized_client, facebook_identity, monkeypatch):
    def failing(*_args, **_kwargs):
        raise graph_api.GraphAPIError("Provider rejected token introspection", status_code=400)

    monkeypatch.setattr(accounts.graph_api, "introspect_token", failing)
    monkeypatch.setattr(accounts.graph_api, "fetch_profile", lambda _token: {"id": "pa1"})

    response = authorized_client.get("/api/v1/account/debug-token")

    payload = response.json()
    assert response.status_code == 200
    assert payload["is_valid"] is None
    assert payload["token_debug_error"] == "Provider rejected token introspection"
    assert payload["profile"] == {"id": "pa1"}
