from fastapi.testclient import TestClient

from budget_tracker.auth_utils import issue_session_token, verify_session_token
from budget_tracker.config import settings
from budget_tracker.main import app

client = TestClient(app)


def test_health_is_public() -> None:
    res = client.get("/api/health")
    assert res.status_code == 200
    assert res.json() == {"status": "ok"}


def test_categories_without_token_return_401() -> None:
    assert client.get("/api/categories").status_code == 401
    assert client.post("/api/categories", json={"name": "Food", "icon": "x", "type": "expense"}).status_code == 401
    assert client.put("/api/settings/currency", json={"currency": "EUR"}).status_code == 401


def test_stats_without_token_redirect_to_sign_in() -> None:
    for path in ["/api/stats/balance", "/api/stats/monthly", "/api/user-settings", "/api/history/periods"]:
        res = client.get(path, params={"from": "2025-01-01", "to": "2025-01-02"}, follow_redirects=False)
        assert res.status_code == 302
        assert res.headers["location"] == settings.sign_in_url


def test_tampered_token_is_rejected() -> None:
    token = issue_session_token("user_a", settings.identity_provider_secret)
    user_part, expires, signature = token.rsplit(".", 2)
    forged = f"user_b.{expires}.{signature}"
    res = client.get("/api/categories", headers={"Authorization": f"Bearer {forged}"})
    assert res.status_code == 401


def test_expired_token_is_rejected() -> None:
    token = issue_session_token("user_a", settings.identity_provider_secret, ttl_seconds=-10)
    res = client.get("/api/categories", headers={"Authorization": f"Bearer {token}"})
    assert res.status_code == 401


def test_token_signed_with_other_secret_is_rejected() -> None:
    token = issue_session_token("user_a", "not-the-provider-secret")
    assert verify_session_token(token, settings.identity_provider_secret) is None


def test_session_cookie_is_accepted(user_id) -> None:
    token = issue_session_token(user_id, settings.identity_provider_secret)
    cookie_client = TestClient(app, cookies={settings.session_cookie_name: token})
    res = cookie_client.get("/api/user-settings")
    assert res.status_code == 200
    assert res.json()["userId"] == user_id


def test_verify_session_token_roundtrip() -> None:
    token = issue_session_token("user_with.dots", "secret")
    assert verify_session_token(token, "secret") == "user_with.dots"
    assert verify_session_token("garbage", "secret") is None
    assert verify_session_token("a.notanumber.sig", "secret") is None


def test_non_bearer_header_falls_back_to_session_cookie(user_id) -> None:
    token = issue_session_token(user_id, settings.identity_provider_secret)
    cookie_client = TestClient(app, cookies={settings.session_cookie_name: token})
    basic = {"Authorization": "Basic dXNlcjpwYXNz"}

    assert cookie_client.get("/api/categories", headers=basic).status_code == 200
    res = cookie_client.get("/api/user-settings", headers=basic)
    assert res.status_code == 200
    assert res.json()["userId"] == user_id


def test_non_bearer_header_without_cookie_is_unauthenticated() -> None:
    basic = {"Authorization": "Basic dXNlcjpwYXNz"}
    assert client.get("/api/categories", headers=basic).status_code == 401
    res = client.get("/api/stats/balance", params={"from": "2025-01-01", "to": "2025-01-02"}, headers=basic, follow_redirects=False)
    assert res.status_code == 302
