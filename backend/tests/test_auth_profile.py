from fastapi.testclient import TestClient


def test_register_login_and_me(client: TestClient) -> None:
    reg_res = client.post(
        "/api/v1/auth/register",
        json={"email": "Tester@Example.com", "password": "Secret123!", "fullName": "Test User"},
    )
    assert reg_res.status_code == 201
    assert reg_res.json()["email"] == "tester@example.com"
    assert "moneya_session" in reg_res.cookies

    login_res = client.post("/api/v1/auth/login", json={"email": "tester@example.com", "password": "Secret123!"})
    assert login_res.status_code == 200
    headers = {"Authorization": f"Bearer {login_res.json()['token']}"}

    me = client.get("/api/v1/auth/me", headers=headers)
    assert me.status_code == 200
    assert me.json()["fullName"] == "Test User"


def test_duplicate_registration_returns_409(client: TestClient, register) -> None:
    register()
    res = client.post(
        "/api/v1/auth/register",
        json={"email": "tester@example.com", "password": "Another123!", "fullName": "Again"},
    )
    assert res.status_code == 409


def test_wrong_password_returns_401(client: TestClient, register) -> None:
    register()
    res = client.post("/api/v1/auth/login", json={"email": "tester@example.com", "password": "nope-nope"})
    assert res.status_code == 401


def test_requests_without_session_are_rejected(app) -> None:
    anonymous = TestClient(app)
    assert anonymous.get("/api/v1/clients").status_code == 401
    res = anonymous.post("/api/v1/clients", json={"name": "ACME"})
    assert res.status_code == 401
    assert anonymous.get("/api/v1/clients", headers={"Authorization": "Bearer unknown"}).status_code == 401
    assert anonymous.get("/api/v1/health").status_code == 200


def test_logout_revokes_token(client: TestClient, headers: dict[str, str]) -> None:
    assert client.post("/api/v1/auth/logout", headers=headers).json() == {"ok": True}
    assert client.get("/api/v1/auth/me", headers=headers).status_code == 401


def test_profile_rows_are_created_once(app, client: TestClient, register) -> None:
    headers = register(full_name="Awa Diallo")
    profile = client.get("/api/v1/profile", headers=headers)
    assert profile.status_code == 200
    assert profile.json()["fullName"] == "Awa Diallo"
    assert profile.json()["isSuspended"] is False

    private = client.get("/api/v1/profile/private", headers=headers)
    assert private.json()["email"] == "tester@example.com"

    for _ in range(2):
        client.post("/api/v1/auth/login", json={"email": "tester@example.com", "password": "Secret123!"})
    store = app.state.moneya.persistence.store
    assert len(store.table("profiles")) == 1
    assert len(store.table("profiles_private")) == 1
    assert len(store.table("user_preferences")) == 1


def test_profile_updates_are_partial(client: TestClient, headers: dict[str, str]) -> None:
    res = client.put("/api/v1/profile", json={"companyName": "Studio Kora"}, headers=headers)
    assert res.status_code == 200
    assert res.json()["companyName"] == "Studio Kora"
    assert res.json()["fullName"] == "Test User"

    private = client.put("/api/v1/profile/private", json={"phone": "+221 77 000 00 00"}, headers=headers)
    assert private.json()["phone"] == "+221 77 000 00 00"
    assert private.json()["email"] == "tester@example.com"


def test_preferences_defaults_and_updates(client: TestClient, headers: dict[str, str]) -> None:
    prefs = client.get("/api/v1/preferences", headers=headers).json()
    assert prefs["language"] == "fr"
    assert prefs["currency"] == "EUR"
    assert prefs["currencyPopupDismissedAt"] is None
    assert prefs["notificationPermission"] == "default"

    assert client.put("/api/v1/preferences/language", json={"language": "en"}, headers=headers).json()["language"] == "en"
    dismissed = client.post("/api/v1/preferences/currency-popup/dismiss", headers=headers).json()
    assert dismissed["currencyPopupDismissedAt"] is not None
    granted = client.put("/api/v1/preferences/notifications", json={"permission": "granted"}, headers=headers).json()
    assert granted["notificationPermission"] == "granted"

    bad = client.put("/api/v1/preferences/language", json={"language": "de"}, headers=headers)
    assert bad.status_code == 422
    assert bad.json()["error"]["code"] == "VALIDATION_ERROR"


def test_delete_account_removes_data(app, client: TestClient, headers: dict[str, str]) -> None:
    client.post("/api/v1/clients", json={"name": "ACME"}, headers=headers)
    res = client.delete("/api/v1/auth/me", headers=headers)
    assert res.json() == {"deleted": True}
    assert client.get("/api/v1/auth/me", headers=headers).status_code == 401
    assert len(app.state.moneya.persistence.store.table("clients")) == 0
    relogin = client.post("/api/v1/auth/login", json={"email": "tester@example.com", "password": "Secret123!"})
    assert relogin.status_code == 401


def test_registration_can_be_disabled(app, client: TestClient) -> None:
    app.state.moneya.persistence.upsert_system_setting("registration_enabled", False, None)
    res = client.post(
        "/api/v1/auth/register",
        json={"email": "late@example.com", "password": "Secret123!"},
    )
    assert res.status_code == 403
