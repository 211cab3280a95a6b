from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import UUID

import httpx
from fastapi.testclient import TestClient

from moneya.main import create_app
from moneya.services import billing
from moneya.services.billing import CheckoutSession
from moneya.services.exchange_rates import OpenExchangeRatesProvider, StaticRateProvider


class FakeGateway:
    def __init__(self) -> None:
        self.calls: list[dict] = []

    def create_payment(self, *, user_id, email, user_name, plan, price) -> CheckoutSession:
        self.calls.append({"user_id": user_id, "email": email, "user_name": user_name, "plan": plan, "price": price})
        payment_id = f"pay_{len(self.calls)}"
        return CheckoutSession(payment_url=f"https://pay.example.com/{payment_id}", payment_id=payment_id)


def _paid_client(settings) -> tuple[TestClient, FakeGateway, dict[str, str]]:
    gateway = FakeGateway()
    client = TestClient(create_app(settings, rate_provider=StaticRateProvider(), gateways={"payplug": gateway}))
    res = client.post(
        "/api/v1/auth/register",
        json={"email": "payer@example.com", "password": "Secret123!", "fullName": "Fatou Ndiaye"},
    )
    return client, gateway, {"Authorization": f"Bearer {res.json()['token']}"}


def _parse_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _upgrade(client: TestClient, headers: dict[str, str], plan: str = "pro") -> str:
    checkout = client.post("/api/v1/checkout/payplug", json={"plan": plan}, headers=headers).json()
    confirm = client.post("/api/v1/payments/confirm", json={"paymentId": checkout["paymentId"], "status": "paid"})
    assert confirm.json() == {"received": True, "processed": True, "status": "paid"}
    return checkout["paymentId"]


def test_exchange_rates_are_rebased_to_eur(settings) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["app_id"] == "test-app"
        return httpx.Response(200, json={"base": "USD", "rates": {"EUR": 0.92, "USD": 1, "XOF": 603.45}})

    provider = OpenExchangeRatesProvider(app_id="test-app", client=httpx.Client(transport=httpx.MockTransport(handler)))
    client = TestClient(create_app(settings, rate_provider=provider))

    res = client.get("/api/v1/exchange-rates")
    assert res.status_code == 200
    assert res.json() == {
        "result": "success",
        "base": "EUR",
        "rates": {"EUR": 1.0, "USD": 1.086957, "XOF": 655.92, "GNF": 9200.0},
    }


def test_exchange_rates_are_cached(settings) -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={"rates": {"EUR": 0.92, "XOF": 603.45, "GNF": 8600}})

    provider = OpenExchangeRatesProvider(app_id="test-app", client=httpx.Client(transport=httpx.MockTransport(handler)))
    client = TestClient(create_app(settings, rate_provider=provider))
    client.get("/api/v1/exchange-rates")
    client.get("/api/v1/exchange-rates")
    assert len(calls) == 1


def test_exchange_rates_error_payload(settings) -> None:
    client = TestClient(create_app(settings, rate_provider=OpenExchangeRatesProvider(app_id=None)))
    res = client.get("/api/v1/exchange-rates")
    assert res.status_code == 500
    assert res.json() == {"result": "error", "error": "Open Exchange Rates App ID not configured"}


def test_exchange_rates_upstream_failure(settings) -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(503, text="down"))
    provider = OpenExchangeRatesProvider(app_id="test-app", client=httpx.Client(transport=transport))
    res = TestClient(create_app(settings, rate_provider=provider)).get("/api/v1/exchange-rates")
    assert res.status_code == 500
    assert res.json()["error"] == "API Error: 503"


def test_new_user_is_on_free_plan(client: TestClient, headers: dict[str, str]) -> None:
    subscription = client.get("/api/v1/subscription", headers=headers).json()
    assert subscription["plan"] == "free"
    assert subscription["isPaid"] is False


def test_checkout_requires_configured_gateway(client: TestClient, headers: dict[str, str]) -> None:
    res = client.post("/api/v1/checkout/moneroo", json={"plan": "pro"}, headers=headers)
    assert res.status_code == 500
    assert res.json()["detail"] == "Payment service not configured"


def test_checkout_rejects_unknown_plan(settings) -> None:
    client, gateway, headers = _paid_client(settings)
    res = client.post("/api/v1/checkout/payplug", json={"plan": "platinum"}, headers=headers)
    assert res.status_code == 400
    assert res.json()["detail"] == "Invalid plan selected"
    assert gateway.calls == []


def test_checkout_and_confirmation_activate_subscription(settings) -> None:
    client, gateway, headers = _paid_client(settings)
    res = client.post("/api/v1/checkout/payplug", json={"plan": "business"}, headers=headers)
    assert res.status_code == 200
    assert res.json() == {"paymentUrl": "https://pay.example.com/pay_1", "paymentId": "pay_1"}
    assert gateway.calls[0]["price"].amount == Decimal("17.00")
    assert gateway.calls[0]["price"].currency == "EUR"
    assert gateway.calls[0]["user_name"] == "Fatou Ndiaye"

    pending = client.post("/api/v1/payments/confirm", json={"paymentId": "pay_1", "status": "pending"})
    assert pending.json()["processed"] is False
    assert client.get("/api/v1/subscription", headers=headers).json()["plan"] == "free"

    confirmed = client.post("/api/v1/payments/confirm", json={"paymentId": "pay_1", "status": "SUCCESS"})
    assert confirmed.json()["processed"] is True
    subscription = client.get("/api/v1/subscription", headers=headers).json()
    assert subscription["plan"] == "business"
    assert subscription["isPaid"] is True
    assert subscription["paymentId"] == "pay_1"
    expires_at = _parse_timestamp(subscription["expiresAt"])
    assert expires_at > datetime.now(timezone.utc) + timedelta(days=27)


def test_renewal_extends_running_subscription(settings) -> None:
    client, _, headers = _paid_client(settings)
    _upgrade(client, headers)
    first = _parse_timestamp(client.get("/api/v1/subscription", headers=headers).json()["expiresAt"])
    _upgrade(client, headers)
    second = _parse_timestamp(client.get("/api/v1/subscription", headers=headers).json()["expiresAt"])
    assert second > first + timedelta(days=27)


def test_unknown_payment_returns_404(client: TestClient) -> None:
    res = client.post("/api/v1/payments/confirm", json={"paymentId": "missing", "status": "paid"})
    assert res.status_code == 404


def test_api_key_lifecycle(client: TestClient, headers: dict[str, str]) -> None:
    created = client.post("/api/v1/api-keys", json={"name": "Zapier"}, headers=headers)
    assert created.status_code == 201
    body = created.json()
    assert body["key"].startswith("mny_")
    assert len(body["key"]) == 36
    assert body["keyPrefix"] == body["key"][:12]

    listed = client.get("/api/v1/api-keys", headers=headers).json()
    assert len(listed) == 1
    assert "key" not in listed[0]
    assert "keyHash" not in listed[0]

    disabled = client.put(f"/api/v1/api-keys/{body['id']}", json={"isActive": False}, headers=headers)
    assert disabled.json()["isActive"] is False
    assert client.delete(f"/api/v1/api-keys/{body['id']}", headers=headers).json() == {"deleted": True}
    assert client.get("/api/v1/api-keys", headers=headers).json() == []


def test_external_api_rejects_missing_and_unknown_keys(client: TestClient) -> None:
    missing = client.post("/api/v1/external/clients", json={"name": "Lead"})
    assert missing.status_code == 401
    assert missing.json()["code"] == "MISSING_API_KEY"

    unknown = client.post("/api/v1/external/clients", json={"name": "Lead"}, headers={"X-API-Key": "mny_nope"})
    assert unknown.status_code == 401
    assert unknown.json()["code"] == "INVALID_API_KEY"


def test_external_api_requires_paid_plan(client: TestClient, headers: dict[str, str]) -> None:
    key = client.post("/api/v1/api-keys", json={"name": "Site"}, headers=headers).json()["key"]
    res = client.post("/api/v1/external/clients", json={"name": "Lead"}, headers={"X-API-Key": key})
    assert res.status_code == 403
    assert res.json()["code"] == "UPGRADE_REQUIRED"

    logs = client.get("/api/v1/api-logs", headers=headers).json()
    assert [log["statusCode"] for log in logs] == [403]
    assert logs[0]["errorMessage"] == "Upgrade required"


def test_external_api_creates_then_updates_client(settings) -> None:
    client, _, headers = _paid_client(settings)
    _upgrade(client, headers)
    key = client.post("/api/v1/api-keys", json={"name": "Site"}, headers=headers).json()

    created = client.post(
        "/api/v1/external/clients",
        json={"name": "Moussa", "email": "moussa@example.com", "notes": "Formulaire contact", "source": "website"},
        headers={"X-API-Key": key["key"]},
    )
    assert created.status_code == 201
    assert created.json()["action"] == "created"
    assert client.get("/api/v1/clients", headers=headers).json()[0]["name"] == "Moussa"

    updated = client.post(
        "/api/v1/external/clients",
        json={"name": "Moussa Sow", "email": "moussa@example.com", "notes": "Relance", "company": "Sow & Fils"},
        headers={"X-API-Key": key["key"]},
    )
    assert updated.status_code == 200
    assert updated.json()["action"] == "updated"
    assert updated.json()["client"]["company"] == "Sow & Fils"

    clients = client.get("/api/v1/clients", headers=headers).json()
    assert len(clients) == 1
    assert clients[0]["notes"] == "Formulaire contact\nRelance"
    assert clients[0]["name"] == "Moussa Sow"

    missing_name = client.post("/api/v1/external/clients", json={"email": "x@example.com"}, headers={"X-API-Key": key["key"]})
    assert missing_name.status_code == 400

    logs = client.get("/api/v1/api-logs", headers=headers).json()
    assert sorted(log["statusCode"] for log in logs) == [200, 201, 400]
    assert {log["source"] for log in logs} == {"website", None}
    assert client.get("/api/v1/api-keys", headers=headers).json()[0]["lastUsedAt"] is not None

    client.put(f"/api/v1/api-keys/{key['id']}", json={"isActive": False}, headers=headers)
    disabled = client.post("/api/v1/external/clients", json={"name": "Late"}, headers={"X-API-Key": key["key"]})
    assert disabled.status_code == 403
    assert disabled.json()["code"] == "KEY_DISABLED"


def test_admin_requires_owner_role(client: TestClient, headers: dict[str, str]) -> None:
    assert client.get("/api/v1/admin/users", headers=headers).status_code == 403


def test_owner_can_list_suspend_and_configure(client: TestClient, register, settings) -> None:
    owner_email = settings.owner_emails[0]
    member = register(email="member@example.com", full_name="Member")
    owner = register(email=owner_email, full_name="Owner")

    users = client.get("/api/v1/admin/users", headers=owner).json()
    by_email = {user["email"]: user for user in users}
    assert by_email[owner_email]["roles"] == ["owner"]
    assert by_email["member@example.com"]["subscriptionPlan"] == "free"

    member_id = by_email["member@example.com"]["userId"]
    suspended = client.put(f"/api/v1/admin/users/{member_id}/suspension", json={"suspended": True}, headers=owner)
    assert suspended.json()["isSuspended"] is True
    assert client.get("/api/v1/clients", headers=member).status_code == 401
    relogin = client.post("/api/v1/auth/login", json={"email": "member@example.com", "password": "Secret123!"})
    assert relogin.status_code == 403

    client.put(f"/api/v1/admin/users/{member_id}/suspension", json={"suspended": False}, headers=owner)
    relogin = client.post("/api/v1/auth/login", json={"email": "member@example.com", "password": "Secret123!"})
    assert relogin.status_code == 200

    settings_rows = client.get("/api/v1/admin/settings", headers=owner).json()
    assert {row["key"] for row in settings_rows} >= {"maintenance_mode", "registration_enabled"}
    updated = client.put("/api/v1/admin/settings/maintenance_mode", json={"value": True}, headers=owner)
    assert updated.json()["value"] is True
    assert updated.json()["description"] == "Reject sign-ins for non-owner accounts."

    blocked = client.post("/api/v1/auth/login", json={"email": "member@example.com", "password": "Secret123!"})
    assert blocked.status_code == 503
    allowed = client.post("/api/v1/auth/login", json={"email": owner_email, "password": "Secret123!"})
    assert allowed.status_code == 200


def test_suspended_session_gets_403(app, client: TestClient, headers: dict[str, str]) -> None:
    user_id = UUID(client.get("/api/v1/auth/me", headers=headers).json()["userId"])
    app.state.moneya.persistence.upsert_owned_singleton("profiles", user_id, {"is_suspended": True})
    assert client.get("/api/v1/clients", headers=headers).status_code == 403


def test_external_clients_invalid_field_is_logged(settings) -> None:
    client, _, headers = _paid_client(settings)
    _upgrade(client, headers)
    key = client.post("/api/v1/api-keys", json={"name": "Site"}, headers=headers).json()["key"]

    res = client.post(
        "/api/v1/external/clients",
        json={"name": "Lead", "status": "bogus", "source": "website"},
        headers={"X-API-Key": key},
    )
    assert res.status_code == 400
    body = res.json()
    assert body["code"] == "VALIDATION_ERROR"
    assert body["details"][0]["field"] == "status"

    logs = client.get("/api/v1/api-logs", headers=headers).json()
    assert [log["statusCode"] for log in logs] == [400]
    assert logs[0]["errorMessage"] == "Invalid fields"
    assert logs[0]["source"] == "website"


def test_external_sale_records_income_in_owner_currency(client: TestClient, headers: dict[str, str]) -> None:
    client.put("/api/v1/preferences/currency", json={"currency": "XOF", "convertRecords": False}, headers=headers)
    key = client.post("/api/v1/api-keys", json={"name": "Boutique"}, headers=headers).json()["key"]

    res = client.post(
        "/api/v1/external/sales",
        json={"amount": 15000, "category": "Vente", "source": "shopify", "date": "2026-03-02"},
        headers={"X-API-Key": key},
    )
    assert res.status_code == 201
    body = res.json()
    assert body["sale"]["currencyCode"] == "XOF"
    assert body["sale"]["date"] == "2026-03-02"
    assert body["quota"] == {"used": 1, "limit": 50, "remaining": 49}

    tx = client.get("/api/v1/transactions", headers=headers).json()[0]
    assert tx["type"] == "income"
    assert Decimal(tx["amount"]) == Decimal("15000")
    assert tx["description"] == "Vente shopify - Vente"

    logs = client.get("/api/v1/api-logs", headers=headers).json()
    assert [(log["endpoint"], log["statusCode"]) for log in logs] == [("/api/v1/external/sales", 201)]


def test_external_sale_rejects_incomplete_or_negative_sales(client: TestClient, headers: dict[str, str]) -> None:
    key = client.post("/api/v1/api-keys", json={"name": "Boutique"}, headers=headers).json()["key"]

    missing = client.post("/api/v1/external/sales", json={"amount": 10}, headers={"X-API-Key": key})
    assert missing.status_code == 400
    assert missing.json()["required"] == ["amount", "category", "source"]

    negative = client.post(
        "/api/v1/external/sales",
        json={"amount": -5, "category": "Vente", "source": "shop"},
        headers={"X-API-Key": key},
    )
    assert negative.status_code == 400
    assert negative.json()["code"] == "INVALID_AMOUNT"
    assert client.get("/api/v1/transactions", headers=headers).json() == []


def test_external_sale_quota_is_monthly(client: TestClient, headers: dict[str, str], monkeypatch) -> None:
    monkeypatch.setitem(billing.API_SALES_PER_MONTH, "free", 2)
    key = client.post("/api/v1/api-keys", json={"name": "Boutique"}, headers=headers).json()["key"]
    sale = {"amount": 10, "category": "Vente", "source": "shop"}

    for _ in range(2):
        assert client.post("/api/v1/external/sales", json=sale, headers={"X-API-Key": key}).status_code == 201
    over = client.post("/api/v1/external/sales", json=sale, headers={"X-API-Key": key})
    assert over.status_code == 429
    assert over.json() == {"error": "Monthly quota exceeded", "code": "QUOTA_EXCEEDED", "current": 2, "limit": 2}
    assert len(client.get("/api/v1/transactions", headers=headers).json()) == 2


def test_owner_manages_subscriptions(client: TestClient, register, settings) -> None:
    member = register(email="member@example.com", full_name="Member")
    owner = register(email=settings.owner_emails[0], full_name="Owner")
    member_id = client.get("/api/v1/auth/me", headers=member).json()["userId"]

    refused = client.post(f"/api/v1/admin/users/{member_id}/subscription/extend", json={"days": 30}, headers=owner)
    assert refused.status_code == 400

    granted = client.put(
        f"/api/v1/admin/users/{member_id}/subscription",
        json={"plan": "pro", "durationDays": 30},
        headers=owner,
    ).json()
    assert granted["plan"] == "pro"
    assert granted["isPaid"] is True
    assert client.get("/api/v1/subscription", headers=member).json()["plan"] == "pro"

    extended = client.post(f"/api/v1/admin/users/{member_id}/subscription/extend", json={"days": 10}, headers=owner).json()
    delta = _parse_timestamp(extended["expiresAt"]) - _parse_timestamp(granted["expiresAt"])
    assert delta == timedelta(days=10)

    revoked = client.delete(f"/api/v1/admin/users/{member_id}/subscription", headers=owner).json()
    assert revoked["plan"] == "free"
    assert revoked["isPaid"] is False

    missing = client.put(f"/api/v1/admin/users/{UUID(int=0)}/subscription", json={"plan": "pro"}, headers=owner)
    assert missing.status_code == 404
    assert client.put(f"/api/v1/admin/users/{member_id}/subscription", json={"plan": "pro"}, headers=member).status_code == 403


def test_admin_stats_count_users_documents_and_plans(client: TestClient, register, settings) -> None:
    member = register(email="member@example.com", full_name="Member")
    register(email="other@example.com", full_name="Other")
    owner = register(email=settings.owner_emails[0], full_name="Owner")
    member_id = client.get("/api/v1/auth/me", headers=member).json()["userId"]
    client.put(f"/api/v1/admin/users/{member_id}/subscription", json={"plan": "business"}, headers=owner)
    client.post(
        "/api/v1/invoices",
        json={"invoiceNumber": "F-1", "amount": 50, "issueDate": "2026-03-01", "dueDate": "2026-03-31"},
        headers=member,
    )

    stats = client.get("/api/v1/admin/stats", headers=owner).json()
    assert stats == {
        "totalUsers": 3,
        "totalInvoices": 1,
        "totalQuotations": 0,
        "usersByPlan": {"free": 2, "pro": 0, "business": 1},
    }
    assert client.get("/api/v1/admin/stats", headers=member).status_code == 403
