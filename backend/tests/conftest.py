from typing import Callable

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from moneya.config import Settings
from moneya.main import create_app
from moneya.services.exchange_rates import StaticRateProvider

OWNER_EMAIL = "owner@example.com"


@pytest.fixture
def settings() -> Settings:
    return Settings(
        storage_backend="memory",
        owner_emails=(OWNER_EMAIL,),
        exchange_rates_app_id=None,
        currency_sync_max_attempts=3,
        default_currency="EUR",
        default_language="fr",
    )


@pytest.fixture
def app(settings: Settings) -> FastAPI:
    return create_app(settings, rate_provider=StaticRateProvider())


@pytest.fixture
def client(app: FastAPI) -> TestClient:
    return TestClient(app)


@pytest.fixture
def register(client: TestClient) -> Callable[..., dict[str, str]]:
    def _register(email: str = "tester@example.com", password: str = "Secret123!", full_name: str = "Test User") -> dict[str, str]:
        res = client.post(
            "/api/v1/auth/register",
            json={"email": email, "password": password, "fullName": full_name},
        )
        assert res.status_code == 201
        return {"Authorization": f"Bearer {res.json()['token']}"}

    return _register


@pytest.fixture
def headers(register: Callable[..., dict[str, str]]) -> dict[str, str]:
    return register()
