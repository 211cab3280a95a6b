from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4

OWNED_TABLES = (
    "clients",
    "transactions",
    "invoices",
    "quotations",
    "tasks",
    "calendar_events",
    "user_categories",
    "subscriptions",
    "payments",
    "profiles",
    "profiles_private",
    "user_preferences",
    "api_keys",
    "api_logs",
    "user_roles",
)

DEFAULT_EXPENSE_CATEGORIES = (
    "Outils",
    "Infrastructure",
    "Formation",
    "Marketing",
    "Banque",
    "Transport",
    "Repas",
)

DEFAULT_INCOME_CATEGORIES = (
    "Vente de services",
    "Vente de produits",
    "Consulting",
    "Commission",
    "Subvention",
    "Autre revenu",
)

DEFAULT_SYSTEM_SETTINGS: dict[str, dict[str, Any]] = {
    "maintenance_mode": {"value": False, "description": "Reject sign-ins for non-owner accounts."},
    "registration_enabled": {"value": True, "description": "Allow new accounts to register."},
    "free_max_clients": {"value": 10, "description": "Client limit on the free plan."},
    "free_max_invoices_per_month": {"value": 5, "description": "Invoice limit on the free plan."},
}


class InMemoryStore:
    """Plain dict tables, one instance per application."""

    def __init__(self) -> None:
        self.users: dict[UUID, dict] = {}
        self.user_credentials: dict[UUID, str] = {}
        self.tables: dict[str, dict[UUID, dict]] = {name: {} for name in OWNED_TABLES}
        self.system_settings: dict[str, dict[str, Any]] = {}
        now = self.now()
        for key, entry in DEFAULT_SYSTEM_SETTINGS.items():
            self.system_settings[key] = {
                "id": uuid4(),
                "setting_key": key,
                "setting_value": entry["value"],
                "description": entry["description"],
                "created_at": now,
                "updated_at": now,
            }

    def table(self, name: str) -> dict[UUID, dict]:
        try:
            return self.tables[name]
        except KeyError as exc:
            raise ValueError(f"unknown table: {name}") from exc

    @staticmethod
    def make_id() -> UUID:
        return uuid4()

    @staticmethod
    def now() -> datetime:
        return datetime.now(timezone.utc)
