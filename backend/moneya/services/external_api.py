import json
import logging
import time
from datetime import date, datetime, timezone
from typing import TYPE_CHECKING, Any, ClassVar, Optional

from pydantic import BaseModel, ValidationError

from ..auth_utils import hash_api_key
from ..persistence import Persistence
from ..schemas import ExternalClientRequest, ExternalSaleRequest
from .billing import api_sales_limit, resolve_subscription

if TYPE_CHECKING:
    from ..state import ViewCache

logger = logging.getLogger(__name__)

CLIENTS_ENDPOINT = "/api/v1/external/clients"
SALES_ENDPOINT = "/api/v1/external/sales"

Outcome = tuple[int, dict[str, Any]]


def _error(status_code: int, message: str, code: str, **extra: Any) -> Outcome:
    return status_code, {"error": message, "code": code, **extra}


def _source_of(body: Any) -> Optional[str]:
    source = body.get("source") if isinstance(body, dict) else None
    return source[:100] if isinstance(source, str) else None


class ExternalApiHandler:
    """API-key authenticated endpoint: checks the key, validates the body and logs every call to ``api_logs``.

    Subclasses set ``endpoint`` and ``request_model`` and implement ``check_access`` and ``process``.
    Calls without a usable key are not logged since there is no owner to attach them to.
    """

    endpoint: ClassVar[str] = ""
    request_model: ClassVar[type[BaseModel]]

    def __init__(self, persistence: Persistence, views: "ViewCache", default_currency: str = "EUR") -> None:
        self.persistence = persistence
        self.views = views
        self.default_currency = default_currency

    def _log(
        self,
        key_row: dict[str, Any],
        status_code: int,
        started: float,
        ip_address: Optional[str],
        body: Any = None,
        error_message: Optional[str] = None,
    ) -> None:
        self.persistence.insert_row(
            "api_logs",
            key_row["user_id"],
            {
                "api_key_id": key_row["id"],
                "endpoint": self.endpoint,
                "method": "POST",
                "source": _source_of(body),
                "status_code": status_code,
                "error_message": error_message,
                "ip_address": ip_address,
                "request_body": json.dumps(body, default=str) if body is not None else None,
                "response_time_ms": int((time.monotonic() - started) * 1000),
            },
        )

    def check_access(self, key_row: dict[str, Any]) -> Optional[tuple[Outcome, str]]:
        return None

    def process(self, key_row: dict[str, Any], payload: Any) -> tuple[Outcome, Optional[str]]:
        raise NotImplementedError

    def handle(self, raw_key: Optional[str], body: Any, ip_address: Optional[str]) -> Outcome:
        started = time.monotonic()
        if not raw_key:
            logger.info("%s called without API key", self.endpoint)
            return _error(401, "API key required", "MISSING_API_KEY")

        key_row = self.persistence.find_api_key_by_hash(hash_api_key(raw_key))
        if key_row is None:
            logger.info("%s called with unknown API key", self.endpoint)
            return _error(401, "Invalid API key", "INVALID_API_KEY")

        if not key_row.get("is_active"):
            self._log(key_row, 403, started, ip_address, error_message="API key disabled")
            return _error(403, "API key is disabled", "KEY_DISABLED")
        expires_at = key_row.get("expires_at")
        if expires_at is not None:
            if expires_at.tzinfo is None:
                expires_at = expires_at.replace(tzinfo=timezone.utc)
            if expires_at < datetime.now(timezone.utc):
                self._log(key_row, 403, started, ip_address, error_message="API key expired")
                return _error(403, "API key is expired", "KEY_EXPIRED")

        denied = self.check_access(key_row)
        if denied is not None:
            outcome, error_message = denied
            self._log(key_row, outcome[0], started, ip_address, error_message=error_message)
            return outcome

        if not isinstance(body, dict):
            self._log(key_row, 400, started, ip_address, error_message="Invalid JSON")
            return _error(400, "Invalid JSON body", "INVALID_JSON")
        try:
            payload = self.request_model.model_validate(body)
        except ValidationError as exc:
            details = [
                {"field": ".".join(str(part) for part in err["loc"]) or "body", "message": err["msg"]}
                for err in exc.errors()
            ]
            self._log(key_row, 400, started, ip_address, body, "Invalid fields")
            return _error(400, "Invalid request body", "VALIDATION_ERROR", details=details)

        (status_code, content), error_message = self.process(key_row, payload)
        if status_code < 400:
            self.persistence.update_row(
                "api_keys", key_row["user_id"], key_row["id"], {"last_used_at": datetime.now(timezone.utc)}
            )
        self._log(key_row, status_code, started, ip_address, body, error_message)
        return status_code, content


def _merged_notes(existing: Optional[str], incoming: Optional[str]) -> Optional[str]:
    if not incoming:
        return existing
    return f"{existing or ''}\n{incoming}".strip()


class ExternalClientImporter(ExternalApiHandler):
    """Creates or updates a client, matching an existing one by email then phone."""

    endpoint = CLIENTS_ENDPOINT
    request_model = ExternalClientRequest

    def check_access(self, key_row: dict[str, Any]) -> Optional[tuple[Outcome, str]]:
        subscription = resolve_subscription(self.persistence.get_owned_singleton("subscriptions", key_row["user_id"]))
        if subscription.isPaid:
            return None
        outcome = _error(
            403,
            "Client API requires Pro or Business plan",
            "UPGRADE_REQUIRED",
            upgrade_url="https://moneya.app/pricing",
        )
        return outcome, "Upgrade required"

    def _find_existing(self, user_id, payload: ExternalClientRequest) -> Optional[dict[str, Any]]:
        for column, value in (("email", payload.email), ("phone", payload.phone)):
            if value:
                rows = self.persistence.list_rows("clients", user_id, filters={column: value}, limit=1)
                if rows:
                    return rows[0]
        return None

    def process(self, key_row: dict[str, Any], payload: ExternalClientRequest) -> tuple[Outcome, Optional[str]]:
        user_id = key_row["user_id"]
        if not payload.name:
            return _error(400, "Client name is required", "VALIDATION_ERROR", required=["name"]), "Missing name"

        existing = self._find_existing(user_id, payload)
        if existing is not None:
            client = self.persistence.update_row(
                "clients",
                user_id,
                existing["id"],
                {
                    "name": payload.name,
                    "email": payload.email or existing.get("email"),
                    "phone": payload.phone or existing.get("phone"),
                    "company": payload.company or existing.get("company"),
                    "notes": _merged_notes(existing.get("notes"), payload.notes),
                    "status": payload.status.value if payload.status else existing.get("status"),
                },
            )
            status_code, action = 200, "updated"
        else:
            client = self.persistence.insert_row(
                "clients",
                user_id,
                {
                    "name": payload.name,
                    "email": payload.email,
                    "phone": payload.phone,
                    "company": payload.company,
                    "notes": payload.notes,
                    "status": payload.status.value if payload.status else "active",
                },
            )
            status_code, action = 201, "created"
        self.views.invalidate(user_id, "clients")
        logger.info("external client %s %s via API key %s", client["id"], action, key_row["key_prefix"])
        body = {
            "success": True,
            "action": action,
            "client": {
                "id": str(client["id"]),
                "name": client["name"],
                "email": client.get("email"),
                "phone": client.get("phone"),
                "company": client.get("company"),
                "status": client.get("status"),
            },
        }
        return (status_code, body), None


class ExternalSaleRecorder(ExternalApiHandler):
    """Records a sale from an outside shop or form as an income transaction, within a monthly quota."""

    endpoint = SALES_ENDPOINT
    request_model = ExternalSaleRequest

    def _month_usage(self, user_id) -> int:
        month_start = datetime.now(timezone.utc).replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        return len(
            self.persistence.list_rows(
                "api_logs",
                user_id,
                filters={"endpoint": SALES_ENDPOINT, "status_code": 201},
                ranges={"created_at": (month_start, None)},
            )
        )

    def _limit(self, user_id) -> int:
        subscription = resolve_subscription(self.persistence.get_owned_singleton("subscriptions", user_id))
        owner = bool(self.persistence.list_rows("user_roles", user_id, filters={"role": "owner"}, limit=1))
        return api_sales_limit(subscription.plan, owner=owner)

    def check_access(self, key_row: dict[str, Any]) -> Optional[tuple[Outcome, str]]:
        used, limit = self._month_usage(key_row["user_id"]), self._limit(key_row["user_id"])
        if used < limit:
            return None
        logger.info("sales quota exceeded for user %s: %d/%d", key_row["user_id"], used, limit)
        return _error(429, "Monthly quota exceeded", "QUOTA_EXCEEDED", current=used, limit=limit), "Monthly quota exceeded"

    def _currency(self, user_id, payload: ExternalSaleRequest) -> str:
        if payload.currency:
            return payload.currency
        profile = self.persistence.get_owned_singleton("profiles", user_id) or {}
        return profile.get("currency_preference") or self.default_currency

    def process(self, key_row: dict[str, Any], payload: ExternalSaleRequest) -> tuple[Outcome, Optional[str]]:
        user_id = key_row["user_id"]
        if payload.amount is None or not payload.category or not payload.source:
            outcome = _error(400, "Missing required fields", "VALIDATION_ERROR", required=["amount", "category", "source"])
            return outcome, "Missing required fields"
        if payload.amount <= 0:
            return _error(400, "Amount must be a positive number", "INVALID_AMOUNT"), "Invalid amount"

        used, limit = self._month_usage(user_id), self._limit(user_id)
        transaction = self.persistence.insert_row(
            "transactions",
            user_id,
            {
                "type": "income",
                "amount": payload.amount,
                "currency_code": self._currency(user_id, payload),
                "category": payload.category,
                "description": payload.description or f"Vente {payload.source} - {payload.category}",
                "date": payload.date or date.today(),
            },
        )
        self.views.invalidate(user_id, "transactions", "transaction-stats")
        logger.info("external sale %s recorded via API key %s", transaction["id"], key_row["key_prefix"])
        body = {
            "success": True,
            "sale": {
                "id": str(transaction["id"]),
                "amount": str(transaction["amount"]),
                "currencyCode": transaction["currency_code"],
                "category": transaction["category"],
                "date": transaction["date"].isoformat(),
                "source": payload.source,
            },
            "quota": {"used": used + 1, "limit": limit, "remaining": limit - used - 1},
        }
        return (201, body), None
