import calendar
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Optional, Protocol
from uuid import UUID

from ..schemas import SubscriptionResponse

logger = logging.getLogger(__name__)

PAID_PLANS = ("pro", "business")
SUCCESS_STATUSES = ("success", "paid", "completed", "successful")

# Monthly sales accepted through the external API, per plan.
API_SALES_PER_MONTH = {"free": 50, "pro": 1000, "business": 10000}


@dataclass(frozen=True)
class PlanPrice:
    amount: Decimal
    currency: str
    label: str


PLAN_PRICES: dict[str, dict[str, PlanPrice]] = {
    "payplug": {
        "pro": PlanPrice(Decimal("7.00"), "EUR", "MONEYA Pro - 7€/mois"),
        "business": PlanPrice(Decimal("17.00"), "EUR", "MONEYA Business - 17€/mois"),
    },
    "moneroo": {
        "pro": PlanPrice(Decimal("2000"), "XOF", "MONEYA Pro - 2000 FCFA/mois"),
        "business": PlanPrice(Decimal("4500"), "XOF", "MONEYA Business - 4500 FCFA/mois"),
    },
}


@dataclass(frozen=True)
class CheckoutSession:
    payment_url: str
    payment_id: str


class CheckoutGateway(Protocol):
    """Creates a hosted payment page at a payment provider."""

    def create_payment(
        self,
        *,
        user_id: UUID,
        email: str,
        user_name: Optional[str],
        plan: str,
        price: PlanPrice,
    ) -> CheckoutSession:
        ...


def plan_price(provider: str, plan: str) -> PlanPrice:
    try:
        return PLAN_PRICES[provider][plan]
    except KeyError as exc:
        raise LookupError("Invalid plan selected") from exc


def add_one_month(moment: datetime) -> datetime:
    year = moment.year + moment.month // 12
    month = moment.month % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def is_success_status(status: str) -> bool:
    return status.strip().lower() in SUCCESS_STATUSES


def _aware(moment: Optional[datetime]) -> Optional[datetime]:
    if moment is not None and moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def resolve_subscription(row: Optional[dict[str, Any]], now: Optional[datetime] = None) -> SubscriptionResponse:
    now = now or datetime.now(timezone.utc)
    if row is None:
        return SubscriptionResponse(plan="free", status="active", isActive=True, isPaid=False)
    plan = row.get("plan") or "free"
    status = row.get("status") or "active"
    expires_at = _aware(row.get("expires_at"))
    if expires_at is not None and expires_at < now:
        plan, status = "free", "expired"
    is_active = status == "active"
    return SubscriptionResponse(
        plan=plan,
        status=status,
        isActive=is_active,
        isPaid=is_active and plan in PAID_PLANS,
        startedAt=row.get("started_at"),
        expiresAt=expires_at,
        paymentId=row.get("payment_id"),
    )


def activation_values(current: Optional[dict[str, Any]], payment: dict[str, Any], now: Optional[datetime] = None) -> dict[str, Any]:
    """Subscription columns for a confirmed payment; extends a running period of the same plan."""
    now = now or datetime.now(timezone.utc)
    start = now
    started_at = now
    if current is not None:
        expires_at = _aware(current.get("expires_at"))
        if current.get("plan") == payment["plan"] and current.get("status") == "active" and expires_at and expires_at > now:
            start = expires_at
            started_at = current.get("started_at") or now
    return {
        "plan": payment["plan"],
        "status": "active",
        "payment_id": payment["provider_payment_id"],
        "amount": payment.get("amount"),
        "currency": payment.get("currency"),
        "started_at": started_at,
        "expires_at": add_one_month(start),
    }


def granted_plan_values(plan: str, duration_days: int, now: Optional[datetime] = None) -> dict[str, Any]:
    """Columns for a plan set by an administrator; the free plan never expires."""
    now = now or datetime.now(timezone.utc)
    return {
        "plan": plan,
        "status": "active",
        "started_at": now,
        "expires_at": None if plan == "free" else now + timedelta(days=duration_days),
    }


def extended_values(current: Optional[dict[str, Any]], days: int, now: Optional[datetime] = None) -> dict[str, Any]:
    if current is None or (current.get("plan") or "free") == "free":
        raise LookupError("user has no paid subscription to extend")
    now = now or datetime.now(timezone.utc)
    expires_at = _aware(current.get("expires_at")) or now
    return {"status": "active", "expires_at": expires_at + timedelta(days=days)}


def revoked_values(now: Optional[datetime] = None) -> dict[str, Any]:
    return {"plan": "free", "status": "revoked", "expires_at": now or datetime.now(timezone.utc)}


def api_sales_limit(plan: str, owner: bool = False) -> int:
    return API_SALES_PER_MONTH["business" if owner else plan]
