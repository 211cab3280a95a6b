import logging
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable, Optional
from uuid import UUID

from ..persistence import Persistence
from ..schemas import TransactionStatsResponse

logger = logging.getLogger(__name__)

PAID_INVOICE_CATEGORY = "Vente de services"
REMINDER_WINDOW = timedelta(minutes=1)


def paid_invoice_description(invoice_number: str) -> str:
    return f"Facture {invoice_number} payée"


def record_invoice_payment(
    persistence: Persistence,
    user_id: UUID,
    invoice: dict[str, Any],
    today: Optional[date] = None,
) -> Optional[dict[str, Any]]:
    """Create the income transaction for a paid invoice unless one already exists.

    The lookup and the insert are two separate store calls, so two
    concurrent paid transitions can still both insert.
    """
    description = paid_invoice_description(invoice["invoice_number"])
    existing = persistence.list_rows("transactions", user_id, filters={"description": description}, limit=1)
    if existing:
        return None
    row = persistence.insert_row(
        "transactions",
        user_id,
        {
            "type": "income",
            "amount": invoice["amount"],
            "currency_code": invoice.get("currency_code"),
            "description": description,
            "category": PAID_INVOICE_CATEGORY,
            "date": today or date.today(),
            "client_id": invoice.get("client_id"),
        },
    )
    logger.info("recorded income transaction %s for paid invoice %s", row["id"], invoice["id"])
    return row


def transaction_stats(rows: Iterable[dict[str, Any]]) -> TransactionStatsResponse:
    totals = {"income": Decimal("0"), "expense": Decimal("0"), "savings": Decimal("0")}
    for row in rows:
        if row.get("type") in totals:
            totals[row["type"]] += Decimal(str(row.get("amount") or 0))
    income, expenses, savings = totals["income"], totals["expense"], totals["savings"]
    percentage = 0
    if income > 0:
        percentage = int((expenses / income * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return TransactionStatsResponse(
        totalIncome=income,
        totalExpenses=expenses,
        totalSavings=savings,
        balance=income - expenses - savings,
        percentageSpent=percentage,
    )


def reminder_moment(task: dict[str, Any]) -> Optional[datetime]:
    if task.get("due_date") is None or task.get("due_time") is None or not task.get("reminder_minutes"):
        return None
    due = datetime.combine(task["due_date"], task["due_time"])
    return due - timedelta(minutes=task["reminder_minutes"])


def due_reminders(tasks: Iterable[dict[str, Any]], now: datetime) -> list[dict[str, Any]]:
    """Incomplete tasks due today whose reminder moment fell within the last minute."""
    due = []
    for task in tasks:
        if task.get("completed") or task.get("reminder_sent"):
            continue
        if task.get("due_date") != now.date():
            continue
        moment = reminder_moment(task)
        if moment is not None and timedelta(0) <= now - moment < REMINDER_WINDOW:
            due.append(task)
    return due
