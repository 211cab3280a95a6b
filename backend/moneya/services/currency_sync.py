"""Batch rewrite of stored amounts when a user's display currency changes.

Rates are expressed relative to EUR (``rates["EUR"] == 1``). A record is
converted from its own ``currency_code`` when it has one, otherwise from
the currency the user is leaving. Invoice and quotation line items are
converted one by one and the document ``amount`` is converted on its own,
so the two can drift apart by rounding.
"""

import logging
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING, Any, Iterable, Mapping, Optional
from uuid import UUID

from ..persistence import StoreError
from ..schemas import CurrencySyncResponse, Notification, NotificationLevel, SyncCounts, SyncScope

if TYPE_CHECKING:
    from ..persistence import Persistence
    from ..state import ViewCache

logger = logging.getLogger(__name__)

TWOPLACES = Decimal("0.01")
INVALIDATED_VIEWS = ("transactions", "transaction-stats", "invoices", "quotations")
TABLE_KINDS = {"transactions": "transactions", "invoices": "documents", "quotations": "documents"}
SCOPE_TABLES = {
    SyncScope.all: ("transactions", "invoices", "quotations"),
    SyncScope.transactions: ("transactions",),
    SyncScope.documents: ("invoices", "quotations"),
}


class UnknownCurrencyError(ValueError):
    def __init__(self, code: str) -> None:
        super().__init__(f"no exchange rate for currency: {code}")
        self.code = code


class CurrencySyncError(RuntimeError):
    """Records could not be read, nothing was written."""


def round2(value: Decimal) -> Decimal:
    return Decimal(value).quantize(TWOPLACES, rounding=ROUND_HALF_UP)


def _rate(rates: Mapping[str, Decimal], code: str) -> Decimal:
    rate = rates.get(code)
    if rate is None or rate <= 0:
        raise UnknownCurrencyError(code)
    return Decimal(rate)


def convert_amount(amount: Any, source: str, target: str, rates: Mapping[str, Decimal]) -> Decimal:
    source_rate = _rate(rates, source)
    target_rate = _rate(rates, target)
    return round2(Decimal(str(amount or 0)) / source_rate * target_rate)


@dataclass(frozen=True)
class MonetaryDocument:
    """Anything carrying an amount in its own currency; items are None for transactions."""

    table: str
    record_id: UUID
    amount: Decimal
    currency_code: Optional[str]
    items: Optional[list[dict[str, Any]]] = None

    @property
    def kind(self) -> str:
        return TABLE_KINDS[self.table]

    @classmethod
    def from_row(cls, table: str, row: dict[str, Any]) -> "MonetaryDocument":
        items = None
        if table != "transactions":
            items = [dict(item) for item in (row.get("items") or [])]
        return cls(
            table=table,
            record_id=row["id"],
            amount=Decimal(str(row.get("amount") or 0)),
            currency_code=row.get("currency_code"),
            items=items,
        )

    def source_currency(self, fallback: str) -> str:
        return self.currency_code or fallback


@dataclass(frozen=True)
class PlannedConversion:
    table: str
    record_id: UUID
    expected_currency_code: Optional[str]
    expected_amount: Decimal
    amount: Decimal
    currency_code: str
    items: Optional[list[dict[str, Any]]] = None

    @property
    def kind(self) -> str:
        return TABLE_KINDS[self.table]


@dataclass
class ConversionPlan:
    conversions: list[PlannedConversion] = field(default_factory=list)
    skipped: list[MonetaryDocument] = field(default_factory=list)


def _convert_items(items: list[dict[str, Any]], source: str, target: str, rates: Mapping[str, Decimal]) -> list[dict[str, Any]]:
    converted = []
    for item in items:
        new_item = dict(item)
        new_item["unit_price"] = convert_amount(item.get("unit_price", 0), source, target, rates)
        converted.append(new_item)
    return converted


def plan_conversions(
    documents: Iterable[MonetaryDocument],
    old_currency: str,
    new_currency: str,
    rates: Mapping[str, Decimal],
) -> ConversionPlan:
    plan = ConversionPlan()
    for document in documents:
        source = document.source_currency(old_currency)
        if source == new_currency:
            plan.skipped.append(document)
            continue
        items = None
        if document.items is not None:
            items = _convert_items(document.items, source, new_currency, rates)
        plan.conversions.append(
            PlannedConversion(
                table=document.table,
                record_id=document.record_id,
                expected_currency_code=document.currency_code,
                expected_amount=document.amount,
                amount=convert_amount(document.amount, source, new_currency, rates),
                currency_code=new_currency,
                items=items,
            )
        )
    return plan


def items_total(items: Iterable[dict[str, Any]]) -> Decimal:
    return sum(
        (Decimal(str(item.get("quantity", 1))) * Decimal(str(item.get("unit_price", 0))) for item in items),
        Decimal("0"),
    )


class CurrencySyncService:
    def __init__(self, persistence: "Persistence", views: "ViewCache", max_attempts: int = 3) -> None:
        self.persistence = persistence
        self.views = views
        self.max_attempts = max(1, max_attempts)

    def _read(self, user_id: UUID, tables: tuple[str, ...], pending: Optional[set[tuple[str, UUID]]]) -> list[MonetaryDocument]:
        if pending is None:
            return [
                MonetaryDocument.from_row(table, row)
                for table in tables
                for row in self.persistence.list_rows(table, user_id)
            ]
        documents = []
        for table, record_id in sorted(pending, key=lambda key: (key[0], str(key[1]))):
            row = self.persistence.get_row(table, user_id, record_id)
            if row is not None:
                documents.append(MonetaryDocument.from_row(table, row))
        return documents

    def sync(
        self,
        user_id: UUID,
        old_currency: str,
        new_currency: str,
        rates: Mapping[str, Decimal],
        scope: SyncScope = SyncScope.all,
    ) -> CurrencySyncResponse:
        counts = {"transactions": SyncCounts(), "documents": SyncCounts()}
        if old_currency == new_currency:
            return CurrencySyncResponse(
                oldCurrency=old_currency,
                newCurrency=new_currency,
                transactions=counts["transactions"],
                documents=counts["documents"],
                attempts=0,
            )

        rates = {code.upper(): Decimal(str(rate)) for code, rate in rates.items()}
        _rate(rates, new_currency)
        tables = SCOPE_TABLES[scope]

        pending: Optional[set[tuple[str, UUID]]] = None
        unresolved: dict[tuple[str, UUID], str] = {}
        attempts = 0
        while attempts < self.max_attempts:
            attempts += 1
            try:
                documents = self._read(user_id, tables, pending)
            except StoreError as exc:
                if pending is None:
                    logger.error("currency sync read failed for user %s: %s", user_id, exc)
                    raise CurrencySyncError("Erreur lors de la conversion des devises") from exc
                logger.warning("currency sync re-read failed on attempt %s: %s", attempts, exc)
                break

            plan = plan_conversions(documents, old_currency, new_currency, rates)
            for document in plan.skipped:
                counts[document.kind].unchanged += 1
                unresolved.pop((document.table, document.record_id), None)
            if pending is not None:
                read_keys = {(d.table, d.record_id) for d in documents}
                for key in pending - read_keys:
                    unresolved.pop(key, None)

            if not plan.conversions:
                pending = set()
                break
            try:
                applied = self.persistence.apply_currency_conversions(user_id, plan.conversions)
            except StoreError as exc:
                logger.warning("currency conversion batch failed on attempt %s: %s", attempts, exc)
                applied = set()

            for conversion in plan.conversions:
                key = (conversion.table, conversion.record_id)
                if conversion.record_id in applied:
                    counts[conversion.kind].converted += 1
                    unresolved.pop(key, None)
                    if conversion.items is not None and items_total(conversion.items) != conversion.amount:
                        logger.info(
                            "%s %s amount %s differs from its items total after conversion",
                            conversion.table,
                            conversion.record_id,
                            conversion.amount,
                        )
                else:
                    unresolved[key] = conversion.kind
            pending = set(unresolved)
            if not pending:
                break

        for kind in unresolved.values():
            counts[kind].failed += 1

        converted = counts["transactions"].converted + counts["documents"].converted
        if converted:
            self.views.invalidate(user_id, *INVALIDATED_VIEWS)
        logger.info(
            "currency sync %s -> %s for user %s: %s converted, %s failed in %s attempt(s)",
            old_currency,
            new_currency,
            user_id,
            converted,
            len(unresolved),
            attempts,
        )
        return CurrencySyncResponse(
            oldCurrency=old_currency,
            newCurrency=new_currency,
            transactions=counts["transactions"],
            documents=counts["documents"],
            attempts=attempts,
            notification=_notification(counts, new_currency),
        )


def _notification(counts: dict[str, SyncCounts], new_currency: str) -> Notification:
    failed = counts["transactions"].failed + counts["documents"].failed
    message = (
        f"{counts['transactions'].converted} transaction(s) convertie(s) et "
        f"{counts['documents'].converted} document(s) mis à jour vers {new_currency}"
    )
    if failed:
        return Notification(level=NotificationLevel.error, message=f"{message}, {failed} en échec")
    return Notification(level=NotificationLevel.success, message=message)
