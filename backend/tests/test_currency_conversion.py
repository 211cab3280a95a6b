from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from moneya.services.billing import add_one_month, resolve_subscription
from moneya.services.currency_sync import (
    MonetaryDocument,
    UnknownCurrencyError,
    convert_amount,
    items_total,
    plan_conversions,
    round2,
)
from moneya.services.exchange_rates import (
    CompositeRateProvider,
    RateProviderUnavailable,
    StaticRateProvider,
    rebase_usd_rates,
)

RATES = {"EUR": Decimal("1"), "USD": Decimal("1.1"), "XOF": Decimal("655.957")}


def _invoice(amount: str, items: list[tuple[str, str]], currency_code: str | None = "EUR") -> MonetaryDocument:
    return MonetaryDocument(
        table="invoices",
        record_id=uuid4(),
        amount=Decimal(amount),
        currency_code=currency_code,
        items=[{"description": f"line {i}", "quantity": Decimal(q), "unit_price": Decimal(p)} for i, (p, q) in enumerate(items)],
    )


def test_round2_rounds_half_up() -> None:
    assert round2(Decimal("0.005")) == Decimal("0.01")
    assert round2(Decimal("0.165")) == Decimal("0.17")
    assert round2(Decimal("2.344")) == Decimal("2.34")


def test_convert_usd_to_eur() -> None:
    assert convert_amount(Decimal("100.00"), "USD", "EUR", RATES) == Decimal("90.91")


def test_convert_matches_formula() -> None:
    amount = Decimal("1234.56")
    expected = round2(amount / RATES["EUR"] * RATES["XOF"])
    assert convert_amount(amount, "EUR", "XOF", RATES) == expected


@pytest.mark.parametrize("amount", ["0.01", "19.99", "100.00", "4999.95"])
def test_round_trip_stays_within_a_cent(amount: str) -> None:
    there = convert_amount(Decimal(amount), "EUR", "USD", RATES)
    back = convert_amount(there, "USD", "EUR", RATES)
    assert abs(back - Decimal(amount)) <= Decimal("0.01")


def test_missing_rate_raises() -> None:
    with pytest.raises(UnknownCurrencyError) as exc:
        convert_amount(Decimal("10"), "GBP", "EUR", RATES)
    assert exc.value.code == "GBP"
    assert isinstance(exc.value, ValueError)


def test_document_items_and_amount_convert_independently() -> None:
    doc = _invoice("130.00", [("50", "2"), ("30", "1")])
    plan = plan_conversions([doc], "EUR", "USD", RATES)

    assert len(plan.conversions) == 1
    conversion = plan.conversions[0]
    assert [item["unit_price"] for item in conversion.items] == [Decimal("55.00"), Decimal("33.00")]
    assert [item["quantity"] for item in conversion.items] == [Decimal("2"), Decimal("1")]
    assert conversion.amount == Decimal("143.00")
    assert conversion.currency_code == "USD"
    assert conversion.expected_currency_code == "EUR"


def test_amount_is_not_recomputed_from_items() -> None:
    doc = _invoice("0.15", [("0.05", "3")])
    conversion = plan_conversions([doc], "EUR", "USD", RATES).conversions[0]

    assert conversion.items[0]["unit_price"] == Decimal("0.06")
    assert items_total(conversion.items) == Decimal("0.18")
    assert conversion.amount == Decimal("0.17")


def test_record_without_currency_code_converts_from_old_currency() -> None:
    doc = MonetaryDocument(table="transactions", record_id=uuid4(), amount=Decimal("100.00"), currency_code=None)
    conversion = plan_conversions([doc], "USD", "EUR", RATES).conversions[0]
    assert conversion.amount == Decimal("90.91")
    assert conversion.expected_currency_code is None
    assert conversion.items is None


def test_record_in_its_own_currency_uses_that_currency() -> None:
    doc = MonetaryDocument(table="transactions", record_id=uuid4(), amount=Decimal("655.96"), currency_code="XOF")
    conversion = plan_conversions([doc], "EUR", "USD", RATES).conversions[0]
    assert conversion.amount == round2(Decimal("655.96") / RATES["XOF"] * RATES["USD"])


def test_records_already_in_target_currency_are_skipped() -> None:
    done = MonetaryDocument(table="transactions", record_id=uuid4(), amount=Decimal("110.00"), currency_code="USD")
    todo = MonetaryDocument(table="transactions", record_id=uuid4(), amount=Decimal("100.00"), currency_code="EUR")
    plan = plan_conversions([done, todo], "EUR", "USD", RATES)
    assert plan.skipped == [done]
    assert [c.record_id for c in plan.conversions] == [todo.record_id]


def test_rebase_open_exchange_rates_payload() -> None:
    rates = rebase_usd_rates({"EUR": 0.92, "XOF": 603.45, "GNF": 8600, "USD": 1})
    assert rates == {
        "EUR": Decimal("1"),
        "USD": Decimal("1.086957"),
        "XOF": Decimal("655.92"),
        "GNF": Decimal("9348"),
    }


def test_rebase_uses_gnf_fallback() -> None:
    assert rebase_usd_rates({"EUR": 0.92, "XOF": 603.45})["GNF"] == Decimal("9200")


def test_rebase_requires_eur_and_xof() -> None:
    with pytest.raises(RateProviderUnavailable):
        rebase_usd_rates({"EUR": 0.92})


class _DownProvider:
    def get_rates(self):
        raise RateProviderUnavailable("offline")


def test_composite_provider_falls_back_to_static_table() -> None:
    provider = CompositeRateProvider(primary=_DownProvider(), fallback=StaticRateProvider())
    assert provider.get_rates() == {
        "EUR": Decimal("1"),
        "USD": Decimal("1.08"),
        "XOF": Decimal("655.96"),
        "GNF": Decimal("9200"),
    }


def test_add_one_month_clamps_to_month_end() -> None:
    assert add_one_month(datetime(2026, 1, 31, tzinfo=timezone.utc)) == datetime(2026, 2, 28, tzinfo=timezone.utc)
    assert add_one_month(datetime(2026, 12, 15, tzinfo=timezone.utc)) == datetime(2027, 1, 15, tzinfo=timezone.utc)


def test_expired_subscription_is_free() -> None:
    row = {"plan": "pro", "status": "active", "expires_at": datetime(2020, 1, 1, tzinfo=timezone.utc)}
    subscription = resolve_subscription(row)
    assert subscription.plan == "free"
    assert subscription.status == "expired"
    assert subscription.isPaid is False
