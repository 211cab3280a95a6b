from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Mapping, Protocol

import httpx

logger = logging.getLogger(__name__)

BASE_CURRENCY = "EUR"
GNF_FALLBACK_RATE = Decimal("9200")

# Rates relative to EUR, used whenever live rates cannot be fetched.
DEFAULT_RATES: dict[str, Decimal] = {
    "EUR": Decimal("1"),
    "USD": Decimal("1.08"),
    "XOF": Decimal("655.96"),
    "GNF": GNF_FALLBACK_RATE,
}


class RateProviderUnavailable(RuntimeError):
    """Raised when a rate provider cannot fetch live rates."""


class RateProvider(Protocol):
    def get_rates(self) -> Mapping[str, Decimal]:
        ...


@dataclass(frozen=True)
class StaticRateProvider:
    rates: Mapping[str, Decimal] | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "rates", dict(self.rates or DEFAULT_RATES))

    def get_rates(self) -> Mapping[str, Decimal]:
        return dict(self.rates)


@dataclass(frozen=True)
class CachedRates:
    rates: Mapping[str, Decimal]
    expires_at: float


def _quantize(value: Decimal, places: int) -> Decimal:
    return value.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)


def rebase_usd_rates(usd_rates: Mapping[str, object]) -> dict[str, Decimal]:
    """Turn an Open Exchange Rates payload (USD base) into EUR-based rates."""
    usd_eur = usd_rates.get("EUR")
    usd_xof = usd_rates.get("XOF")
    if not usd_eur or not usd_xof:
        raise RateProviderUnavailable("Missing required exchange rates in response")
    usd_eur = Decimal(str(usd_eur))
    usd_xof = Decimal(str(usd_xof))
    usd_gnf = usd_rates.get("GNF")
    gnf = Decimal(str(usd_gnf)) / usd_eur if usd_gnf else GNF_FALLBACK_RATE
    return {
        "EUR": Decimal("1"),
        "USD": _quantize(Decimal("1") / usd_eur, 6),
        "XOF": _quantize(usd_xof / usd_eur, 2),
        "GNF": _quantize(gnf, 0),
    }


@dataclass
class OpenExchangeRatesProvider:
    app_id: str | None
    url: str = "https://openexchangerates.org/api/latest.json"
    cache_ttl_seconds: int = 3600
    client: httpx.Client | None = None
    _cache: CachedRates | None = field(default=None, repr=False)

    def get_rates(self) -> Mapping[str, Decimal]:
        now = time.monotonic()
        if self._cache and self._cache.expires_at > now:
            return self._cache.rates
        rates = self._fetch_rates()
        self._cache = CachedRates(rates=rates, expires_at=now + self.cache_ttl_seconds)
        return rates

    def _fetch_rates(self) -> dict[str, Decimal]:
        if not self.app_id:
            raise RateProviderUnavailable("Open Exchange Rates App ID not configured")
        params = {"app_id": self.app_id, "symbols": "EUR,USD,XOF,GNF"}
        client = self.client or httpx.Client(timeout=8.0)
        try:
            response = client.get(self.url, params=params)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as exc:
            raise RateProviderUnavailable(f"API Error: {exc.response.status_code}") from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise RateProviderUnavailable("Open Exchange Rates API unavailable") from exc
        finally:
            if self.client is None:
                client.close()

        rates = payload.get("rates") if isinstance(payload, dict) else None
        if not isinstance(rates, dict):
            raise RateProviderUnavailable("Invalid API response: missing rates")
        rebased = rebase_usd_rates(rates)
        logger.info("fetched exchange rates (EUR base): %s", {k: str(v) for k, v in rebased.items()})
        return rebased


@dataclass(frozen=True)
class CompositeRateProvider:
    primary: RateProvider
    fallback: StaticRateProvider

    def get_rates(self) -> Mapping[str, Decimal]:
        try:
            return self.primary.get_rates()
        except RateProviderUnavailable as exc:
            logger.warning("live exchange rates unavailable, using static table: %s", exc)
            return self.fallback.get_rates()
