"""
Exchange rate refresh against open.er-api.com (free, no API key needed).

The provider quotes every currency per one USD; rates are stored per one unit of
the store's base currency, so each quote is divided by the base currency's quote.
"""
from __future__ import annotations

import datetime as dt
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Optional

import requests
from sqlalchemy.orm import Session

from . import config, crud
from .scheduler import PeriodicJob

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]

# East African + major currencies to maintain
CURRENCIES = [
    {"code": "UGX", "name": "Ugandan Shilling", "symbol": "USh", "decimal_places": 0, "is_base": True},
    {"code": "USD", "name": "US Dollar", "symbol": "$", "decimal_places": 2, "is_base": False},
    {"code": "KES", "name": "Kenyan Shilling", "symbol": "KSh", "decimal_places": 0, "is_base": False},
    {"code": "TZS", "name": "Tanzanian Shilling", "symbol": "TSh", "decimal_places": 0, "is_base": False},
    {"code": "RWF", "name": "Rwandan Franc", "symbol": "RF", "decimal_places": 0, "is_base": False},
    {"code": "BIF", "name": "Burundian Franc", "symbol": "Fr", "decimal_places": 0, "is_base": False},
    {"code": "ETB", "name": "Ethiopian Birr", "symbol": "Br", "decimal_places": 2, "is_base": False},
    {"code": "SSP", "name": "South Sudanese Pound", "symbol": "£", "decimal_places": 2, "is_base": False},
    {"code": "EUR", "name": "Euro", "symbol": "€", "decimal_places": 2, "is_base": False},
    {"code": "GBP", "name": "British Pound", "symbol": "£", "decimal_places": 2, "is_base": False},
]

BASE_CURRENCY = next(c for c in CURRENCIES if c["is_base"])


class RateFetchError(Exception):
    pass


def _to_rate(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    try:
        rate = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not rate.is_finite() or rate <= 0:
        return None
    return rate


def derive_rates(quotes: Dict[str, Any]) -> Dict[str, Decimal]:
    """Re-base provider quotes onto the base currency.

    Currencies missing from ``quotes`` (or quoted with garbage) are left out.
    Raises RateFetchError when the base currency itself is not quoted.
    """
    base_code = BASE_CURRENCY["code"]
    base_quote = _to_rate(quotes.get(base_code))
    if base_quote is None:
        raise RateFetchError(f"{base_code} rate missing from API response")

    rates: Dict[str, Decimal] = {}
    for c in CURRENCIES:
        if c["is_base"]:
            rates[c["code"]] = Decimal(1)
            continue
        quote = _to_rate(quotes.get(c["code"]))
        if quote is None:
            logger.warning("Rate for %s missing from API response; keeping stored rate", c["code"])
            continue
        rates[c["code"]] = quote / base_quote
    return rates


def fetch_quotes(url: str, timeout: float) -> Dict[str, Any]:
    try:
        response = requests.get(url, timeout=timeout)
    except requests.exceptions.RequestException as e:
        raise RateFetchError(f"Rate API is unavailable: {e}") from e

    if not 200 <= response.status_code < 300:
        raise RateFetchError(f"Rate API returned {response.status_code}")

    try:
        data = response.json()
    except ValueError as e:
        raise RateFetchError("Rate API returned invalid JSON") from e

    rates = data.get("rates") if isinstance(data, dict) else None
    if not isinstance(rates, dict):
        raise RateFetchError("Rate API response has no rates")
    return rates


def ensure_base_currency(db: Session) -> None:
    """Seed the base currency row so base conversions work before the first refresh."""
    base = crud.get_currency_by_code(db, BASE_CURRENCY["code"])
    if base is not None:
        return
    crud.upsert_currency(db, exchange_rate=Decimal(1), **BASE_CURRENCY)
    db.commit()


class ExchangeRateRefresher:
    """Keeps the currency table in line with the rate provider.

    Owns the time of the last successful refresh; nothing else mutates it.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        api_url: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.session_factory = session_factory
        self.api_url = api_url or config.RATE_API_URL
        self.timeout = timeout if timeout is not None else config.RATE_FETCH_TIMEOUT_SECONDS
        self._last_updated: Optional[dt.datetime] = None

    @property
    def last_updated(self) -> Optional[dt.datetime]:
        return self._last_updated

    def refresh(self) -> bool:
        try:
            rates = derive_rates(fetch_quotes(self.api_url, self.timeout))
        except RateFetchError as e:
            logger.error("Failed to fetch exchange rates: %s", e)
            return False

        now = crud.utcnow()
        db = self.session_factory()
        try:
            for c in CURRENCIES:
                rate = rates.get(c["code"])
                if rate is None:
                    continue
                crud.upsert_currency(db, exchange_rate=rate, now=now, **c)
            db.commit()
        except Exception:
            db.rollback()
            logger.exception("Failed to store exchange rates")
            return False
        finally:
            db.close()

        self._last_updated = now
        usd = rates.get("USD")
        logger.info(
            "Exchange rates updated at %s (%s currencies, 1 %s = %s USD)",
            now.isoformat(),
            len(rates),
            BASE_CURRENCY["code"],
            usd if usd is not None else "?",
        )
        return True


def build_rate_refresh_job(
    refresher: ExchangeRateRefresher,
    interval_seconds: Optional[int] = None,
) -> PeriodicJob:
    return PeriodicJob(
        "exchange-rate-refresh",
        refresher.refresh,
        interval_seconds or config.RATE_REFRESH_INTERVAL_SECONDS,
    )
