from decimal import Decimal

import pytest
import requests

from storefront import exchange_rates
from storefront.exchange_rates import (
    CURRENCIES,
    ExchangeRateRefresher,
    RateFetchError,
    derive_rates,
    ensure_base_currency,
)
from storefront.models import Currency

API_URL = "https://rates.example.test/latest/USD"

QUOTES = {
    "USD": 1,
    "UGX": 3700.0,
    "KES": 129.2,
    "TZS": 2650.0,
    "RWF": 1300.0,
    "BIF": 2870.0,
    "ETB": 57.0,
    "SSP": 1300.0,
    "EUR": 0.92,
    "GBP": 0.79,
}


class FakeResponse:
    def __init__(self, status_code=200, payload=None, invalid_json=False):
        self.status_code = status_code
        self._payload = payload
        self._invalid_json = invalid_json

    def json(self):
        if self._invalid_json:
            raise ValueError("not json")
        return self._payload


@pytest.fixture()
def fake_get(monkeypatch):
    calls = []
    state = {"response": FakeResponse(payload={"result": "success", "rates": dict(QUOTES)})}

    def _get(url, timeout=None):
        calls.append({"url": url, "timeout": timeout})
        response = state["response"]
        if isinstance(response, Exception):
            raise response
        return response

    monkeypatch.setattr(exchange_rates.requests, "get", _get)
    state["calls"] = calls
    return state


@pytest.fixture()
def refresher(session_factory):
    return ExchangeRateRefresher(session_factory, api_url=API_URL, timeout=10)


def _rates(db):
    db.expire_all()
    return {c.code: c for c in db.query(Currency).all()}


def test_refresh_upserts_every_tracked_currency(refresher, fake_get, db):
    assert refresher.last_updated is None

    assert refresher.refresh() is True

    rows = _rates(db)
    assert set(rows) == {c["code"] for c in CURRENCIES}
    assert rows["UGX"].is_base is True
    assert Decimal(str(rows["UGX"].exchange_rate)) == 1
    assert float(rows["USD"].exchange_rate) == pytest.approx(1 / 3700.0)
    assert float(rows["KES"].exchange_rate) == pytest.approx(129.2 / 3700.0)
    assert rows["KES"].decimal_places == 0
    assert rows["EUR"].symbol == "€"
    assert all(r.is_active for r in rows.values())
    assert refresher.last_updated is not None
    assert fake_get["calls"] == [{"url": API_URL, "timeout": 10}]


def test_refresh_updates_existing_rows(refresher, fake_get, db, currencies):
    currencies["EUR"].is_active = False
    db.commit()

    assert refresher.refresh() is True

    rows = _rates(db)
    assert float(rows["USD"].exchange_rate) == pytest.approx(1 / 3700.0)
    assert rows["EUR"].is_active is True
    assert db.query(Currency).filter(Currency.code == "USD").count() == 1


def test_missing_quote_leaves_that_currency_unchanged(refresher, fake_get, db, currencies):
    quotes = dict(QUOTES)
    del quotes["KES"]
    fake_get["response"] = FakeResponse(payload={"rates": quotes})

    assert refresher.refresh() is True

    rows = _rates(db)
    assert float(rows["KES"].exchange_rate) == pytest.approx(0.0349)
    assert float(rows["USD"].exchange_rate) == pytest.approx(1 / 3700.0)
    assert "TZS" in rows


def test_base_rate_is_never_taken_from_provider(refresher, fake_get, db):
    fake_get["response"] = FakeResponse(payload={"rates": dict(QUOTES)})

    refresher.refresh()

    assert Decimal(str(_rates(db)["UGX"].exchange_rate)) == 1


@pytest.mark.parametrize(
    "response",
    [
        requests.exceptions.Timeout("timed out"),
        requests.exceptions.ConnectionError("unreachable"),
        FakeResponse(status_code=503, payload={"error": "down"}),
        FakeResponse(invalid_json=True),
        FakeResponse(payload={"result": "error"}),
        FakeResponse(payload={"rates": {"USD": 1, "KES": 129.2}}),
    ],
    ids=["timeout", "connection", "http-503", "bad-json", "no-rates", "no-base-rate"],
)
def test_failed_fetch_keeps_stale_rates(refresher, fake_get, db, currencies, response):
    fake_get["response"] = response

    assert refresher.refresh() is False

    rows = _rates(db)
    assert float(rows["USD"].exchange_rate) == pytest.approx(0.00027)
    assert set(rows) == {"UGX", "USD", "KES", "EUR"}
    assert refresher.last_updated is None


def test_failed_refresh_keeps_previous_timestamp(refresher, fake_get):
    assert refresher.refresh() is True
    first = refresher.last_updated

    fake_get["response"] = FakeResponse(status_code=500)
    assert refresher.refresh() is False
    assert refresher.last_updated == first


def test_derive_rates_skips_garbage_quotes():
    rates = derive_rates({"UGX": 4000, "USD": 1, "KES": "n/a", "EUR": -1, "GBP": True})

    assert rates["UGX"] == Decimal(1)
    assert rates["USD"] == Decimal(1) / Decimal(4000)
    assert "KES" not in rates
    assert "EUR" not in rates
    assert "GBP" not in rates


def test_derive_rates_requires_base_quote():
    with pytest.raises(RateFetchError):
        derive_rates({"USD": 1, "KES": 129.2})


def test_ensure_base_currency_seeds_once(db):
    ensure_base_currency(db)
    ensure_base_currency(db)

    rows = db.query(Currency).all()
    assert [(c.code, c.is_base, c.decimal_places) for c in rows] == [("UGX", True, 0)]
