from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from ..crud import get_active_currencies
from ..currency import conversion_quote
from ..database import get_db
from ..exchange_rates import BASE_CURRENCY
from ..schemas import ConversionResponse, CurrencyListResponse, RatesResponse

router = APIRouter(prefix="/currencies", tags=["Currencies"])


@router.get("/", response_model=CurrencyListResponse)
def list_currencies(db: Session = Depends(get_db)):
    return {"currencies": get_active_currencies(db)}


@router.get("/rates", response_model=RatesResponse)
def exchange_rates(request: Request, db: Session = Depends(get_db)):
    currencies = get_active_currencies(db)
    refresher = getattr(request.app.state, "rate_refresher", None)
    return {
        "base": BASE_CURRENCY["code"],
        "rates": {c.code: c.exchange_rate for c in currencies},
        "currencies": currencies,
        "last_updated": refresher.last_updated if refresher else None,
    }


@router.get("/convert", response_model=ConversionResponse, response_model_by_alias=True)
def convert_amount(
    amount: Optional[str] = Query(None, description="**Amount** to convert"),
    from_code: str = Query("UGX", alias="from", description="**Source** currency code"),
    to_code: str = Query("USD", alias="to", description="**Target** currency code"),
    db: Session = Depends(get_db),
):
    try:
        quote = conversion_quote(db, amount, from_code, to_code)
    except ValueError as e:
        msg = str(e)
        if msg == "invalid_amount":
            raise HTTPException(status_code=400, detail="Invalid amount")
        if msg.startswith("unknown_currency:"):
            _, code = msg.split(":", 1)
            raise HTTPException(
                status_code=400,
                detail={"error": "invalid_currency_code", "code": code},
            )
        raise HTTPException(status_code=400, detail=msg)

    return {"source": quote["from"], "target": quote["to"], "rate": quote["rate"]}
