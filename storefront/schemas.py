from datetime import datetime
from decimal import Decimal
from typing import Annotated, Dict, List, Optional

from pydantic import BaseModel, Field, PlainSerializer

# Amounts and rates stay Decimal in Python but go out as JSON numbers
JsonNumber = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


class CurrencyOut(BaseModel):
    code: str
    name: str
    symbol: str
    exchange_rate: Decimal
    decimal_places: int
    is_base: bool
    is_active: bool
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class CurrencyListResponse(BaseModel):
    currencies: List[CurrencyOut]


class RatesResponse(BaseModel):
    base: str
    rates: Dict[str, JsonNumber]
    currencies: List[CurrencyOut]
    last_updated: Optional[datetime] = None


class ConversionSource(BaseModel):
    code: str
    amount: JsonNumber


class ConversionTarget(ConversionSource):
    symbol: str


class ConversionResponse(BaseModel):
    source: ConversionSource = Field(..., serialization_alias="from")
    target: ConversionTarget = Field(..., serialization_alias="to")
    rate: JsonNumber
