# src/roadtax_mvp/api/routes.py
"""
VED calculation and quote endpoints.

Notes:
- Vehicle data arrives already fetched from the registry lookup; nothing here
  calls DVLA or touches storage.
- Undeterminable vehicles are a normal 200 response with both rates null and
  a reason code; only malformed input is rejected.
"""

from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Optional, Union

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field, StrictInt, StrictStr

from ..rules.commission import InvalidPreference, TaxPreference
from ..rules.rates_loader import RateTableError, load_ved_rates
from ..rules.registration import parse_registration_mark, normalise_mark
from ..rules.ved_engine import VedEngine, VehicleAttributes, era_for_date
from ..settings import settings

logger = logging.getLogger("roadtax-api")

router = APIRouter(prefix="/api/v1/ved", tags=["Vehicle Excise Duty"])

# ============ Pydantic Models ============

class VehicleInput(BaseModel):
    registration_number: str = Field(..., examples=["AB12CDE"])
    year_of_manufacture: Optional[int] = Field(None, ge=1, le=9998, examples=[2020])
    co2_emissions: Optional[int] = Field(None, ge=0, examples=[145])
    engine_capacity: Optional[int] = Field(None, ge=0, examples=[1600])
    fuel_type: Optional[str] = Field(None, examples=["PETROL"])
    euro_status: Optional[str] = Field(None, examples=["EURO 6d"])
    type_approval: Optional[str] = Field(None, examples=["M1"])
    list_price: Optional[Decimal] = Field(None, ge=0, examples=["42000.00"])

    def to_attributes(self) -> VehicleAttributes:
        return VehicleAttributes(
            registration_number=self.registration_number,
            year_of_manufacture=self.year_of_manufacture,
            co2_emissions=self.co2_emissions,
            engine_capacity=self.engine_capacity,
            fuel_type=self.fuel_type,
            euro_status=self.euro_status,
            type_approval=self.type_approval,
            list_price=self.list_price,
        )


class CalculateRequest(BaseModel):
    vehicle: VehicleInput
    today: Optional[date] = Field(None, description="Pin the calculation date (defaults to today)")


class QuoteRequest(CalculateRequest):
    preference: Union[StrictInt, StrictStr] = Field(
        ..., examples=[2], description="1 = 6 months, 2 = 12 months, 3 = direct debit setup"
    )


# ============ Dependencies ============

def get_engine(today: Optional[date] = None) -> VedEngine:
    try:
        rates = load_ved_rates(today, registry_path=settings.ved_rates_path)
    except RateTableError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return VedEngine(rates, today=today)


def _engine_for(req: CalculateRequest) -> VedEngine:
    return get_engine(req.today)


# ============ Endpoints ============

@router.post("/calculate")
def calculate(req: CalculateRequest) -> Dict[str, Any]:
    engine = _engine_for(req)
    try:
        result = engine.calculate(req.vehicle.to_attributes())
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    payload = result.to_dict()
    payload["rates_effective"] = engine.rates.effective.isoformat()
    return payload


@router.post("/quote")
def quote(req: QuoteRequest) -> Dict[str, Any]:
    try:
        preference = TaxPreference.parse(req.preference)
    except InvalidPreference as exc:
        raise HTTPException(status_code=422, detail=str(exc))

    engine = _engine_for(req)
    try:
        priced = engine.quote(req.vehicle.to_attributes(), preference)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    except Exception:
        logger.exception("Quote failed for %s", req.vehicle.registration_number)
        raise HTTPException(status_code=500, detail="quote calculation failed")

    if priced.commission_only:
        logger.warning(
            "Commission-only quote for %s (%s); manual pricing review required",
            req.vehicle.registration_number,
            priced.result.reason.value,
        )
    payload = priced.to_dict()
    payload["rates_effective"] = engine.rates.effective.isoformat()
    return payload


@router.get("/registration/{mark}")
def registration(mark: str) -> Dict[str, Any]:
    resolved = parse_registration_mark(mark)
    if resolved is None:
        raise HTTPException(status_code=404, detail=f"Unrecognised registration mark {normalise_mark(mark)!r}")
    return {
        "registration_number": normalise_mark(mark),
        "date": resolved.registered_on.isoformat(),
        "source": resolved.source.value,
        "era": era_for_date(resolved.registered_on).value,
    }
