# src/roadtax_mvp/rules/ved_engine.py
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional, Dict, Any, Mapping, Tuple, Union

from .commission import PricedQuote, TaxPreference, price_submission
from .rates_loader import LuxuryPolicy, RatePair, RateTable, load_ved_rates
from .registration import ResolvedRegistration, resolve_registration

logger = logging.getLogger(__name__)

# Boundary dates belong to the newer regime.
MID_ERA_START = date(2001, 3, 1)
POST_2017_START = date(2017, 4, 1)

DAYS_PER_YEAR = Decimal("365.25")

# The first anniversary of 1 January must still be a representable date.
MAX_YEAR_OF_MANUFACTURE = date.max.year - 1


# -------------------------------
# Helpers & common data models
# -------------------------------

def _money(x: Decimal | int | float | str) -> Decimal:
    if not isinstance(x, Decimal):
        x = Decimal(str(x))
    return x.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


class Era(Enum):
    PRE_2001 = "pre_2001"
    MID_2001_2017 = "2001_2017"
    POST_2017 = "post_2017"


class ReasonCode(Enum):
    """Machine-readable counterpart of ``TaxCalculationResult.notes``."""

    # undetermined outcomes
    REGISTRATION_UNRESOLVED = "registration_unresolved"
    NO_ENGINE_BRACKET = "no_engine_bracket"
    NO_CO2_BAND = "no_co2_band"
    NO_FIRST_YEAR_BRACKET = "no_first_year_bracket"
    # determined outcomes
    ENGINE_CAPACITY_BRACKET = "engine_capacity_bracket"
    CO2_BAND = "co2_band"
    LIGHT_GOODS_EURO6 = "light_goods_euro6"
    LIGHT_GOODS_PRE_EURO6 = "light_goods_pre_euro6"
    FIRST_YEAR = "first_year"
    FIRST_YEAR_DIESEL = "first_year_diesel"
    STANDARD_RATE = "standard_rate"
    LUXURY_SURCHARGE = "luxury_surcharge"


@dataclass(frozen=True)
class VehicleAttributes:
    """Vehicle record as supplied by the lookup layer. Never mutated here."""
    registration_number: str = ""
    year_of_manufacture: Optional[int] = None
    co2_emissions: Optional[int] = None       # g/km
    engine_capacity: Optional[int] = None     # cc
    fuel_type: Optional[str] = None
    euro_status: Optional[str] = None
    type_approval: Optional[str] = None
    list_price: Optional[Decimal] = None

    def __post_init__(self) -> None:
        if self.co2_emissions is not None and self.co2_emissions < 0:
            raise ValueError("co2_emissions must be non-negative")
        if self.engine_capacity is not None and self.engine_capacity < 0:
            raise ValueError("engine_capacity must be non-negative")
        if self.year_of_manufacture is not None and not 1 <= self.year_of_manufacture <= MAX_YEAR_OF_MANUFACTURE:
            raise ValueError(f"year_of_manufacture out of range: {self.year_of_manufacture}")
        if self.list_price is not None and not isinstance(self.list_price, Decimal):
            object.__setattr__(self, "list_price", Decimal(str(self.list_price)))
        if self.list_price is not None and self.list_price < 0:
            raise ValueError("list_price must be non-negative")

    @property
    def is_diesel(self) -> bool:
        return "diesel" in (self.fuel_type or "").lower()

    @property
    def is_light_goods(self) -> bool:
        return self.type_approval == "N1"

    @property
    def is_euro6(self) -> bool:
        txt = (self.euro_status or "").lower()
        return "euro 6" in txt or "euro6" in txt

    @classmethod
    def from_dvla(
        cls, payload: Mapping[str, Any], *, list_price: Decimal | int | str | None = None
    ) -> "VehicleAttributes":
        """Map a DVLA Vehicle Enquiry style payload (camelCase keys)."""

        def _int(key: str) -> Optional[int]:
            value = payload.get(key)
            if value is None or value == "":
                return None
            return int(value)

        price = list_price if list_price is not None else payload.get("listPrice")
        return cls(
            registration_number=str(payload.get("registrationNumber") or ""),
            year_of_manufacture=_int("yearOfManufacture"),
            co2_emissions=_int("co2Emissions"),
            engine_capacity=_int("engineCapacity"),
            fuel_type=payload.get("fuelType"),
            euro_status=payload.get("euroStatus"),
            type_approval=payload.get("typeApproval"),
            list_price=None if price in (None, "") else Decimal(str(price)),
        )


@dataclass(frozen=True)
class TaxCalculationResult:
    six_month_rate: Optional[Decimal]
    twelve_month_rate: Optional[Decimal]
    is_first_year: bool
    reason: ReasonCode
    notes: str
    band: Optional[str] = None
    era: Optional[Era] = None
    registration: Optional[ResolvedRegistration] = None
    # attributes that were absent and taken as 0, e.g. ("co2_emissions",)
    assumed: Tuple[str, ...] = ()

    @property
    def is_determined(self) -> bool:
        return self.six_month_rate is not None or self.twelve_month_rate is not None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "six_month_rate": None if self.six_month_rate is None else str(self.six_month_rate),
            "twelve_month_rate": None if self.twelve_month_rate is None else str(self.twelve_month_rate),
            "is_first_year": self.is_first_year,
            "band": self.band,
            "reason": self.reason.value,
            "notes": self.notes,
            "era": self.era.value if self.era else None,
            "registration": None,
            "assumed": list(self.assumed),
        }
        if self.registration:
            payload["registration"] = {
                "date": self.registration.registered_on.isoformat(),
                "source": self.registration.source.value,
                "approximate": self.registration.approximate,
            }
        return payload


def _undetermined(reason: ReasonCode, notes: str, *, first_year: bool = False) -> TaxCalculationResult:
    return TaxCalculationResult(None, None, first_year, reason, notes)


def _from_pair(pair: RatePair, reason: ReasonCode, notes: str, band: Optional[str] = None) -> TaxCalculationResult:
    return TaxCalculationResult(
        six_month_rate=_money(pair.six_month),
        twelve_month_rate=_money(pair.twelve_month),
        is_first_year=False,
        reason=reason,
        notes=notes,
        band=band,
    )


# -------------------------------
# Era cases (one variant per regime)
# -------------------------------

@dataclass(frozen=True)
class Pre2001Case:
    engine_capacity: Optional[int]


@dataclass(frozen=True)
class MidEraCase:
    co2_emissions: Optional[int]


@dataclass(frozen=True)
class Post2017Case:
    registered_on: date
    co2_emissions: Optional[int]
    list_price: Optional[Decimal]
    is_diesel: bool = False
    is_light_goods: bool = False
    is_euro6: bool = False


EraCase = Union[Pre2001Case, MidEraCase, Post2017Case]


def era_for_date(registered_on: date) -> Era:
    if registered_on >= POST_2017_START:
        return Era.POST_2017
    if registered_on >= MID_ERA_START:
        return Era.MID_2001_2017
    return Era.PRE_2001


def build_era_case(vehicle: VehicleAttributes, registered_on: date) -> EraCase:
    era = era_for_date(registered_on)
    if era is Era.PRE_2001:
        return Pre2001Case(engine_capacity=vehicle.engine_capacity)
    if era is Era.MID_2001_2017:
        return MidEraCase(co2_emissions=vehicle.co2_emissions)
    return Post2017Case(
        registered_on=registered_on,
        co2_emissions=vehicle.co2_emissions,
        list_price=vehicle.list_price,
        is_diesel=vehicle.is_diesel,
        is_light_goods=vehicle.is_light_goods,
        is_euro6=vehicle.is_euro6,
    )


def first_anniversary(registered_on: date) -> date:
    try:
        return registered_on.replace(year=registered_on.year + 1)
    except ValueError:
        # 29 February rolls to 1 March
        return date(registered_on.year + 1, 3, 1)


# -------------------------------
# Era calculators
# -------------------------------

def _assumed_zero(result: TaxCalculationResult, field: str, label: str) -> TaxCalculationResult:
    return replace(
        result,
        assumed=result.assumed + (field,),
        notes=f"{result.notes}; {label} unknown, assumed 0",
    )


def calculate_pre_2001(case: Pre2001Case, rates: RateTable) -> TaxCalculationResult:
    """Vehicles registered before 1 March 2001: banded by engine capacity."""
    engine_cc = case.engine_capacity or 0
    result = _undetermined(
        ReasonCode.NO_ENGINE_BRACKET,
        f"Unable to determine tax based on engine capacity: {engine_cc}cc",
    )
    for bracket in rates.pre_2001:
        if bracket.matches(engine_cc):
            result = _from_pair(
                bracket.rates,
                ReasonCode.ENGINE_CAPACITY_BRACKET,
                f"Based on engine capacity: {engine_cc}cc ({bracket.label})",
                band=bracket.label,
            )
            break
    if case.engine_capacity is None:
        result = _assumed_zero(result, "engine_capacity", "engine capacity")
    return result


def calculate_mid_era(case: MidEraCase, rates: RateTable) -> TaxCalculationResult:
    """Vehicles registered 1 March 2001 to 31 March 2017: CO2 bands A-M."""
    co2 = case.co2_emissions or 0
    result = _undetermined(ReasonCode.NO_CO2_BAND, f"Unable to determine tax band for {co2} g/km")
    for band in rates.mid_era:
        if band.matches(co2):
            result = _from_pair(band.rates, ReasonCode.CO2_BAND, f"Tax band {band.label}", band=band.label)
            break
    if case.co2_emissions is None:
        result = _assumed_zero(result, "co2_emissions", "CO2 emissions")
    return result


def luxury_surcharge_applies(
    co2_emissions: Optional[int],
    list_price: Optional[Decimal],
    registered_on: date,
    today: date,
    policy: LuxuryPolicy,
) -> bool:
    """Expensive car supplement check; the zero-emission exemption wins."""
    if co2_emissions == 0 and registered_on < policy.zero_emission_exempt_before:
        return False

    price = list_price or Decimal("0")
    if price >= policy.threshold_list_price:
        elapsed_years = Decimal((today - registered_on).days) / DAYS_PER_YEAR
        return elapsed_years <= policy.applies_for_years
    return False


def _light_goods(case: Post2017Case, rates: RateTable) -> TaxCalculationResult:
    if case.is_euro6:
        return _from_pair(
            rates.light_goods_euro6,
            ReasonCode.LIGHT_GOODS_EURO6,
            "N1 light goods vehicle (EURO 6+) - tc39 rate",
            band="TC39",
        )
    return _from_pair(
        rates.light_goods_pre_euro6,
        ReasonCode.LIGHT_GOODS_PRE_EURO6,
        "N1 light goods vehicle (EURO 5 or below) - tc36 rate",
        band="TC36",
    )


def _first_year(case: Post2017Case, rates: RateTable) -> TaxCalculationResult:
    co2 = case.co2_emissions or 0
    result = _undetermined(
        ReasonCode.NO_FIRST_YEAR_BRACKET,
        f"Unable to determine first year rate for {co2} g/km",
        first_year=True,
    )
    for bracket in rates.first_year:
        if not bracket.matches(co2):
            continue
        # zero-emission vehicles are never charged the diesel rate
        diesel = case.is_diesel and co2 > 0
        rate = bracket.diesel if diesel else bracket.standard
        result = TaxCalculationResult(
            six_month_rate=None,  # first year is 12 months only
            twelve_month_rate=_money(rate),
            is_first_year=True,
            reason=ReasonCode.FIRST_YEAR_DIESEL if diesel else ReasonCode.FIRST_YEAR,
            notes=(
                "First year rate based on CO2 emissions (diesel supplement)"
                if diesel
                else "First year rate based on CO2 emissions"
            ),
            band=bracket.label,
        )
        break
    if case.co2_emissions is None:
        result = _assumed_zero(result, "co2_emissions", "CO2 emissions")
    return result


def _standard(case: Post2017Case, rates: RateTable, today: date) -> TaxCalculationResult:
    if luxury_surcharge_applies(
        case.co2_emissions, case.list_price, case.registered_on, today, rates.luxury_policy
    ):
        return _from_pair(rates.luxury, ReasonCode.LUXURY_SURCHARGE, "Includes luxury vehicle surcharge")
    return _from_pair(rates.standard, ReasonCode.STANDARD_RATE, "Standard rate")


def calculate_post_2017(case: Post2017Case, rates: RateTable, today: date) -> TaxCalculationResult:
    """Vehicles registered on or after 1 April 2017."""
    if case.is_light_goods:
        return _light_goods(case, rates)
    if today < first_anniversary(case.registered_on):
        return _first_year(case, rates)
    return _standard(case, rates, today)


# -------------------------------
# Engine
# -------------------------------

class VedEngine:
    """
    Stateless VED calculator bound to one validated rate table.

      - calculate(vehicle) -> TaxCalculationResult
      - quote(vehicle, preference) -> PricedQuote (tax + commission)

    ``today`` may be pinned per engine or per call; it defaults to the
    system date at call time.
    """

    def __init__(self, rates: RateTable, *, today: Optional[date] = None):
        self.rates = rates
        self.today = today

    @classmethod
    def from_registry(
        cls,
        on: Optional[date] = None,
        *,
        registry_path: Optional[str] = None,
    ) -> "VedEngine":
        return cls(load_ved_rates(on, registry_path=registry_path), today=on)

    def _today(self, today: Optional[date]) -> date:
        return today or self.today or date.today()

    def evaluate(self, case: EraCase, today: date) -> TaxCalculationResult:
        if isinstance(case, Pre2001Case):
            return calculate_pre_2001(case, self.rates)
        if isinstance(case, MidEraCase):
            return calculate_mid_era(case, self.rates)
        if isinstance(case, Post2017Case):
            return calculate_post_2017(case, self.rates, today)
        raise TypeError(f"unknown era case: {case!r}")

    def calculate(self, vehicle: VehicleAttributes, *, today: Optional[date] = None) -> TaxCalculationResult:
        registration = resolve_registration(vehicle)
        if registration is None:
            logger.info("VED undetermined for %r: registration date unresolvable", vehicle.registration_number)
            return _undetermined(ReasonCode.REGISTRATION_UNRESOLVED, "Unable to determine registration date")

        on = self._today(today)
        era = era_for_date(registration.registered_on)
        result = self.evaluate(build_era_case(vehicle, registration.registered_on), on)

        notes = result.notes
        if registration.approximate:
            notes = f"{notes}; {registration.describe()}"
        result = replace(result, era=era, registration=registration, notes=notes)

        if result.is_determined:
            logger.debug(
                "VED %s era=%s reason=%s 6m=%s 12m=%s",
                vehicle.registration_number, era.value, result.reason.value,
                result.six_month_rate, result.twelve_month_rate,
            )
        else:
            logger.info(
                "VED undetermined for %r era=%s reason=%s",
                vehicle.registration_number, era.value, result.reason.value,
            )
        return result

    def quote(
        self,
        vehicle: VehicleAttributes,
        preference: Union[TaxPreference, int, str],
        *,
        today: Optional[date] = None,
    ) -> PricedQuote:
        pref = TaxPreference.parse(preference)
        return price_submission(self.calculate(vehicle, today=today), pref)
