"""VED rate registry loader.

The registry is a JSON document holding one entry per rate year (keyed by the
date those rates took effect). Every version is validated in full when the
file is first read: missing fields raise :class:`MissingRateField`, and
overlapping, gapped or negative data raises :class:`RateTableError`. Nothing
downstream indexes into raw JSON; calculators only see the frozen dataclasses
defined here.
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

__all__ = [
    "MISSING_RATE_FIELD",
    "MissingRateField",
    "RateTableError",
    "RatePair",
    "EngineBracket",
    "Co2Band",
    "FirstYearBracket",
    "LuxuryPolicy",
    "RateTable",
    "load_ved_rates",
    "load_all_ved_rates",
]

logger = logging.getLogger(__name__)


class MissingRateField(KeyError):
    """Raised when an expected field is missing from the rate registry."""

    def __init__(self, field_path: str):
        super().__init__(field_path)
        self.field_path = field_path

    def __str__(self) -> str:  # pragma: no cover - inherited KeyError repr is noisy
        return f"missing required rate field: {self.field_path}"


class RateTableError(ValueError):
    """Raised when the registry is present but inconsistent."""


# Backwards-compatible alias for callers expecting a constant name.
MISSING_RATE_FIELD = MissingRateField

_DEFAULT_REGISTRY_PATH = Path(__file__).with_name("rates_registry.json")

_REQUIRED_VERSION_KEYS = {
    "effective",
    "pre_2001",
    "cars_2001_2017",
    "cars_post_2017",
    "light_goods",
    "luxury_surcharge",
}
_REQUIRED_RATE_KEYS = ("12_month", "6_month_dd")
_REQUIRED_BAND_KEYS = {"band", "co2_min", "co2_max"}
_REQUIRED_FIRST_YEAR_KEYS = {"co2_min", "co2_max", "standard", "all_other_diesel"}
_REQUIRED_POST_2017_KEYS = {"first_year_by_co2", "standard_from_second_year", "luxury_adjusted_rates"}
_REQUIRED_LIGHT_GOODS_KEYS = {"euro6_tc39", "pre_euro6_tc36"}
_REQUIRED_LUXURY_KEYS = {"threshold_list_price", "applies_for_years", "zero_emission_exempt_before"}


# -------------------------------
# Typed rate structures
# -------------------------------

@dataclass(frozen=True)
class RatePair:
    """Six-month (direct debit) and twelve-month rates for one tax class."""
    six_month: Decimal
    twelve_month: Decimal


@dataclass(frozen=True)
class EngineBracket:
    """Pre-2001 bracket. Exactly one of ``cc_max`` / ``cc_min`` is set."""
    rates: RatePair
    cc_max: Optional[int] = None
    cc_min: Optional[int] = None

    def matches(self, engine_cc: int) -> bool:
        if self.cc_max is not None:
            return engine_cc <= self.cc_max
        return engine_cc >= self.cc_min  # type: ignore[operator]

    @property
    def label(self) -> str:
        if self.cc_max is not None:
            return f"up to {self.cc_max}cc"
        return f"{self.cc_min}cc and over"


@dataclass(frozen=True)
class Co2Band:
    label: str
    co2_min: int
    co2_max: Optional[int]  # None = open-ended top band
    rates: RatePair

    def matches(self, co2: int) -> bool:
        return self.co2_min <= co2 and (self.co2_max is None or co2 <= self.co2_max)


@dataclass(frozen=True)
class FirstYearBracket:
    co2_min: int
    co2_max: Optional[int]
    standard: Decimal
    diesel: Decimal

    def matches(self, co2: int) -> bool:
        return self.co2_min <= co2 and (self.co2_max is None or co2 <= self.co2_max)

    @property
    def label(self) -> str:
        if self.co2_max is None:
            return f"{self.co2_min}+ g/km"
        if self.co2_min == self.co2_max:
            return f"{self.co2_min} g/km"
        return f"{self.co2_min}-{self.co2_max} g/km"


@dataclass(frozen=True)
class LuxuryPolicy:
    threshold_list_price: Decimal
    applies_for_years: Decimal
    zero_emission_exempt_before: date


@dataclass(frozen=True)
class RateTable:
    """One validated rate year."""
    effective: date
    pre_2001: Tuple[EngineBracket, ...]
    mid_era: Tuple[Co2Band, ...]
    first_year: Tuple[FirstYearBracket, ...]
    standard: RatePair
    luxury: RatePair
    light_goods_euro6: RatePair
    light_goods_pre_euro6: RatePair
    luxury_policy: LuxuryPolicy

    def summary(self) -> Dict[str, Any]:
        return {
            "effective": self.effective.isoformat(),
            "pre_2001_brackets": [b.label for b in self.pre_2001],
            "mid_era_bands": [b.label for b in self.mid_era],
            "first_year_brackets": [b.label for b in self.first_year],
            "standard": _pair_dict(self.standard),
            "luxury": _pair_dict(self.luxury),
            "light_goods_euro6": _pair_dict(self.light_goods_euro6),
            "light_goods_pre_euro6": _pair_dict(self.light_goods_pre_euro6),
            "luxury_threshold_list_price": str(self.luxury_policy.threshold_list_price),
            "luxury_applies_for_years": str(self.luxury_policy.applies_for_years),
            "zero_emission_exempt_before": self.luxury_policy.zero_emission_exempt_before.isoformat(),
        }


def _money(x: Decimal) -> Decimal:
    return x.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def _pair_dict(pair: RatePair) -> Dict[str, str]:
    return {"6_month_dd": str(_money(pair.six_month)), "12_month": str(_money(pair.twelve_month))}


# -------------------------------
# Registry IO
# -------------------------------

def _resolve_registry_path(path: str | os.PathLike[str] | None) -> Path:
    if path is not None:
        return Path(path)
    override = os.getenv("VED_RATES_PATH")
    if override:
        return Path(override)
    return _DEFAULT_REGISTRY_PATH


def _read_registry(path: Path) -> List[Mapping[str, Any]]:
    with path.open("r", encoding="utf-8") as handle:
        data = json.load(handle)
    if not isinstance(data, Mapping):
        raise RateTableError("rates registry must be a mapping with a 'versions' list")
    versions = data.get("versions")
    if not isinstance(versions, list) or not versions:
        raise MISSING_RATE_FIELD("versions")
    for entry in versions:
        if not isinstance(entry, Mapping):
            raise RateTableError("invalid registry entry; each version must be a mapping")
    return versions


# -------------------------------
# Validation & normalisation
# -------------------------------

def _require(record: Mapping[str, Any], keys: Sequence[str] | set, where: str) -> None:
    for key in sorted(keys):
        if key not in record:
            raise MISSING_RATE_FIELD(f"{where}.{key}")


def _to_decimal(value: Any, where: str) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise RateTableError(f"{where}: {value!r} is not a number")
    if amount < 0:
        raise RateTableError(f"{where}: rates must be non-negative, got {amount}")
    return amount


def _to_int(value: Any, where: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise RateTableError(f"{where}: expected an integer, got {value!r}")
    if value < 0:
        raise RateTableError(f"{where}: bounds must be non-negative, got {value}")
    return value


def _to_date(value: Any, where: str) -> date:
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(str(value), "%Y-%m-%d").date()
    except ValueError:
        raise RateTableError(f"{where}: {value!r} is not a YYYY-MM-DD date")


def _rate_pair(record: Any, where: str) -> RatePair:
    if not isinstance(record, Mapping):
        raise MISSING_RATE_FIELD(where)
    _require(record, _REQUIRED_RATE_KEYS, where)
    return RatePair(
        six_month=_to_decimal(record["6_month_dd"], f"{where}.6_month_dd"),
        twelve_month=_to_decimal(record["12_month"], f"{where}.12_month"),
    )


def _check_contiguous(where: str, bounds: Sequence[Tuple[int, Optional[int]]]) -> None:
    """Closed integer intervals must start at 0 and tile without gaps or overlaps."""
    if not bounds:
        raise RateTableError(f"{where}: at least one band is required")
    expected = 0
    for idx, (lo, hi) in enumerate(bounds):
        if lo != expected:
            kind = "gap" if lo > expected else "overlap"
            raise RateTableError(f"{where}[{idx}]: {kind} before co2_min={lo} (expected {expected})")
        if hi is None:
            if idx != len(bounds) - 1:
                raise RateTableError(f"{where}[{idx}]: only the last band may be open-ended")
            return
        if hi < lo:
            raise RateTableError(f"{where}[{idx}]: co2_max {hi} is below co2_min {lo}")
        expected = hi + 1


def _engine_brackets(records: Any, where: str) -> Tuple[EngineBracket, ...]:
    if not isinstance(records, list) or not records:
        raise MISSING_RATE_FIELD(where)

    brackets: List[EngineBracket] = []
    next_cc = 0
    for idx, rec in enumerate(records):
        path = f"{where}[{idx}]"
        if not isinstance(rec, Mapping):
            raise RateTableError(f"{path}: bracket must be a mapping")
        has_max = rec.get("engine_cc_max") is not None
        has_min = rec.get("engine_cc_min") is not None
        if has_max == has_min:
            raise RateTableError(f"{path}: exactly one of engine_cc_max / engine_cc_min is required")
        rates = _rate_pair(rec, path)

        if has_max:
            cc_max = _to_int(rec["engine_cc_max"], f"{path}.engine_cc_max")
            if brackets and brackets[-1].cc_min is not None:
                raise RateTableError(f"{path}: engine_cc_max bracket follows an open-ended bracket")
            if cc_max < next_cc:
                raise RateTableError(f"{path}: engine_cc_max {cc_max} overlaps the previous bracket")
            brackets.append(EngineBracket(rates=rates, cc_max=cc_max))
            next_cc = cc_max + 1
        else:
            cc_min = _to_int(rec["engine_cc_min"], f"{path}.engine_cc_min")
            if idx != len(records) - 1:
                raise RateTableError(f"{path}: engine_cc_min bracket must be the last bracket")
            if cc_min != next_cc:
                kind = "gap" if cc_min > next_cc else "overlap"
                raise RateTableError(f"{path}: {kind} before engine_cc_min={cc_min} (expected {next_cc})")
            brackets.append(EngineBracket(rates=rates, cc_min=cc_min))
    return tuple(brackets)


def _co2_bands(records: Any, where: str) -> Tuple[Co2Band, ...]:
    if not isinstance(records, list) or not records:
        raise MISSING_RATE_FIELD(where)
    bands: List[Co2Band] = []
    for idx, rec in enumerate(records):
        path = f"{where}[{idx}]"
        if not isinstance(rec, Mapping):
            raise RateTableError(f"{path}: band must be a mapping")
        _require(rec, _REQUIRED_BAND_KEYS, path)
        hi = rec["co2_max"]
        bands.append(
            Co2Band(
                label=str(rec["band"]),
                co2_min=_to_int(rec["co2_min"], f"{path}.co2_min"),
                co2_max=None if hi is None else _to_int(hi, f"{path}.co2_max"),
                rates=_rate_pair(rec, path),
            )
        )
    _check_contiguous(where, [(b.co2_min, b.co2_max) for b in bands])
    labels = [b.label for b in bands]
    if len(set(labels)) != len(labels):
        raise RateTableError(f"{where}: duplicate band labels")
    return tuple(bands)


def _first_year_brackets(records: Any, where: str) -> Tuple[FirstYearBracket, ...]:
    if not isinstance(records, list) or not records:
        raise MISSING_RATE_FIELD(where)
    brackets: List[FirstYearBracket] = []
    for idx, rec in enumerate(records):
        path = f"{where}[{idx}]"
        if not isinstance(rec, Mapping):
            raise RateTableError(f"{path}: bracket must be a mapping")
        _require(rec, _REQUIRED_FIRST_YEAR_KEYS, path)
        hi = rec["co2_max"]
        brackets.append(
            FirstYearBracket(
                co2_min=_to_int(rec["co2_min"], f"{path}.co2_min"),
                co2_max=None if hi is None else _to_int(hi, f"{path}.co2_max"),
                standard=_to_decimal(rec["standard"], f"{path}.standard"),
                diesel=_to_decimal(rec["all_other_diesel"], f"{path}.all_other_diesel"),
            )
        )
    _check_contiguous(where, [(b.co2_min, b.co2_max) for b in brackets])
    return tuple(brackets)


def _normalise_version(record: Mapping[str, Any], index: int) -> RateTable:
    where = f"versions[{index}]"
    _require(record, _REQUIRED_VERSION_KEYS, where)
    effective = _to_date(record["effective"], f"{where}.effective")
    where = f"versions[{effective.isoformat()}]"

    pre_2001 = record["pre_2001"]
    if not isinstance(pre_2001, Mapping):
        raise MISSING_RATE_FIELD(f"{where}.pre_2001")
    _require(pre_2001, {"cars_and_light_goods"}, f"{where}.pre_2001")

    mid = record["cars_2001_2017"]
    if not isinstance(mid, Mapping):
        raise MISSING_RATE_FIELD(f"{where}.cars_2001_2017")
    _require(mid, {"bands"}, f"{where}.cars_2001_2017")

    post = record["cars_post_2017"]
    if not isinstance(post, Mapping):
        raise MISSING_RATE_FIELD(f"{where}.cars_post_2017")
    _require(post, _REQUIRED_POST_2017_KEYS, f"{where}.cars_post_2017")

    goods = record["light_goods"]
    if not isinstance(goods, Mapping):
        raise MISSING_RATE_FIELD(f"{where}.light_goods")
    _require(goods, _REQUIRED_LIGHT_GOODS_KEYS, f"{where}.light_goods")

    lux = record["luxury_surcharge"]
    if not isinstance(lux, Mapping):
        raise MISSING_RATE_FIELD(f"{where}.luxury_surcharge")
    _require(lux, _REQUIRED_LUXURY_KEYS, f"{where}.luxury_surcharge")

    return RateTable(
        effective=effective,
        pre_2001=_engine_brackets(pre_2001["cars_and_light_goods"], f"{where}.pre_2001.cars_and_light_goods"),
        mid_era=_co2_bands(mid["bands"], f"{where}.cars_2001_2017.bands"),
        first_year=_first_year_brackets(post["first_year_by_co2"], f"{where}.cars_post_2017.first_year_by_co2"),
        standard=_rate_pair(post["standard_from_second_year"], f"{where}.cars_post_2017.standard_from_second_year"),
        luxury=_rate_pair(post["luxury_adjusted_rates"], f"{where}.cars_post_2017.luxury_adjusted_rates"),
        light_goods_euro6=_rate_pair(goods["euro6_tc39"], f"{where}.light_goods.euro6_tc39"),
        light_goods_pre_euro6=_rate_pair(goods["pre_euro6_tc36"], f"{where}.light_goods.pre_euro6_tc36"),
        luxury_policy=LuxuryPolicy(
            threshold_list_price=_to_decimal(lux["threshold_list_price"], f"{where}.luxury_surcharge.threshold_list_price"),
            applies_for_years=_to_decimal(lux["applies_for_years"], f"{where}.luxury_surcharge.applies_for_years"),
            zero_emission_exempt_before=_to_date(
                lux["zero_emission_exempt_before"], f"{where}.luxury_surcharge.zero_emission_exempt_before"
            ),
        ),
    )


@lru_cache(maxsize=None)
def _load_versions(path_str: str) -> Tuple[RateTable, ...]:
    path = Path(path_str)
    raw = _read_registry(path)
    versions = [_normalise_version(entry, idx) for idx, entry in enumerate(raw)]
    versions.sort(key=lambda v: v.effective)
    seen = [v.effective for v in versions]
    if len(set(seen)) != len(seen):
        raise RateTableError("rates registry has duplicate effective dates")
    logger.info(
        "Loaded %d VED rate version(s) from %s (latest effective %s)",
        len(versions),
        path,
        versions[-1].effective.isoformat(),
    )
    return tuple(versions)


def load_all_ved_rates(
    *, registry_path: str | os.PathLike[str] | None = None
) -> Tuple[RateTable, ...]:
    """Validate and return every version in the registry, oldest first."""

    path = _resolve_registry_path(registry_path)
    return _load_versions(str(path))


def load_ved_rates(
    on: date | None = None,
    *,
    registry_path: str | os.PathLike[str] | None = None,
) -> RateTable:
    """Return the most recent rate table effective on ``on`` (default: today)."""

    on = on or date.today()
    selected: RateTable | None = None
    for version in load_all_ved_rates(registry_path=registry_path):
        if version.effective <= on:
            selected = version

    if selected is None:
        raise RateTableError(f"no VED rates effective on {on.isoformat()}")
    return selected
