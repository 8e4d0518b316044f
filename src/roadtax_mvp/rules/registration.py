"""Registration date resolution for UK vehicles.

Fallback chain:

  1. year of manufacture -> 1 January of that year (approximate),
  2. current-format mark (``AB12CDE``): age identifier 51+ is a September
     registration of ``2000 + (n - 50)``, otherwise March of ``2000 + n``,
  3. prefix-format mark (``A123BCD``): the leading letter counts up from
     August 1983 for ``A``.

No lookups are made; everything here is a string/number transform.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from .ved_engine import VehicleAttributes

__all__ = [
    "DateSource",
    "ResolvedRegistration",
    "normalise_mark",
    "parse_registration_mark",
    "resolve_registration",
]

_CURRENT_FORMAT = re.compile(r"^[A-Z]{2}(\d{2})[A-Z]{3}$")
_PREFIX_FORMAT = re.compile(r"^([A-Z])\d{3}[A-Z]{3}$")

PREFIX_BASE_YEAR = 1983


class DateSource(Enum):
    YEAR_OF_MANUFACTURE = "year_of_manufacture"
    CURRENT_FORMAT_MARK = "current_format_mark"
    PREFIX_FORMAT_MARK = "prefix_format_mark"


@dataclass(frozen=True)
class ResolvedRegistration:
    registered_on: date
    source: DateSource
    # Year-of-manufacture dates can be out by up to twelve months.
    approximate: bool = False

    def describe(self) -> str:
        if self.source is DateSource.YEAR_OF_MANUFACTURE:
            return (
                f"registration date approximated as {self.registered_on.isoformat()} "
                "from year of manufacture"
            )
        return f"registration date {self.registered_on.isoformat()} derived from registration mark"


def normalise_mark(text: Optional[str]) -> str:
    return re.sub(r"\s+", "", text or "").upper()


def parse_registration_mark(text: Optional[str]) -> Optional[ResolvedRegistration]:
    """Derive a registration date from a UK registration mark, or ``None``."""

    mark = normalise_mark(text)
    if not mark:
        return None

    m = _CURRENT_FORMAT.match(mark)
    if m:
        age_id = int(m.group(1))
        if age_id >= 51:
            registered = date(2000 + (age_id - 50), 9, 1)
        else:
            registered = date(2000 + age_id, 3, 1)
        return ResolvedRegistration(registered, DateSource.CURRENT_FORMAT_MARK)

    m = _PREFIX_FORMAT.match(mark)
    if m:
        year = PREFIX_BASE_YEAR + (ord(m.group(1)) - ord("A"))
        return ResolvedRegistration(date(year, 8, 1), DateSource.PREFIX_FORMAT_MARK)

    return None


def resolve_registration(vehicle: "VehicleAttributes") -> Optional[ResolvedRegistration]:
    if vehicle.year_of_manufacture:
        return ResolvedRegistration(
            date(vehicle.year_of_manufacture, 1, 1),
            DateSource.YEAR_OF_MANUFACTURE,
            approximate=True,
        )
    return parse_registration_mark(vehicle.registration_number)
