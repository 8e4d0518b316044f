"""Commission pricing for road tax submissions.

A submission carries a tax-duration preference:

  1 = 6 months     -> six-month rate + 50.00 commission
  2 = 12 months    -> twelve-month rate + 50.00 commission
  3 = direct debit -> 60.00 commission only (the customer's own DD mandate
                      covers the tax itself)

When the relevant rate could not be determined the customer is charged the
commission alone and the quote is flagged for manual pricing review.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, Optional, Union, TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from .ved_engine import TaxCalculationResult

__all__ = [
    "TAX_OPTION_COMMISSION",
    "DIRECT_DEBIT_COMMISSION",
    "InvalidPreference",
    "TaxPreference",
    "PricedQuote",
    "calculate_with_commission",
    "price_submission",
]

TAX_OPTION_COMMISSION: Decimal = Decimal("50.00")
DIRECT_DEBIT_COMMISSION: Decimal = Decimal("60.00")


def _money(value: Decimal | int | float | str) -> Decimal:
    """Quantize a numeric value to the nearest penny using standard half-up rounding."""

    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


class InvalidPreference(ValueError):
    """Raised for a tax preference outside the three supported options."""


class TaxPreference(Enum):
    SIX_MONTH = "6-month"
    TWELVE_MONTH = "12-month"
    DIRECT_DEBIT = "direct-debit"

    @property
    def code(self) -> int:
        """Integer code stored on the submission record."""
        return _CODES[self]

    @property
    def commission(self) -> Decimal:
        if self is TaxPreference.DIRECT_DEBIT:
            return DIRECT_DEBIT_COMMISSION
        return TAX_OPTION_COMMISSION

    @classmethod
    def parse(cls, value: Union["TaxPreference", int, str]) -> "TaxPreference":
        if isinstance(value, TaxPreference):
            return value
        if isinstance(value, int) and not isinstance(value, bool):
            for pref, code in _CODES.items():
                if code == value:
                    return pref
            raise InvalidPreference(f"unknown tax preference code: {value}")
        if isinstance(value, str):
            txt = value.strip().lower()
            if txt.isdigit():
                return cls.parse(int(txt))
            for pref in cls:
                if txt in (pref.value, pref.name.lower()):
                    return pref
        raise InvalidPreference(f"unknown tax preference: {value!r}")


_CODES = {
    TaxPreference.SIX_MONTH: 1,
    TaxPreference.TWELVE_MONTH: 2,
    TaxPreference.DIRECT_DEBIT: 3,
}


@dataclass(frozen=True)
class PricedQuote:
    result: "TaxCalculationResult"
    preference: TaxPreference
    commission_fee: Decimal
    tax_amount: Optional[Decimal]
    total: Decimal
    notes: str
    commission_only: bool = False

    def to_submission_fields(self) -> Dict[str, Any]:
        """Fields persisted on the submission record by the storage layer."""
        return {
            "taxPreference": self.preference.code,
            "sixMonthTaxRate": self.result.six_month_rate,
            "twelveMonthTaxRate": self.result.twelve_month_rate,
            "commissionFee": self.commission_fee,
            "totalAmount": self.total,
            "taxCalculationNotes": self.notes,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "preference": self.preference.value,
            "preference_code": self.preference.code,
            "commission_fee": str(self.commission_fee),
            "tax_amount": None if self.tax_amount is None else str(self.tax_amount),
            "total": str(self.total),
            "commission_only": self.commission_only,
            "notes": self.notes,
            "calculation": self.result.to_dict(),
        }


def calculate_with_commission(tax_rate: Optional[Decimal], commission_fee: Decimal) -> Decimal:
    """Tax plus commission; a missing rate yields the commission alone."""

    if tax_rate is None:
        return _money(commission_fee)
    return _money(_money(tax_rate) + _money(commission_fee))


def price_submission(result: "TaxCalculationResult", preference: TaxPreference) -> PricedQuote:
    commission = preference.commission

    if preference is TaxPreference.DIRECT_DEBIT:
        return PricedQuote(
            result=result,
            preference=preference,
            commission_fee=commission,
            tax_amount=None,
            total=_money(commission),
            notes=f"{result.notes}; direct debit setup - commission only",
        )

    if preference is TaxPreference.SIX_MONTH:
        rate, label = result.six_month_rate, "6 month"
    else:
        rate, label = result.twelve_month_rate, "12 month"

    total = calculate_with_commission(rate, commission)
    if rate is None:
        notes = f"{result.notes}; {label} rate unavailable - commission only, manual review required"
    else:
        notes = f"{result.notes}; {label} rate {_money(rate)} + commission {commission}"

    return PricedQuote(
        result=result,
        preference=preference,
        commission_fee=commission,
        tax_amount=None if rate is None else _money(rate),
        total=total,
        notes=notes,
        commission_only=rate is None,
    )
