import copy
import json
from dataclasses import FrozenInstanceError
from datetime import date
from decimal import Decimal

import pytest

from roadtax_mvp.rules.rates_loader import (
    MISSING_RATE_FIELD,
    RateTableError,
    load_all_ved_rates,
    load_ved_rates,
)


def _version(effective="2025-04-01"):
    return {
        "effective": effective,
        "pre_2001": {
            "cars_and_light_goods": [
                {"engine_cc_max": 1549, "12_month": 220, "6_month_dd": 115.50},
                {"engine_cc_min": 1550, "12_month": 360, "6_month_dd": 189.00},
            ]
        },
        "cars_2001_2017": {
            "bands": [
                {"band": "A", "co2_min": 0, "co2_max": 100, "12_month": 20, "6_month_dd": 10.50},
                {"band": "B", "co2_min": 101, "co2_max": 150, "12_month": 215, "6_month_dd": 112.88},
                {"band": "C", "co2_min": 151, "co2_max": None, "12_month": 760, "6_month_dd": 399.00},
            ]
        },
        "cars_post_2017": {
            "first_year_by_co2": [
                {"co2_min": 0, "co2_max": 0, "standard": 10, "all_other_diesel": 10},
                {"co2_min": 1, "co2_max": 50, "standard": 110, "all_other_diesel": 130},
                {"co2_min": 51, "co2_max": None, "standard": 5490, "all_other_diesel": 5490},
            ],
            "standard_from_second_year": {"12_month": 195, "6_month_dd": 102.38},
            "luxury_adjusted_rates": {"12_month": 620, "6_month_dd": 325.50},
        },
        "light_goods": {
            "euro6_tc39": {"12_month": 345, "6_month_dd": 181.13},
            "pre_euro6_tc36": {"12_month": 140, "6_month_dd": 73.50},
        },
        "luxury_surcharge": {
            "threshold_list_price": 40000,
            "applies_for_years": 5,
            "zero_emission_exempt_before": "2025-04-01",
        },
    }


def _write(tmp_path, versions):
    path = tmp_path / "rates.json"
    path.write_text(json.dumps({"versions": versions}))
    return path


def test_load_ved_rates_picks_latest_effective_version(tmp_path):
    older = _version("2024-04-01")
    older["cars_post_2017"]["standard_from_second_year"] = {"12_month": 190, "6_month_dd": 99.75}
    path = _write(tmp_path, [_version("2025-04-01"), older])

    rates = load_ved_rates(date(2025, 5, 1), registry_path=path)
    assert rates.effective.isoformat() == "2025-04-01"
    assert rates.standard.twelve_month == Decimal("195")

    rates = load_ved_rates(date(2025, 3, 31), registry_path=path)
    assert rates.effective.isoformat() == "2024-04-01"
    assert rates.standard.six_month == Decimal("99.75")


def test_load_ved_rates_before_first_version(tmp_path):
    path = _write(tmp_path, [_version("2025-04-01")])
    with pytest.raises(RateTableError):
        load_ved_rates(date(2020, 1, 1), registry_path=path)


def test_typed_structures(tmp_path):
    path = _write(tmp_path, [_version()])
    rates = load_ved_rates(date(2025, 4, 1), registry_path=path)

    assert [b.label for b in rates.mid_era] == ["A", "B", "C"]
    assert rates.mid_era[-1].co2_max is None
    assert rates.pre_2001[0].cc_max == 1549 and rates.pre_2001[0].cc_min is None
    assert rates.pre_2001[1].cc_min == 1550 and rates.pre_2001[1].cc_max is None
    assert rates.first_year[1].diesel == Decimal("130")
    assert rates.luxury_policy.threshold_list_price == Decimal("40000")
    assert rates.luxury_policy.zero_emission_exempt_before == date(2025, 4, 1)

    with pytest.raises(FrozenInstanceError):
        rates.standard = rates.luxury


def test_missing_field(tmp_path):
    version = _version()
    del version["cars_post_2017"]["luxury_adjusted_rates"]
    path = _write(tmp_path, [version])

    with pytest.raises(MISSING_RATE_FIELD) as excinfo:
        load_ved_rates(date(2025, 4, 2), registry_path=path)
    assert excinfo.value.field_path.endswith("cars_post_2017.luxury_adjusted_rates")


def test_missing_rate_in_band(tmp_path):
    version = _version()
    del version["cars_2001_2017"]["bands"][1]["6_month_dd"]
    path = _write(tmp_path, [version])

    with pytest.raises(MISSING_RATE_FIELD):
        load_all_ved_rates(registry_path=path)


def test_missing_versions_list(tmp_path):
    path = tmp_path / "rates.json"
    path.write_text(json.dumps({"rates": []}))
    with pytest.raises(MISSING_RATE_FIELD):
        load_all_ved_rates(registry_path=path)


@pytest.mark.parametrize(
    "bounds, message",
    [
        ([(0, 100), (102, 150), (151, None)], "gap"),
        ([(0, 100), (100, 150), (151, None)], "overlap"),
        ([(1, 100), (101, 150), (151, None)], "gap"),
        ([(0, 100), (101, None), (151, None)], "open-ended"),
        ([(0, 100), (101, 99), (100, None)], "below"),
    ],
)
def test_co2_bands_must_be_contiguous(tmp_path, bounds, message):
    version = _version()
    for band, (lo, hi) in zip(version["cars_2001_2017"]["bands"], bounds):
        band["co2_min"], band["co2_max"] = lo, hi
    path = _write(tmp_path, [version])

    with pytest.raises(RateTableError, match=message):
        load_all_ved_rates(registry_path=path)


def test_first_year_brackets_must_be_contiguous(tmp_path):
    version = _version()
    version["cars_post_2017"]["first_year_by_co2"][2]["co2_min"] = 60
    path = _write(tmp_path, [version])

    with pytest.raises(RateTableError, match="gap"):
        load_all_ved_rates(registry_path=path)


def test_negative_rate_rejected(tmp_path):
    version = _version()
    version["light_goods"]["euro6_tc39"]["12_month"] = -1
    path = _write(tmp_path, [version])

    with pytest.raises(RateTableError, match="non-negative"):
        load_all_ved_rates(registry_path=path)


def test_engine_bracket_needs_exactly_one_bound(tmp_path):
    version = _version()
    version["pre_2001"]["cars_and_light_goods"][0]["engine_cc_min"] = 0
    path = _write(tmp_path, [version])

    with pytest.raises(RateTableError, match="exactly one"):
        load_all_ved_rates(registry_path=path)


def test_engine_brackets_must_not_leave_a_gap(tmp_path):
    version = _version()
    version["pre_2001"]["cars_and_light_goods"][1]["engine_cc_min"] = 1600
    path = _write(tmp_path, [version])

    with pytest.raises(RateTableError, match="gap"):
        load_all_ved_rates(registry_path=path)


def test_engine_min_bracket_must_be_last(tmp_path):
    version = _version()
    brackets = version["pre_2001"]["cars_and_light_goods"]
    version["pre_2001"]["cars_and_light_goods"] = [brackets[1], brackets[0]]
    path = _write(tmp_path, [version])

    with pytest.raises(RateTableError):
        load_all_ved_rates(registry_path=path)


def test_duplicate_effective_dates(tmp_path):
    path = _write(tmp_path, [_version(), copy.deepcopy(_version())])
    with pytest.raises(RateTableError, match="duplicate"):
        load_all_ved_rates(registry_path=path)


def test_env_override(tmp_path, monkeypatch):
    version = _version("2023-04-01")
    version["light_goods"]["pre_euro6_tc36"]["12_month"] = 999
    path = _write(tmp_path, [version])
    monkeypatch.setenv("VED_RATES_PATH", str(path))

    rates = load_ved_rates(date(2024, 1, 1))
    assert rates.light_goods_pre_euro6.twelve_month == Decimal("999")


def test_packaged_registry_is_valid(monkeypatch):
    monkeypatch.delenv("VED_RATES_PATH", raising=False)
    versions = load_all_ved_rates()

    assert [v.effective.isoformat() for v in versions] == ["2024-04-01", "2025-04-01"]
    latest = versions[-1]
    assert latest.standard.twelve_month == Decimal("195")
    assert latest.luxury.twelve_month == Decimal("620")
    assert len(latest.mid_era) == 13
