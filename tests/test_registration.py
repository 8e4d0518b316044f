from datetime import date

import pytest

from roadtax_mvp.rules.registration import (
    DateSource,
    parse_registration_mark,
    resolve_registration,
)
from roadtax_mvp.rules.ved_engine import VehicleAttributes


@pytest.mark.parametrize(
    "mark, expected",
    [
        ("AB12CDE", date(2012, 3, 1)),
        ("AB71CDE", date(2021, 9, 1)),
        ("AB51CDE", date(2001, 9, 1)),
        ("AB50CDE", date(2050, 3, 1)),
        ("AB02CDE", date(2002, 3, 1)),
        ("ab12 cde", date(2012, 3, 1)),
        (" AB 17 XYZ ", date(2017, 3, 1)),
    ],
)
def test_current_format_marks(mark, expected):
    resolved = parse_registration_mark(mark)
    assert resolved is not None
    assert resolved.registered_on == expected
    assert resolved.source is DateSource.CURRENT_FORMAT_MARK
    assert resolved.approximate is False


@pytest.mark.parametrize(
    "mark, expected",
    [
        ("A123BCD", date(1983, 8, 1)),
        ("C456DEF", date(1985, 8, 1)),
        ("r999 xyz", date(2000, 8, 1)),
    ],
)
def test_prefix_format_marks(mark, expected):
    resolved = parse_registration_mark(mark)
    assert resolved is not None
    assert resolved.registered_on == expected
    assert resolved.source is DateSource.PREFIX_FORMAT_MARK


@pytest.mark.parametrize("mark", ["", None, "NOTAPLATE", "ABC123", "A12BCD", "12ABCDE", "AB1CDEF"])
def test_unrecognised_marks(mark):
    assert parse_registration_mark(mark) is None


def test_parsing_is_idempotent():
    first = parse_registration_mark("AB71CDE")
    second = parse_registration_mark("AB71CDE")
    assert first == second


def test_year_of_manufacture_takes_priority():
    vehicle = VehicleAttributes(registration_number="AB71CDE", year_of_manufacture=2019)
    resolved = resolve_registration(vehicle)

    assert resolved.registered_on == date(2019, 1, 1)
    assert resolved.source is DateSource.YEAR_OF_MANUFACTURE
    assert resolved.approximate is True
    assert "year of manufacture" in resolved.describe()


def test_falls_back_to_mark_then_none():
    assert resolve_registration(VehicleAttributes(registration_number="A123BCD")).registered_on == date(1983, 8, 1)
    assert resolve_registration(VehicleAttributes(registration_number="PRIVATE1")) is None
