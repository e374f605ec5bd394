import pytest

from nsforecast.services.units import (
    format_primary,
    format_secondary,
    to_primary_unit,
    to_secondary_display,
    to_secondary_unit,
)


def test_secondary_unit_is_factor_18():
    assert to_secondary_unit(5.5) == pytest.approx(99.0)
    assert to_primary_unit(180.0) == pytest.approx(10.0)


@pytest.mark.parametrize(
    "mmol, expected",
    [
        (7.0, 126),
        (5.6, 101),  # 100.8
        (5.25, 95),  # 94.5 exactly, rounds up
        (0.25, 5),  # 4.5
        (-0.25, -5),  # away from zero on the negative side too
    ],
)
def test_display_rounds_half_away_from_zero(mmol, expected):
    assert to_secondary_display(mmol) == expected


def test_display_from_canonical_value_not_from_rounded_mgdl():
    canonical = 5.53
    assert to_secondary_display(canonical) == 100
    assert to_secondary_display(to_primary_unit(100)) == 100


def test_formatting_of_missing_values_is_empty():
    assert format_primary(None) == ""
    assert format_secondary(None) == ""


def test_formatting_of_present_values():
    assert format_primary(5.6) == "5.60"
    assert format_primary(7.456) == "7.46"
    assert format_secondary(7.0) == "126"


@pytest.mark.parametrize("mmol", [3.9, 5.55, 7.0, 12.345, 22.2])
def test_primary_secondary_roundtrip_is_close(mmol):
    assert to_primary_unit(to_secondary_unit(mmol)) == pytest.approx(mmol)
