import pytest

from txflow.amounts import format_amount, to_base_units, to_human
from txflow.assets import get_asset
from txflow.errors import InvalidAmount


@pytest.mark.parametrize(
    "human, expected",
    [
        ("10", 10_000_000),
        ("0.5", 500_000),
        (".5", 500_000),
        ("5.", 5_000_000),
        (" 1.25 ", 1_250_000),
        ("0.000001", 1),
        ("007", 7_000_000),
    ],
)
def test_to_base_units_scales_by_precision(human, expected):
    assert to_base_units(human, 6) == expected


def test_to_base_units_floors_extra_digits():
    assert to_base_units("1.1234567", 6) == 1_123_456
    assert to_base_units("0.9999999", 6) == 999_999


@pytest.mark.parametrize("human", ["", "abc", "-1", "0", "0.000", "1e5", "1,5", "1.2.3", "NaN", "Infinity", "+3", "²", "١٠"])
def test_to_base_units_rejects_non_positive_or_malformed(human):
    with pytest.raises(InvalidAmount):
        to_base_units(human, 6)


def test_to_base_units_rejects_amount_below_smallest_unit():
    with pytest.raises(InvalidAmount):
        to_base_units("0.0000001", 6)


def test_to_base_units_keeps_exact_value_beyond_float_range():
    # 2**128 - 1 base units, far past what a float can hold exactly.
    human = "340282366920938463463374607431.768211455"
    assert to_base_units(human, 9) == 2**128 - 1


def test_to_human_pads_fraction():
    assert to_human(10_000_000, 6) == "10.000000"
    assert to_human(1, 6) == "0.000001"
    assert to_human(0, 6) == "0.000000"
    assert to_human(12, 0) == "12"


def test_to_human_inverts_to_base_units_for_large_values():
    value = 2**128 - 1
    assert to_base_units(to_human(value, 6), 6) == value


def test_to_human_rejects_negative():
    with pytest.raises(ValueError):
        to_human(-1, 6)


def test_format_amount_appends_symbol():
    assert format_amount(1_500_000, get_asset(2)) == "1.500000 XRP"
