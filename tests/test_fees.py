"""
Tests for fee estimate validation.
"""

from __future__ import annotations

import pytest

from btcexplorer.errors import ProtocolViolationError
from btcexplorer.fees import check_fee_estimates


def test_valid_estimates_are_normalised() -> None:
    assert check_fee_estimates({"1": 25, "6": 10.5, "1008": 0}) == {
        "1": 25.0,
        "6": 10.5,
        "1008": 0.0,
    }


def test_integer_keys_accepted() -> None:
    assert check_fee_estimates({2: 3.0}) == {"2": 3.0}


@pytest.mark.parametrize(
    "estimates",
    [
        {},
        [],
        None,
        {"fast": 10.0},
        {"0": 10.0},
        {"-1": 10.0},
        {"01": 10.0},
        {"1": -0.5},
        {"1": "10"},
        {"1": True},
        {"1": None},
    ],
)
def test_invalid_estimates(estimates: object) -> None:
    with pytest.raises(ProtocolViolationError, match="Invalid fee estimates"):
        check_fee_estimates(estimates)
