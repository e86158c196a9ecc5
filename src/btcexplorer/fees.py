"""
Fee estimate validation.

Fee estimates use the Esplora /fee-estimates format: a mapping from
confirmation target (blocks, as a string key) to feerate in sat/vB, e.g.
``{"1": 87.882, "2": 87.882, ..., "144": 1.027, "504": 1.027, "1008": 1.027}``.
"""

from __future__ import annotations

from typing import Any

from btcexplorer.errors import ProtocolViolationError


def check_fee_estimates(fee_estimates: Any) -> dict[str, float]:
    """
    Validate a fee estimate mapping and return it.

    Raises:
        ProtocolViolationError: Empty mapping, keys that are not positive
            integers, or values that are not non-negative numbers
    """
    if not isinstance(fee_estimates, dict) or not fee_estimates:
        raise ProtocolViolationError("Invalid fee estimates!")

    for key, value in fee_estimates.items():
        try:
            target = int(key)
        except (TypeError, ValueError) as e:
            raise ProtocolViolationError(f"Invalid fee estimates! Bad target {key!r}") from e
        if str(target) != str(key) or target <= 0:
            raise ProtocolViolationError(f"Invalid fee estimates! Bad target {key!r}")
        if isinstance(value, bool) or not isinstance(value, int | float) or value < 0:
            raise ProtocolViolationError(
                f"Invalid fee estimates! Bad feerate {value!r} for target {key}"
            )

    return {str(key): float(value) for key, value in fee_estimates.items()}
