# backend/fulfillment/services/allocation_service.py
"""
Proportional allocation of an integer cent total across weighted buckets.

ALGORITHM:
1. Ideal share per bucket: total * weight[i] / sum(weights), computed exactly
   (Fraction), then floored to an integer.
2. The remainder total - sum(floored) goes entirely to the LAST bucket.

GUARANTEES:
- sum(result) == total
- len(result) == len(weights)
- allocate(T, [w]) == [T]

All-zero weights return all-zero shares (the total is left undistributed).
Callers that cannot accept that must check the weights first.
"""
from __future__ import annotations

import math
from decimal import Decimal
from fractions import Fraction
from typing import Callable, Sequence, TypeVar

T = TypeVar("T")


class InvalidAllocationInput(ValueError):
    """Raised when allocate() is called with input it cannot honour."""
    pass


def _as_fraction(weight) -> Fraction:
    if isinstance(weight, bool):
        raise InvalidAllocationInput(f"Weight must be a number, got {weight!r}")
    if isinstance(weight, (int, Fraction)):
        return Fraction(weight)
    if isinstance(weight, (float, Decimal)):
        if isinstance(weight, float) and not math.isfinite(weight):
            raise InvalidAllocationInput(f"Weight must be finite, got {weight!r}")
        return Fraction(str(weight))
    raise InvalidAllocationInput(f"Weight must be a number, got {weight!r}")


def allocate(total_minor: int, weights: Sequence) -> list[int]:
    if isinstance(total_minor, bool) or not isinstance(total_minor, int):
        raise InvalidAllocationInput(f"Total must be an integer amount of cents, got {total_minor!r}")
    if not weights:
        raise InvalidAllocationInput("At least one weight is required")

    fractions = [_as_fraction(w) for w in weights]
    for index, weight in enumerate(fractions):
        if weight < 0:
            raise InvalidAllocationInput(f"Weight at position {index} is negative: {weights[index]!r}")

    weight_sum = sum(fractions)
    if weight_sum == 0:
        return [0] * len(fractions)

    shares = [math.floor(total_minor * weight / weight_sum) for weight in fractions]
    shares[-1] += total_minor - sum(shares)
    return shares


def allocate_to(total_minor: int, items: Sequence[T], weight_of: Callable[[T], object]) -> list[tuple[T, int]]:
    """Allocate over objects, pairing each item with its share (same order)."""
    weights = [weight_of(item) for item in items]
    return list(zip(items, allocate(total_minor, weights)))
