"""Integer minor-unit money helpers.

Every amount inside the service is an ``int`` expressed in minor units
(cents/agorot). Conversions to and from major units happen only at the
HTTP boundary, and ratios (percentages, VAT rates) are handled with
``Decimal`` so no float ever touches an amount.
"""

from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP, InvalidOperation

MINOR_PER_MAJOR = 100


def _dec(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return Decimal(0)


def round_half_up(value) -> int:
    """Round a Decimal-compatible value to the nearest int, halves away from zero."""
    return int(_dec(value).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def to_minor(major) -> int:
    """Convert a major-unit value (e.g. ``"12.34"``) to minor units.

    Negative and unparsable inputs collapse to 0.
    """
    return max(0, round_half_up(_dec(major) * MINOR_PER_MAJOR))


def to_major(minor: int) -> Decimal:
    """Display-only conversion of minor units to a 2-place Decimal."""
    return (Decimal(int(minor or 0)) / MINOR_PER_MAJOR).quantize(Decimal("0.01"))


def clamp(value: int, lo: int, hi: int) -> int:
    try:
        v = int(value)
    except (TypeError, ValueError):
        return lo
    return max(lo, min(hi, v))


def clamp_percent(pct) -> Decimal:
    return max(Decimal(0), min(Decimal(100), _dec(pct)))


def percent_of(amount_minor: int, pct) -> int:
    """Return ``pct`` percent of ``amount_minor`` rounded half-up.

    Args:
        amount_minor: Base amount in minor units.
        pct: Percentage, clamped to [0, 100].

    Returns:
        int: Non-negative discount in minor units.
    """
    p = clamp_percent(pct)
    return max(0, round_half_up(Decimal(int(amount_minor)) * p / 100))


def cap(amount: int, *ceilings) -> int:
    """Clamp ``amount`` to ``[0, min(ceilings)]``, ignoring ``None`` ceilings."""
    out = max(0, int(amount))
    for c in ceilings:
        if c is not None:
            out = min(out, max(0, int(c)))
    return out


def vat_breakdown(total_minor: int, rate) -> tuple[int, int]:
    """Back-derive the VAT component of a VAT-inclusive total.

    ``total_before_vat`` is the quotient ``total / (1 + rate)`` truncated
    toward zero; the VAT amount is the remainder, so the two always add up
    to ``total_minor``.

    The quotient is truncated, not rounded half-up: a 1150 total at 18% is
    974.58 before VAT and splits as 974 / 176, where half-up would give
    975 / 175.

    Args:
        total_minor: VAT-inclusive total in minor units.
        rate: VAT rate in [0, 1), e.g. ``Decimal("0.18")``.

    Returns:
        tuple[int, int]: ``(total_before_vat, vat_amount)``.
    """
    total = max(0, int(total_minor))
    r = _dec(rate)
    if r <= 0:
        return total, 0
    before = int((Decimal(total) / (Decimal(1) + r)).quantize(Decimal(1), rounding=ROUND_DOWN))
    return before, total - before


def allocate_proportionally(amount_minor: int, weights: list[int]) -> list[int]:
    """Split ``amount_minor`` across ``weights`` with the largest-remainder method.

    The shares always sum to ``amount_minor`` (when any weight is positive)
    and never exceed their own weight.
    """
    total_weight = sum(max(0, w) for w in weights)
    if amount_minor <= 0 or total_weight <= 0:
        return [0 for _ in weights]
    amount = min(int(amount_minor), total_weight)

    shares = []
    remainders = []
    for idx, w in enumerate(weights):
        w = max(0, w)
        exact = amount * w
        shares.append(exact // total_weight)
        remainders.append((exact % total_weight, idx))

    leftover = amount - sum(shares)
    for _, idx in sorted(remainders, key=lambda r: (-r[0], r[1]))[:leftover]:
        shares[idx] += 1
    return shares
