"""Line and sale total arithmetic.

All money is Decimal rounded half-up to cents; quantities keep three
decimals. Both the client store and the ledger go through these helpers
so the two sides never disagree on rounding.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional, Tuple, Union

from salesync.core.exceptions import InvalidLineItemError

Number = Union[Decimal, int, float, str]

CENT = Decimal("0.01")
MILLI = Decimal("0.001")
ZERO = Decimal("0")


def to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    # str() first so floats do not drag binary noise along
    return Decimal(str(value))


def money(value: Number) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def quantity(value: Number) -> Decimal:
    return to_decimal(value).quantize(MILLI, rounding=ROUND_HALF_UP)


def compute_qty_base(qty: Number, unit_factor: Number) -> Decimal:
    """Quantity expressed in the product's base unit."""
    return quantity(to_decimal(qty) * to_decimal(unit_factor))


def compute_line_total(qty: Number, unit_price: Number, discount: Number = 0) -> Decimal:
    """lineTotal = qty x unitPrice - discount."""
    return money(to_decimal(qty) * to_decimal(unit_price) - to_decimal(discount))


def compute_tax(line_total: Number, tax_rate: Number) -> Decimal:
    """Tax for one line; tax_rate is a percentage (16 means 16%)."""
    return money(to_decimal(line_total) * to_decimal(tax_rate) / Decimal("100"))


def derive_unit_factor(qty: Number, qty_base: Number) -> Decimal:
    """Recover a missing unit factor from qtyBase / qty."""
    qty = to_decimal(qty)
    if qty == ZERO:
        raise InvalidLineItemError("cannot derive unitFactor from a zero quantity")
    return to_decimal(qty_base) / qty


def check_line(
    qty: Number,
    unit_factor: Number,
    qty_base: Number,
    unit_price: Number,
    discount: Number,
    line_total: Number,
    line_id: Optional[str] = None,
) -> None:
    """Raise InvalidLineItemError unless the line's arithmetic holds."""
    if to_decimal(unit_factor) <= ZERO:
        raise InvalidLineItemError("unitFactor must be positive", line_id=line_id)
    expected_base = compute_qty_base(qty, unit_factor)
    if quantity(qty_base) != expected_base:
        raise InvalidLineItemError(
            f"qtyBase {qty_base} != qty {qty} x unitFactor {unit_factor} ({expected_base})",
            line_id=line_id,
        )
    expected_total = compute_line_total(qty, unit_price, discount)
    if money(line_total) != expected_total:
        raise InvalidLineItemError(
            f"lineTotal {line_total} != qty x unitPrice - discount ({expected_total})",
            line_id=line_id,
        )


def compute_sale_totals(lines: Iterable[Tuple[Number, Number]]) -> Tuple[Decimal, Decimal, Decimal]:
    """Sum (line_total, tax_rate) pairs into (subtotal, tax_total, grand_total)."""
    subtotal = ZERO
    tax_total = ZERO
    for line_total, tax_rate in lines:
        subtotal += money(line_total)
        tax_total += compute_tax(line_total, tax_rate)
    subtotal = money(subtotal)
    tax_total = money(tax_total)
    return subtotal, tax_total, money(subtotal + tax_total)


def totals_differ(local: Number, remote: Number, epsilon: Number) -> bool:
    """True when two amounts differ by more than the currency epsilon."""
    return abs(to_decimal(local) - to_decimal(remote)) > to_decimal(epsilon)
