# pricing.py
import math
from decimal import Decimal, ROUND_HALF_UP

PERCENTAGE = "percentage"
FIXED_AMOUNT = "fixed_amount"
DISCOUNT_TYPES = (PERCENTAGE, FIXED_AMOUNT)


class DiscountSpec:
    """Order-level discount, either a percentage or a fixed amount."""
    def __init__(self, type: str = FIXED_AMOUNT, value=0):
        if type not in DISCOUNT_TYPES:
            raise ValueError(f"Unknown discount type: {type}")
        self.type = type
        self.value = value

    @classmethod
    def none(cls):
        return cls(FIXED_AMOUNT, 0)

    @classmethod
    def percentage(cls, value):
        return cls(PERCENTAGE, value)

    @classmethod
    def fixed(cls, value):
        return cls(FIXED_AMOUNT, value)

    @property
    def rate(self):
        """Clamped percentage rate, 0 for fixed-amount discounts."""
        if self.type != PERCENTAGE:
            return 0
        return clamp(safe_amount(self.value), 0, 100)

    def __repr__(self):
        return f"DiscountSpec({self.type!r}, {self.value!r})"


class Totals:
    def __init__(self, subtotal: int, discount_amount: int, final_total: int):
        self.subtotal = subtotal
        self.discount_amount = discount_amount
        self.final_total = final_total

    def as_dict(self):
        return {
            'subtotal': self.subtotal,
            'discount_amount': self.discount_amount,
            'final_total': self.final_total,
        }


def safe_amount(value):
    """
    Coerce user input to a non-negative number.
    None, NaN, negative and unparsable values become 0.
    """
    if value is None or isinstance(value, bool):
        return 0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if math.isnan(number) or math.isinf(number) or number < 0:
        return 0
    return number


def clamp(value, low, high):
    return max(low, min(value, high))


def round_currency(value) -> int:
    """Round to a whole currency unit, halves away from zero."""
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def subtotal_of(items) -> int:
    return sum(item.subtotal for item in items)


def discount_amount_for(subtotal: int, discount: DiscountSpec = None) -> int:
    if discount is None or subtotal <= 0:
        return 0
    value = safe_amount(discount.value)
    if discount.type == PERCENTAGE:
        amount = round_currency(Decimal(str(clamp(value, 0, 100))) / 100 * subtotal)
    else:
        amount = round_currency(clamp(value, 0, subtotal))
    # rounding a percentage can never push the discount past the subtotal
    return min(amount, subtotal)


def compute_totals(items, discount: DiscountSpec = None) -> Totals:
    """
    Subtotal, discount and payable total for a list of line items.
    Never raises for malformed discount values; they count as 0.
    """
    subtotal = max(subtotal_of(items), 0)
    discount_amount = discount_amount_for(subtotal, discount)
    return Totals(subtotal, discount_amount, subtotal - discount_amount)


def cash_settlement(final_total: int, cash_tendered):
    """Return (is_sufficient, change) for a cash payment."""
    tendered = safe_amount(cash_tendered)
    is_sufficient = tendered >= final_total
    change = round_currency(max(0, tendered - final_total))
    return is_sufficient, change
