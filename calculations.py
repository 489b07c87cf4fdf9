"""
Invoice arithmetic: line item totals and invoice numbering.

Everything here is pure. Inputs are taken exactly as given (too many decimal
places is an error, not a rounding). Totals are computed with Decimal and
every per-line money figure is rounded to cents (banker's rounding) before it
is summed, so the stored aggregates can always be reproduced from the stored
line items.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_EVEN

from errors import InvoiceNumberError, ValidationError

CENTS = Decimal("0.01")
HUNDRED = Decimal("100")
NUMBER_WIDTH = 4
# Decimal places kept for stored inputs, matching the column scales
MONEY_PLACES = 2
QUANTITY_PLACES = 4
PERCENT_PLACES = 2
# Numeric(12, 2) and Numeric(14, 4) columns hold ten integer digits
MAX_VALUE = Decimal("1e10")


def _money(value: Decimal) -> Decimal:
    return value.quantize(CENTS, rounding=ROUND_HALF_EVEN)


def to_decimal(value, field="value", places=MONEY_PLACES) -> Decimal:
    """Parse a number or numeric string into a Decimal with ``places`` decimals.

    A value with more significant decimal places is rejected rather than
    rounded, as is anything of ten integer digits or more.
    """
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field} is required")
    try:
        number = Decimal(str(value).strip())
        if not number.is_finite():
            raise ValidationError(f"{field} must be a finite number")
        if abs(number) >= MAX_VALUE:
            raise ValidationError(f"{field} is too large")
        exact = number.quantize(Decimal(1).scaleb(-places))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number")
    if exact != number:
        raise ValidationError(f"{field} has more than {places} decimal places")
    return exact


def validate_line_item(item, position=1):
    """Check one raw line item and return it with Decimal fields.

    Rejects a missing description, quantity <= 0, rate < 0 and tax or
    discount rates outside [0, 100].
    """
    label = f"Item {position}"
    if not isinstance(item, dict):
        raise ValidationError(f"{label}: expected an object")

    description = (item.get("description") or "").strip()
    if not description:
        raise ValidationError(f"{label}: description is required")

    quantity = to_decimal(item.get("quantity"), f"{label}: quantity", QUANTITY_PLACES)
    rate = to_decimal(item.get("rate"), f"{label}: rate", QUANTITY_PLACES)
    tax_rate = to_decimal(item.get("tax_rate", 0), f"{label}: tax_rate", PERCENT_PLACES)
    discount_rate = to_decimal(item.get("discount_rate", 0), f"{label}: discount_rate", PERCENT_PLACES)

    if quantity <= 0:
        raise ValidationError(f"{label}: quantity must be greater than 0")
    if rate < 0:
        raise ValidationError(f"{label}: rate must be non-negative")
    for name, pct in (("tax_rate", tax_rate), ("discount_rate", discount_rate)):
        if pct < 0 or pct > HUNDRED:
            raise ValidationError(f"{label}: {name} must be between 0 and 100")

    return {
        "description": description,
        "quantity": quantity,
        "rate": rate,
        "tax_rate": tax_rate,
        "discount_rate": discount_rate,
    }


def compute_line(item):
    """Amounts for one validated line item."""
    line_subtotal = _money(item["quantity"] * item["rate"])
    discount = _money(line_subtotal * item["discount_rate"] / HUNDRED)
    after_discount = line_subtotal - discount
    tax = _money(after_discount * item["tax_rate"] / HUNDRED)
    return dict(
        item,
        line_subtotal=line_subtotal,
        discount=discount,
        tax=tax,
        amount=after_discount + tax,
    )


def compute_totals(items):
    """Validate raw line items and compute per-line and invoice totals.

    Shared by invoice create, update and preview. Returns a dict with the
    computed ``items`` plus ``subtotal``, ``discount_amount``, ``tax_amount``
    and ``total``.
    """
    if not items:
        raise ValidationError("At least one line item is required")

    lines = []
    for position, item in enumerate(items, start=1):
        line = compute_line(validate_line_item(item, position))
        if max(line["line_subtotal"], line["amount"]) >= MAX_VALUE:
            raise ValidationError(f"Item {position}: amount is too large")
        lines.append(line)

    subtotal = sum((line["line_subtotal"] for line in lines), Decimal("0.00"))
    discount_amount = sum((line["discount"] for line in lines), Decimal("0.00"))
    tax_amount = sum((line["tax"] for line in lines), Decimal("0.00"))
    total = subtotal - discount_amount + tax_amount

    # tax_amount and discount_amount never exceed these two
    if max(subtotal, total) >= MAX_VALUE:
        raise ValidationError("Invoice total is too large")

    return {
        "items": lines,
        "subtotal": subtotal,
        "discount_amount": discount_amount,
        "tax_amount": tax_amount,
        "total": total,
    }


def format_invoice_number(prefix, sequence):
    return f"{prefix}{sequence:0{NUMBER_WIDTH}d}"


def next_invoice_number(prefix, last_issued_number=None):
    """Number that follows ``last_issued_number`` under ``prefix``.

    INV-0042 -> INV-0043. The first invoice is <prefix>0001 and the padding
    grows past 9999 instead of wrapping.
    """
    if last_issued_number is None:
        return format_invoice_number(prefix, 1)

    if not last_issued_number.startswith(prefix):
        raise InvoiceNumberError(
            f"Invoice number {last_issued_number!r} does not start with prefix {prefix!r}"
        )
    suffix = last_issued_number[len(prefix):]
    if not (suffix.isascii() and suffix.isdigit()):
        raise InvoiceNumberError(
            f"Invoice number {last_issued_number!r} has a non-numeric sequence"
        )
    return format_invoice_number(prefix, int(suffix) + 1)
