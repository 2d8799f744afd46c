import re, uuid
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

REFERENCE_PREFIX = "donation_"
_REFERENCE_RE = re.compile(
    r"^donation_[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$"
)

# donations are stored as Decimal(12, 2), so anything from here up does not fit
MAX_AMOUNT = Decimal(10) ** 10

CURRENCY_SYMBOLS = {
    "USD": "$",
    "NGN": "₦",
    "ZMW": "K",
    "EUR": "€",
    "GBP": "£",
}


def generate_reference() -> str:
    # uniqueness rests on uuid4 entropy; nothing is checked against storage
    return f"{REFERENCE_PREFIX}{uuid.uuid4()}"


def is_reference(value) -> bool:
    return isinstance(value, str) and bool(_REFERENCE_RE.match(value))


def to_decimal(amount) -> Decimal:
    """Parse a donor-entered amount; raises ValueError if it is not a finite number."""
    if isinstance(amount, bool) or amount is None:
        raise ValueError("Invalid amount value")
    try:
        value = Decimal(str(amount).strip())
    except (InvalidOperation, TypeError, ValueError):
        raise ValueError("Invalid amount value")
    if not value.is_finite():
        raise ValueError("Invalid amount value")
    return value


def to_minor_units(amount) -> int:
    """Major units -> integer minor units, rounding half away from zero."""
    value = to_decimal(amount)
    if value <= 0:
        raise ValueError("Amount must be greater than zero")
    if value >= MAX_AMOUNT:
        raise ValueError("Amount is too large")
    try:
        minor = int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    except ArithmeticError:
        raise ValueError("Invalid amount value")
    if minor < 1:
        raise ValueError("Amount is too small")
    return minor


def from_minor_units(minor: int) -> Decimal:
    try:
        return (Decimal(minor) / 100).quantize(Decimal("0.01"))
    except ArithmeticError:
        raise ValueError("Invalid amount value")


def format_amount(amount, currency: str = "USD") -> str:
    code = (currency or "USD").upper()
    try:
        value = Decimal(str(amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    except ArithmeticError:
        raise ValueError("Invalid amount value")
    sign = "-" if value < 0 else ""
    text = f"{abs(value):,.2f}"
    symbol = CURRENCY_SYMBOLS.get(code)
    if symbol:
        return f"{sign}{symbol}{text}"
    return f"{sign}{code} {text}"
