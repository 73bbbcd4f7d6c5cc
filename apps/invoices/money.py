from decimal import ROUND_HALF_UP, Decimal

HUNDRED = Decimal("100")
ZERO = Decimal("0")
CENT = Decimal("0.01")
PERCENT_STEP = Decimal("0.0001")

CURRENCY_SYMBOLS = {
    "USD": "$",
    "CAD": "CA$",
    "AUD": "A$",
    "NZD": "NZ$",
    "HKD": "HK$",
    "SGD": "S$",
    "TWD": "NT$",
    "MXN": "MX$",
    "EUR": "€",
    "GBP": "£",
    "JPY": "¥",
    "CNY": "CN¥",
    "KRW": "₩",
    "INR": "₹",
    "THB": "฿",
}
ZERO_DECIMAL_CURRENCIES = {"JPY", "KRW", "TWD"}


def to_decimal(value):
    if value is None or value == "":
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def amount_from_percentage(total, percentage):
    return to_decimal(total) * to_decimal(percentage) / HUNDRED


def percentage_from_amount(total, amount):
    total = to_decimal(total)
    if total <= 0:
        return ZERO
    return to_decimal(amount) / total * HUNDRED


def round_percentage(percentage):
    return to_decimal(percentage).quantize(CENT, rounding=ROUND_HALF_UP)


def quantize_amount(amount):
    return to_decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


def quantize_percentage(percentage):
    return to_decimal(percentage).quantize(PERCENT_STEP, rounding=ROUND_HALF_UP)


def format_currency(amount, currency_code="USD") -> str:
    """Display-only money string, e.g. ``$1,234.56``; never use the result in arithmetic."""
    code = (currency_code or "USD").upper()
    places = Decimal("1") if code in ZERO_DECIMAL_CURRENCIES else CENT
    value = to_decimal(amount).quantize(places, rounding=ROUND_HALF_UP)
    sign = "-" if value < 0 else ""
    digits = f"{abs(value):,}"
    symbol = CURRENCY_SYMBOLS.get(code)
    if symbol is None:
        return f"{sign}{code} {digits}"
    return f"{sign}{symbol}{digits}"


def ordinal(number: int) -> str:
    if 11 <= number % 100 <= 13:
        suffix = "th"
    else:
        suffix = {1: "st", 2: "nd", 3: "rd"}.get(number % 10, "th")
    return f"{number}{suffix}"
