"""Currency helpers: minor units and Paystack currency rules"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Union

from faithflow.core.errors import BadRequestError

Amount = Union[Decimal, int, float, str]

# Currencies without a fractional subunit
ZERO_DECIMAL_CURRENCIES = {"JPY", "KRW", "VND"}

PAYSTACK_CURRENCIES = {"NGN", "USD", "GHS", "ZAR", "KES", "XOF"}

PAYSTACK_MINIMUMS = {
    "NGN": Decimal("50"),
    "USD": Decimal("2"),
    "GHS": Decimal("0.10"),
    "ZAR": Decimal("1"),
    "KES": Decimal("3"),
    "XOF": Decimal("1"),
}

# Business country of the church account allowed to settle each currency
PAYSTACK_CURRENCY_COUNTRIES = {
    "NGN": ["NG"],
    "USD": ["NG", "KE"],
    "GHS": ["GH"],
    "ZAR": ["ZA"],
    "KES": ["KE"],
    "XOF": ["CI"],
}


def to_decimal(amount: Amount) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    # str() first so 19.99 does not become 19.989999...
    return Decimal(str(amount))


def currency_factor(currency: str) -> int:
    return 1 if currency.upper() in ZERO_DECIMAL_CURRENCIES else 100


def to_minor_units(amount: Amount, currency: str) -> int:
    """Convert a decimal amount to provider minor units (19.99 USD -> 1999)"""
    minor = to_decimal(amount) * currency_factor(currency)
    return int(minor.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int, currency: str) -> Decimal:
    """Convert provider minor units back to a decimal amount (1999 USD -> 19.99)"""
    factor = currency_factor(currency)
    value = Decimal(int(amount)) / Decimal(factor)
    if factor == 1:
        return value.quantize(Decimal("1"))
    return value.quantize(Decimal("0.01"))


def ensure_paystack_currency_supported(amount: Amount, currency: str, country_code: Optional[str] = None) -> None:
    """Reject currencies, business countries and amounts Paystack will not accept

    Raises:
        BadRequestError: With the reason Paystack would reject the charge
    """
    currency = currency.upper()
    if currency not in PAYSTACK_CURRENCIES:
        raise BadRequestError(f"Paystack does not support currency {currency}")

    normalized_country = country_code.upper() if country_code else None
    allowed_countries = PAYSTACK_CURRENCY_COUNTRIES.get(currency)
    if normalized_country and allowed_countries and normalized_country not in allowed_countries:
        raise BadRequestError(
            f"Paystack {currency} is only available for {', '.join(allowed_countries)} businesses"
        )

    minimum = PAYSTACK_MINIMUMS.get(currency)
    if minimum and to_decimal(amount) < minimum:
        raise BadRequestError(f"Paystack minimum for {currency} is {minimum.normalize():f}")
