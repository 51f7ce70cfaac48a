"""
Module: verifactu_kernel.db.types
Responsibility: Amount and identifier helpers every other layer uses.
    Centralizes precision, rounding, legal-id normalization and currency
    validation so the canonical form, the XML document and the QR payload
    agree byte-for-byte.
Architecture position: Kernel > DB.  May be imported by models/, domain/,
    services/, and selectors/.  MUST NOT import from any of those layers.

Invariants enforced:
    - Amounts are Decimal, never float.  round_amount() (ROUND_HALF_UP, two
      places) is the only sanctioned rounding for reported amounts.
    - format_amount() is the only sanctioned textual form: fixed two
      decimals, '.' separator, no grouping, locale-independent.
    - normalize_legal_id() is the only sanctioned identifier normalization.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

AMOUNT_DECIMAL_PLACES = 2
RATE_DECIMAL_PLACES = 2
DEFAULT_ROUNDING = ROUND_HALF_UP


def to_decimal(value) -> Decimal:
    """
    Coerce an int/str/Decimal to Decimal.

    Floats are refused: their binary representation would leak into the
    canonical form.

    Raises:
        TypeError: for float or unsupported types.
        ValueError: for non-numeric strings.
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise TypeError(f"Refusing {type(value).__name__} amount {value!r}; use Decimal or str")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, str)):
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation:
            raise ValueError(f"Not a number: {value!r}") from None
    else:
        raise TypeError(f"Unsupported amount type {type(value).__name__}")
    if not result.is_finite():
        raise ValueError(f"Not a finite number: {value!r}")
    return result


def round_amount(value: Decimal, decimal_places: int = AMOUNT_DECIMAL_PLACES) -> Decimal:
    """Round an amount half-up to the reporting precision."""
    quantize_str = "0." + "0" * decimal_places
    return value.quantize(Decimal(quantize_str), rounding=DEFAULT_ROUNDING)


def format_amount(value: Decimal, decimal_places: int = AMOUNT_DECIMAL_PLACES) -> str:
    """
    Render an amount in the reporting text form.

    Example:
        format_amount(Decimal("1234.5")) -> "1234.50"
        format_amount(Decimal("-0.004")) -> "0.00"
    """
    rounded = round_amount(value, decimal_places)
    if rounded == 0:
        rounded = abs(rounded)
    return f"{rounded:f}"


def normalize_legal_id(value: str) -> str:
    """Upper-case a tax identifier and strip dashes and whitespace."""
    return "".join(ch for ch in value.upper() if ch != "-" and not ch.isspace())


# ISO 4217 Currency Codes
ISO_4217_CURRENCIES: frozenset[str] = frozenset("""
    EUR USD GBP JPY CHF CAD AUD NZD
    AED AFN ALL AMD ANG AOA ARS AWG AZN BAM BBD BDT BGN BHD BIF BMD BND BOB
    BRL BSD BTN BWP BYN BZD CDF CLP CNY COP CRC CUP CVE CZK DJF DKK DOP DZD
    EGP ERN ETB FJD FKP GEL GHS GIP GMD GNF GTQ GYD HKD HNL HTG HUF IDR ILS
    INR IQD IRR ISK JMD JOD KES KGS KHR KMF KPW KRW KWD KYD KZT LAK LBP LKR
    LRD LSL LYD MAD MDL MGA MKD MMK MNT MOP MRU MUR MVR MWK MXN MYR MZN NAD
    NGN NIO NOK NPR OMR PAB PEN PGK PHP PKR PLN PYG QAR RON RSD RUB RWF SAR
    SBD SCR SDG SEK SGD SHP SLE SOS SRD SSP STN SVC SYP SZL THB TJS TMT TND
    TOP TRY TTD TWD TZS UAH UGX UYU UZS VES VND VUV WST XAF XCD XOF XPF YER
    ZAR ZMW ZWL
""".split())


class InvalidCurrencyError(ValueError):
    """Raised when an invalid ISO 4217 currency code is provided."""

    def __init__(self, currency: str):
        self.currency = currency
        super().__init__(f"Invalid ISO 4217 currency code: '{currency}'")


def validate_currency(currency: str) -> str:
    """
    Validate and normalize an ISO 4217 code.

    Returns:
        The validated currency code (uppercase).

    Raises:
        InvalidCurrencyError: If the currency code is not valid.
    """
    if not currency or not isinstance(currency, str):
        raise InvalidCurrencyError(str(currency))

    normalized = currency.upper().strip()
    if normalized not in ISO_4217_CURRENCIES:
        raise InvalidCurrencyError(currency)
    return normalized
