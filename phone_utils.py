import json
import logging
import os
import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional

from exceptions import NormalizationError, ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CountryRule:
    name: str
    calling_code: str
    subscriber_digits: int
    currency: str

    @property
    def example(self) -> str:
        return self.calling_code + "7" + "6" * (self.subscriber_digits - 1)

    @property
    def expected_format(self) -> str:
        total = len(self.calling_code) + self.subscriber_digits
        return f"{total} digits like {self.example}"


# Strict MSISDN rules per ISO3 country. Anything not listed is digits-only.
COUNTRY_RULES = {
    "ZMB": CountryRule("Zambia", "260", 9, "ZMW"),
    "KEN": CountryRule("Kenya", "254", 9, "KES"),
    "GHA": CountryRule("Ghana", "233", 9, "GHS"),
    "UGA": CountryRule("Uganda", "256", 9, "UGX"),
    "COD": CountryRule("Congo", "243", 9, "CDF"),
}

PROVIDER_CODE_PATTERN = re.compile(r"^[A-Z0-9]+(_[A-Z0-9]+)+$")

_NETWORK_CACHE = {}


@dataclass(frozen=True)
class CanonicalRecipient:
    country: str
    msisdn: str
    provider: str


def load_network_config(path: str = "networks.json") -> dict:
    """
    Loads the provider label -> processor code table from networks.json.
    Relative paths are resolved next to this module.
    """
    if not os.path.isabs(path):
        path = os.path.join(os.path.dirname(os.path.abspath(__file__)), path)
    if path not in _NETWORK_CACHE:
        with open(path, "r") as f:
            raw = json.load(f)
        _NETWORK_CACHE[path] = {
            iso3.upper(): {label.strip().lower(): code for label, code in labels.items()}
            for iso3, labels in raw.items()
        }
        logger.info("Loaded provider table for %d countries from %s", len(raw), path)
    return _NETWORK_CACHE[path]


def normalize_country(iso3: Optional[str], default: str = "ZMB") -> str:
    return str(iso3 or "").strip().upper() or default


def normalize_digits(value) -> str:
    return re.sub(r"\D", "", str(value or ""))


def normalize_msisdn(phone, iso3: str) -> str:
    """
    Returns the canonical MSISDN (calling code + subscriber, digits only).

    Raises NormalizationError when a strict-rule country's number does not fit.
    """
    msisdn = normalize_digits(phone)
    if msisdn.startswith("00"):
        msisdn = msisdn[2:]

    rule = COUNTRY_RULES.get(normalize_country(iso3))
    if rule is None:
        if not msisdn:
            raise NormalizationError("Missing phone number.", msisdn=msisdn, expected_format="digits")
        return msisdn

    cc, size = rule.calling_code, rule.subscriber_digits

    if msisdn.startswith("0") and len(msisdn) == size + 1:
        # local form: 0XXXXXXXXX
        msisdn = cc + msisdn[1:]
    elif len(msisdn) == size and not msisdn.startswith(("0", cc)):
        msisdn = cc + msisdn
    elif msisdn.startswith(cc + cc) and len(msisdn) == 2 * len(cc) + size:
        msisdn = msisdn[len(cc):]
    elif msisdn.startswith(cc + "0") and len(msisdn) == len(cc) + size + 1:
        # extra trunk zero: 2600XXXXXXXXX
        msisdn = cc + msisdn[len(cc) + 1:]

    if not re.fullmatch(rf"{cc}\d{{{size}}}", msisdn):
        raise NormalizationError(
            f"Invalid {rule.name} MSISDN. Expected {rule.expected_format}.",
            msisdn=msisdn,
            expected_format=rule.expected_format,
        )
    return msisdn


def resolve_provider(provider, iso3: str, networks: Optional[dict] = None) -> str:
    """
    Maps a provider label ("MTN MoMo") or code ("MTN_MOMO_ZMB") to the
    payout processor's provider code for the country.
    """
    raw = str(provider or "").strip()
    if not raw:
        raise NormalizationError("Missing provider.")

    country = normalize_country(iso3)
    table = (networks if networks is not None else load_network_config()).get(country)

    if table is None:
        if PROVIDER_CODE_PATTERN.match(raw):
            return raw
        raise NormalizationError(f"No provider mapping for '{raw}' in {country}.")

    code = table.get(raw.lower())
    if code:
        return code
    if raw.upper() in set(table.values()):
        return raw.upper()
    raise NormalizationError(f"No provider mapping for '{raw}' in {country}.")


def normalize_recipient(phone, provider, iso3, networks: Optional[dict] = None) -> CanonicalRecipient:
    country = normalize_country(iso3)
    return CanonicalRecipient(
        country=country,
        msisdn=normalize_msisdn(phone, country),
        provider=resolve_provider(provider, country, networks),
    )


def default_currency(iso3: str) -> Optional[str]:
    rule = COUNTRY_RULES.get(normalize_country(iso3))
    return rule.currency if rule else None


def normalize_amount(amount) -> str:
    """
    "10,5" -> "10.50". Amounts must be positive with at most two decimals.
    """
    text = str(amount if amount is not None else "").strip().replace(",", ".")
    try:
        value = Decimal(text)
    except InvalidOperation:
        raise ValidationError("Invalid amount. Use e.g. '10.00'.")
    if not value.is_finite() or value <= 0:
        raise ValidationError("Invalid amount. Use e.g. '10.00'.")
    quantized = value.quantize(Decimal("0.01"))
    if quantized != value:
        raise ValidationError("Invalid amount. At most two decimal places are allowed.")
    return str(quantized)
