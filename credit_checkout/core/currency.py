"""
Conversion of source-currency amounts into gateway settlement minor units.

The order service depends on the ``CurrencyConverter`` protocol; the only
current implementation is a static, versioned rate table loaded from settings.
"""
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Dict, Protocol

from credit_checkout.config import Settings
from credit_checkout.core.exceptions import InvalidAmountError, UnsupportedCurrencyError

# ISO 4217 minor-unit exponents for the settlement currencies we accept
MINOR_UNIT_EXPONENTS = {"INR": 2, "USD": 2, "EUR": 2, "GBP": 2, "JPY": 0}


@dataclass(frozen=True)
class ConvertedAmount:
    """A settlement amount plus the policy that produced it."""

    minor_units: int
    currency: str
    policy_version: str

    @property
    def major_units(self) -> Decimal:
        exponent = MINOR_UNIT_EXPONENTS.get(self.currency, 2)
        return Decimal(self.minor_units).scaleb(-exponent)


class CurrencyConverter(Protocol):
    settlement_currency: str
    policy_version: str

    def supports(self, currency: str) -> bool: ...

    def to_settlement(self, amount: Decimal, currency: str) -> ConvertedAmount: ...


class StaticRateConverter:
    """
    Converts with a fixed rate table.

    Rates are expressed as settlement units per source unit and are tagged
    with a policy version so every order records which table priced it.
    """

    def __init__(
        self,
        rates: Dict[str, Decimal],
        settlement_currency: str = "INR",
        policy_version: str = "static",
    ):
        self.rates = {currency.upper(): Decimal(rate) for currency, rate in rates.items()}
        self.settlement_currency = settlement_currency.upper()
        self.policy_version = policy_version

    @classmethod
    def from_settings(cls, settings: Settings) -> "StaticRateConverter":
        return cls(
            rates=settings.conversion_rates,
            settlement_currency=settings.settlement_currency,
            policy_version=settings.conversion_policy_version,
        )

    def supports(self, currency: str) -> bool:
        return currency.upper() in self.rates

    def to_settlement(self, amount: Decimal, currency: str) -> ConvertedAmount:
        """
        Convert an amount to settlement minor units, rounding half-up.

        Raises:
            UnsupportedCurrencyError: If the currency is not in the allow-list
            InvalidAmountError: If the amount is too large to represent in minor units
        """
        code = currency.upper()
        if code not in self.rates:
            raise UnsupportedCurrencyError(currency)

        exponent = MINOR_UNIT_EXPONENTS.get(self.settlement_currency, 2)
        settlement = amount * self.rates[code]
        try:
            minor = settlement.scaleb(exponent).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
        except InvalidOperation:
            raise InvalidAmountError("Amount is too large") from None
        return ConvertedAmount(
            minor_units=int(minor),
            currency=self.settlement_currency,
            policy_version=self.policy_version,
        )
