"""Donation packages and the perks they grant.

Perks form a tagged union on their ``type`` field. Redemption dispatches on
the concrete perk class with an exhaustive ``match``.
"""

from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from donate.errors import InvalidPrice


# Currencies Stripe charges in whole units
ZERO_DECIMAL_CURRENCIES = frozenset({
    "BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA",
    "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
})


def currency_exponent(currency: str) -> int:
    """Number of minor-unit digits the provider uses for ``currency``."""
    return 0 if currency.upper() in ZERO_DECIMAL_CURRENCIES else 2


def from_minor_units(units: int, currency: str) -> str:
    """Decimal amount string for a provider amount in minor units."""
    return str(Decimal(units).scaleb(-currency_exponent(currency)))


class PriceType(str, Enum):
    """Whether the donor may choose the amount."""

    FIXED = "FIXED"
    VARIABLE = "VARIABLE"


class Price(BaseModel):
    """Package price. ``amount`` is kept as a decimal string for provider APIs."""

    model_config = ConfigDict(frozen=True)

    amount: str
    currency: str = "EUR"
    type: PriceType = PriceType.FIXED

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v: str) -> str:
        """Normalize ``"4,99"`` to ``"4.99"`` and reject non-positive amounts."""
        normalized = str(v).strip().replace(",", ".")
        try:
            value = Decimal(normalized)
        except InvalidOperation:
            raise ValueError(f"invalid price amount: {v!r}")
        if not value.is_finite() or value <= 0:
            raise ValueError(f"price amount must be positive, got {v!r}")
        return f"{value.quantize(Decimal('0.01'))}"

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str, info) -> str:
        if len(v) != 3 or not v.isalpha():
            raise ValueError(f"currency must be an ISO 4217 code, got {v!r}")
        amount = info.data.get("amount")
        if amount is not None and currency_exponent(v) == 0 and Decimal(amount) % 1:
            raise ValueError(f"{v.upper()} has no minor unit, got amount {amount!r}")
        return v.upper()

    def minor_units(self) -> int:
        """Amount in the currency's smallest unit (cents, or yen for JPY)."""
        return int(Decimal(self.amount).scaleb(currency_exponent(self.currency)))


class PriorityQueuePerk(BaseModel):
    """Priority queue slot on one or more game servers."""

    model_config = ConfigDict(frozen=True)

    type: Literal["PRIORITY_QUEUE"] = "PRIORITY_QUEUE"
    servers: list[str] = Field(min_length=1)
    amount_in_days: int = Field(default=30, ge=1)
    permanent: bool = False


class DiscordRolePerk(BaseModel):
    """One or more Discord roles in the community guild."""

    model_config = ConfigDict(frozen=True)

    type: Literal["DISCORD_ROLE"] = "DISCORD_ROLE"
    roles: list[str] = Field(min_length=1)

    @field_validator("roles", mode="before")
    @classmethod
    def roles_as_strings(cls, v):
        # Snowflakes written as bare numbers lose precision in some editors
        if isinstance(v, list):
            return [str(r) for r in v]
        return v


class FreetextPerk(BaseModel):
    """A thank-you note only. Nothing is granted."""

    model_config = ConfigDict(frozen=True)

    type: Literal["FREETEXT_ONLY"] = "FREETEXT_ONLY"


Perk = Annotated[
    Union[PriorityQueuePerk, DiscordRolePerk, FreetextPerk],
    Field(discriminator="type"),
]


class Package(BaseModel):
    """Purchasable bundle of perks with a price."""

    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    description: str = ""
    price: Price
    perks: list[Perk] = Field(default_factory=list)
    subscription: bool = False

    def with_price(self, amount: str) -> "Package":
        """Copy of this package charged at a donor-chosen amount.

        Raises:
            InvalidPrice: If the package has a fixed price or the amount is
                not a positive number
        """
        if self.price.type is PriceType.FIXED:
            raise InvalidPrice(f"package {self.id} has a fixed price")
        try:
            price = Price(amount=amount, currency=self.price.currency, type=self.price.type)
        except ValueError as e:
            raise InvalidPrice(f"invalid amount {amount!r} for package {self.id}") from e
        return self.model_copy(update={"price": price})
