"""Package catalogue: packages, prices and perk definitions."""

from donate.packages.loader import find_package, load_packages, parse_packages
from donate.packages.models import (
    DiscordRolePerk,
    FreetextPerk,
    Package,
    Perk,
    Price,
    PriceType,
    PriorityQueuePerk,
)

__all__ = [
    "Package",
    "Price",
    "PriceType",
    "Perk",
    "PriorityQueuePerk",
    "DiscordRolePerk",
    "FreetextPerk",
    "find_package",
    "load_packages",
    "parse_packages",
]
