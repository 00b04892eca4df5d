"""Perk redemption for paid orders."""

from donate.redeem.discord_role import DiscordRoleGranter, RoleGranter
from donate.redeem.engine import RedeemPackage
from donate.redeem.priority_queue import (
    HttpPriorityQueueClient,
    PriorityQueueClient,
    PriorityQueueEntry,
)

__all__ = [
    "RedeemPackage",
    "RoleGranter",
    "DiscordRoleGranter",
    "PriorityQueueClient",
    "PriorityQueueEntry",
    "HttpPriorityQueueClient",
]
