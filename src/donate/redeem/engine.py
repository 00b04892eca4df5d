"""Applies a paid order's perks to the donor, once per order."""

import logging
from typing import Optional

from donate.errors import InvalidState, RedeemError
from donate.packages.models import DiscordRolePerk, FreetextPerk, Perk, PriorityQueuePerk
from donate.payments.models import Order, RedeemTarget, utcnow
from donate.payments.repositories import OrderRepository
from donate.redeem.discord_role import RoleGranter
from donate.redeem.priority_queue import PriorityQueueClient, redeem_priority_queue

logger = logging.getLogger(__name__)


class RedeemPackage:
    """Grants every perk of an order's package and stamps ``redeemed_at``.

    An order with ``redeemed_at`` set is skipped. Each perk grant converges,
    so an order interrupted between a grant and the stamp can be redeemed
    again without granting twice.
    """

    def __init__(
        self,
        orders: OrderRepository,
        priority_queue: Optional[PriorityQueueClient] = None,
        roles: Optional[RoleGranter] = None,
    ):
        self.orders = orders
        self.priority_queue = priority_queue
        self.roles = roles

    async def redeem(self, order: Order, target: RedeemTarget) -> None:
        """Redeem the order for the target.

        Raises:
            InvalidState: If the order is not paid
            RedeemError: If a perk backend is missing or fails; the order
                stays unredeemed
        """
        if order.redeemed_at is not None:
            logger.info(f"Order {order.id} already redeemed at {order.redeemed_at}")
            return
        if not order.is_paid():
            raise InvalidState(f"order {order.id} is not paid")

        package = order.reference.package
        for perk in package.perks:
            await self._redeem_perk(perk, order, target)

        order.redeemed_at = utcnow()
        await self.orders.save(order)
        logger.info(
            f"Redeemed order {order.id} (package {package.id}) for discord user {target.discord_id}"
        )

    async def _redeem_perk(self, perk: Perk, order: Order, target: RedeemTarget) -> None:
        match perk:
            case PriorityQueuePerk():
                if self.priority_queue is None:
                    raise RedeemError("priority queue perk configured without a priority queue API")
                await redeem_priority_queue(self.priority_queue, perk, order, target)
            case DiscordRolePerk():
                if self.roles is None:
                    raise RedeemError("discord role perk configured without a discord bot")
                await self.roles.grant(
                    target.discord_id,
                    perk.roles,
                    reason=f"Donation order {order.id}",
                )
            case FreetextPerk():
                pass
            case _:
                raise RedeemError(f"No available provider can redeem perk: {perk!r}")
