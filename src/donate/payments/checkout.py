"""One-off donations: order creation, capture and deferred completion."""

import logging
from typing import TYPE_CHECKING, Optional

from donate.errors import InvalidState, OrderNotFound
from donate.events import SUCCESSFUL_PAYMENT, EventSink, emit_safely
from donate.packages.models import Package
from donate.payments.gateway import PaymentGateway, PaymentOrder, PaymentOrderRequest
from donate.payments.models import (
    Order,
    OrderPayment,
    RedeemTarget,
    Reference,
    User,
    utcnow,
)
from donate.payments.repositories import OrderRepository

if TYPE_CHECKING:
    from donate.redeem.engine import RedeemPackage

logger = logging.getLogger(__name__)


class Donations:
    """Order lifecycle for single payments."""

    def __init__(
        self,
        orders: OrderRepository,
        events: EventSink,
        payment: PaymentGateway,
        redeem: "RedeemPackage",
    ):
        self.orders = orders
        self.events = events
        self.payment = payment
        self.redeem = redeem

    async def create_order(
        self,
        package: Package,
        user: User,
        custom_message: Optional[str] = None,
    ) -> tuple[Order, PaymentOrder]:
        """Create a provider payment and an order bound to it.

        Raises:
            GatewayFailure: If the provider rejects the payment
        """
        reference = Reference(user.steam_id, user.discord_id, package)
        payment_order = await self.payment.create_payment_order(PaymentOrderRequest(reference=reference))

        order = Order.create(
            payment_order.created,
            OrderPayment(id=payment_order.id, provider=self.payment.provider()),
            reference,
            custom_message,
        )
        await self.orders.save(order)

        logger.info(f"Created order {order.id} (payment {payment_order.id}) for {reference.as_string()}")
        return order, payment_order

    async def create_deferred_order(
        self,
        package: Package,
        user: User,
        success_url: str,
        cancel_url: str,
        custom_message: Optional[str] = None,
    ) -> tuple[Order, PaymentOrder]:
        """Create an order first, then the provider redirect it is paid through.

        The returned ``PaymentOrder.payment_url`` is where the user is sent.
        """
        reference = Reference(user.steam_id, user.discord_id, package)
        order = Order.create_deferred(utcnow(), reference, custom_message)

        payment_order = await self.payment.create_payment_order(
            PaymentOrderRequest(
                reference=reference,
                success_url=success_url,
                cancel_url=cancel_url,
                candidate_order_id=order.id,
            )
        )
        order.payment_intent(OrderPayment(id=payment_order.id, provider=self.payment.provider()))
        await self.orders.save(order)

        logger.info(f"Created deferred order {order.id} (payment {payment_order.id})")
        return order, payment_order

    async def capture(self, order_id: str, for_user: User) -> Order:
        """Capture the payment of the user's order and redeem it.

        Raises:
            OrderNotFound: If missing or owned by someone else
            InvalidState: If the order is already paid or has no payment
            GatewayFailure: If the capture fails
        """
        order = await self.orders.find(order_id)
        if order is None or order.reference.discord_id != for_user.discord_id:
            raise OrderNotFound(f"order {order_id}")
        if order.is_paid():
            raise InvalidState(f"order {order_id} is already paid")
        if order.payment is None:
            raise InvalidState(f"order {order_id} has no payment intent to capture")

        capture = await self.payment.capture_payment(order.payment.id)
        order.pay(capture.transaction_id)
        await self.orders.save(order)

        return await self._redeem(order)

    async def complete_deferred(self, payment_id: str, transaction_id: str) -> Order:
        """Mark the order of a completed redirect payment as paid and redeem it.

        Redeliveries of the same completion return the stored order.

        Raises:
            OrderNotFound: If no order holds this payment id
        """
        candidates = await self.orders.find_by_payment_order(payment_id)
        if not candidates:
            raise OrderNotFound(f"no order for payment {payment_id}")
        order = candidates[0]

        if not order.is_paid():
            order.pay(transaction_id)
            await self.orders.save(order)
        elif order.payment.transaction_id != transaction_id:
            logger.warning(
                f"Order {order.id} already paid by {order.payment.transaction_id}, "
                f"ignoring transaction {transaction_id}"
            )

        if order.redeemed_at is not None:
            return order
        return await self._redeem(order)

    async def _redeem(self, order: Order) -> Order:
        target = RedeemTarget(
            steam_id=order.reference.steam_id,
            discord_id=order.reference.discord_id,
        )
        await self.redeem.redeem(order, target)
        emit_safely(self.events, SUCCESSFUL_PAYMENT, target, order)
        return order
