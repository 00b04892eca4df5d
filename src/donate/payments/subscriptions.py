"""Subscription lifecycle: subscribe, billing cycles, viewing and cancellation.

Billing events from the provider may arrive late, twice or concurrently.
Writes to one subscription are serialized with a per-subscription lock, and
each billing cycle is identified by (agreement id, transaction id) so a
redelivered event never creates a second order.
"""

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from donate.db.models import SubscriptionState
from donate.errors import (
    DuplicateOrder,
    InvalidState,
    OrderNotFound,
    PlanNotFound,
    SubscriptionNotFound,
    SubscriptionNotPending,
)
from donate.events import (
    SUBSCRIPTION_CANCELLED,
    SUCCESSFUL_SUBSCRIPTION_EXECUTION,
    EventSink,
    emit_safely,
)
from donate.packages.models import Package
from donate.payments.gateway import PaymentGateway, PendingSubscription
from donate.payments.locks import KeyedLock
from donate.payments.models import (
    Order,
    RedeemTarget,
    Subscription,
    SubscriptionPlan,
    User,
)
from donate.payments.repositories import (
    OrderRepository,
    SubscriptionPlanRepository,
    SubscriptionsRepository,
)

if TYPE_CHECKING:
    from donate.redeem.engine import RedeemPackage

logger = logging.getLogger(__name__)


@dataclass
class ViewSubscription:
    subscription: Subscription
    plan: SubscriptionPlan
    history: list[Order]


class Subscriptions:
    """Coordinates plans, the payment gateway, persistence and redemption."""

    def __init__(
        self,
        subscription_plans: SubscriptionPlanRepository,
        subscriptions: SubscriptionsRepository,
        orders: OrderRepository,
        events: EventSink,
        payment: PaymentGateway,
        redeem: "RedeemPackage",
    ):
        self.subscription_plans = subscription_plans
        self.subscriptions = subscriptions
        self.orders = orders
        self.events = events
        self.payment = payment
        self.redeem = redeem
        self._locks = KeyedLock()

    async def subscribe(self, package: Package, user: User) -> PendingSubscription:
        """Create a billing agreement and store it as a PENDING subscription.

        Raises:
            PlanNotFound: If no plan was provisioned for the package
            GatewayFailure: If the provider rejects the agreement
        """
        plan = await self.subscription_plans.find_by_package(package)
        if plan is None:
            raise PlanNotFound(f"no subscription plan for package {package.id}")

        subscription = Subscription.create(plan, user)
        pending = await self.payment.subscribe(subscription, plan, user)
        subscription.agree_billing(pending.id)
        await self.subscriptions.save(subscription)

        logger.info(
            f"Subscription {subscription.id} pending for discord user {user.discord_id} "
            f"(agreement {pending.id}, package {package.id})"
        )
        return pending

    async def redeem_subscription_payment(self, payment_id: str, transaction_id: str) -> Order:
        """Record and redeem one billing cycle of an agreement.

        Nothing is written before the subscription and plan are resolved.
        If redemption fails afterwards, the PAID order remains and can be
        repaired with ``retry_redemption``.

        Raises:
            SubscriptionNotFound: If no subscription holds this agreement id
            PlanNotFound: If the subscription's plan is gone
            RedeemError: If granting a perk fails
        """
        found = await self.subscriptions.find_by_payment(payment_id)
        if found is None:
            raise SubscriptionNotFound(f"no subscription for agreement {payment_id}")

        async with self._locks.hold(found.id):
            subscription = await self.subscriptions.find(found.id) or found
            plan = await self._plan(subscription.plan_id)
            target = subscription.redeem_target()

            existing = await self.orders.find_by_transaction(payment_id, transaction_id)
            if existing is not None:
                logger.info(
                    f"Billing cycle {payment_id}/{transaction_id} already recorded as order {existing.id}"
                )
                await self.redeem.redeem(existing, target)
                return existing

            if subscription.state is SubscriptionState.CANCELLED:
                logger.warning(
                    f"Billing cycle {transaction_id} for cancelled subscription {subscription.id}"
                )

            order = subscription.pay(transaction_id, self.payment.provider(), plan.base_package)
            await self.subscriptions.save(subscription)
            try:
                await self.orders.save(order)
            except DuplicateOrder:
                stored = await self.orders.find_by_transaction(payment_id, transaction_id)
                if stored is None:
                    raise
                logger.info(f"Billing cycle {payment_id}/{transaction_id} stored concurrently")
                order = stored

            await self.redeem.redeem(order, target)

        emit_safely(self.events, SUCCESSFUL_SUBSCRIPTION_EXECUTION, target, order)
        return order

    async def view_subscription(self, subscription_id: str, for_user: User) -> ViewSubscription:
        """Subscription with its plan and all billed orders.

        Raises:
            SubscriptionNotFound: If missing or owned by someone else
        """
        subscription = await self._owned(subscription_id, for_user)
        plan = await self._plan(subscription.plan_id)
        history = []
        if subscription.payment.id:
            history = await self.orders.find_by_payment_order(subscription.payment.id)
        return ViewSubscription(subscription=subscription, plan=plan, history=history)

    async def subscriptions_of(self, user: User) -> list[Subscription]:
        return await self.subscriptions.find_by_user(user.discord_id)

    async def cancel(self, subscription_id: str, for_user: User) -> None:
        """Cancel at the provider, then mark the subscription CANCELLED.

        If the provider call fails the stored state is left untouched.

        Raises:
            SubscriptionNotFound: If missing or owned by someone else
            GatewayFailure: If the provider cancellation fails
        """
        async with self._locks.hold(subscription_id):
            subscription = await self._owned(subscription_id, for_user)
            if subscription.state is SubscriptionState.CANCELLED:
                return

            await self.payment.cancel_subscription(subscription)
            subscription.cancel()
            await self.subscriptions.save(subscription)

        logger.info(f"Subscription {subscription_id} cancelled by discord user {for_user.discord_id}")
        emit_safely(self.events, SUBSCRIPTION_CANCELLED, subscription)

    async def abort(self, subscription_id: str, for_user: User) -> None:
        """Drop a subscription whose approval the user abandoned.

        Raises:
            SubscriptionNotFound: If missing or owned by someone else
            SubscriptionNotPending: If the agreement was already approved or cancelled
        """
        async with self._locks.hold(subscription_id):
            subscription = await self._owned(subscription_id, for_user)
            if subscription.state is not SubscriptionState.PENDING:
                raise SubscriptionNotPending(
                    f"subscription {subscription_id} is {subscription.state.value}"
                )
            await self.payment.cancel_subscription(subscription)
            subscription.cancel()
            await self.subscriptions.save(subscription)

        logger.info(f"Pending subscription {subscription_id} aborted")

    async def cancelled_externally(self, payment_id: str) -> None:
        """Apply a cancellation the provider reported (e.g. by webhook).

        Raises:
            SubscriptionNotFound: If no subscription holds this agreement id
        """
        found = await self.subscriptions.find_by_payment(payment_id)
        if found is None:
            raise SubscriptionNotFound(f"no subscription for agreement {payment_id}")

        async with self._locks.hold(found.id):
            subscription = await self.subscriptions.find(found.id) or found
            if subscription.state is SubscriptionState.CANCELLED:
                return
            subscription.cancel()
            await self.subscriptions.save(subscription)

        logger.info(f"Subscription {subscription.id} cancelled by provider (agreement {payment_id})")
        emit_safely(self.events, SUBSCRIPTION_CANCELLED, subscription)

    async def retry_redemption(self, order_id: str) -> Order:
        """Redeem a PAID order whose earlier redemption failed.

        Raises:
            OrderNotFound: If the order does not exist
            InvalidState: If the order is not paid
        """
        order = await self.orders.find(order_id)
        if order is None:
            raise OrderNotFound(f"order {order_id}")
        if not order.is_paid():
            raise InvalidState(f"order {order_id} is not paid")

        target = RedeemTarget(
            steam_id=order.reference.steam_id,
            discord_id=order.reference.discord_id,
        )
        await self.redeem.redeem(order, target)
        return order

    async def _owned(self, subscription_id: str, user: User) -> Subscription:
        subscription = await self.subscriptions.find(subscription_id)
        if subscription is None or not subscription.belongs_to(user):
            raise SubscriptionNotFound(f"subscription {subscription_id}")
        return subscription

    async def _plan(self, plan_id: str) -> SubscriptionPlan:
        plan = await self.subscription_plans.find(plan_id)
        if plan is None:
            raise PlanNotFound(f"plan {plan_id}")
        return plan
