"""In-memory repositories for the fake gateway setup and for tests.

Stored entities are deep copies, so mutating an entity without saving it
does not change what the repository holds.
"""

import copy
from typing import Optional

from donate.db.models import SubscriptionState
from donate.errors import DuplicateOrder
from donate.packages.models import Package
from donate.payments.models import Order, Subscription, SubscriptionPlan
from donate.payments.repositories import (
    OrderRepository,
    SubscriptionPlanRepository,
    SubscriptionsRepository,
)


class InMemoryOrderRepository(OrderRepository):
    def __init__(self):
        self.orders: dict[str, Order] = {}

    async def find(self, order_id: str) -> Optional[Order]:
        order = self.orders.get(order_id)
        return copy.deepcopy(order) if order else None

    async def find_by_payment_order(self, payment_id: str) -> list[Order]:
        found = [
            o for o in self.orders.values()
            if o.payment is not None and o.payment.id == payment_id
        ]
        return [copy.deepcopy(o) for o in sorted(found, key=lambda o: o.created)]

    async def find_by_transaction(self, payment_id: str, transaction_id: str) -> Optional[Order]:
        for o in self.orders.values():
            if (
                o.payment is not None
                and o.payment.id == payment_id
                and o.payment.transaction_id == transaction_id
            ):
                return copy.deepcopy(o)
        return None

    async def save(self, order: Order) -> None:
        payment = order.payment
        if payment is not None and payment.transaction_id is not None:
            existing = await self.find_by_transaction(payment.id, payment.transaction_id)
            if existing is not None and existing.id != order.id:
                raise DuplicateOrder(payment.id, payment.transaction_id)
        self.orders[order.id] = copy.deepcopy(order)


class InMemorySubscriptionsRepository(SubscriptionsRepository):
    def __init__(self):
        self.subscriptions: dict[str, Subscription] = {}

    async def find(self, subscription_id: str) -> Optional[Subscription]:
        sub = self.subscriptions.get(subscription_id)
        return copy.deepcopy(sub) if sub else None

    async def find_by_payment(self, payment_id: str) -> Optional[Subscription]:
        for sub in self.subscriptions.values():
            if sub.payment.id is not None and sub.payment.id == payment_id:
                return copy.deepcopy(sub)
        return None

    async def find_by_user(self, discord_id: str) -> list[Subscription]:
        return [
            copy.deepcopy(s) for s in self.subscriptions.values()
            if s.user.discord_id == discord_id
        ]

    async def save(self, subscription: Subscription) -> None:
        stored = self.subscriptions.get(subscription.id)
        if stored is not None and stored.state is SubscriptionState.CANCELLED:
            return
        self.subscriptions[subscription.id] = copy.deepcopy(subscription)


class InMemorySubscriptionPlanRepository(SubscriptionPlanRepository):
    def __init__(self):
        self.plans: dict[str, SubscriptionPlan] = {}

    async def find(self, plan_id: str) -> Optional[SubscriptionPlan]:
        return self.plans.get(plan_id)

    async def find_by_package(self, package: Package) -> Optional[SubscriptionPlan]:
        for plan in self.plans.values():
            if plan.base_package.id == package.id:
                return plan
        return None

    async def save(self, plan: SubscriptionPlan) -> None:
        self.plans[plan.id] = plan
