"""Persistence of orders, subscriptions and subscription plans.

The abstract repositories are the boundary the services depend on. The
Postgres implementations rebuild entities from rows with explicit
``*_from_row`` functions.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Mapping, Optional

import asyncpg

from donate.db.models import OrderStatus, SubscriptionState, Table
from donate.errors import DuplicateOrder
from donate.packages.loader import dump_package, find_package
from donate.packages.models import Package
from donate.payments.models import (
    Order,
    OrderPayment,
    PlanPayment,
    Reference,
    Subscription,
    SubscriptionPaymentRef,
    SubscriptionPlan,
    SubscriptionUser,
)

logger = logging.getLogger(__name__)

Row = Mapping[str, Any]


class OrderRepository(ABC):
    @abstractmethod
    async def find(self, order_id: str) -> Optional[Order]: ...

    @abstractmethod
    async def find_by_payment_order(self, payment_id: str) -> list[Order]:
        """All orders of a payment/agreement id, oldest first."""

    @abstractmethod
    async def find_by_transaction(self, payment_id: str, transaction_id: str) -> Optional[Order]: ...

    @abstractmethod
    async def save(self, order: Order) -> None:
        """Insert or update an order.

        Raises:
            DuplicateOrder: If another order already holds this
                (payment id, transaction id) pair
        """


class SubscriptionsRepository(ABC):
    @abstractmethod
    async def find(self, subscription_id: str) -> Optional[Subscription]: ...

    @abstractmethod
    async def find_by_payment(self, payment_id: str) -> Optional[Subscription]: ...

    @abstractmethod
    async def find_by_user(self, discord_id: str) -> list[Subscription]: ...

    @abstractmethod
    async def save(self, subscription: Subscription) -> None:
        """Insert or update. A stored CANCELLED subscription is never overwritten."""


class SubscriptionPlanRepository(ABC):
    @abstractmethod
    async def find(self, plan_id: str) -> Optional[SubscriptionPlan]: ...

    @abstractmethod
    async def find_by_package(self, package: Package) -> Optional[SubscriptionPlan]: ...

    @abstractmethod
    async def save(self, plan: SubscriptionPlan) -> None: ...


# Row -> entity


def order_from_row(row: Row) -> Order:
    """Rebuild an Order. The package comes from the snapshot taken at purchase."""
    package = Package.model_validate(row["package"])
    payment = None
    if row["payment_id"] is not None:
        payment = OrderPayment(
            id=row["payment_id"],
            provider=row["payment_provider"],
            transaction_id=row["transaction_id"],
        )
    return Order(
        id=str(row["id"]),
        created=row["created"],
        reference=Reference(row["steam_id"], row["discord_id"], package),
        custom_message=row["custom_message"],
        redeemed_at=row["redeemed_at"],
        status=OrderStatus(row["status"]),
        payment=payment,
    )


def subscription_from_row(row: Row) -> Subscription:
    return Subscription(
        id=str(row["id"]),
        plan_id=str(row["plan_id"]),
        payment=SubscriptionPaymentRef(id=row["payment_id"]),
        user=SubscriptionUser(steam_id=row["steam_id"], discord_id=row["discord_id"]),
        state=SubscriptionState(row["state"]),
    )


def plan_from_row(row: Row, packages: list[Package]) -> SubscriptionPlan:
    """Rebuild a plan against the current catalogue.

    Raises:
        PackageNotFound: If the package was removed from the catalogue
    """
    return SubscriptionPlan(
        id=str(row["id"]),
        base_package=find_package(packages, row["package_id"]),
        payment=PlanPayment(product_id=row["product_id"], plan_id=row["plan_id"]),
    )


# Postgres


class PgOrderRepository(OrderRepository):
    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def find(self, order_id: str) -> Optional[Order]:
        async with self.pool.acquire() as conn:
            try:
                row = await conn.fetchrow(
                    f"SELECT * FROM {Table.ORDERS} WHERE id = $1::uuid",
                    order_id,
                )
            except asyncpg.DataError:
                return None
        return order_from_row(row) if row else None

    async def find_by_payment_order(self, payment_id: str) -> list[Order]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT *
                FROM {Table.ORDERS}
                WHERE payment_id = $1
                ORDER BY created
                """,
                payment_id,
            )
        return [order_from_row(r) for r in rows]

    async def find_by_transaction(self, payment_id: str, transaction_id: str) -> Optional[Order]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT *
                FROM {Table.ORDERS}
                WHERE payment_id = $1 AND transaction_id = $2
                """,
                payment_id,
                transaction_id,
            )
        return order_from_row(row) if row else None

    async def save(self, order: Order) -> None:
        payment = order.payment
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(
                    f"""
                    INSERT INTO {Table.ORDERS}
                        (id, created, steam_id, discord_id, package_id, package,
                         custom_message, redeemed_at, status,
                         payment_id, transaction_id, payment_provider)
                    VALUES ($1::uuid, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
                    ON CONFLICT (id) DO UPDATE SET
                        redeemed_at = EXCLUDED.redeemed_at,
                        status = EXCLUDED.status,
                        payment_id = EXCLUDED.payment_id,
                        transaction_id = EXCLUDED.transaction_id,
                        payment_provider = EXCLUDED.payment_provider
                    """,
                    order.id,
                    order.created,
                    order.reference.steam_id,
                    order.reference.discord_id,
                    order.reference.package.id,
                    dump_package(order.reference.package),
                    order.custom_message,
                    order.redeemed_at,
                    order.status.value,
                    payment.id if payment else None,
                    payment.transaction_id if payment else None,
                    payment.provider if payment else None,
                )
        except asyncpg.UniqueViolationError as e:
            raise DuplicateOrder(payment.id, payment.transaction_id) from e


class PgSubscriptionsRepository(SubscriptionsRepository):
    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def find(self, subscription_id: str) -> Optional[Subscription]:
        async with self.pool.acquire() as conn:
            try:
                row = await conn.fetchrow(
                    f"SELECT * FROM {Table.SUBSCRIPTIONS} WHERE id = $1::uuid",
                    subscription_id,
                )
            except asyncpg.DataError:
                # Not a UUID, so it cannot exist
                return None
        return subscription_from_row(row) if row else None

    async def find_by_payment(self, payment_id: str) -> Optional[Subscription]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT * FROM {Table.SUBSCRIPTIONS} WHERE payment_id = $1",
                payment_id,
            )
        return subscription_from_row(row) if row else None

    async def find_by_user(self, discord_id: str) -> list[Subscription]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT *
                FROM {Table.SUBSCRIPTIONS}
                WHERE discord_id = $1
                ORDER BY updated_at DESC
                """,
                discord_id,
            )
        return [subscription_from_row(r) for r in rows]

    async def save(self, subscription: Subscription) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                f"""
                INSERT INTO {Table.SUBSCRIPTIONS}
                    (id, plan_id, payment_id, steam_id, discord_id, state)
                VALUES ($1::uuid, $2::uuid, $3, $4, $5, $6)
                ON CONFLICT (id) DO UPDATE SET
                    payment_id = EXCLUDED.payment_id,
                    state = EXCLUDED.state,
                    updated_at = now()
                WHERE {Table.SUBSCRIPTIONS}.state <> '{SubscriptionState.CANCELLED.value}'
                """,
                subscription.id,
                subscription.plan_id,
                subscription.payment.id,
                subscription.user.steam_id,
                subscription.user.discord_id,
                subscription.state.value,
            )


class PgSubscriptionPlanRepository(SubscriptionPlanRepository):
    def __init__(self, pool: asyncpg.Pool, packages: list[Package]):
        self.pool = pool
        self.packages = packages

    async def find(self, plan_id: str) -> Optional[SubscriptionPlan]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT * FROM {Table.SUBSCRIPTION_PLANS} WHERE id = $1::uuid",
                plan_id,
            )
        return plan_from_row(row, self.packages) if row else None

    async def find_by_package(self, package: Package) -> Optional[SubscriptionPlan]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT * FROM {Table.SUBSCRIPTION_PLANS} WHERE package_id = $1",
                package.id,
            )
        return plan_from_row(row, self.packages) if row else None

    async def save(self, plan: SubscriptionPlan) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                f"""
                INSERT INTO {Table.SUBSCRIPTION_PLANS}
                    (id, package_id, product_id, plan_id)
                VALUES ($1::uuid, $2, $3, $4)
                ON CONFLICT (id) DO UPDATE SET
                    product_id = EXCLUDED.product_id,
                    plan_id = EXCLUDED.plan_id,
                    updated_at = now()
                """,
                plan.id,
                plan.base_package.id,
                plan.payment.product_id,
                plan.payment.plan_id,
            )
