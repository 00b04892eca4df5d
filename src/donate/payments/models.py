"""Orders, subscription plans and subscriptions.

Entities are plain dataclasses mutated in memory. Persisting them after each
mutation is the caller's job (see ``donate.payments.repositories``).
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from donate.db.models import OrderStatus, SubscriptionState
from donate.errors import InvalidState, PackageNotFound, SubscriptionNotPending
from donate.packages.models import Package


def _new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class User:
    """An authenticated community member. Steam is optional, Discord is not."""

    discord_id: str
    steam_id: Optional[str] = None


@dataclass(frozen=True)
class RedeemTarget:
    """Identities perks are granted to."""

    steam_id: Optional[str]
    discord_id: str


@dataclass(frozen=True)
class Reference:
    """Who bought which package.

    ``as_string()`` is the correlation token handed to the payment provider
    (custom id / metadata) and echoed back in its callbacks.
    """

    steam_id: Optional[str]
    discord_id: str
    package: Package

    def as_string(self) -> str:
        return f"{self.steam_id or self.discord_id}#{self.package.id}"

    @staticmethod
    def parse(token: str, packages: list[Package]) -> tuple[str, Package]:
        """Recover (subject id, package) from a correlation token.

        The subject is the Steam id when one was encoded, else the Discord id.

        Raises:
            PackageNotFound: If the token is malformed or names an unknown package
        """
        subject, sep, package_id = token.rpartition("#")
        if not sep or not subject:
            raise PackageNotFound(f"malformed reference {token!r}")
        for p in packages:
            if str(p.id) == package_id:
                return subject, p
        raise PackageNotFound(f"package {package_id!r} in reference {token!r}")


@dataclass
class OrderPayment:
    """Payment-provider coordinates of an order."""

    id: str
    provider: str
    transaction_id: Optional[str] = None


@dataclass
class Order:
    """One donation or one billing cycle of a subscription."""

    id: str
    created: datetime
    reference: Reference
    custom_message: Optional[str] = None
    redeemed_at: Optional[datetime] = None
    status: OrderStatus = OrderStatus.CREATED
    payment: Optional[OrderPayment] = None

    @classmethod
    def create(
        cls,
        created: datetime,
        payment: OrderPayment,
        reference: Reference,
        custom_message: Optional[str] = None,
    ) -> "Order":
        """New order with its payment already bound (immediate-capture flow)."""
        return cls(
            id=_new_id(),
            created=created,
            reference=reference,
            custom_message=custom_message,
            payment=payment,
        )

    @classmethod
    def create_deferred(
        cls,
        created: datetime,
        reference: Reference,
        custom_message: Optional[str] = None,
    ) -> "Order":
        """New order whose provider payment id is not known yet (redirect flow)."""
        return cls(
            id=_new_id(),
            created=created,
            reference=reference,
            custom_message=custom_message,
        )

    def payment_intent(self, payment: OrderPayment) -> None:
        if self.payment is not None:
            raise InvalidState(
                f"order {self.id} already has an active payment intent"
            )
        self.payment = payment

    def pay(self, transaction_id: str) -> None:
        # Not guarded against repeated calls; redemption checks redeemed_at.
        if self.payment is None:
            raise InvalidState(f"order {self.id} has no payment intent to pay")
        self.payment.transaction_id = transaction_id
        self.status = OrderStatus.PAID

    def is_paid(self) -> bool:
        return self.status is OrderStatus.PAID

    def as_link(self, public_url: str) -> str:
        return f"{public_url.rstrip('/')}/donate/{self.id}"


@dataclass(frozen=True)
class PlanPayment:
    """Provider-side product and recurring price/plan ids."""

    product_id: str
    plan_id: str


@dataclass(frozen=True)
class SubscriptionPlan:
    """Links a package to the provider's recurring-billing coordinates.

    ``id`` survives provider-side updates so subscriptions keep pointing at it.
    """

    id: str
    base_package: Package
    payment: PlanPayment

    @classmethod
    def create(cls, base_package: Package, product_id: str, plan_id: str) -> "SubscriptionPlan":
        return cls(
            id=_new_id(),
            base_package=base_package,
            payment=PlanPayment(product_id=product_id, plan_id=plan_id),
        )

    def refreshed(self, base_package: Package, product_id: str, plan_id: str) -> "SubscriptionPlan":
        """Same logical plan with new provider coordinates."""
        return SubscriptionPlan(
            id=self.id,
            base_package=base_package,
            payment=PlanPayment(product_id=product_id, plan_id=plan_id),
        )


@dataclass
class SubscriptionPaymentRef:
    id: Optional[str] = None


@dataclass(frozen=True)
class SubscriptionUser:
    steam_id: Optional[str]
    discord_id: str


@dataclass
class Subscription:
    """A user's recurring billing agreement for one plan."""

    id: str
    plan_id: str
    payment: SubscriptionPaymentRef
    user: SubscriptionUser
    state: SubscriptionState = SubscriptionState.PENDING

    @classmethod
    def create(cls, plan: SubscriptionPlan, user: User) -> "Subscription":
        return cls(
            id=_new_id(),
            plan_id=plan.id,
            payment=SubscriptionPaymentRef(),
            user=SubscriptionUser(steam_id=user.steam_id, discord_id=user.discord_id),
        )

    def agree_billing(self, payment_id: str) -> None:
        self.payment.id = payment_id

    def pay(self, transaction_id: str, provider: str, package: Package) -> Order:
        """Record one successful billing cycle and activate the subscription.

        A cycle billed after cancellation is still recorded, but CANCELLED is
        terminal and stays.
        """
        order = Order.create(
            utcnow(),
            OrderPayment(id=self.payment.id, provider=provider, transaction_id=transaction_id),
            Reference(self.user.steam_id, self.user.discord_id, package),
        )
        order.pay(transaction_id)
        if self.state is not SubscriptionState.CANCELLED:
            self.state = SubscriptionState.ACTIVE
        return order

    def cancel(self) -> None:
        self.state = SubscriptionState.CANCELLED

    def is_active(self) -> bool:
        return self.state in (SubscriptionState.PENDING, SubscriptionState.ACTIVE)

    def belongs_to(self, user: User) -> bool:
        return self.user.discord_id == user.discord_id

    def redeem_target(self) -> RedeemTarget:
        return RedeemTarget(steam_id=self.user.steam_id, discord_id=self.user.discord_id)

    def as_link(self, public_url: str) -> str:
        return f"{public_url.rstrip('/')}/subscriptions/{self.id}"

    def abort_link(self, public_url: str) -> str:
        if self.state is not SubscriptionState.PENDING:
            raise SubscriptionNotPending(f"subscription {self.id} is {self.state.value}")
        return f"{public_url.rstrip('/')}/subscriptions/{self.id}/abort"
