"""Provider-agnostic payment gateway interface and its record types."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

from donate.packages.models import Package
from donate.payments.models import Reference, Subscription, SubscriptionPlan, User


@dataclass
class PaymentOrderRequest:
    """A one-off donation to create at the provider.

    ``success_url``/``cancel_url`` select the redirect (deferred) flow.
    """

    reference: Reference
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None
    candidate_order_id: Optional[str] = None

    @property
    def deferred(self) -> bool:
        return self.success_url is not None


@dataclass
class PaymentOrder:
    """Provider-side payment created for an order."""

    id: str
    created: datetime
    transaction_id: Optional[str] = None
    payment_url: Optional[str] = None  # set for the redirect flow


@dataclass
class PaymentCapture:
    order_id: str
    transaction_id: str


@dataclass
class PendingSubscription:
    """Billing agreement created at the provider, awaiting user approval."""

    id: str
    approval_link: str


@dataclass
class SaleCompleted:
    """One successful billing cycle of an agreement."""

    id: str  # transaction id, unique per cycle
    billing_agreement_id: str
    amount: str
    currency: str
    custom: Optional[str] = None  # correlation token
    state: str = "completed"


@dataclass
class SubscriptionCancelled:
    """The provider reports an agreement as cancelled."""

    id: str


WebhookEvent = Union[SaleCompleted, SubscriptionCancelled]


class PaymentGateway(ABC):
    """Payment provider capabilities used by the donation core.

    Implementations raise ``donate.errors.GatewayFailure`` for any provider
    error and never retry payment-mutating calls themselves.
    """

    @abstractmethod
    def provider(self) -> str:
        """Short provider name stored on order payments (e.g. 'stripe')."""

    @abstractmethod
    async def create_payment_order(self, request: PaymentOrderRequest) -> PaymentOrder:
        """Create a one-off payment for a package."""

    @abstractmethod
    async def capture_payment(self, payment_id: str) -> PaymentCapture:
        """Capture a previously created one-off payment."""

    @abstractmethod
    async def subscribe(
        self,
        subscription: Subscription,
        plan: SubscriptionPlan,
        user: User,
    ) -> PendingSubscription:
        """Create a billing agreement for the plan and return its approval link."""

    @abstractmethod
    async def cancel_subscription(self, subscription: Subscription) -> None:
        """Cancel the agreement. An agreement that is already cancelled is accepted."""

    @abstractmethod
    async def webhook_event(self, event_id: str) -> Optional[WebhookEvent]:
        """Fetch a provider event by id, None if unknown or not relevant."""

    @abstractmethod
    async def persist_subscription(
        self,
        package: Package,
        existing_plan: Optional[SubscriptionPlan] = None,
    ) -> SubscriptionPlan:
        """Create or update the provider product/plan for a package.

        With ``existing_plan`` the returned plan keeps ``existing_plan.id``.
        """
