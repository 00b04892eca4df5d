"""In-process gateway for development and tests. Nothing leaves the process."""

import logging
import uuid
from typing import Optional

from donate.packages.models import Package
from donate.payments.gateway import (
    PaymentCapture,
    PaymentGateway,
    PaymentOrder,
    PaymentOrderRequest,
    PendingSubscription,
    WebhookEvent,
)
from donate.payments.models import Subscription, SubscriptionPlan, User, utcnow

logger = logging.getLogger(__name__)


class FakeGateway(PaymentGateway):
    """Accepts every payment. Records agreements it created and cancelled."""

    def __init__(self, approval_base_url: str = "https://example.com/approveSubscription"):
        self.approval_base_url = approval_base_url
        self.agreements: dict[str, str] = {}  # agreement id -> plan id
        self.cancelled: list[str] = []
        self.events: dict[str, WebhookEvent] = {}

    def provider(self) -> str:
        return "fake"

    async def create_payment_order(self, request: PaymentOrderRequest) -> PaymentOrder:
        payment_id = str(uuid.uuid4())
        if request.deferred:
            return PaymentOrder(
                id=payment_id,
                created=utcnow(),
                payment_url=request.success_url,
            )
        return PaymentOrder(id=payment_id, created=utcnow())

    async def capture_payment(self, payment_id: str) -> PaymentCapture:
        return PaymentCapture(order_id=payment_id, transaction_id=str(uuid.uuid4()))

    async def subscribe(
        self,
        subscription: Subscription,
        plan: SubscriptionPlan,
        user: User,
    ) -> PendingSubscription:
        agreement_id = f"I-{uuid.uuid4().hex[:12].upper()}"
        self.agreements[agreement_id] = plan.id
        logger.info(f"Fake agreement {agreement_id} for discord user {user.discord_id}")
        return PendingSubscription(
            id=agreement_id,
            approval_link=f"{self.approval_base_url}?id={agreement_id}",
        )

    async def cancel_subscription(self, subscription: Subscription) -> None:
        self.cancelled.append(subscription.payment.id)

    async def webhook_event(self, event_id: str) -> Optional[WebhookEvent]:
        return self.events.get(event_id)

    async def persist_subscription(
        self,
        package: Package,
        existing_plan: Optional[SubscriptionPlan] = None,
    ) -> SubscriptionPlan:
        product_id = f"DONATE-{package.id}"
        if existing_plan is not None and existing_plan.payment.plan_id:
            return existing_plan.refreshed(package, product_id, existing_plan.payment.plan_id)
        return SubscriptionPlan.create(package, product_id, f"P-{uuid.uuid4().hex[:12].upper()}")
