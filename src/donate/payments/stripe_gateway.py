"""Stripe implementation of the payment gateway.

Recurring billing maps to Stripe objects as follows:
- package            -> Product with id ``DONATE-<package id>``
- subscription plan  -> recurring monthly Price on that product
- billing agreement  -> Subscription, approved by paying its first invoice
- billing cycle      -> paid Invoice (the invoice id is the transaction id)

The stripe library is synchronous, so calls run in a worker thread.
"""

import asyncio
import functools
import logging
from datetime import datetime, timezone
from typing import Any, Optional

import stripe

from donate.config.settings import AppConfig
from donate.errors import GatewayFailure
from donate.packages.models import Package, from_minor_units
from donate.payments.gateway import (
    PaymentCapture,
    PaymentGateway,
    PaymentOrder,
    PaymentOrderRequest,
    PendingSubscription,
    SaleCompleted,
    SubscriptionCancelled,
    WebhookEvent,
)
from donate.payments.models import Reference, Subscription, SubscriptionPlan, User

logger = logging.getLogger(__name__)

PRODUCT_PREFIX = "DONATE-"


def _get(obj: Any, key: str, default: Any = None) -> Any:
    """Key lookup that works for dicts and StripeObjects alike."""
    try:
        value = obj[key]
    except (KeyError, TypeError):
        return default
    return default if value is None else value


def _id(obj: Any) -> Optional[str]:
    """Id of an expandable field, which is either an id string or an object."""
    if obj is None or isinstance(obj, str):
        return obj
    return _get(obj, "id")


def _timestamp(value: Optional[int]) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _is_missing(e: stripe.StripeError) -> bool:
    return isinstance(e, stripe.InvalidRequestError) and e.code == "resource_missing"


class StripeGateway(PaymentGateway):
    """Payment gateway backed by the Stripe API."""

    def __init__(self, config: AppConfig):
        self.config = config
        stripe.api_key = config.stripe_secret.get_secret_value()
        stripe.max_network_retries = config.stripe_max_network_retries

    def provider(self) -> str:
        return "stripe"

    async def _call(self, fn, *args, missing_ok: bool = False, **kwargs) -> Any:
        """Run a Stripe SDK call off the event loop.

        Returns None for missing resources when ``missing_ok`` is set.

        Raises:
            GatewayFailure: On any other Stripe error
        """
        try:
            return await asyncio.to_thread(functools.partial(fn, *args, **kwargs))
        except stripe.StripeError as e:
            if missing_ok and _is_missing(e):
                return None
            logger.error(f"Stripe call {getattr(fn, '__qualname__', fn)} failed: {e}")
            raise GatewayFailure(f"stripe: {e.user_message or e}") from e

    # One-off donations

    async def create_payment_order(self, request: PaymentOrderRequest) -> PaymentOrder:
        package = request.reference.package
        token = request.reference.as_string()

        if request.deferred:
            session = await self._call(
                stripe.checkout.Session.create,
                mode="payment",
                client_reference_id=token,
                line_items=[
                    {
                        "price_data": {
                            "currency": package.price.currency.lower(),
                            "unit_amount": package.price.minor_units(),
                            "product_data": {"name": package.name},
                        },
                        "quantity": 1,
                    }
                ],
                success_url=request.success_url,
                cancel_url=request.cancel_url,
                metadata={"reference": token, "order_id": request.candidate_order_id or ""},
                payment_intent_data={"description": f"{self.config.community_title}: {package.name}"},
            )
            logger.info(f"Created checkout session {session['id']} for {token}")
            return PaymentOrder(
                id=session["id"],
                created=_timestamp(_get(session, "created")),
                payment_url=session["url"],
            )

        intent = await self._call(
            stripe.PaymentIntent.create,
            amount=package.price.minor_units(),
            currency=package.price.currency.lower(),
            capture_method="manual",
            description=f"{self.config.community_title}: {package.name}",
            metadata={"reference": token},
        )
        logger.info(f"Created payment intent {intent['id']} for {token}")
        return PaymentOrder(id=intent["id"], created=_timestamp(_get(intent, "created")))

    async def capture_payment(self, payment_id: str) -> PaymentCapture:
        intent = await self._call(stripe.PaymentIntent.capture, payment_id)
        return PaymentCapture(
            order_id=intent["id"],
            transaction_id=_id(_get(intent, "latest_charge")) or intent["id"],
        )

    # Recurring billing

    async def subscribe(
        self,
        subscription: Subscription,
        plan: SubscriptionPlan,
        user: User,
    ) -> PendingSubscription:
        token = Reference(user.steam_id, user.discord_id, plan.base_package).as_string()
        metadata = {
            "reference": token,
            "subscription_id": subscription.id,
            "discord_user_id": user.discord_id,
        }
        customer = await self._call(stripe.Customer.create, metadata=metadata)
        created = await self._call(
            stripe.Subscription.create,
            customer=customer["id"],
            items=[{"price": plan.payment.plan_id}],
            payment_behavior="default_incomplete",
            payment_settings={"save_default_payment_method": "on_subscription"},
            metadata=metadata,
            expand=["latest_invoice"],
        )
        approval_link = _get(_get(created, "latest_invoice"), "hosted_invoice_url")
        if not approval_link:
            raise GatewayFailure(f"stripe subscription {created['id']} has no payable invoice")

        logger.info(f"Created Stripe subscription {created['id']} for discord user {user.discord_id}")
        return PendingSubscription(id=created["id"], approval_link=approval_link)

    async def cancel_subscription(self, subscription: Subscription) -> None:
        remote = await self._call(
            stripe.Subscription.retrieve, subscription.payment.id, missing_ok=True
        )
        if remote is None or _get(remote, "status") == "canceled":
            logger.info(f"Stripe subscription {subscription.payment.id} already cancelled")
            return
        await self._call(
            stripe.Subscription.cancel,
            subscription.payment.id,
            cancellation_details={"comment": "Requested by user"},
        )

    async def webhook_event(self, event_id: str) -> Optional[WebhookEvent]:
        # Re-fetching the event means only data Stripe actually holds is trusted
        event = await self._call(stripe.Event.retrieve, event_id, missing_ok=True)
        if event is None:
            return None

        obj = event["data"]["object"]
        event_type = event["type"]

        if event_type == "invoice.paid":
            agreement_id = _invoice_subscription_id(obj)
            if not agreement_id:
                return None
            currency = str(_get(obj, "currency", "")).upper()
            return SaleCompleted(
                id=obj["id"],
                billing_agreement_id=agreement_id,
                amount=from_minor_units(_get(obj, "amount_paid", 0), currency),
                currency=currency,
                custom=_get(_get(obj, "metadata", {}), "reference"),
                state=_get(obj, "status", "paid"),
            )
        if event_type == "customer.subscription.deleted":
            return SubscriptionCancelled(id=obj["id"])
        return None

    async def persist_subscription(
        self,
        package: Package,
        existing_plan: Optional[SubscriptionPlan] = None,
    ) -> SubscriptionPlan:
        product_id = f"{PRODUCT_PREFIX}{package.id}"
        product_fields = {"name": package.name}
        if package.description:
            product_fields["description"] = package.description

        product = await self._call(stripe.Product.retrieve, product_id, missing_ok=True)
        if product is None:
            await self._call(stripe.Product.create, id=product_id, **product_fields)
            logger.info(f"Created Stripe product {product_id}")
        else:
            await self._call(stripe.Product.modify, product_id, active=True, **product_fields)

        nickname = f"{package.name} (monthly)"
        if existing_plan is not None and existing_plan.payment.plan_id:
            price_id = await self._refresh_price(existing_plan.payment.plan_id, product_id, package, nickname)
            return existing_plan.refreshed(package, product_id, price_id)

        price = await self._create_price(product_id, package, nickname)
        return SubscriptionPlan.create(package, product_id, price["id"])

    async def _create_price(self, product_id: str, package: Package, nickname: str) -> Any:
        price = await self._call(
            stripe.Price.create,
            product=product_id,
            unit_amount=package.price.minor_units(),
            currency=package.price.currency.lower(),
            recurring={"interval": "month", "interval_count": 1},
            nickname=nickname,
        )
        logger.info(f"Created Stripe price {price['id']} for {product_id}")
        return price

    async def _refresh_price(self, price_id: str, product_id: str, package: Package, nickname: str) -> str:
        """Keep the price if the amount still matches, else replace it.

        Stripe prices cannot change their amount. Subscriptions created on an
        old price keep billing on it after it is deactivated.
        """
        price = await self._call(stripe.Price.retrieve, price_id, missing_ok=True)
        if (
            price is not None
            and _get(price, "unit_amount") == package.price.minor_units()
            and _get(price, "currency") == package.price.currency.lower()
        ):
            await self._call(stripe.Price.modify, price_id, nickname=nickname, active=True)
            return price_id

        replacement = await self._create_price(product_id, package, nickname)
        if price is not None:
            await self._call(stripe.Price.modify, price_id, active=False)
        return replacement["id"]


def _invoice_subscription_id(invoice: Any) -> Optional[str]:
    """Subscription id of an invoice across Stripe API versions."""
    direct = _id(_get(invoice, "subscription"))
    if direct:
        return direct
    details = _get(_get(invoice, "parent"), "subscription_details")
    return _id(_get(details, "subscription"))
