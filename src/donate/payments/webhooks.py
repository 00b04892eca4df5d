"""Stripe webhook handler and event routing."""

import logging
from dataclasses import dataclass

import stripe
from aiohttp import web

from donate.errors import InvalidState, OrderNotFound, SubscriptionNotFound
from donate.payments.checkout import Donations
from donate.payments.gateway import SaleCompleted, SubscriptionCancelled
from donate.payments.subscriptions import Subscriptions

logger = logging.getLogger(__name__)

# Events whose payload is re-fetched through the gateway before use
BILLING_EVENTS = ("invoice.paid", "customer.subscription.deleted")

# Delayed methods (SEPA, Sofort) complete the session unpaid and settle later
CHECKOUT_EVENTS = ("checkout.session.completed", "checkout.session.async_payment_succeeded")
SETTLED_PAYMENT_STATUSES = ("paid", "no_payment_required")


@dataclass
class WebhookContext:
    subscriptions: Subscriptions
    donations: Donations
    webhook_secret: str


async def handle_webhook(
    payload: bytes,
    sig_header: str,
    context: WebhookContext,
) -> web.Response:
    """Verify a Stripe webhook and route it to the payment services.

    Unknown agreements and orders, and lifecycle violations, are acknowledged
    with 200 and logged, because redelivering them cannot succeed. Any other
    failure, including a plan or package that cannot be resolved for a paid
    cycle, returns 500 so Stripe retries.

    Args:
        payload: Raw webhook payload bytes
        sig_header: Stripe-Signature header value
        context: Services the events are routed to

    Returns:
        aiohttp.web.Response (200 handled, 400 rejected, 500 retry)
    """
    try:
        event = stripe.Webhook.construct_event(payload, sig_header, context.webhook_secret)
    except ValueError:
        logger.error("Invalid webhook payload")
        return web.Response(status=400, text="Invalid payload")
    except stripe.SignatureVerificationError:
        logger.error("Invalid webhook signature")
        return web.Response(status=400, text="Invalid signature")

    event_type = event["type"]
    logger.info(f"Received webhook: {event_type} ({event['id']})")

    try:
        if event_type in CHECKOUT_EVENTS:
            await _handle_checkout_completed(event["data"]["object"], context)
        elif event_type in BILLING_EVENTS:
            await _handle_billing_event(event["id"], context)
        else:
            logger.info(f"Unhandled event type: {event_type}")

        return web.Response(status=200, text="OK")

    except (SubscriptionNotFound, OrderNotFound) as e:
        logger.warning(f"Webhook {event_type} refers to an unknown record: {e}")
        return web.Response(status=200, text="Ignored")
    except InvalidState as e:
        logger.warning(f"Webhook {event_type} not applicable: {e}")
        return web.Response(status=200, text="Ignored")
    except Exception as e:
        logger.exception(f"Error processing webhook {event_type}: {e}")
        return web.Response(status=500, text="Internal error")


async def _handle_checkout_completed(session, context: WebhookContext) -> None:
    """Complete a one-off donation paid through a Checkout redirect.

    Subscription checkouts are handled by their invoice.paid events. A
    session whose payment has not settled yet is left unpaid until
    checkout.session.async_payment_succeeded arrives.
    """
    if session["mode"] != "payment":
        logger.debug(f"Ignoring checkout session {session['id']} in mode {session['mode']}")
        return
    if session["payment_status"] not in SETTLED_PAYMENT_STATUSES:
        logger.info(
            f"Checkout session {session['id']} completed with payment "
            f"{session['payment_status']}, waiting for settlement"
        )
        return

    transaction_id = session["payment_intent"] or session["id"]
    order = await context.donations.complete_deferred(session["id"], transaction_id)
    logger.info(f"Checkout session {session['id']} completed order {order.id}")


async def _handle_billing_event(event_id: str, context: WebhookContext) -> None:
    resource = await context.subscriptions.payment.webhook_event(event_id)

    match resource:
        case SaleCompleted(billing_agreement_id=agreement_id, id=transaction_id):
            order = await context.subscriptions.redeem_subscription_payment(agreement_id, transaction_id)
            logger.info(f"Billing cycle {transaction_id} of {agreement_id} recorded as order {order.id}")
        case SubscriptionCancelled(id=agreement_id):
            await context.subscriptions.cancelled_externally(agreement_id)
        case None:
            logger.warning(f"Event {event_id} not available from the payment provider")
