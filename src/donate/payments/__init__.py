"""Donations and subscriptions: payment lifecycle, gateways and webhooks.

Coordinates the payment provider, order and subscription persistence, and
perk redemption for paid orders.
"""

from donate.payments.checkout import Donations
from donate.payments.gateway import (
    PaymentGateway,
    PaymentOrder,
    PaymentOrderRequest,
    PendingSubscription,
    SaleCompleted,
    SubscriptionCancelled,
)
from donate.payments.plans import provision_plans
from donate.payments.subscriptions import Subscriptions, ViewSubscription
from donate.payments.webhooks import WebhookContext, handle_webhook

__all__ = [
    "Donations",
    "Subscriptions",
    "ViewSubscription",
    "PaymentGateway",
    "PaymentOrder",
    "PaymentOrderRequest",
    "PendingSubscription",
    "SaleCompleted",
    "SubscriptionCancelled",
    "WebhookContext",
    "handle_webhook",
    "provision_plans",
]
