"""Startup provisioning of subscription plans."""

import logging

from donate.packages.models import Package
from donate.payments.gateway import PaymentGateway
from donate.payments.models import SubscriptionPlan
from donate.payments.repositories import SubscriptionPlanRepository

logger = logging.getLogger(__name__)


async def provision_plans(
    packages: list[Package],
    gateway: PaymentGateway,
    plans: SubscriptionPlanRepository,
) -> list[SubscriptionPlan]:
    """Create or refresh the plan of every subscription package.

    A stored plan is passed to the gateway so it is updated in place and
    keeps its id; existing subscriptions keep referring to it.

    Raises:
        GatewayFailure: If the provider rejects a product or plan change
    """
    provisioned = []
    for package in packages:
        if not package.subscription:
            continue

        existing = await plans.find_by_package(package)
        plan = await gateway.persist_subscription(package, existing)
        await plans.save(plan)
        provisioned.append(plan)

        if existing is None:
            logger.info(f"Provisioned plan {plan.id} for package {package.id} ({plan.payment.plan_id})")
        elif existing.payment != plan.payment:
            logger.info(
                f"Plan {plan.id} for package {package.id} moved from "
                f"{existing.payment.plan_id} to {plan.payment.plan_id}"
            )
        else:
            logger.debug(f"Plan {plan.id} for package {package.id} up to date")

    return provisioned
