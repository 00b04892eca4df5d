"""Application entry point."""

import asyncio
import logging
import signal
import sys
from typing import Optional

from donate.config import AppConfig, get_config
from donate.db import close_pool, get_pool
from donate.db.schema.migrate import migrate
from donate.discord_bot import PerkBot
from donate.events import (
    SUBSCRIPTION_CANCELLED,
    SUCCESSFUL_PAYMENT,
    SUCCESSFUL_SUBSCRIPTION_EXECUTION,
    ListenerEventSink,
)
from donate.packages import load_packages
from donate.payments import Donations, Subscriptions, WebhookContext, provision_plans
from donate.payments.fake import FakeGateway
from donate.payments.gateway import PaymentGateway
from donate.payments.repositories import (
    PgOrderRepository,
    PgSubscriptionPlanRepository,
    PgSubscriptionsRepository,
)
from donate.payments.server import run_server
from donate.payments.stripe_gateway import StripeGateway
from donate.redeem import DiscordRoleGranter, HttpPriorityQueueClient, RedeemPackage

logger = logging.getLogger(__name__)


def build_gateway(config: AppConfig) -> PaymentGateway:
    if config.payment_provider == "fake":
        logger.warning("Using the fake payment gateway; no money will be collected")
        return FakeGateway(approval_base_url=f"{config.base_url()}/fake/approve")
    return StripeGateway(config)


def build_event_sink() -> ListenerEventSink:
    """Event sink with audit logging listeners attached."""
    events = ListenerEventSink()
    events.on(
        SUCCESSFUL_PAYMENT,
        lambda target, order: logger.info(f"Donation {order.id} paid by discord user {target.discord_id}"),
    )
    events.on(
        SUCCESSFUL_SUBSCRIPTION_EXECUTION,
        lambda target, order: logger.info(
            f"Subscription payment {order.id} redeemed for discord user {target.discord_id}"
        ),
    )
    events.on(
        SUBSCRIPTION_CANCELLED,
        lambda subscription: logger.info(f"Subscription {subscription.id} cancelled"),
    )
    return events


async def boot() -> None:
    """
    Boot sequence: load config → load packages → migrate → provision plans →
    serve webhooks (and the Discord bot) until SIGTERM/SIGINT → shutdown.

    Raises:
        SystemExit: On configuration, catalogue or database errors
    """
    config = get_config()
    logger.info(f"Configuration loaded: env={config.env}")

    bot: Optional[PerkBot] = None
    events: Optional[ListenerEventSink] = None
    try:
        packages = load_packages(config.packages_file)
        logger.info(f"Loaded {len(packages)} packages from {config.packages_file}")

        pool = await get_pool()
        logger.info(f"Database pool initialized: min={config.db_pool_min}, max={config.db_pool_max}")
        applied = await migrate()
        logger.info(f"Applied {applied} migration(s)")

        gateway = build_gateway(config)
        orders = PgOrderRepository(pool)
        subscriptions_repo = PgSubscriptionsRepository(pool)
        plans = PgSubscriptionPlanRepository(pool, packages)
        events = build_event_sink()

        roles = None
        if config.discord_token.get_secret_value():
            bot = PerkBot(config)
            roles = DiscordRoleGranter(bot, config.discord_guild_id)
        else:
            logger.warning("DISCORD_TOKEN not configured; role perks cannot be redeemed")

        priority_queue = None
        if config.priority_queue_api_url:
            priority_queue = HttpPriorityQueueClient(
                config.priority_queue_api_url,
                config.priority_queue_api_key.get_secret_value(),
                timeout_seconds=config.http_timeout_seconds,
            )
        else:
            logger.warning("PRIORITY_QUEUE_API_URL not configured; priority queue perks cannot be redeemed")

        redeem = RedeemPackage(orders, priority_queue=priority_queue, roles=roles)
        subscriptions = Subscriptions(plans, subscriptions_repo, orders, events, gateway, redeem)
        donations = Donations(orders, events, gateway, redeem)

        provisioned = await provision_plans(packages, gateway, plans)
        logger.info(f"{len(provisioned)} subscription plan(s) provisioned")

        context = WebhookContext(
            subscriptions=subscriptions,
            donations=donations,
            webhook_secret=config.stripe_webhook_secret.get_secret_value(),
        )

        shutdown = asyncio.Event()

        def request_shutdown() -> None:
            logger.info("Shutdown signal received")
            shutdown.set()
            if bot is not None:
                bot.shutdown()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, request_shutdown)

        services = [run_server(context, config.webhook_server_port, shutdown)]
        if bot is not None:
            services.append(bot.run_until_shutdown())
        await asyncio.gather(*services)

    except Exception as e:
        logger.error(f"Boot sequence failed: {e}")
        raise SystemExit(1) from e
    finally:
        if events is not None:
            await events.drain()
        await close_pool()
        logger.info("Application shutdown complete")


def main() -> None:
    """Main entry point with logging configuration."""
    config = get_config()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        asyncio.run(boot())
    except KeyboardInterrupt:
        logging.info("Interrupted by user")
        sys.exit(0)
    except SystemExit:
        raise
    except Exception as e:
        logging.error(f"Unexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
