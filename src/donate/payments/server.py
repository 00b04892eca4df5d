"""Lightweight HTTP server for the payment webhook endpoint."""

import asyncio
import logging
from typing import Optional

from aiohttp import web

from donate.payments.webhooks import WebhookContext, handle_webhook

logger = logging.getLogger(__name__)

WEBHOOK_PATH = "/webhooks/stripe"
CONTEXT_KEY = web.AppKey("webhook_context", WebhookContext)


async def webhook_endpoint(request: web.Request) -> web.Response:
    """Handle POST /webhooks/stripe."""
    sig_header = request.headers.get("Stripe-Signature")
    if not sig_header:
        logger.error("Missing Stripe-Signature header")
        return web.Response(status=400, text="Missing signature")

    payload = await request.read()
    return await handle_webhook(payload, sig_header, request.app[CONTEXT_KEY])


async def health_endpoint(request: web.Request) -> web.Response:
    return web.Response(status=200, text="OK")


def create_app(context: WebhookContext) -> web.Application:
    """Create the aiohttp application with the webhook and health routes."""
    app = web.Application()
    app[CONTEXT_KEY] = context
    app.router.add_post(WEBHOOK_PATH, webhook_endpoint)
    app.router.add_get("/health", health_endpoint)
    return app


async def run_server(
    context: WebhookContext,
    port: int,
    shutdown_event: Optional[asyncio.Event] = None,
) -> None:
    """Serve webhooks until the shutdown event is set (forever without one)."""
    runner = web.AppRunner(create_app(context))
    await runner.setup()

    site = web.TCPSite(runner, "0.0.0.0", port)
    await site.start()
    logger.info(f"Webhook server listening on port {port}")

    try:
        await (shutdown_event or asyncio.Event()).wait()
    finally:
        logger.info("Shutting down webhook server...")
        await runner.cleanup()
