"""Discord bot lifecycle management.

The bot holds the gateway connection the role granter works through. It has
no commands of its own.
"""

import asyncio
import logging

import discord

from donate.config.settings import AppConfig

logger = logging.getLogger(__name__)


class PerkBot(discord.Client):
    """Discord client that stays connected to the community guild."""

    def __init__(self, config: AppConfig):
        intents = discord.Intents.default()
        intents.guilds = True
        intents.members = True  # Needed to resolve donors by id

        super().__init__(intents=intents)

        self.config = config
        self._ready = asyncio.Event()
        self._shutdown = asyncio.Event()

    async def on_ready(self) -> None:
        """Verify the configured guild is reachable, then mark the bot ready."""
        logger.info(f"Bot connected as {self.user}")

        if not self.config.discord_guild_id:
            logger.error("DISCORD_GUILD_ID not configured")
            await self.close()
            return

        guild = self.get_guild(int(self.config.discord_guild_id))
        if not guild:
            logger.error(
                f"Guild {self.config.discord_guild_id} not found. "
                "Ensure bot is invited to the server."
            )
            await self.close()
            return

        logger.info(f"Connected to guild: {guild.name}")
        self._ready.set()

    async def on_error(self, event: str, *args, **kwargs) -> None:
        logger.exception(f"Error in event {event}")

    async def wait_ready(self, timeout: float = 30.0) -> bool:
        """Wait for the bot to be ready.

        Returns:
            True if bot became ready, False if timeout
        """
        try:
            await asyncio.wait_for(self._ready.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            logger.error(f"Bot did not become ready within {timeout}s")
            return False

    def shutdown(self) -> None:
        """Signal bot to shut down gracefully."""
        logger.info("Shutdown signal received")
        self._shutdown.set()

    async def run_until_shutdown(self) -> None:
        """Run bot until shutdown signal received."""
        bot_task = asyncio.create_task(self.start(self.config.discord_token.get_secret_value()))

        await self._shutdown.wait()

        logger.info("Shutting down bot...")
        await self.close()

        try:
            await asyncio.wait_for(bot_task, timeout=5.0)
        except asyncio.TimeoutError:
            logger.warning("Bot task did not complete within timeout")
            bot_task.cancel()
