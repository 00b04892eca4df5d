"""Discord connection used to grant role perks."""

from donate.discord_bot.bot import PerkBot

__all__ = ["PerkBot"]
