"""Discord role perk: grants guild roles to the donor."""

import logging
from abc import ABC, abstractmethod

import discord

from donate.errors import RedeemError

logger = logging.getLogger(__name__)


class RoleGranter(ABC):
    @abstractmethod
    async def grant(self, discord_id: str, role_ids: list[str], reason: str) -> None:
        """Ensure the member has all roles. Roles already held are left alone."""


class DiscordRoleGranter(RoleGranter):
    """Grants roles through a connected discord.py client."""

    def __init__(self, bot_client: discord.Client, guild_id: str):
        self.bot_client = bot_client
        self.guild_id = guild_id

    async def grant(self, discord_id: str, role_ids: list[str], reason: str) -> None:
        """Add missing roles to a guild member.

        Args:
            discord_id: Discord user ID of the donor
            role_ids: Role IDs to grant
            reason: Audit log reason

        Raises:
            RedeemError: If the guild, member or a role cannot be resolved, or
                Discord rejects the change
        """
        if not self.guild_id:
            raise RedeemError("discord_guild_id not configured")

        guild = self.bot_client.get_guild(int(self.guild_id))
        if guild is None:
            raise RedeemError(f"Guild {self.guild_id} not found")

        member = guild.get_member(int(discord_id))
        if member is None:
            try:
                member = await guild.fetch_member(int(discord_id))
            except discord.NotFound as e:
                raise RedeemError(f"User {discord_id} is not a member of guild {guild.name}") from e
            except discord.HTTPException as e:
                raise RedeemError(f"Could not fetch member {discord_id}: {e}") from e

        roles = []
        for role_id in role_ids:
            role = guild.get_role(int(role_id))
            if role is None:
                raise RedeemError(f"Role {role_id} not found in guild {guild.name}")
            roles.append(role)

        missing = [r for r in roles if r not in member.roles]
        if not missing:
            logger.debug(f"{member.name} already has roles {role_ids}")
            return

        try:
            await member.add_roles(*missing, reason=reason)
        except discord.HTTPException as e:
            raise RedeemError(f"Could not grant roles to {member.name}: {e}") from e

        logger.info(f"Granted {[r.name for r in missing]} to {member.name}")
