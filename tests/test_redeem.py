"""Tests for perk redemption: engine, priority queue and Discord roles."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import discord
import pytest

from donate.errors import InvalidState, RedeemError, SteamIdMismatch
from donate.packages.models import Package
from donate.payments.models import Order, OrderPayment, RedeemTarget, Reference
from donate.redeem.discord_role import DiscordRoleGranter
from donate.redeem.engine import RedeemPackage
from donate.redeem.priority_queue import PriorityQueueEntry

CREATED = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def _paid_order(package: Package, steam_id="76561198000000001", discord_id="222") -> Order:
    order = Order.create(
        CREATED,
        OrderPayment(id="AG1", provider="fake"),
        Reference(steam_id, discord_id, package),
    )
    order.pay("TX1")
    return order


@pytest.fixture
def target(user) -> RedeemTarget:
    return RedeemTarget(steam_id=user.steam_id, discord_id=user.discord_id)


class TestRedeemEngine:
    @pytest.mark.asyncio
    async def test_redeem_applies_every_perk(self, redeem, orders, priority_queue, roles, subscription_package, target):
        order = _paid_order(subscription_package)

        await redeem.redeem(order, target)

        expires = CREATED + timedelta(days=31)
        assert priority_queue.puts == [
            ("eu-1", target.steam_id, expires),
            ("eu-2", target.steam_id, expires),
        ]
        roles.grant.assert_awaited_once()
        assert roles.grant.call_args.args[:2] == (target.discord_id, ["900000000000000001"])
        assert (await orders.find(order.id)).redeemed_at is not None

    @pytest.mark.asyncio
    async def test_redeemed_order_is_skipped(self, redeem, priority_queue, roles, subscription_package, target):
        order = _paid_order(subscription_package)
        await redeem.redeem(order, target)

        await redeem.redeem(order, target)

        assert len(priority_queue.puts) == 2
        roles.grant.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_interrupted_redeem_converges(self, redeem, priority_queue, roles, subscription_package, target):
        """A retry after a failed grant does not extend the queue slot again."""
        order = _paid_order(subscription_package)
        roles.grant.side_effect = RedeemError("discord down")
        with pytest.raises(RedeemError):
            await redeem.redeem(order, target)
        assert order.redeemed_at is None

        roles.grant.side_effect = None
        await redeem.redeem(order, target)

        assert len(priority_queue.puts) == 2
        assert order.redeemed_at is not None

    @pytest.mark.asyncio
    async def test_unpaid_order_rejected(self, redeem, subscription_package, target):
        order = Order.create(
            CREATED,
            OrderPayment(id="pi_1", provider="fake"),
            Reference(target.steam_id, target.discord_id, subscription_package),
        )

        with pytest.raises(InvalidState):
            await redeem.redeem(order, target)

    @pytest.mark.asyncio
    async def test_missing_backend(self, orders, subscription_package, target):
        engine = RedeemPackage(orders)

        with pytest.raises(RedeemError, match="priority queue"):
            await engine.redeem(_paid_order(subscription_package), target)

    @pytest.mark.asyncio
    async def test_freetext_grants_nothing(self, orders, donation_package, target):
        engine = RedeemPackage(orders)
        order = _paid_order(donation_package)

        await engine.redeem(order, target)

        assert order.redeemed_at is not None


class TestPriorityQueue:
    @pytest.mark.asyncio
    async def test_longer_existing_slot_is_kept(self, redeem, priority_queue, subscription_package, target):
        later = CREATED + timedelta(days=90)
        priority_queue.entries[("eu-1", target.steam_id)] = PriorityQueueEntry(expires=later)

        await redeem.redeem(_paid_order(subscription_package), target)

        assert [p[0] for p in priority_queue.puts] == ["eu-2"]

    @pytest.mark.asyncio
    async def test_permanent_slot_is_kept(self, redeem, priority_queue, subscription_package, target):
        priority_queue.entries[("eu-1", target.steam_id)] = PriorityQueueEntry(expires=None)
        priority_queue.entries[("eu-2", target.steam_id)] = PriorityQueueEntry(expires=None)

        await redeem.redeem(_paid_order(subscription_package), target)

        assert priority_queue.puts == []

    @pytest.mark.asyncio
    async def test_requires_steam_id(self, redeem, subscription_package):
        with pytest.raises(SteamIdMismatch):
            await redeem.redeem(
                _paid_order(subscription_package, steam_id=None),
                RedeemTarget(steam_id=None, discord_id="222"),
            )


class TestDiscordRoleGranter:
    def _guild(self, member, roles):
        guild = MagicMock()
        guild.name = "Community"
        guild.get_member.return_value = member
        guild.get_role.side_effect = lambda role_id: roles.get(role_id)
        return guild

    def _client(self, guild):
        client = MagicMock(spec=discord.Client)
        client.get_guild.return_value = guild
        return client

    @pytest.mark.asyncio
    async def test_grants_missing_roles_only(self):
        held, wanted = MagicMock(name="held"), MagicMock(name="wanted")
        member = MagicMock()
        member.roles = [held]
        member.add_roles = AsyncMock()
        guild = self._guild(member, {1: held, 2: wanted})

        granter = DiscordRoleGranter(self._client(guild), "10")
        await granter.grant("222", ["1", "2"], reason="Donation order o1")

        member.add_roles.assert_awaited_once_with(wanted, reason="Donation order o1")

    @pytest.mark.asyncio
    async def test_all_roles_held(self):
        role = MagicMock()
        member = MagicMock()
        member.roles = [role]
        member.add_roles = AsyncMock()

        granter = DiscordRoleGranter(self._client(self._guild(member, {1: role})), "10")
        await granter.grant("222", ["1"], reason="x")

        member.add_roles.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_role(self):
        member = MagicMock()
        member.roles = []
        granter = DiscordRoleGranter(self._client(self._guild(member, {})), "10")

        with pytest.raises(RedeemError, match="Role 1 not found"):
            await granter.grant("222", ["1"], reason="x")

    @pytest.mark.asyncio
    async def test_missing_guild(self):
        granter = DiscordRoleGranter(self._client(None), "10")

        with pytest.raises(RedeemError, match="Guild 10 not found"):
            await granter.grant("222", ["1"], reason="x")

    @pytest.mark.asyncio
    async def test_guild_not_configured(self):
        granter = DiscordRoleGranter(self._client(None), "")

        with pytest.raises(RedeemError, match="not configured"):
            await granter.grant("222", ["1"], reason="x")

    @pytest.mark.asyncio
    async def test_user_not_in_guild(self):
        guild = self._guild(None, {})
        guild.fetch_member = AsyncMock(
            side_effect=discord.NotFound(MagicMock(status=404, reason="Not Found"), "Unknown Member")
        )

        granter = DiscordRoleGranter(self._client(guild), "10")
        with pytest.raises(RedeemError, match="not a member"):
            await granter.grant("222", ["1"], reason="x")
