"""Tests for the subscription lifecycle orchestrator.

Covers:
1. subscribe stores a PENDING agreement
2. Billing cycles activate and create exactly one PAID order per cycle
3. Unknown agreements create no orders
4. Ownership checks surface as not-found
5. Cancellation ordering against the gateway
6. Abort, provider-side cancellation and redemption retry
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from donate.db.models import OrderStatus, SubscriptionState
from donate.errors import (
    DuplicateOrder,
    GatewayFailure,
    InvalidState,
    OrderNotFound,
    PlanNotFound,
    RedeemError,
    SubscriptionNotFound,
    SubscriptionNotPending,
)
from donate.events import SUBSCRIPTION_CANCELLED, SUCCESSFUL_SUBSCRIPTION_EXECUTION
from donate.payments.models import Order, OrderPayment, RedeemTarget, Reference, utcnow
from donate.payments.subscriptions import Subscriptions
from donate.redeem.engine import RedeemPackage


@pytest.fixture
def mock_redeem():
    return AsyncMock(spec=RedeemPackage)


@pytest.fixture
def service(plans, subscriptions_repo, orders, events, gateway, mock_redeem):
    """Orchestrator with the redeem engine mocked out."""
    return Subscriptions(plans, subscriptions_repo, orders, events, gateway, mock_redeem)


async def _subscribe(service, subscriptions_repo, package, user):
    pending = await service.subscribe(package, user)
    subscription = await subscriptions_repo.find_by_payment(pending.id)
    return pending, subscription


class TestSubscribe:
    @pytest.mark.asyncio
    async def test_subscribe_stores_pending(self, service, subscriptions_repo, gateway, plan, subscription_package, user):
        pending, subscription = await _subscribe(service, subscriptions_repo, subscription_package, user)

        assert pending.approval_link.endswith(pending.id)
        assert subscription.state is SubscriptionState.PENDING
        assert subscription.plan_id == plan.id
        assert subscription.user.discord_id == user.discord_id
        assert gateway.agreements[pending.id] == plan.id

    @pytest.mark.asyncio
    async def test_subscribe_without_plan(self, service, subscriptions_repo, subscription_package, user):
        with pytest.raises(PlanNotFound):
            await service.subscribe(subscription_package, user)

        assert subscriptions_repo.subscriptions == {}

    @pytest.mark.asyncio
    async def test_gateway_failure_stores_nothing(self, service, subscriptions_repo, gateway, plan, subscription_package, user):
        gateway.subscribe = AsyncMock(side_effect=GatewayFailure("declined"))

        with pytest.raises(GatewayFailure):
            await service.subscribe(subscription_package, user)

        assert subscriptions_repo.subscriptions == {}


class TestRedeemSubscriptionPayment:
    @pytest.mark.asyncio
    async def test_unknown_agreement_creates_no_order(self, service, orders, mock_redeem):
        with pytest.raises(SubscriptionNotFound):
            await service.redeem_subscription_payment("I-UNKNOWN", "TX1")

        assert orders.orders == {}
        mock_redeem.redeem.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_billing_cycle_end_to_end(
        self, service, subscriptions_repo, orders, events, mock_redeem, plan, subscription_package, user
    ):
        pending, _ = await _subscribe(service, subscriptions_repo, subscription_package, user)

        order = await service.redeem_subscription_payment(pending.id, "TX1")

        subscription = await subscriptions_repo.find_by_payment(pending.id)
        assert subscription.state is SubscriptionState.ACTIVE

        stored = await orders.find(order.id)
        assert stored.status is OrderStatus.PAID
        assert stored.payment.id == pending.id
        assert stored.payment.transaction_id == "TX1"
        assert stored.reference.steam_id == user.steam_id
        assert stored.reference.discord_id == user.discord_id
        assert stored.reference.package == subscription_package

        target = RedeemTarget(steam_id=user.steam_id, discord_id=user.discord_id)
        mock_redeem.redeem.assert_awaited_once_with(order, target)
        events.emit.assert_called_once_with(SUCCESSFUL_SUBSCRIPTION_EXECUTION, target, order)

    @pytest.mark.asyncio
    async def test_redelivery_creates_no_second_order(self, service, subscriptions_repo, orders, plan, subscription_package, user):
        pending, _ = await _subscribe(service, subscriptions_repo, subscription_package, user)

        first = await service.redeem_subscription_payment(pending.id, "TX1")
        second = await service.redeem_subscription_payment(pending.id, "TX1")

        assert second.id == first.id
        assert len(orders.orders) == 1

    @pytest.mark.asyncio
    async def test_concurrent_deliveries_create_one_order(self, service, subscriptions_repo, orders, plan, subscription_package, user):
        pending, _ = await _subscribe(service, subscriptions_repo, subscription_package, user)

        results = await asyncio.gather(
            *(service.redeem_subscription_payment(pending.id, "TX1") for _ in range(5))
        )

        assert len({o.id for o in results}) == 1
        assert len(orders.orders) == 1

    @pytest.mark.asyncio
    async def test_each_cycle_gets_an_order(self, service, subscriptions_repo, orders, plan, subscription_package, user):
        pending, _ = await _subscribe(service, subscriptions_repo, subscription_package, user)

        await service.redeem_subscription_payment(pending.id, "TX1")
        await service.redeem_subscription_payment(pending.id, "TX2")

        history = await orders.find_by_payment_order(pending.id)
        assert [o.payment.transaction_id for o in history] == ["TX1", "TX2"]

    @pytest.mark.asyncio
    async def test_duplicate_from_store_falls_back_to_stored_order(
        self, service, subscriptions_repo, orders, plan, subscription_package, user
    ):
        """A cycle stored by another process between lookup and insert is reused."""
        pending, _ = await _subscribe(service, subscriptions_repo, subscription_package, user)
        stored = await service.redeem_subscription_payment(pending.id, "TX1")

        lookups = {"n": 0}
        real_find = orders.find_by_transaction

        async def find_after_race(payment_id, transaction_id):
            lookups["n"] += 1
            if lookups["n"] == 1:
                return None
            return await real_find(payment_id, transaction_id)

        orders.find_by_transaction = find_after_race

        order = await service.redeem_subscription_payment(pending.id, "TX1")

        assert order.id == stored.id
        assert len(orders.orders) == 1

    @pytest.mark.asyncio
    async def test_redeem_failure_leaves_paid_order(self, subscriptions_repo, orders, plans, events, gateway, plan, subscription_package, user):
        failing = AsyncMock(spec=RedeemPackage)
        failing.redeem.side_effect = RedeemError("backend down")
        service = Subscriptions(plans, subscriptions_repo, orders, events, gateway, failing)
        pending, _ = await _subscribe(service, subscriptions_repo, subscription_package, user)

        with pytest.raises(RedeemError):
            await service.redeem_subscription_payment(pending.id, "TX1")

        (order,) = orders.orders.values()
        assert order.is_paid()
        assert order.redeemed_at is None
        events.emit.assert_not_called()

    @pytest.mark.asyncio
    async def test_cycle_after_cancel_keeps_cancelled(self, service, subscriptions_repo, orders, plan, subscription_package, user):
        pending, subscription = await _subscribe(service, subscriptions_repo, subscription_package, user)
        await service.cancel(subscription.id, user)

        await service.redeem_subscription_payment(pending.id, "TX1")

        subscription = await subscriptions_repo.find(subscription.id)
        assert subscription.state is SubscriptionState.CANCELLED
        assert len(orders.orders) == 1


class TestViewSubscription:
    @pytest.mark.asyncio
    async def test_view_with_history(self, service, subscriptions_repo, plan, subscription_package, user):
        pending, subscription = await _subscribe(service, subscriptions_repo, subscription_package, user)
        await service.redeem_subscription_payment(pending.id, "TX1")

        view = await service.view_subscription(subscription.id, user)

        assert view.subscription.id == subscription.id
        assert view.plan.id == plan.id
        assert [o.payment.transaction_id for o in view.history] == ["TX1"]

    @pytest.mark.asyncio
    async def test_other_user_gets_not_found(self, service, subscriptions_repo, plan, subscription_package, user, other_user):
        _, subscription = await _subscribe(service, subscriptions_repo, subscription_package, user)

        with pytest.raises(SubscriptionNotFound):
            await service.view_subscription(subscription.id, other_user)
        with pytest.raises(SubscriptionNotFound):
            await service.view_subscription("does-not-exist", other_user)

    @pytest.mark.asyncio
    async def test_subscriptions_of(self, service, subscriptions_repo, plan, subscription_package, user, other_user):
        await _subscribe(service, subscriptions_repo, subscription_package, user)

        assert len(await service.subscriptions_of(user)) == 1
        assert await service.subscriptions_of(other_user) == []


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_calls_gateway_then_persists(self, service, subscriptions_repo, gateway, events, plan, subscription_package, user):
        pending, subscription = await _subscribe(service, subscriptions_repo, subscription_package, user)

        await service.cancel(subscription.id, user)

        assert gateway.cancelled == [pending.id]
        stored = await subscriptions_repo.find(subscription.id)
        assert stored.state is SubscriptionState.CANCELLED
        events.emit.assert_called_once()
        assert events.emit.call_args.args[0] == SUBSCRIPTION_CANCELLED

    @pytest.mark.asyncio
    async def test_gateway_failure_leaves_state(self, service, subscriptions_repo, gateway, plan, subscription_package, user):
        pending, subscription = await _subscribe(service, subscriptions_repo, subscription_package, user)
        await service.redeem_subscription_payment(pending.id, "TX1")
        gateway.cancel_subscription = AsyncMock(side_effect=GatewayFailure("timeout"))

        with pytest.raises(GatewayFailure):
            await service.cancel(subscription.id, user)

        stored = await subscriptions_repo.find(subscription.id)
        assert stored.state is SubscriptionState.ACTIVE

    @pytest.mark.asyncio
    async def test_cancel_other_users_subscription(self, service, subscriptions_repo, gateway, plan, subscription_package, user, other_user):
        _, subscription = await _subscribe(service, subscriptions_repo, subscription_package, user)

        with pytest.raises(SubscriptionNotFound):
            await service.cancel(subscription.id, other_user)

        assert gateway.cancelled == []

    @pytest.mark.asyncio
    async def test_cancel_twice_is_noop(self, service, subscriptions_repo, gateway, plan, subscription_package, user):
        _, subscription = await _subscribe(service, subscriptions_repo, subscription_package, user)

        await service.cancel(subscription.id, user)
        await service.cancel(subscription.id, user)

        assert len(gateway.cancelled) == 1


class TestAbortAndExternalCancel:
    @pytest.mark.asyncio
    async def test_abort_pending(self, service, subscriptions_repo, gateway, plan, subscription_package, user):
        pending, subscription = await _subscribe(service, subscriptions_repo, subscription_package, user)

        await service.abort(subscription.id, user)

        assert gateway.cancelled == [pending.id]
        assert (await subscriptions_repo.find(subscription.id)).state is SubscriptionState.CANCELLED

    @pytest.mark.asyncio
    async def test_abort_active_rejected(self, service, subscriptions_repo, gateway, plan, subscription_package, user):
        pending, subscription = await _subscribe(service, subscriptions_repo, subscription_package, user)
        await service.redeem_subscription_payment(pending.id, "TX1")

        with pytest.raises(SubscriptionNotPending):
            await service.abort(subscription.id, user)

        assert gateway.cancelled == []

    @pytest.mark.asyncio
    async def test_cancelled_externally(self, service, subscriptions_repo, events, plan, subscription_package, user):
        pending, subscription = await _subscribe(service, subscriptions_repo, subscription_package, user)

        await service.cancelled_externally(pending.id)
        await service.cancelled_externally(pending.id)

        assert (await subscriptions_repo.find(subscription.id)).state is SubscriptionState.CANCELLED
        assert events.emit.call_count == 1

    @pytest.mark.asyncio
    async def test_cancelled_externally_unknown(self, service):
        with pytest.raises(SubscriptionNotFound):
            await service.cancelled_externally("I-UNKNOWN")


class TestRetryRedemption:
    @pytest.mark.asyncio
    async def test_retry_redeems_paid_order(self, subscriptions, subscriptions_repo, orders, roles, plan, subscription_package, user):
        pending, _ = await _subscribe(subscriptions, subscriptions_repo, subscription_package, user)
        roles.grant.side_effect = RedeemError("discord down")
        with pytest.raises(RedeemError):
            await subscriptions.redeem_subscription_payment(pending.id, "TX1")
        (order,) = orders.orders.values()

        roles.grant.side_effect = None
        redeemed = await subscriptions.retry_redemption(order.id)

        assert redeemed.redeemed_at is not None
        assert (await orders.find(order.id)).redeemed_at is not None

    @pytest.mark.asyncio
    async def test_retry_unknown_order(self, subscriptions):
        with pytest.raises(OrderNotFound):
            await subscriptions.retry_redemption("missing")

    @pytest.mark.asyncio
    async def test_retry_unpaid_order(self, subscriptions, donations, orders, donation_package, user):
        order, _ = await donations.create_order(donation_package, user)

        with pytest.raises(InvalidState):
            await subscriptions.retry_redemption(order.id)


@pytest.mark.asyncio
async def test_in_memory_store_rejects_duplicate_cycle(orders, subscription_package, user):
    reference = Reference(user.steam_id, user.discord_id, subscription_package)
    first = Order.create(utcnow(), OrderPayment(id="AG1", provider="fake"), reference)
    first.pay("TX1")
    second = Order.create(utcnow(), OrderPayment(id="AG1", provider="fake"), reference)
    second.pay("TX1")

    await orders.save(first)
    with pytest.raises(DuplicateOrder):
        await orders.save(second)


@pytest.mark.asyncio
async def test_stale_save_does_not_revive_cancelled(service, subscriptions_repo, plan, subscription_package, user):
    pending, _ = await _subscribe(service, subscriptions_repo, subscription_package, user)
    await service.redeem_subscription_payment(pending.id, "TX1")
    stale = await subscriptions_repo.find_by_payment(pending.id)

    await service.cancel(stale.id, user)
    await subscriptions_repo.save(stale)

    stored = await subscriptions_repo.find(stale.id)
    assert stored.state is SubscriptionState.CANCELLED
