"""Shared fixtures: catalogue, in-memory persistence and a wired service graph."""

from datetime import datetime
from typing import Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from donate.events import EventSink
from donate.packages.models import Package
from donate.payments.checkout import Donations
from donate.payments.fake import FakeGateway
from donate.payments.memory import (
    InMemoryOrderRepository,
    InMemorySubscriptionPlanRepository,
    InMemorySubscriptionsRepository,
)
from donate.payments.models import User
from donate.payments.plans import provision_plans
from donate.payments.subscriptions import Subscriptions
from donate.redeem.discord_role import RoleGranter
from donate.redeem.engine import RedeemPackage
from donate.redeem.priority_queue import PriorityQueueClient, PriorityQueueEntry


class RecordingPriorityQueue(PriorityQueueClient):
    """Priority queue backend that keeps entries in a dict."""

    def __init__(self):
        self.entries: dict[tuple[str, str], PriorityQueueEntry] = {}
        self.puts: list[tuple[str, str, Optional[datetime]]] = []

    async def get_entry(self, server_api_id, steam_id):
        return self.entries.get((server_api_id, steam_id))

    async def put_entry(self, server_api_id, steam_id, expires, comment):
        self.puts.append((server_api_id, steam_id, expires))
        self.entries[(server_api_id, steam_id)] = PriorityQueueEntry(expires=expires)


@pytest.fixture
def subscription_package() -> Package:
    return Package.model_validate(
        {
            "id": 2,
            "name": "Monthly supporter",
            "price": {"amount": "4.99", "currency": "EUR"},
            "subscription": True,
            "perks": [
                {"type": "PRIORITY_QUEUE", "servers": ["eu-1", "eu-2"], "amount_in_days": 31},
                {"type": "DISCORD_ROLE", "roles": ["900000000000000001"]},
            ],
        }
    )


@pytest.fixture
def donation_package() -> Package:
    return Package.model_validate(
        {
            "id": 1,
            "name": "Coffee",
            "price": {"amount": "3", "currency": "eur", "type": "VARIABLE"},
            "perks": [{"type": "FREETEXT_ONLY"}],
        }
    )


@pytest.fixture
def catalogue(subscription_package, donation_package) -> list[Package]:
    return [donation_package, subscription_package]


@pytest.fixture
def user() -> User:
    return User(discord_id="222222222222222222", steam_id="76561198000000001")


@pytest.fixture
def other_user() -> User:
    return User(discord_id="333333333333333333", steam_id="76561198000000002")


@pytest.fixture
def orders() -> InMemoryOrderRepository:
    return InMemoryOrderRepository()


@pytest.fixture
def subscriptions_repo() -> InMemorySubscriptionsRepository:
    return InMemorySubscriptionsRepository()


@pytest.fixture
def plans() -> InMemorySubscriptionPlanRepository:
    return InMemorySubscriptionPlanRepository()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def events() -> MagicMock:
    return MagicMock(spec=EventSink)


@pytest.fixture
def priority_queue() -> RecordingPriorityQueue:
    return RecordingPriorityQueue()


@pytest.fixture
def roles() -> AsyncMock:
    return AsyncMock(spec=RoleGranter)


@pytest.fixture
def redeem(orders, priority_queue, roles) -> RedeemPackage:
    return RedeemPackage(orders, priority_queue=priority_queue, roles=roles)


@pytest.fixture
def subscriptions(plans, subscriptions_repo, orders, events, gateway, redeem) -> Subscriptions:
    return Subscriptions(plans, subscriptions_repo, orders, events, gateway, redeem)


@pytest.fixture
def donations(orders, events, gateway, redeem) -> Donations:
    return Donations(orders, events, gateway, redeem)


@pytest_asyncio.fixture
async def plan(catalogue, gateway, plans):
    """The provisioned plan of the subscription package."""
    provisioned = await provision_plans(catalogue, gateway, plans)
    assert len(provisioned) == 1
    return provisioned[0]
