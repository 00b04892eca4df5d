"""Priority queue perk: reserved slots on game servers."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import aiohttp

from donate.errors import RedeemError, SteamIdMismatch
from donate.packages.models import PriorityQueuePerk
from donate.payments.models import Order, RedeemTarget

logger = logging.getLogger(__name__)


@dataclass
class PriorityQueueEntry:
    """Current queue slot of a player. ``expires`` is None for permanent slots."""

    expires: Optional[datetime]

    @property
    def permanent(self) -> bool:
        return self.expires is None


class PriorityQueueClient(ABC):
    @abstractmethod
    async def get_entry(self, server_api_id: str, steam_id: str) -> Optional[PriorityQueueEntry]:
        """Current entry, None if the player has none."""

    @abstractmethod
    async def put_entry(
        self,
        server_api_id: str,
        steam_id: str,
        expires: Optional[datetime],
        comment: str,
    ) -> None:
        """Create or replace the entry. ``expires=None`` makes it permanent."""


class HttpPriorityQueueClient(PriorityQueueClient):
    """Client for the game-server priority queue HTTP API.

    GET/PUT ``{base}/v1/servers/{server}/priority-queue/{steam_id}`` with a
    JSON body ``{"expires_at": <ISO 8601 or null>, "comment": ...}``.
    """

    def __init__(self, base_url: str, api_key: str, timeout_seconds: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    def _url(self, server_api_id: str, steam_id: str) -> str:
        return f"{self.base_url}/v1/servers/{server_api_id}/priority-queue/{steam_id}"

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    async def get_entry(self, server_api_id: str, steam_id: str) -> Optional[PriorityQueueEntry]:
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.get(
                    self._url(server_api_id, steam_id), headers=self._headers()
                ) as response:
                    if response.status == 404:
                        return None
                    response.raise_for_status()
                    data = await response.json()
        except aiohttp.ClientError as e:
            raise RedeemError(
                f"Could not read priority queue of {steam_id} on {server_api_id}: {e}"
            ) from e

        expires_at = data.get("expires_at")
        if not expires_at:
            return PriorityQueueEntry(expires=None)
        expires = datetime.fromisoformat(expires_at)
        if expires.tzinfo is None:
            expires = expires.replace(tzinfo=timezone.utc)
        return PriorityQueueEntry(expires=expires)

    async def put_entry(
        self,
        server_api_id: str,
        steam_id: str,
        expires: Optional[datetime],
        comment: str,
    ) -> None:
        body = {
            "expires_at": expires.isoformat() if expires else None,
            "comment": comment,
        }
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.put(
                    self._url(server_api_id, steam_id), json=body, headers=self._headers()
                ) as response:
                    response.raise_for_status()
        except aiohttp.ClientError as e:
            raise RedeemError(
                f"Could not set priority queue of {steam_id} on {server_api_id}: {e}"
            ) from e


async def redeem_priority_queue(
    client: PriorityQueueClient,
    perk: PriorityQueuePerk,
    order: Order,
    target: RedeemTarget,
) -> None:
    """Grant queue priority on every server of the perk.

    The new expiry is ``order.created + amount_in_days``, never shortening a
    longer existing slot. Redeeming the same order again yields the same expiry.
    """
    if not target.steam_id:
        raise SteamIdMismatch(expected=order.reference.steam_id, from_user=None)

    wanted = None if perk.permanent else order.created + timedelta(days=perk.amount_in_days)
    comment = f"Donation order {order.id}"

    for server in perk.servers:
        current = await client.get_entry(server, target.steam_id)
        if current is not None:
            if current.permanent:
                logger.debug(f"{target.steam_id} already has permanent priority on {server}")
                continue
            if wanted is not None and current.expires >= wanted:
                logger.debug(f"{target.steam_id} priority on {server} already runs until {current.expires}")
                continue

        await client.put_entry(server, target.steam_id, wanted, comment)
        logger.info(
            f"Priority queue for {target.steam_id} on {server} "
            f"{'is permanent' if wanted is None else f'until {wanted.isoformat()}'}"
        )
