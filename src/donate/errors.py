"""Exception hierarchy for the donation core.

Lookups that fail an ownership check raise the same NotFound error as a
missing record so callers cannot probe for other users' records.
"""


class DonateError(Exception):
    """Base class for all domain errors."""


class NotFound(DonateError):
    """A record does not exist or does not belong to the caller."""


class SubscriptionNotFound(NotFound):
    pass


class OrderNotFound(NotFound):
    pass


class PlanNotFound(NotFound):
    pass


class PackageNotFound(NotFound):
    pass


class InvalidState(DonateError):
    """An operation was invoked outside its legal lifecycle state."""


class SubscriptionNotPending(InvalidState):
    pass


class InvalidPrice(InvalidState):
    """A custom amount was given for a fixed-price package, or is not positive."""


class DuplicateOrder(DonateError):
    """An order for this billing cycle was already stored."""

    def __init__(self, payment_id: str, transaction_id: str):
        super().__init__(f"order for {payment_id}/{transaction_id} already exists")
        self.payment_id = payment_id
        self.transaction_id = transaction_id


class GatewayFailure(DonateError):
    """The payment provider call failed. The original error is ``__cause__``."""


class RedeemError(DonateError):
    """A perk backend failed while granting a perk."""


class SteamIdMismatch(RedeemError):
    """A perk needs a Steam identity the redeem target does not have."""

    def __init__(self, expected: str | None, from_user: str | None):
        super().__init__(f"expected steam id {expected!r}, got {from_user!r}")
        self.expected = expected
        self.from_user = from_user
