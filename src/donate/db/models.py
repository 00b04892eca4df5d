"""Table-name constants and status column enums."""

from enum import Enum


class Table:
    """Database table names."""

    ORDERS = "orders"
    SUBSCRIPTIONS = "subscriptions"
    SUBSCRIPTION_PLANS = "subscription_plans"
    SCHEMA_MIGRATIONS = "schema_migrations"


class OrderStatus(str, Enum):
    """Order payment status. Moves only from CREATED to PAID."""

    CREATED = "CREATED"
    PAID = "PAID"


class SubscriptionState(str, Enum):
    """Subscription lifecycle state."""

    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    CANCELLED = "CANCELLED"
