"""crmsync - Async real-time client for customer and offer data."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("crmsync")
except PackageNotFoundError:
    __version__ = "0+local"
from crmsync.client import CrmClient
from crmsync.config import CrmConfig, MqttSettings
from crmsync.exceptions import (
    CrmConfigError,
    CrmError,
    CrmTransportError,
    CrmValidationError,
    CrmWriteError,
)
from crmsync.feed.manager import ChangeFeed, ChannelState, SubscriptionHandle, SubscriptionManager
from crmsync.models import (
    CollectionQuery,
    CrmRow,
    Customer,
    FilterOp,
    Offer,
    RowFilter,
    SearchTerm,
    SortKey,
)
from crmsync.mutations import MutationCoordinator, MutationIntent, MutationKind, TransientUiState
from crmsync.ratelimit import RateLimitDecision, RateLimiter, rate_limit_middleware
from crmsync.state.collection import CollectionHandle, CollectionReconciler, WatchedCollection
from crmsync.state.events import ChangeEvent, ChangeOperation, RowDeleted, RowInserted, RowUpdated

__all__ = [
    "__version__",
    "ChangeEvent",
    "ChangeFeed",
    "ChangeOperation",
    "ChannelState",
    "CollectionHandle",
    "CollectionQuery",
    "CollectionReconciler",
    "CrmClient",
    "CrmConfig",
    "CrmConfigError",
    "CrmError",
    "CrmRow",
    "CrmTransportError",
    "CrmValidationError",
    "CrmWriteError",
    "Customer",
    "FilterOp",
    "MqttSettings",
    "MutationCoordinator",
    "MutationIntent",
    "MutationKind",
    "Offer",
    "RateLimitDecision",
    "RateLimiter",
    "RowDeleted",
    "RowFilter",
    "RowInserted",
    "RowUpdated",
    "SearchTerm",
    "SortKey",
    "SubscriptionHandle",
    "SubscriptionManager",
    "TransientUiState",
    "WatchedCollection",
    "rate_limit_middleware",
]
