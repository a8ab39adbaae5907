"""
Subscription registry for the event subsystem.
"""

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from ..events.models import EventRecord, Scope, ScopeKind
from ..shared.errors import ProtocolParseError, SparkCloudException
from ..shared.logging import get_logger

# handler(record, None) for events, handler(None, error) for errors.
EventHandler = Callable[
    [Optional[EventRecord], Optional[SparkCloudException]],
    Union[None, Awaitable[None]]
]

OwnershipCheck = Callable[[Optional[str]], bool]


@dataclass
class Subscription:
    """Subscription data."""
    scope: Scope
    handler: EventHandler
    name_prefix: str = ""
    subscription_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=datetime.now)
    last_delivery_at: Optional[datetime] = None
    delivery_count: int = 0

    def __post_init__(self):
        if self.name_prefix is None:
            self.name_prefix = ""


def prefix_matches(subscription: Subscription, name: Optional[str]) -> bool:
    if not subscription.name_prefix:
        return True
    return name is not None and name.startswith(subscription.name_prefix)


def scope_matches(subscription: Subscription, record: EventRecord, is_owned: OwnershipCheck) -> bool:
    """Ownership-aware visibility rule of a subscription's scope."""
    scope = subscription.scope

    if scope.kind == ScopeKind.SINGLE_DEVICE:
        if record.device_id != scope.device_id:
            return False
        return record.public or is_owned(record.device_id)

    if scope.kind == ScopeKind.OWNED_DEVICES:
        return is_owned(record.device_id)

    return record.public or is_owned(record.device_id)


def subscription_matches(subscription: Subscription, record: EventRecord, is_owned: OwnershipCheck) -> bool:
    """True when ``record`` must be delivered to ``subscription``."""
    return prefix_matches(subscription, record.name) and scope_matches(subscription, record, is_owned)


def error_matches(subscription: Subscription, error: SparkCloudException) -> bool:
    """Per-frame errors go to subscriptions that could have wanted the frame."""
    if not isinstance(error, ProtocolParseError):
        return True
    if error.event_name is not None and not prefix_matches(subscription, error.event_name):
        return False
    scope = subscription.scope
    if scope.kind == ScopeKind.SINGLE_DEVICE and error.device_id is not None:
        return error.device_id == scope.device_id
    return True


class SubscriptionRegistry:
    """Thread-safe set of active subscriptions, indexed by scope.

    Lookups return copies, so registrations and removals racing a dispatch
    never corrupt it; a registration is seen by every event matched after
    ``register`` returns.
    """

    def __init__(self):
        self.logger = get_logger("spark_cloud.subscriptions.manager")
        self._lock = threading.Lock()
        self.subscriptions: Dict[str, Subscription] = {}
        self.scope_subscriptions: Dict[Scope, Set[str]] = {}  # scope -> subscription_ids

    def __len__(self) -> int:
        return len(self.subscriptions)

    def __contains__(self, subscription_id: str) -> bool:
        return subscription_id in self.subscriptions

    def register(self, subscription: Subscription) -> str:
        """Add a subscription and return its id."""
        with self._lock:
            self.subscriptions[subscription.subscription_id] = subscription
            if subscription.scope not in self.scope_subscriptions:
                self.scope_subscriptions[subscription.scope] = set()
            self.scope_subscriptions[subscription.scope].add(subscription.subscription_id)
            total = len(self.subscriptions)

        self.logger.info(
            "Subscription registered",
            subscription_id=subscription.subscription_id,
            scope=str(subscription.scope),
            name_prefix=subscription.name_prefix,
            total_subscriptions=total
        )

        return subscription.subscription_id

    def unregister(self, subscription_id: str) -> Optional[Subscription]:
        """Remove a subscription. Unknown or already removed ids return None."""
        with self._lock:
            subscription = self.subscriptions.pop(subscription_id, None)
            if subscription is None:
                return None

            scope_ids = self.scope_subscriptions.get(subscription.scope)
            if scope_ids is not None:
                scope_ids.discard(subscription_id)
                if not scope_ids:
                    del self.scope_subscriptions[subscription.scope]

        self.logger.info(
            "Subscription removed",
            subscription_id=subscription_id,
            scope=str(subscription.scope)
        )

        return subscription

    def get(self, subscription_id: str) -> Optional[Subscription]:
        return self.subscriptions.get(subscription_id)

    def for_scope(self, scope: Scope) -> List[Subscription]:
        """Subscriptions bound to the connection serving ``scope``."""
        with self._lock:
            ids = list(self.scope_subscriptions.get(scope, ()))
            return [self.subscriptions[sid] for sid in ids if sid in self.subscriptions]

    def scope_in_use(self, scope: Scope) -> bool:
        with self._lock:
            return bool(self.scope_subscriptions.get(scope))

    def all(self) -> List[Subscription]:
        with self._lock:
            return list(self.subscriptions.values())

    def matching(
        self,
        record: EventRecord,
        is_owned: OwnershipCheck,
        scope: Optional[Scope] = None
    ) -> List[Subscription]:
        """Subscriptions that must receive ``record``.

        With ``scope`` only the subscriptions bound to that connection are
        considered, otherwise all of them.
        """
        candidates = self.for_scope(scope) if scope is not None else self.all()
        return [s for s in candidates if subscription_matches(s, record, is_owned)]

    def matching_error(self, error: SparkCloudException, scope: Scope) -> List[Subscription]:
        """Subscriptions on ``scope`` that should see a connection or frame error."""
        return [s for s in self.for_scope(scope) if error_matches(s, error)]

    def remove_scope(self, scope: Scope) -> List[Subscription]:
        """Drop every subscription bound to ``scope`` (terminal connection error)."""
        with self._lock:
            ids = self.scope_subscriptions.pop(scope, set())
            removed = [self.subscriptions.pop(sid) for sid in ids if sid in self.subscriptions]

        if removed:
            self.logger.info("Removed scope subscriptions", scope=str(scope), count=len(removed))
        return removed

    def clear(self) -> List[Subscription]:
        with self._lock:
            removed = list(self.subscriptions.values())
            self.subscriptions = {}
            self.scope_subscriptions = {}
        return removed

    def record_delivery(self, subscription: Subscription):
        """Update subscription activity counters."""
        with self._lock:
            subscription.last_delivery_at = datetime.now()
            subscription.delivery_count += 1

    def get_subscription_stats(self) -> Dict[str, Any]:
        """Get subscription statistics."""
        with self._lock:
            return {
                "total_subscriptions": len(self.subscriptions),
                "total_scopes": len(self.scope_subscriptions),
                "scopes": {str(scope): len(ids) for scope, ids in self.scope_subscriptions.items()}
            }
