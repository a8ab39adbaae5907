"""
Event router bridging stream connections to subscription handlers.
"""

import asyncio
import functools
import inspect
import zlib
from typing import Callable, Dict, List, Optional, Tuple

from ..auth.session import Session, TokenStore
from ..devices.snapshot import OwnedDevicesCache
from ..shared.errors import AuthenticationError, SparkCloudException, TransportError
from ..shared.logging import get_logger, set_subscription_context
from ..shared.metrics import SparkCloudMetrics
from ..subscriptions.manager import Subscription, SubscriptionRegistry
from .models import EventRecord, Scope, ScopeKind
from .stream import StreamConnection

Delivery = Tuple[Subscription, Optional[EventRecord], Optional[SparkCloudException], bool]


class HandlerDispatcher:
    """Runs subscription handlers off the stream read loops.

    A fixed pool of worker tasks, each draining its own unbounded queue.
    Every subscription is pinned to one worker, so a subscriber sees the
    events of a connection in the order the connection produced them.
    Queues are unbounded: a saturated handler makes its queue
    grow instead of dropping events or stalling network reads.
    """

    def __init__(
        self,
        registry: SubscriptionRegistry,
        workers: int = 4,
        metrics: Optional[SparkCloudMetrics] = None
    ):
        self.registry = registry
        self.worker_count = max(1, workers)
        self.metrics = metrics
        self.logger = get_logger("spark_cloud.events.dispatcher")
        self._queues: List[asyncio.Queue] = []
        self._workers: List[asyncio.Task] = []
        self.running = False

    def start(self):
        """Start the worker tasks. Must run inside the event loop."""
        if self.running:
            return
        self._queues = [asyncio.Queue() for _ in range(self.worker_count)]
        self._workers = [
            asyncio.create_task(self._worker(index, queue))
            for index, queue in enumerate(self._queues)
        ]
        self.running = True
        self.logger.info("Handler dispatcher started", workers=self.worker_count)

    async def stop(self):
        """Cancel the workers; queued deliveries are dropped."""
        if not self.running:
            return
        self.running = False
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)

        dropped = sum(queue.qsize() for queue in self._queues)
        self._workers = []
        self._queues = []
        self.logger.info("Handler dispatcher stopped", dropped_deliveries=dropped)

    def _worker_for(self, subscription_id: str) -> int:
        return zlib.crc32(subscription_id.encode("utf-8")) % self.worker_count

    @property
    def pending(self) -> int:
        return sum(queue.qsize() for queue in self._queues)

    def dispatch(
        self,
        subscription: Subscription,
        record: Optional[EventRecord] = None,
        error: Optional[SparkCloudException] = None,
        final: bool = False
    ):
        """Queue one handler invocation. ``final`` deliveries ignore removal from the registry."""
        if not self.running:
            self.start()
        queue = self._queues[self._worker_for(subscription.subscription_id)]
        queue.put_nowait((subscription, record, error, final))

    async def join(self):
        """Wait until every queued delivery has been handled."""
        await asyncio.gather(*(queue.join() for queue in self._queues))

    async def _worker(self, index: int, queue: asyncio.Queue):
        while True:
            subscription, record, error, final = await queue.get()
            try:
                # Unsubscribe takes effect for deliveries still in the queue.
                if final or subscription.subscription_id in self.registry:
                    await self._invoke(subscription, record, error)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.error(
                    "Dispatch worker failed to deliver",
                    worker=index,
                    subscription_id=subscription.subscription_id,
                    error=str(e)
                )
            finally:
                queue.task_done()

    async def _invoke(
        self,
        subscription: Subscription,
        record: Optional[EventRecord],
        error: Optional[SparkCloudException]
    ):
        set_subscription_context(subscription.subscription_id)
        handler = subscription.handler
        try:
            if inspect.iscoroutinefunction(handler):
                await handler(record, error)
            else:
                loop = asyncio.get_running_loop()
                result = await loop.run_in_executor(None, functools.partial(handler, record, error))
                if inspect.isawaitable(result):
                    await result

            self.registry.record_delivery(subscription)
            if self.metrics:
                self.metrics.record_delivery("error" if error is not None else "event")

        except asyncio.CancelledError:
            raise
        except Exception as e:
            if self.metrics:
                self.metrics.record_handler_error()
            self.logger.error(
                "Subscription handler raised",
                subscription_id=subscription.subscription_id,
                event_name=record.name if record else None,
                error=str(e)
            )
        finally:
            set_subscription_context(None)


class EventRouter:
    """Owns one read task per stream connection and routes what it yields.

    Subscriptions with the same scope share a connection. The connection is
    opened by the first subscription of a scope and closed when the last one
    goes away, or when it fails terminally; in that case the error reaches
    each bound subscription exactly once and the subscriptions are removed.

    Open connections follow the session: on login or logout every stream is
    reopened with the new token, and a logout ends the owned devices stream
    with an ``AuthenticationError``.
    """

    def __init__(
        self,
        registry: SubscriptionRegistry,
        token_store: TokenStore,
        owned_devices: OwnedDevicesCache,
        connection_factory: Callable[[Scope], StreamConnection],
        dispatcher: HandlerDispatcher,
        metrics: Optional[SparkCloudMetrics] = None
    ):
        self.registry = registry
        self.token_store = token_store
        self.owned_devices = owned_devices
        self.connection_factory = connection_factory
        self.dispatcher = dispatcher
        self.metrics = metrics
        self.logger = get_logger("spark_cloud.events.router")

        self.connections: Dict[Scope, StreamConnection] = {}
        self._tasks: Dict[Scope, asyncio.Task] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._closing = False

        token_store.add_listener(self._on_session_change)

    def _on_session_change(self, session: Optional[Session]):
        # Called from whichever thread changed the session.
        self._call_in_loop(self._apply_session_change, session)

    def _apply_session_change(self, session: Optional[Session]):
        if self._closing:
            return

        for scope in list(self.connections.keys()):
            if session is None and scope.requires_session:
                self.terminate_scope(
                    scope,
                    AuthenticationError("Session ended", {"scope": str(scope)})
                )
            else:
                self.restart_connection(scope)

    def restart_connection(self, scope: Scope):
        """Reopen a scope's stream so it picks up the current token."""
        if scope not in self.connections:
            return
        self._stop_connection(scope)
        if self.registry.scope_in_use(scope):
            self.ensure_connection(scope)
            self.logger.info("Stream reopened for session change", scope=str(scope))

    def _update_gauges(self):
        if self.metrics:
            self.metrics.set_active_subscriptions(len(self.registry))
            self.metrics.set_active_connections(len(self.connections))

    def add_subscription(self, subscription: Subscription) -> str:
        """Register and make sure the scope's connection is running. Never waits for events."""
        if self._closing:
            raise RuntimeError("Router is closed")
        self._loop = asyncio.get_running_loop()
        self.dispatcher.start()
        subscription_id = self.registry.register(subscription)
        self.ensure_connection(subscription.scope)
        self._update_gauges()
        return subscription_id

    def remove_subscription(self, subscription_id: str) -> bool:
        """Unregister; idempotent. Closes the connection of a scope left without subscribers."""
        subscription = self.registry.unregister(subscription_id)
        if subscription is None:
            return False

        if not self.registry.scope_in_use(subscription.scope):
            self._call_in_loop(self._close_idle_connection, subscription.scope)
        self._update_gauges()
        return True

    def _call_in_loop(self, callback: Callable, *args):
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            callback(*args)
        else:
            loop.call_soon_threadsafe(callback, *args)

    def ensure_connection(self, scope: Scope):
        task = self._tasks.get(scope)
        if task is not None and not task.done():
            return

        connection = self.connection_factory(scope)
        self.connections[scope] = connection
        self._tasks[scope] = asyncio.create_task(self._read_loop(scope, connection))
        self.logger.info("Stream connection opened", scope=str(scope), url=connection.url)
        self._update_gauges()

    def _close_idle_connection(self, scope: Scope):
        # A subscribe may have raced the teardown.
        if self.registry.scope_in_use(scope):
            return
        self._stop_connection(scope)

    def _stop_connection(self, scope: Scope):
        connection = self.connections.pop(scope, None)
        task = self._tasks.pop(scope, None)
        if connection is not None:
            connection.close()
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        if connection is not None:
            self.logger.info("Stream connection closed", scope=str(scope))
        self._update_gauges()

    async def _read_loop(self, scope: Scope, connection: StreamConnection):
        events = connection.events()
        try:
            async for item in events:
                if isinstance(item, EventRecord):
                    await self.route_event(scope, item)
                elif item.is_terminal:
                    self.terminate_scope(scope, item)
                    return
                else:
                    self.route_error(scope, item)

            if not connection.is_closed:
                self.terminate_scope(scope, TransportError("Stream ended", {"scope": str(scope)}, terminal=True))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.error("Unexpected error in stream read loop", scope=str(scope), error=str(e))
            self.terminate_scope(
                scope,
                TransportError(f"Stream read loop failed: {e}", {"scope": str(scope)}, terminal=True)
            )
        finally:
            await events.aclose()
            if self._tasks.get(scope) is asyncio.current_task():
                self._tasks.pop(scope, None)
                self.connections.pop(scope, None)
                self._update_gauges()

    async def route_event(self, scope: Scope, record: EventRecord):
        """Hand a parsed record to every matching subscription on ``scope``."""
        if self.token_store.is_active and (
            record.private or scope.kind == ScopeKind.OWNED_DEVICES
        ):
            await self.owned_devices.ensure_fresh()

        for subscription in self.registry.matching(record, self.owned_devices.is_owned, scope=scope):
            self.dispatcher.dispatch(subscription, record, None)

    def route_error(self, scope: Scope, error: SparkCloudException):
        """Per-frame errors: reported, the stream goes on."""
        self.logger.warning("Malformed event frame", scope=str(scope), error=error.message)
        for subscription in self.registry.matching_error(error, scope):
            self.dispatcher.dispatch(subscription, None, error)

    def terminate_scope(self, scope: Scope, error: SparkCloudException):
        """Deliver a terminal error once to every bound subscription, then drop them and the connection."""
        removed = self.registry.remove_scope(scope)
        self.logger.error(
            "Stream connection failed terminally",
            scope=str(scope),
            code=error.code,
            error=error.message,
            subscriptions=len(removed)
        )
        for subscription in removed:
            self.dispatcher.dispatch(subscription, None, error, final=True)
        self._stop_connection(scope)

    async def close(self):
        """Cancel every read loop and close every connection."""
        self._closing = True
        self.token_store.remove_listener(self._on_session_change)
        tasks = list(self._tasks.values())
        for scope in list(self.connections.keys()):
            self._stop_connection(scope)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self.connections.clear()
        self._tasks.clear()
        self._update_gauges()
        self.logger.info("Event router closed")

    def get_connection_stats(self) -> Dict[str, str]:
        """Connection state per scope."""
        return {str(scope): connection.state.value for scope, connection in self.connections.items()}
