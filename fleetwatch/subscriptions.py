"""
Change subscription multiplexer.

Many read-side consumers want to hear about writes to the same table.
Rather than each of them opening its own change channel on the gateway,
the multiplexer keeps exactly one channel per table and fans every event
out to the registered callbacks.

    writer thread ──ChangeChannel──> queue ──dispatch thread──> callbacks

The channel handler only enqueues, so a slow consumer never holds up the
thread that performed the write. Each table has one dispatch thread, which
calls the callbacks in registration order. A callback that raises is
logged and stays registered; the remaining callbacks for that event still
run.
"""

import logging
import queue
import threading
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from fleetwatch.models import Vessel, VesselPosition
from fleetwatch.store import ChangeChannel, ChangeEvent, StoreGateway

logger = logging.getLogger(__name__)

Callback = Callable[[ChangeEvent], None]
Unsubscribe = Callable[[], None]

_STOP = object()


@dataclass(eq=False)
class Subscription:
    """One consumer's registration for a table."""
    table: str
    subscriber_id: str
    callback: Callback


class _Dispatcher:
    """Queue plus worker thread delivering one table's events in order."""

    def __init__(self, table: str, deliver: Callable[[str, ChangeEvent], None]):
        self.table = table
        self._deliver = deliver
        self._queue: queue.Queue = queue.Queue()
        self._thread = threading.Thread(
            target=self._loop,
            name=f'changes-{table}',
            daemon=True,
        )
        self._thread.start()

    def submit(self, event: ChangeEvent) -> None:
        self._queue.put(event)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Block until everything queued before this call was delivered."""
        if not self._thread.is_alive():
            return True
        marker = threading.Event()
        self._queue.put(marker)
        return marker.wait(timeout)

    def stop(self, timeout: float = 5.0) -> None:
        self._queue.put(_STOP)
        if threading.current_thread() is not self._thread:
            self._thread.join(timeout)

    def _loop(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                return
            if isinstance(item, threading.Event):
                item.set()
                continue
            self._deliver(self.table, item)


class SubscriptionMultiplexer:
    """
    Shares one ChangeChannel per table among any number of subscribers.

    The channel and its dispatch thread are started by the first
    subscribe() for a table and stopped when the last subscription for
    it is removed.
    """

    def __init__(self, gateway: StoreGateway):
        self.gateway = gateway
        self._channels: Dict[str, ChangeChannel] = {}
        self._dispatchers: Dict[str, _Dispatcher] = {}
        self._subscriptions: Dict[str, List[Subscription]] = {}
        self._lock = threading.Lock()
        self._dispatched = 0
        self._callback_errors = 0

    def subscribe(self, table: str, callback: Callback, subscriber_id: Optional[str] = None) -> Unsubscribe:
        """
        Register callback for every change on table.

        Callbacks run on the table's dispatch thread, never on the
        writer's thread.

        Returns:
            Unsubscribe function; calling it more than once is a no-op
        """
        subscription = Subscription(
            table=table,
            subscriber_id=subscriber_id or f'{table}-{uuid.uuid4().hex[:9]}',
            callback=callback,
        )

        with self._lock:
            if table not in self._channels:
                dispatcher = _Dispatcher(table, self._dispatch)
                self._dispatchers[table] = dispatcher
                self._channels[table] = self.gateway.subscribe_changes(table, dispatcher.submit)
                self._subscriptions[table] = []
                logger.info(f'Opened change channel for {table}')
            self._subscriptions[table].append(subscription)

        logger.debug(f'Subscriber {subscription.subscriber_id} registered for {table}')

        def unsubscribe() -> None:
            self._remove(subscription)

        return unsubscribe

    def subscribe_to_vessels(self, callback: Callback, subscriber_id: Optional[str] = None) -> Unsubscribe:
        """Subscribe to vessel table changes."""
        return self.subscribe(Vessel.__tablename__, callback, subscriber_id)

    def subscribe_to_positions(self, callback: Callback, subscriber_id: Optional[str] = None) -> Unsubscribe:
        """Subscribe to vessel position table changes."""
        return self.subscribe(VesselPosition.__tablename__, callback, subscriber_id)

    def _remove(self, subscription: Subscription) -> None:
        channel = dispatcher = None
        with self._lock:
            subscriptions = self._subscriptions.get(subscription.table)
            if not subscriptions or subscription not in subscriptions:
                return
            subscriptions.remove(subscription)
            if not subscriptions:
                del self._subscriptions[subscription.table]
                channel = self._channels.pop(subscription.table, None)
                dispatcher = self._dispatchers.pop(subscription.table, None)

        if channel is not None:
            channel.close()
            logger.info(f'Closed change channel for {subscription.table}')
        if dispatcher is not None:
            dispatcher.stop()

    def _dispatch(self, table: str, event: ChangeEvent) -> None:
        with self._lock:
            subscriptions = list(self._subscriptions.get(table, ()))
            self._dispatched += 1

        for subscription in subscriptions:
            try:
                subscription.callback(event)
            except Exception:
                with self._lock:
                    self._callback_errors += 1
                logger.exception(f'Error in subscriber {subscription.subscriber_id} for table {table}')

    def flush(self, timeout: Optional[float] = 5.0) -> bool:
        """
        Wait until every event published so far has reached its callbacks.

        Returns:
            False if a table's dispatcher did not catch up within timeout
        """
        with self._lock:
            dispatchers = list(self._dispatchers.values())
        return all([dispatcher.flush(timeout) for dispatcher in dispatchers])

    @property
    def stats(self) -> dict:
        """Subscriber count, channel state and queued events per table."""
        with self._lock:
            return {
                'tables': {
                    table: {
                        'subscribers': len(subscriptions),
                        'channel': table in self._channels,
                        'pending': self._dispatchers[table].pending if table in self._dispatchers else 0,
                    }
                    for table, subscriptions in self._subscriptions.items()
                },
                'events_dispatched': self._dispatched,
                'callback_errors': self._callback_errors,
            }

    def stop(self) -> None:
        """Close every channel, stop dispatch threads and drop all subscriptions."""
        with self._lock:
            channels = list(self._channels.values())
            dispatchers = list(self._dispatchers.values())
            self._channels.clear()
            self._dispatchers.clear()
            self._subscriptions.clear()

        for channel in channels:
            channel.close()
        for dispatcher in dispatchers:
            dispatcher.stop()
