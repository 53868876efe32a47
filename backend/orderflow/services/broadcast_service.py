"""
Broadcast Hub

Fans committed order transitions out to every live connection of the
owning user.

- Each connection has a bounded queue; publishing never awaits a client.
  A connection whose queue fills up is closed and told to resync, which is
  safe because the order history can replay anything it missed.
- Subscribing registers the connection first and then reads history, so
  every transition is either replayed or arrives live (or both). Both
  paths are deduplicated per order by sequence number.
- Nothing is queued for users with no live connection; the order history
  is the catch-up mechanism.
"""
import asyncio
import logging
from collections import deque
from datetime import datetime
from typing import AsyncIterator, Deque, Dict, Iterable, Mapping, Optional, Tuple, Union

from ..models.orders import OrderTransition
from .order_store import OrderStore

logger = logging.getLogger(__name__)

Cursor = Union[int, Mapping[str, int]]

_CLOSE = object()


class Connection:
    """
    One client subscription handle.

    ``acknowledged`` holds the last sequence handed to the client per order.
    """

    def __init__(self, user_id: str, connection_id: str, queue_size: int, store: Optional[OrderStore] = None):
        self.user_id = user_id
        self.connection_id = connection_id
        self.acknowledged: Dict[str, int] = {}
        self.created_at = datetime.utcnow()
        self.closed = False
        self.overflowed = False
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._replay: Deque[OrderTransition] = deque()
        self._store = store

    def offer(self, transition: OrderTransition) -> bool:
        """Non-blocking enqueue; a full queue closes the connection."""
        if self.closed:
            return False
        try:
            self._queue.put_nowait(transition)
            return True
        except asyncio.QueueFull:
            logger.warning(
                f"Connection {self.connection_id} for user {self.user_id} fell behind; closing for resync"
            )
            self.overflowed = True
            self.close()
            return False

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSE)

    def queue_size(self) -> int:
        return self._queue.qsize()

    def seed(self, replay: Iterable[OrderTransition], acknowledged: Dict[str, int]) -> None:
        self.acknowledged.update(acknowledged)
        self._replay.extend(replay)

    def _accept(self, transition: OrderTransition) -> bool:
        if transition.sequence <= self.acknowledged.get(transition.order_id, 0):
            return False
        self.acknowledged[transition.order_id] = transition.sequence
        return True

    async def _fill_gap(self, transition: OrderTransition) -> list:
        """Live delivery skipped ahead; fetch the missing sequences from history."""
        last = self.acknowledged.get(transition.order_id, 0)
        if self._store is None or transition.sequence <= last + 1:
            return [transition]

        changes = await self._store.get_history(transition.order_id, after_sequence=last)
        filled = []
        previous = None
        for change in changes:
            if change.sequence > transition.sequence:
                break
            filled.append(OrderTransition(
                order_id=change.order_id,
                user_id=self.user_id,
                previous_state=previous,
                state=change.state,
                sequence=change.sequence,
                event_id=change.event_id,
                cause=change.cause,
                occurred_at=change.occurred_at,
            ))
            previous = change.state
        return filled or [transition]

    async def events(self, heartbeat_seconds: Optional[float] = None) -> AsyncIterator[Optional[OrderTransition]]:
        """
        Replayed transitions first, then live ones, until closed.

        Yields ``None`` when ``heartbeat_seconds`` pass without an event so
        the caller can write a keep-alive.
        """
        while self._replay:
            transition = self._replay.popleft()
            if self._accept(transition):
                yield transition

        while True:
            try:
                if heartbeat_seconds:
                    item = await asyncio.wait_for(self._queue.get(), timeout=heartbeat_seconds)
                else:
                    item = await self._queue.get()
            except asyncio.TimeoutError:
                yield None
                continue

            if item is _CLOSE:
                logger.info(f"Connection stream closed: {self.connection_id}")
                break

            for transition in await self._fill_gap(item):
                if self._accept(transition):
                    yield transition


class ConnectionRegistry:
    """
    Live connections keyed by user, then connection id.

    Add and remove are the only mutations; broadcast iterates over a
    snapshot so connections may come and go mid-publish.
    """

    def __init__(self):
        self._connections: Dict[str, Dict[str, Connection]] = {}
        self._lock = asyncio.Lock()

    async def add(self, connection: Connection) -> None:
        async with self._lock:
            previous = self._connections.setdefault(connection.user_id, {}).get(connection.connection_id)
            self._connections[connection.user_id][connection.connection_id] = connection
        if previous is not None and previous is not connection:
            previous.close()
        logger.info(f"Registered connection {connection.connection_id} for user {connection.user_id}")

    async def remove(
        self, user_id: str, connection_id: str, connection: Optional[Connection] = None
    ) -> Optional[Connection]:
        """Remove a connection; with ``connection`` given, only if it is still the registered one."""
        async with self._lock:
            return self.discard(user_id, connection_id, connection)

    def discard(
        self, user_id: str, connection_id: str, connection: Optional[Connection] = None
    ) -> Optional[Connection]:
        """Same as ``remove`` for synchronous callers such as ``publish``."""
        connections = self._connections.get(user_id)
        if not connections:
            return None
        if connection is not None and connections.get(connection_id) is not connection:
            return None
        connection = connections.pop(connection_id, None)
        if not connections:
            del self._connections[user_id]
        if connection is not None:
            logger.info(f"Removed connection {connection_id} for user {user_id}")
        return connection

    def snapshot(self, user_id: Optional[str] = None) -> Tuple[Connection, ...]:
        if user_id is None:
            return tuple(c for conns in self._connections.values() for c in conns.values())
        return tuple(self._connections.get(user_id, {}).values())

    def count(self, user_id: Optional[str] = None) -> int:
        return len(self.snapshot(user_id))


class BroadcastHub:
    """Event dispatcher for committed order transitions."""

    def __init__(self, registry: ConnectionRegistry, order_store: OrderStore, queue_size: int = 100):
        self._registry = registry
        self._orders = order_store
        self._queue_size = queue_size

    @property
    def registry(self) -> ConnectionRegistry:
        return self._registry

    def publish(self, transition: OrderTransition) -> int:
        """
        Push one committed transition to the owner's live connections.

        Never blocks. Returns the number of connections that accepted it.
        """
        delivered = 0
        for connection in self._registry.snapshot(transition.user_id):
            if connection.offer(transition):
                delivered += 1
            elif connection.overflowed:
                self._registry.discard(connection.user_id, connection.connection_id, connection)

        logger.debug(
            f"Published {transition.order_id}#{transition.sequence} ({transition.state.value}) "
            f"to {delivered} connection(s)"
        )
        return delivered

    async def subscribe(
        self,
        user_id: str,
        connection_id: str,
        last_known_sequence: Cursor = 0,
    ) -> Connection:
        """
        Open a subscription and queue up everything the client missed.

        ``last_known_sequence`` is a per-order mapping, or a single number
        applied to every order that existed when the subscription opened;
        orders created afterwards replay from their first transition.
        """
        started = datetime.utcnow()
        connection = Connection(user_id, connection_id, self._queue_size, store=self._orders)
        await self._registry.add(connection)

        history = await self._orders.history_for_user(user_id)

        thresholds: Dict[str, int] = {}
        current: Dict[str, int] = {}
        replay = []
        for transition in history:
            if transition.order_id not in thresholds:
                if isinstance(last_known_sequence, Mapping):
                    thresholds[transition.order_id] = last_known_sequence.get(transition.order_id, 0)
                elif transition.occurred_at < started:
                    thresholds[transition.order_id] = last_known_sequence
                else:
                    thresholds[transition.order_id] = 0
            current[transition.order_id] = transition.sequence
            if transition.sequence > thresholds[transition.order_id]:
                replay.append(transition)

        acknowledged = {
            order_id: min(threshold, current[order_id])
            for order_id, threshold in thresholds.items()
        }
        connection.seed(replay, acknowledged)

        logger.info(
            f"User {user_id} subscribed on {connection_id}: replaying {len(replay)} transition(s)"
        )
        return connection

    async def unsubscribe(
        self, user_id: str, connection_id: str, connection: Optional[Connection] = None
    ) -> None:
        """Drop a subscription on disconnect."""
        removed = await self._registry.remove(user_id, connection_id, connection)
        if removed is not None:
            removed.close()
        elif connection is not None:
            connection.close()

    async def close_all(self) -> None:
        """Close every live connection (application shutdown)."""
        for connection in self._registry.snapshot():
            await self.unsubscribe(connection.user_id, connection.connection_id)
