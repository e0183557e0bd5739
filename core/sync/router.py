"""
Event Router.

Publish/subscribe delivery between pipeline stages. Each subscriber owns a
channel with a bounded backlog and its own worker task, so a slow or failing
consumer never delays delivery to the others.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Deque, Dict, FrozenSet, List, Optional

from ..models.config import RouterConfig
from .events import EventCategory, RoutedEvent

logger = logging.getLogger(__name__)


class Subscriber(ABC):
    """
    A typed event consumer.

    Subclasses declare the categories they accept and a priority used to
    order delivery among subscribers of the same event (lower first).
    """

    name: str = "subscriber"
    categories: FrozenSet[EventCategory] = frozenset()
    priority: int = 100

    def accepts(self, event: RoutedEvent) -> bool:
        return event.category in self.categories

    @abstractmethod
    async def handle(self, event: RoutedEvent) -> None:
        """Process one event; raising counts as a failed delivery"""


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class DeadLetter:
    """An undelivered event and why it was not delivered"""
    subscriber: str
    event: RoutedEvent
    reason: str
    error: Optional[str] = None
    failed_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subscriber": self.subscriber,
            "event_id": self.event.event_id,
            "category": self.event.category.value,
            "source_path": self.event.source_path,
            "reason": self.reason,
            "error": self.error,
            "failed_at": self.failed_at.isoformat(),
        }


@dataclass
class ChannelMetrics:
    delivered: int = 0
    failed: int = 0
    dead_lettered: int = 0
    consecutive_failures: int = 0
    last_error: Optional[str] = None


class SubscriberChannel:
    """
    Backlog and worker for one subscriber.

    The next event is chosen by severity, then publish sequence, among the
    heads of the per-path queues, so events sharing a source path are never
    reordered.
    """

    def __init__(self, subscriber: Subscriber, max_backlog: int):
        self.subscriber = subscriber
        self.max_backlog = max_backlog
        self.circuit = CircuitState.CLOSED
        self.opened_at: Optional[float] = None
        self.metrics = ChannelMetrics()

        self._paths: Dict[str, Deque[RoutedEvent]] = {}
        self._size = 0
        self._busy = False
        self._condition = asyncio.Condition()
        self._worker: Optional[asyncio.Task] = None

    @property
    def name(self) -> str:
        return self.subscriber.name

    @property
    def size(self) -> int:
        return self._size

    @property
    def idle(self) -> bool:
        return self._size == 0 and not self._busy

    async def put(self, event: RoutedEvent, timeout: float) -> bool:
        """Enqueue an event, waiting up to ``timeout`` for space"""
        async with self._condition:
            if self._size >= self.max_backlog:
                try:
                    await asyncio.wait_for(
                        self._condition.wait_for(lambda: self._size < self.max_backlog),
                        timeout=timeout
                    )
                except asyncio.TimeoutError:
                    return False
            self._paths.setdefault(event.ordering_key, deque()).append(event)
            self._size += 1
            self._condition.notify_all()
            return True

    async def take(self) -> RoutedEvent:
        async with self._condition:
            await self._condition.wait_for(lambda: self._size > 0)
            key = min(self._paths, key=lambda k: self._paths[k][0])
            queue = self._paths[key]
            event = queue.popleft()
            if not queue:
                del self._paths[key]
            self._size -= 1
            self._busy = True
            self._condition.notify_all()
            return event

    async def done(self) -> None:
        async with self._condition:
            self._busy = False
            self._condition.notify_all()

    async def drain(self) -> List[RoutedEvent]:
        """Remove and return every pending event in delivery order"""
        async with self._condition:
            events = sorted(e for queue in self._paths.values() for e in queue)
            self._paths.clear()
            self._size = 0
            self._condition.notify_all()
            return events

    async def wait_idle(self) -> None:
        async with self._condition:
            await self._condition.wait_for(lambda: self.idle)


class EventRouter:
    """
    Routes events to subscribers by category and severity.

    Features:
    - One bounded channel and worker per subscriber
    - ERROR before WARNING before INFO, FIFO per source path
    - Circuit breaker suspends a subscriber after repeated failures
    - Bounded dead-letter queue with manual replay
    - Backpressure: publishers wait briefly, then dead-letter
    """

    def __init__(self, config: Optional[RouterConfig] = None):
        self.config = config or RouterConfig()
        self._channels: Dict[str, SubscriberChannel] = {}
        self.dead_letters: Deque[DeadLetter] = deque(maxlen=self.config.dead_letter_size)
        self._running = False
        self._published = 0

        logger.info(
            f"Initialized EventRouter with failure_threshold={self.config.failure_threshold}, "
            f"max_backlog={self.config.max_backlog}"
        )

    @property
    def is_running(self) -> bool:
        return self._running

    def subscribe(self, subscriber: Subscriber) -> None:
        """Register a subscriber; its worker starts with the router"""
        if subscriber.name in self._channels:
            raise ValueError(f"Subscriber already registered: {subscriber.name}")
        channel = SubscriberChannel(subscriber, self.config.max_backlog)
        self._channels[subscriber.name] = channel
        if self._running:
            channel._worker = asyncio.create_task(self._run_channel(channel))
        logger.debug(f"Subscribed {subscriber.name} to {sorted(c.value for c in subscriber.categories)}")

    async def unsubscribe(self, name: str) -> bool:
        channel = self._channels.pop(name, None)
        if channel is None:
            return False
        await self._stop_channel(channel)
        return True

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        for channel in self._channels.values():
            channel._worker = asyncio.create_task(self._run_channel(channel))
        logger.info(f"Started EventRouter with {len(self._channels)} subscriber(s)")

    async def stop(self) -> None:
        self._running = False
        for channel in self._channels.values():
            await self._stop_channel(channel)
        logger.info("Stopped EventRouter")

    async def _stop_channel(self, channel: SubscriberChannel) -> None:
        if channel._worker is not None:
            channel._worker.cancel()
            try:
                await channel._worker
            except asyncio.CancelledError:
                pass
            channel._worker = None

    async def publish(self, event: RoutedEvent) -> int:
        """
        Offer an event to every subscriber that accepts it.

        Never awaits subscriber code. An open circuit whose reset period has
        elapsed is half-opened by the arriving event.

        Returns:
            Number of channels the event was enqueued on
        """
        self._published += 1
        targets = sorted(
            (c for c in self._channels.values() if c.subscriber.accepts(event)),
            key=lambda c: (c.subscriber.priority, c.name)
        )

        enqueued = 0
        for channel in targets:
            if channel.circuit is CircuitState.OPEN:
                if self._reset_elapsed(channel):
                    channel.circuit = CircuitState.HALF_OPEN
                    logger.info(f"Half-opened circuit for {channel.name}")
                else:
                    self._dead_letter(channel, event, "circuit_open")
                    continue

            if await channel.put(event, self.config.backpressure_timeout_s):
                enqueued += 1
            else:
                logger.warning(f"Backlog full for {channel.name}, dead-lettering {event.event_id}")
                self._dead_letter(channel, event, "backlog_full")
        return enqueued

    def _reset_elapsed(self, channel: SubscriberChannel) -> bool:
        return (
            channel.opened_at is not None
            and time.monotonic() - channel.opened_at >= self.config.circuit_reset_s
        )

    async def _run_channel(self, channel: SubscriberChannel) -> None:
        while True:
            event = await channel.take()
            try:
                await channel.subscriber.handle(event)
            except asyncio.CancelledError:
                await channel.done()
                raise
            except Exception as e:
                await self._record_failure(channel, event, e)
            else:
                self._record_success(channel)
            finally:
                if channel._busy:
                    await channel.done()

    def _record_success(self, channel: SubscriberChannel) -> None:
        channel.metrics.delivered += 1
        channel.metrics.consecutive_failures = 0
        if channel.circuit is not CircuitState.CLOSED:
            logger.info(f"Closed circuit for {channel.name}")
        channel.circuit = CircuitState.CLOSED
        channel.opened_at = None

    async def _record_failure(self, channel: SubscriberChannel, event: RoutedEvent, error: Exception) -> None:
        channel.metrics.failed += 1
        channel.metrics.consecutive_failures += 1
        channel.metrics.last_error = str(error)
        logger.error(f"Subscriber {channel.name} failed on {event.event_id}: {error}")
        self._dead_letter(channel, event, "handler_error", str(error))

        if (channel.circuit is CircuitState.HALF_OPEN
                or channel.metrics.consecutive_failures >= self.config.failure_threshold):
            await self._open_circuit(channel)

    async def _open_circuit(self, channel: SubscriberChannel) -> None:
        channel.circuit = CircuitState.OPEN
        channel.opened_at = time.monotonic()
        pending = await channel.drain()
        for event in pending:
            self._dead_letter(channel, event, "suspended")
        logger.error(
            f"Suspended subscriber {channel.name} after "
            f"{channel.metrics.consecutive_failures} consecutive failure(s); "
            f"{len(pending)} pending event(s) dead-lettered"
        )

    def _dead_letter(self, channel: SubscriberChannel, event: RoutedEvent,
                     reason: str, error: Optional[str] = None) -> None:
        channel.metrics.dead_lettered += 1
        self.dead_letters.append(DeadLetter(
            subscriber=channel.name, event=event, reason=reason, error=error
        ))

    def resume(self, name: str) -> bool:
        """Half-open a suspended subscriber's circuit"""
        channel = self._channels.get(name)
        if channel is None:
            return False
        if channel.circuit is CircuitState.OPEN:
            channel.circuit = CircuitState.HALF_OPEN
            logger.info(f"Resumed subscriber {name} (half-open)")
        return True

    async def replay_dead_letters(self, name: Optional[str] = None) -> int:
        """
        Re-enqueue dead letters.

        Args:
            name: Only replay entries for this subscriber

        Returns:
            Number of events re-enqueued
        """
        keep: List[DeadLetter] = []
        replay: List[DeadLetter] = []
        for letter in self.dead_letters:
            (replay if name is None or letter.subscriber == name else keep).append(letter)

        self.dead_letters.clear()
        self.dead_letters.extend(keep)

        replayed = 0
        for letter in sorted(replay, key=lambda d: d.event):
            channel = self._channels.get(letter.subscriber)
            if channel is None:
                continue
            if channel.circuit is CircuitState.OPEN:
                channel.circuit = CircuitState.HALF_OPEN
            if await channel.put(letter.event, self.config.backpressure_timeout_s):
                replayed += 1
            else:
                self.dead_letters.append(letter)

        logger.info(f"Replayed {replayed} dead letter(s)")
        return replayed

    async def join(self) -> None:
        """Wait until every channel has no pending or in-flight events"""
        while True:
            channels = list(self._channels.values())
            for channel in channels:
                await channel.wait_idle()
            # Handlers may publish to channels already visited
            if all(channel.idle for channel in channels):
                return

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "published": self._published,
            "dead_letters": len(self.dead_letters),
            "subscribers": {
                name: {
                    "circuit": channel.circuit.value,
                    "backlog": channel.size,
                    "delivered": channel.metrics.delivered,
                    "failed": channel.metrics.failed,
                    "dead_lettered": channel.metrics.dead_lettered,
                    "consecutive_failures": channel.metrics.consecutive_failures,
                    "last_error": channel.metrics.last_error,
                }
                for name, channel in self._channels.items()
            },
        }

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()
