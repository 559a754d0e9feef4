from __future__ import annotations

import logging
import queue
import threading

from metacollector.src.errors import DispatchFailure
from metacollector.src.events import Event
from metacollector.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


class SubscriberStream:
    """Bounded, ordered event stream for one connected node agent.

    ``put`` never blocks: a full or closed stream raises
    :class:`DispatchFailure` and the event is dropped.
    """

    def __init__(self, node: str, maxsize: int) -> None:
        self.node = node
        self._queue: queue.Queue[Event] = queue.Queue(maxsize=maxsize)
        self._closed = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def close(self) -> None:
        self._closed.set()

    def put(self, event: Event) -> None:
        if self._closed.is_set():
            raise DispatchFailure(f"stream for node {self.node} is closed")
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            raise DispatchFailure(f"stream for node {self.node} is full") from None

    def get(self, timeout: float | None = None) -> Event | None:
        """Return the next event, or ``None`` if none arrived within *timeout*."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def qsize(self) -> int:
        return self._queue.qsize()


class Broker:
    """Routes events to per-node subscriber streams and announces joining subscribers.

    Two paths share the subscriber map:

    * the push path, used by every collector, forwards an event to the
      stream registered for ``event.node`` and silently drops it when no
      subscriber is connected (the cache replays it on join). A stream that
      overflows is closed and unregistered so its subscriber reconnects;
    * the join path fans a newly connected node name out to every
      collector's join channel, where the collector's replay loop answers
      with one ``Added`` event per cached association.

    Streams must be registered before ``on_subscriber_join`` is called so
    that live events committed during replay are not lost.
    """

    def __init__(self, queue_size: int = 1000) -> None:
        if queue_size < 1:
            raise ValueError("queue_size must be >= 1")
        self.queue_size = queue_size
        self._lock = threading.Lock()
        self._streams: dict[str, SubscriberStream] = {}
        self._join_channels: dict[str, queue.Queue[str]] = {}

    def subscribe(self, name: str) -> queue.Queue[str]:
        """Return the join channel collector *name* reads joining node names from."""
        with self._lock:
            channel = self._join_channels.get(name)
            if channel is None:
                channel = queue.Queue()
                self._join_channels[name] = channel
            return channel

    def register_stream(self, node: str) -> SubscriberStream:
        """Create the delivery stream for *node*, closing any previous one."""
        stream = SubscriberStream(node, maxsize=self.queue_size)
        with self._lock:
            previous = self._streams.get(node)
            self._streams[node] = stream
            METRICS.subscribers.set(len(self._streams))
        if previous is not None:
            LOGGER.info("Replacing existing subscriber stream for node %s", node)
            previous.close()
        return stream

    def unregister_stream(self, node: str, stream: SubscriberStream | None = None) -> None:
        """Remove the stream for *node*.

        When *stream* is given the registration is removed only if it is still
        the current one, so a disconnecting old connection cannot tear down
        its replacement.
        """
        with self._lock:
            current = self._streams.get(node)
            if current is None or (stream is not None and current is not stream):
                removed = None
            else:
                removed = self._streams.pop(node)
            METRICS.subscribers.set(len(self._streams))
        if removed is not None:
            removed.close()
            LOGGER.info("Unregistered subscriber stream for node %s", node)

    def stream_for(self, node: str) -> SubscriberStream | None:
        with self._lock:
            return self._streams.get(node)

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._streams)

    def push(self, event: Event) -> bool:
        """Deliver *event* to its node's stream. Returns ``True`` when enqueued."""
        stream = self.stream_for(event.node)
        if stream is None:
            LOGGER.debug(
                "No subscriber for node %s; dropping %s event for %s %s",
                event.node,
                event.event_type.value,
                event.kind,
                event.key,
            )
            return False
        try:
            stream.put(event)
        except DispatchFailure as exc:
            reason = "closed" if stream.closed else "full"
            METRICS.dispatch_dropped_total.labels(reason=reason).inc()
            LOGGER.warning(
                "Dropping %s event for %s %s: %s",
                event.event_type.value,
                event.kind,
                event.key,
                exc,
            )
            if reason == "full":
                # The subscriber is now out of sync; closing its stream ends
                # the response and the reconnect gets a full replay.
                self.unregister_stream(event.node, stream)
                LOGGER.warning("Disconnected lagging subscriber for node %s", event.node)
            return False
        return True

    def on_subscriber_join(self, node: str) -> None:
        """Ask every collector to replay its cache to *node*."""
        with self._lock:
            channels = list(self._join_channels.values())
        LOGGER.info(
            "Subscriber joined for node %s; requesting replay from %d collector(s)",
            node,
            len(channels),
        )
        for channel in channels:
            channel.put(node)
