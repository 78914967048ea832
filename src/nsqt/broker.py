"""Broker client interfaces and an in-process broker.

The transport never speaks a broker wire protocol itself; it talks to the
protocols below.  ``InMemoryBroker`` implements them with NSQ semantics and
backs the tests and examples:

- publishing to a topic copies the message into every channel of the topic;
- within a channel each message goes to exactly one reader;
- a topic with no channels buffers messages until the first channel appears,
  except ephemeral topics (``#ephemeral``), which drop them;
- delivery is at-least-once: a requeued message is delivered again.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Protocol

from nsqt.topics import is_ephemeral

logger = logging.getLogger(__name__)


class InboundMessage(Protocol):
    id: str
    timestamp: int
    body: bytes
    attempts: int

    def finish(self) -> None: ...
    def requeue(self, delay: float = 0.0) -> None: ...


class Writer(Protocol):
    async def connect(self) -> None: ...
    async def publish(self, topic: str, body: bytes) -> None: ...
    async def wait_closed(self) -> None: ...
    async def close(self) -> None: ...


class Reader(Protocol):
    def __aiter__(self) -> AsyncIterator[InboundMessage]: ...
    async def close(self) -> None: ...


class BrokerClient(Protocol):
    def writer(self) -> Writer: ...
    def subscribe(self, topic: str, channel: str) -> Reader: ...


@dataclass(eq=False)
class MemoryMessage:
    """A message sitting in (or taken from) an in-memory channel."""

    body: bytes
    channel: _Channel
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    timestamp: int = field(default_factory=time.time_ns)
    attempts: int = 0
    responded: bool = False

    def finish(self) -> None:
        if self.responded:
            return
        self.responded = True
        self.channel.finished += 1

    def requeue(self, delay: float = 0.0) -> None:
        if self.responded:
            return
        self.responded = True
        self.channel.requeued += 1
        retry = MemoryMessage(
            body=self.body,
            channel=self.channel,
            id=self.id,
            timestamp=self.timestamp,
            attempts=self.attempts,
        )
        if delay > 0:
            asyncio.get_running_loop().call_later(delay, self.channel.put, retry)
        else:
            self.channel.put(retry)


@dataclass(eq=False)
class _Channel:
    name: str
    queue: asyncio.Queue[MemoryMessage] = field(default_factory=asyncio.Queue)
    readers: int = 0
    finished: int = 0
    requeued: int = 0

    def put(self, message: MemoryMessage) -> None:
        self.queue.put_nowait(message)


@dataclass(eq=False)
class _Topic:
    name: str
    channels: dict[str, _Channel] = field(default_factory=dict)
    backlog: list[bytes] = field(default_factory=list)


class MemoryWriter:
    def __init__(self, broker: InMemoryBroker) -> None:
        self._broker = broker
        self._closed = asyncio.Event()
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        if self._broker.refuse_connections:
            raise ConnectionRefusedError("in-memory broker refused the connection")
        self._connected = True
        self._closed.clear()

    async def publish(self, topic: str, body: bytes) -> None:
        if not self._connected:
            raise ConnectionError("writer is not connected")
        self._broker.publish(topic, body)

    async def wait_closed(self) -> None:
        await self._closed.wait()

    async def close(self) -> None:
        self._connected = False
        self._closed.set()


class MemoryReader:
    def __init__(self, broker: InMemoryBroker, channel: _Channel, topic: str) -> None:
        self._broker = broker
        self._channel = channel
        self._topic = topic
        self._closed = False
        channel.readers += 1

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> AsyncIterator[MemoryMessage]:
        return self._messages()

    async def _messages(self) -> AsyncIterator[MemoryMessage]:
        while not self._closed:
            message = await self._channel.queue.get()
            if self._closed:
                # closed while waiting: hand it back to another reader
                self._channel.put(message)
                return
            message.attempts += 1
            yield message

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._channel.readers -= 1
        self._broker._release(self._topic, self._channel)


class InMemoryBroker:
    """In-process broker with NSQ topic/channel semantics.

    Example:
        broker = InMemoryBroker()
        reader = broker.subscribe("job", "workers")
        writer = broker.writer()
        await writer.connect()
        await writer.publish("job", b'{"n": 1}')

        async for message in reader:
            message.finish()
    """

    def __init__(self) -> None:
        self._topics: dict[str, _Topic] = {}
        self._writers: list[MemoryWriter] = []
        self.refuse_connections = False
        self.published: list[tuple[str, bytes]] = []

    def writer(self) -> MemoryWriter:
        writer = MemoryWriter(self)
        self._writers.append(writer)
        return writer

    def subscribe(self, topic: str, channel: str) -> MemoryReader:
        entry = self._topics.setdefault(topic, _Topic(topic))
        ch = entry.channels.get(channel)
        if ch is None:
            ch = _Channel(channel)
            entry.channels[channel] = ch
            for body in entry.backlog:
                ch.put(MemoryMessage(body=body, channel=ch))
            entry.backlog.clear()
        return MemoryReader(self, ch, topic)

    def publish(self, topic: str, body: bytes) -> None:
        self.published.append((topic, body))
        entry = self._topics.get(topic)
        if entry is None:
            if is_ephemeral(topic):
                return
            entry = self._topics.setdefault(topic, _Topic(topic))
        if not entry.channels:
            if not is_ephemeral(topic):
                entry.backlog.append(body)
            return
        for ch in entry.channels.values():
            ch.put(MemoryMessage(body=body, channel=ch))

    def published_to(self, topic: str) -> list[bytes]:
        return [body for t, body in self.published if t == topic]

    def topics(self) -> list[str]:
        return sorted(self._topics)

    def channels(self, topic: str) -> list[str]:
        entry = self._topics.get(topic)
        return sorted(entry.channels) if entry else []

    def depth(self, topic: str, channel: str | None = None) -> int:
        """Messages waiting in *channel* (or the topic backlog)."""
        entry = self._topics.get(topic)
        if entry is None:
            return 0
        if channel is None:
            return len(entry.backlog)
        ch = entry.channels.get(channel)
        return ch.queue.qsize() if ch else 0

    def stats(self, topic: str, channel: str) -> tuple[int, int]:
        """Return ``(finished, requeued)`` counts for a channel."""
        ch = self._topics[topic].channels[channel]
        return ch.finished, ch.requeued

    async def disconnect_writers(self) -> None:
        """Close every connected writer, as a broker restart would."""
        for writer in self._writers:
            if writer.connected:
                await writer.close()

    def _release(self, topic: str, channel: _Channel) -> None:
        # ephemeral channels and topics disappear with their last reader
        if channel.readers > 0 or not is_ephemeral(channel.name):
            return
        entry = self._topics.get(topic)
        if entry is None:
            return
        entry.channels.pop(channel.name, None)
        if not entry.channels and is_ephemeral(topic):
            del self._topics[topic]
        logger.debug("Released ephemeral channel %s/%s", topic, channel.name)
