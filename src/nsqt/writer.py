"""Shared outbound publish connection.

One ``OutboundWriter`` serves every partition, reply and gossip publish of a
transport.  It keeps a broker ``Writer`` open, reopening it whenever it closes
or fails to connect, and never raises on publish: while disconnected, or when
a publish fails, the message waits in a bounded pending queue that is flushed
once the connection is ready again.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque

from nsqt.broker import BrokerClient, Writer
from nsqt.config import WriterConfig


class OutboundWriter:
    def __init__(
        self,
        broker: BrokerClient,
        *,
        config: WriterConfig | None = None,
        connect_delay: float = 0.0,
        logger: logging.Logger | None = None,
    ) -> None:
        self._broker = broker
        self._config = config or WriterConfig()
        self._connect_delay = connect_delay
        self._logger = logger or logging.getLogger("nsqt.writer")
        self._writer: Writer | None = None
        self._ready = asyncio.Event()
        self._pending: deque[tuple[str, bytes]] = deque()
        self._task: asyncio.Task[None] | None = None
        self._stopping = False
        self.connections = 0

    @property
    def ready(self) -> bool:
        return self._ready.is_set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name="nsqt-writer")

    async def wait_ready(self) -> None:
        await self._ready.wait()

    async def publish(self, topic: str, body: bytes) -> None:
        if not self._ready.is_set() or self._writer is None:
            self._enqueue(topic, body)
            return
        if self._pending:
            # older messages go first
            self._enqueue(topic, body)
            await self._flush()
            return
        try:
            await self._writer.publish(topic, body)
        except (ConnectionError, OSError) as e:
            self._logger.error("Publish to %s failed: %s", topic, e)
            self._enqueue(topic, body)
            return
        if self._pending:
            await self._flush()

    async def stop(self) -> None:
        self._stopping = True
        self._ready.clear()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._writer is not None:
            await self._writer.close()
            self._writer = None
        if self._pending:
            self._logger.warning("Dropping %d unsent messages", len(self._pending))
            self._pending.clear()

    async def _run(self) -> None:
        if self._connect_delay > 0:
            await asyncio.sleep(self._connect_delay)
        while not self._stopping:
            writer = self._broker.writer()
            try:
                await writer.connect()
            except (ConnectionError, OSError) as e:
                self._logger.error("Writer connect failed: %s", e)
                await asyncio.sleep(self._config.reconnect_interval)
                continue

            self._writer = writer
            self.connections += 1
            self._ready.set()
            self._logger.debug("Writer ready (connection %d)", self.connections)
            await self._flush()

            await writer.wait_closed()
            self._ready.clear()
            self._writer = None
            if self._stopping:
                return
            self._logger.debug("Writer closed, reopening")
            await asyncio.sleep(self._config.reconnect_interval)

    async def _flush(self) -> None:
        while self._pending and self._ready.is_set() and self._writer is not None:
            topic, body = self._pending.popleft()
            try:
                await self._writer.publish(topic, body)
            except (ConnectionError, OSError) as e:
                self._logger.error("Publish to %s failed: %s", topic, e)
                self._pending.appendleft((topic, body))
                return

    def _enqueue(self, topic: str, body: bytes) -> None:
        if len(self._pending) >= self._config.max_pending:
            dropped, _ = self._pending.popleft()
            self._logger.warning("Pending buffer full, dropping message for %s", dropped)
        self._pending.append((topic, body))
