"""NSQ transport: sharded forwarding, handling and request/reply.

An ``NsqTransport`` connects a dispatcher to a broker topic in one of two
roles:

- ``forward`` registers ``{topic_property: topic}`` on the dispatcher and
  publishes every matching message to the topic (or to its partition when
  sharding is configured), optionally waiting for the reply;
- ``handle`` consumes the topic, and when sharding is configured, the
  partition topics this process owns, passing each message to the
  dispatcher and publishing the handler's result back to the caller.

Both roles keep one ``OutboundWriter`` for every publish, a
``CorrelationTable`` for calls awaiting replies and, with sharding, a
``ShardView`` kept in sync over the gossip topic.  All of it is driven from
the event loop: broker messages and two periodic tasks (the pending-call
sweep and the membership tick, which is followed by a gossip broadcast on
handlers).

Example:
    broker = InMemoryBroker()
    config = NsqConfig(topic="area", sharding=ShardingConfig(shard_property="areaId"))

    async with NsqTransport("handle", config, broker, workers):
        async with NsqTransport("forward", config, broker, clients) as client:
            reply = await client.call({"role": "area", "areaId": "north"})
"""

from __future__ import annotations

import asyncio
import logging
import sys
import time
import uuid
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any, Literal, TypeAlias

from nsqt.broker import BrokerClient, InboundMessage, Reader
from nsqt.codec import (
    CHAN_FIELD,
    ERROR_FIELD,
    RESULT_FIELD,
    augment,
    decode_gossip,
    decode_message,
    encode_gossip,
    get_serializer,
    reply_body,
)
from nsqt.config import NsqConfig
from nsqt.correlation import CorrelationTable, DeadlineClock
from nsqt.dispatcher import Dispatcher
from nsqt.exceptions import (
    ChannelNotHandledError,
    MalformedMessageError,
    MissingRoutingKeyError,
    NoPartitionAvailableError,
    RemoteHandlerError,
)
from nsqt.membership import ShardView
from nsqt.router import PartitionRouter
from nsqt.topics import PluginKind, gossip_topic, private_channel, reply_topic
from nsqt.writer import OutboundWriter

MessageHandler: TypeAlias = Callable[[InboundMessage, str], Awaitable[None]]
SubscriptionKind: TypeAlias = Literal["topic", "partition", "reply", "gossip"]


@dataclass
class _Subscription:
    topic: str
    channel: str
    kind: SubscriptionKind
    reader: Reader
    task: asyncio.Task[None] | None = None


class NsqTransport:
    """Forwarding or handling endpoint for one topic.

    Parameters
    ----------
    kind : PluginKind
        ``"forward"`` or ``"handle"``.
    config : NsqConfig
        Topic, channel, reply and sharding settings.
    broker : BrokerClient
        Broker connection factory.
    dispatcher : Dispatcher
        Where inbound messages are dispatched and the forward pattern is
        registered.
    process_id : str | None
        Identity of this process in the shard view and its reply topic.
        Random when omitted.
    clock : Callable[[], float]
        Monotonic clock in seconds used for reply deadlines.
    """

    def __init__(
        self,
        kind: PluginKind,
        config: NsqConfig,
        broker: BrokerClient,
        dispatcher: Dispatcher,
        *,
        process_id: str | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.kind = kind
        self.config = config
        self.name = config.plugin_name(kind)
        self.process_id = process_id or uuid.uuid4().hex[:8]
        self.reply_topic = reply_topic(config.topic, self.process_id)
        self.gossip_topic = gossip_topic(config.topic)

        self._broker = broker
        self._dispatcher = dispatcher
        self._logger = logging.getLogger(f"nsqt.transport.{self.name}")
        self._serializer = get_serializer(config.serializer)
        self._clock = DeadlineClock(clock)
        self._table = CorrelationTable()
        self._writer = OutboundWriter(
            broker,
            config=config.writer,
            connect_delay=config.forward_delay,
            logger=self._logger.getChild("writer"),
        )

        self.view: ShardView | None = None
        self.router: PartitionRouter | None = None
        if config.sharding is not None:
            self.view = ShardView(
                self.process_id,
                config.topic,
                settle_ticks=config.sharding.settle_ticks,
                churn_ticks=config.sharding.churn_ticks,
            )
            self.router = PartitionRouter(config.sharding.shard_property, topic=config.topic)

        self._subscriptions: dict[str, _Subscription] = {}
        self._periodic: list[asyncio.Task[None]] = []
        self._inflight: set[asyncio.Task[None]] = set()
        self._registered = False
        self._started = False

    async def __aenter__(self) -> NsqTransport:
        await self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.stop()

    @property
    def active(self) -> bool:
        """Whether this process consumes the topic (and may coordinate shards)."""
        return self.kind == "handle"

    @property
    def writer(self) -> OutboundWriter:
        return self._writer

    @property
    def pending_calls(self) -> int:
        return len(self._table)

    @property
    def subscribed_topics(self) -> list[str]:
        return sorted(self._subscriptions)

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        self._logger.info("Starting %s (process %s)", self.name, self.process_id)

        await self._writer.start()

        if self.kind == "forward" and not self._registered:
            # registered once: reconnecting the writer must not add it again
            self._dispatcher.add(self.config.base_pattern(), self._forward)
            self._registered = True

        if self.config.reply.enabled:
            await self._subscribe(
                self.reply_topic, private_channel(self.process_id), "reply", self._on_reply
            )
        if self.view is not None:
            await self._subscribe(
                self.gossip_topic, private_channel(self.process_id), "gossip", self._on_gossip
            )
        if self.active:
            if self.config.handle_delay > 0:
                await asyncio.sleep(self.config.handle_delay)
            await self._subscribe(self.config.topic, self.config.channel, "topic", self._on_inbound)

        self._periodic.append(
            asyncio.create_task(
                self._every(self.config.reply.sweep_interval, self.sweep),
                name=f"{self.name}-sweep",
            )
        )
        if self.config.sharding is not None:
            self._periodic.append(
                asyncio.create_task(
                    self._every(self.config.sharding.tick_interval, self.tick),
                    name=f"{self.name}-tick",
                )
            )

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        self._logger.info("Stopping %s", self.name)

        for task in self._periodic:
            task.cancel()
        await asyncio.gather(*self._periodic, return_exceptions=True)
        self._periodic.clear()

        for topic in list(self._subscriptions):
            await self._unsubscribe(topic)

        for task in list(self._inflight):
            task.cancel()
        await asyncio.gather(*self._inflight, return_exceptions=True)

        self._table.sweep(sys.maxsize)
        await self._writer.stop()

    async def call(
        self,
        message: Mapping[str, Any],
        wants_reply: bool | None = None,
        *,
        timeout: float | None = None,
    ) -> Any:
        """Publish *message* to its topic or partition.

        Parameters
        ----------
        message : Mapping[str, Any]
            Message to send; must carry the shard property when sharding.
        wants_reply : bool | None
            Wait for the handler's result.  Defaults to ``config.reply.enabled``.
        timeout : float | None
            Seconds to wait for the reply.  Defaults to ``config.reply.timeout``.

        Returns
        -------
        Any
            The handler's result, or ``None`` when no reply was requested.

        Raises
        ------
        NoPartitionAvailableError
            If sharding is configured and no assignment is known yet.
        MissingRoutingKeyError
            If the message lacks the shard property.
        ReplyTimeoutError
            If no reply arrived before the deadline.
        RemoteHandlerError
            If the remote handler raised.
        """
        if not self._started:
            msg = f"Transport {self.name} is not started"
            raise RuntimeError(msg)

        reply = self.config.reply
        wants = reply.enabled if wants_reply is None else wants_reply
        topic = self.destination(message)

        if not wants:
            await self._writer.publish(topic, self._serializer.encode(dict(message)))
            return None

        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()

        def settle(outcome: Any) -> None:
            if future.done():
                return
            if isinstance(outcome, BaseException):
                future.set_exception(outcome)
            else:
                future.set_result(outcome)

        deadline = self._clock.issue(reply.timeout if timeout is None else timeout)
        body = {
            **message,
            reply.address_property: self.reply_topic,
            reply.deadline_property: deadline,
        }
        payload = self._serializer.encode(body)
        self._table.register(deadline, settle)
        await self._writer.publish(topic, payload)
        return await future

    def destination(self, message: Mapping[str, Any]) -> str:
        """Return the topic *message* is published to."""
        if self.router is None or self.view is None:
            return self.config.topic
        return self.router.target(message, self.view.assignment).primary_topic

    async def sweep(self) -> None:
        expired = self._table.sweep(self._clock.now())
        if expired:
            self._logger.debug("Timed out %d pending calls", len(expired))

    async def tick(self) -> None:
        if self.view is None:
            return
        if self.view.on_tick(self.active):
            await self._sync_partitions()
        if self.active:
            await self._writer.publish(
                self.gossip_topic, encode_gossip(self._serializer, self.view.snapshot())
            )

    async def _forward(self, message: dict[str, Any]) -> Any:
        chan = message.get(CHAN_FIELD)
        if chan is not None:
            raise ChannelNotHandledError(chan, self.name)
        return await self.call(message)

    async def _on_inbound(self, message: InboundMessage, channel: str) -> None:
        try:
            body = decode_message(self._serializer, message.body)
        except ValueError as e:
            self._logger.error("%s", MalformedMessageError(message.id, str(e)))
            message.requeue(self._requeue_delay)
            return

        if self.router is not None and self.view is not None:
            try:
                owner = self.router.misdirected(body, self.view.assignment, self.process_id)
            except NoPartitionAvailableError:
                self._logger.debug("No partition for %s yet, requeueing", message.id)
                message.requeue(self._requeue_delay)
                return
            except MissingRoutingKeyError as e:
                self._logger.warning("%s; handling %s locally", e, message.id)
                owner = None
            if owner is not None:
                self._logger.debug("Re-routing %s to %s", message.id, owner.primary_topic)
                await self._writer.publish(owner.primary_topic, message.body)
                message.finish()
                return

        augment(body, chan=channel, timestamp=message.timestamp, message_id=message.id)
        task = asyncio.create_task(self._dispatch(message, body))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _dispatch(self, message: InboundMessage, body: dict[str, Any]) -> None:
        reply = self.config.reply
        address = body.get(reply.address_property)
        deadline = body.get(reply.deadline_property)
        try:
            result = await self._dispatcher.act(body)
        except Exception as e:
            self._logger.warning("Handler failed for message %s", message.id, exc_info=True)
            message.finish()
            if address is not None and deadline is not None:
                await self._send_reply(address, deadline, error=str(e) or type(e).__name__)
            return

        message.finish()
        if address is not None and deadline is not None:
            await self._send_reply(address, deadline, result=result)

    async def _send_reply(
        self, address: str, deadline: int, *, result: Any = None, error: str | None = None
    ) -> None:
        prop = self.config.reply.deadline_property
        try:
            payload = self._serializer.encode(reply_body(prop, deadline, result=result, error=error))
        except (TypeError, ValueError) as e:
            self._logger.error("Cannot encode reply for deadline %d: %s", deadline, e)
            payload = self._serializer.encode(reply_body(prop, deadline, error=f"unencodable result: {e}"))
        await self._writer.publish(address, payload)

    async def _on_reply(self, message: InboundMessage, channel: str) -> None:
        try:
            body = decode_message(self._serializer, message.body)
        except ValueError as e:
            self._logger.error("%s", MalformedMessageError(message.id, str(e)))
            message.requeue(self._requeue_delay)
            return
        message.finish()

        deadline = body.get(self.config.reply.deadline_property)
        if not isinstance(deadline, int):
            self._logger.warning("Reply %s carries no deadline, dropping", message.id)
            return
        call = self._table.resolve(deadline)
        if call is None:
            return
        if ERROR_FIELD in body:
            call.fire(RemoteHandlerError(self.config.topic, body[ERROR_FIELD]))
        else:
            call.fire(body.get(RESULT_FIELD))

    async def _on_gossip(self, message: InboundMessage, channel: str) -> None:
        message.finish()
        if self.view is None:
            return
        try:
            gossip = decode_gossip(self._serializer, message.body)
        except ValueError as e:
            self._logger.warning("Dropping malformed gossip %s: %s", message.id, e)
            return
        if self.view.on_gossip(gossip):
            await self._sync_partitions()

    async def _sync_partitions(self) -> None:
        """Subscribe the partition topics this process owns, drop the rest."""
        if not self.active or self.view is None:
            return
        owned = self.view.owned()
        desired = set(owned.topics) if owned is not None else set()
        current = {t for t, s in self._subscriptions.items() if s.kind == "partition"}

        for topic in sorted(desired - current):
            await self._subscribe(topic, self.config.channel, "partition", self._on_inbound)
        for topic in sorted(current - desired):
            await self._unsubscribe(topic)
        if desired != current:
            self._logger.info(
                "Partitions now %s (generation %d)", sorted(desired), self.view.generation
            )

    async def _subscribe(
        self, topic: str, channel: str, kind: SubscriptionKind, handler: MessageHandler
    ) -> None:
        reader = self._broker.subscribe(topic, channel)
        sub = _Subscription(topic=topic, channel=channel, kind=kind, reader=reader)
        sub.task = asyncio.create_task(self._consume(sub, handler), name=f"{self.name}-{topic}")
        self._subscriptions[topic] = sub
        self._logger.debug("Subscribed %s/%s", topic, channel)

    async def _unsubscribe(self, topic: str) -> None:
        sub = self._subscriptions.pop(topic, None)
        if sub is None:
            return
        await sub.reader.close()
        if sub.task is not None:
            sub.task.cancel()
            (outcome,) = await asyncio.gather(sub.task, return_exceptions=True)
            if isinstance(outcome, Exception):
                self._logger.error(
                    "Consumer for %s/%s had failed", topic, sub.channel, exc_info=outcome
                )
        self._logger.debug("Unsubscribed %s/%s", topic, sub.channel)

    async def _consume(self, sub: _Subscription, handler: MessageHandler) -> None:
        while True:
            try:
                async for message in sub.reader:
                    try:
                        await handler(message, sub.channel)
                    except Exception:
                        # finished so a message that always fails is not redelivered
                        self._logger.error(
                            "Dropping message %s from %s/%s",
                            message.id, sub.topic, sub.channel, exc_info=True,
                        )
                        message.finish()
                return
            except (ConnectionError, OSError) as e:
                self._logger.error("Reader %s/%s failed: %s", sub.topic, sub.channel, e)
                await sub.reader.close()
                await asyncio.sleep(self.config.writer.reconnect_interval)
                sub.reader = self._broker.subscribe(sub.topic, sub.channel)

    @property
    def _requeue_delay(self) -> float:
        if self.config.sharding is not None:
            return self.config.sharding.tick_interval
        return self.config.requeue_delay

    async def _every(self, interval: float, action: Callable[[], Awaitable[None]]) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await action()
            except Exception:
                self._logger.error("Periodic %s failed", action.__name__, exc_info=True)


def forward(
    dispatcher: Dispatcher, broker: BrokerClient, config: NsqConfig, **kwargs: Any
) -> NsqTransport:
    """Create a transport publishing ``{topic_property: topic}`` messages."""
    return NsqTransport("forward", config, broker, dispatcher, **kwargs)


def handle(
    dispatcher: Dispatcher, broker: BrokerClient, config: NsqConfig, **kwargs: Any
) -> NsqTransport:
    """Create a transport consuming the topic into *dispatcher*."""
    return NsqTransport("handle", config, broker, dispatcher, **kwargs)
