"""Integration tests for the transport over the in-memory broker."""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import AsyncExitStack

import msgpack
import pytest

from conftest import eventually
from nsqt import (
    InMemoryBroker,
    NoPartitionAvailableError,
    NsqConfig,
    NsqTransport,
    PatternDispatcher,
    RemoteHandlerError,
    ReplyTimeoutError,
    WriterConfig,
    forward,
    handle,
    string_hash,
)


def key_with_residue(residue: int, modulus: int) -> str:
    for n in range(1000):
        key = f"area-{n}"
        if string_hash(key) % modulus == residue:
            return key
    raise AssertionError("no key found")


def owners(transport: NsqTransport) -> list[str]:
    assert transport.view is not None
    return [p.owner_id for p in transport.view.assignment]


def partitions(transport: NsqTransport) -> set[str]:
    """Partition topics the transport currently consumes."""
    prefix = f"{transport.config.topic}.."
    return {t for t in transport.subscribed_topics if t.startswith(prefix) and not t.endswith("#ephemeral")}


class TestRequestReply:
    @pytest.mark.asyncio
    async def test_call_returns_handler_result(self, broker: InMemoryBroker, job_config: NsqConfig):
        workers = PatternDispatcher()
        clients = PatternDispatcher()
        seen = []

        async def work(message):
            seen.append(message)
            return {"doubled": message["n"] * 2}

        workers.add({"role": "job"}, work)

        async with handle(workers, broker, job_config, process_id="worker"):
            async with forward(clients, broker, job_config, process_id="client") as client:
                result = await client.call({"role": "job", "n": 21})

        assert result == {"doubled": 42}
        assert seen[0]["chan"] == "job"
        assert set(seen[0]["nsq$"]) == {"time", "id"}
        assert seen[0]["rt$"] == "job..client#ephemeral"
        assert isinstance(seen[0]["rd$"], int)

    @pytest.mark.asyncio
    async def test_forward_pattern_registered_on_dispatcher(
        self, broker: InMemoryBroker, job_config: NsqConfig
    ):
        workers = PatternDispatcher()
        clients = PatternDispatcher()

        async def work(message):
            return message["n"] + 1

        workers.add({"role": "job"}, work)

        async with handle(workers, broker, job_config):
            async with forward(clients, broker, job_config):
                assert await clients.act({"role": "job", "n": 1}) == 2

    @pytest.mark.asyncio
    async def test_call_without_reply(self, broker: InMemoryBroker, job_config: NsqConfig):
        workers = PatternDispatcher()
        seen = []

        async def work(message):
            seen.append(message)

        workers.add({"role": "job"}, work)

        async with handle(workers, broker, job_config):
            async with forward(PatternDispatcher(), broker, job_config) as client:
                assert await client.call({"role": "job", "n": 1}, wants_reply=False) is None
                assert client.pending_calls == 0
                await eventually(lambda: len(seen) == 1)

        assert "rt$" not in seen[0]
        assert "rd$" not in seen[0]

    @pytest.mark.asyncio
    async def test_call_times_out_without_handler(self, broker: InMemoryBroker, job_config: NsqConfig):
        async with forward(PatternDispatcher(), broker, job_config) as client:
            with pytest.raises(ReplyTimeoutError):
                await asyncio.wait_for(client.call({"role": "job"}, timeout=0.05), 2.0)
            assert client.pending_calls == 0

    @pytest.mark.asyncio
    async def test_handler_error_is_returned_to_caller(self, broker: InMemoryBroker, job_config: NsqConfig):
        workers = PatternDispatcher()

        async def fail(message):
            raise ValueError("bad job")

        workers.add({"role": "job"}, fail)

        async with handle(workers, broker, job_config):
            async with forward(PatternDispatcher(), broker, job_config) as client:
                with pytest.raises(RemoteHandlerError, match="bad job"):
                    await client.call({"role": "job"})

        assert broker.stats("job", "job") == (1, 0)

    @pytest.mark.asyncio
    async def test_channel_message_cannot_be_forwarded(self, broker: InMemoryBroker, job_config: NsqConfig):
        shared = PatternDispatcher()

        async with handle(shared, broker, job_config):
            async with forward(shared, broker, job_config) as client:
                with pytest.raises(RemoteHandlerError, match="Cannot handle channel job in plugin nsqt::forward::job"):
                    await client.call({"role": "job"})

    @pytest.mark.asyncio
    async def test_call_requires_started_transport(self, broker: InMemoryBroker, job_config: NsqConfig):
        client = forward(PatternDispatcher(), broker, job_config)
        with pytest.raises(RuntimeError):
            await client.call({"role": "job"})

    @pytest.mark.asyncio
    async def test_stop_fails_pending_calls(self, broker: InMemoryBroker, job_config: NsqConfig):
        client = forward(PatternDispatcher(), broker, job_config)
        await client.start()
        pending = asyncio.create_task(client.call({"role": "job"}, timeout=30.0))
        await eventually(lambda: client.pending_calls == 1)

        await client.stop()

        with pytest.raises(ReplyTimeoutError):
            await pending
        assert client.pending_calls == 0

    @pytest.mark.asyncio
    async def test_unencodable_result_becomes_error(self, broker: InMemoryBroker, job_config: NsqConfig):
        workers = PatternDispatcher()

        async def work(message):
            return object()

        workers.add({"role": "job"}, work)

        async with handle(workers, broker, job_config):
            async with forward(PatternDispatcher(), broker, job_config) as client:
                with pytest.raises(RemoteHandlerError, match="unencodable result"):
                    await client.call({"role": "job"})


class TestInboundErrors:
    @pytest.mark.asyncio
    async def test_malformed_message_is_requeued(
        self, broker: InMemoryBroker, job_config: NsqConfig, caplog
    ):
        workers = PatternDispatcher()
        seen = []

        async def work(message):
            seen.append(message)

        workers.add({"role": "job"}, work)

        with caplog.at_level(logging.ERROR):
            async with handle(workers, broker, job_config):
                broker.publish("job", b"{not json")
                await eventually(lambda: broker.stats("job", "job")[1] >= 2)

        assert seen == []
        assert "Malformed message" in caplog.text

    @pytest.mark.asyncio
    async def test_failed_reader_is_closed_and_replaced(self, caplog):
        class LostReader:
            def __init__(self):
                self.closed = False

            def __aiter__(self):
                return self._messages()

            async def _messages(self):
                raise ConnectionError("connection lost")
                yield

            async def close(self):
                self.closed = True

        class FlakyBroker(InMemoryBroker):
            def __init__(self):
                super().__init__()
                self.lost: list[LostReader] = []

            def subscribe(self, topic, channel):
                if topic == "job" and not self.lost:
                    self.lost.append(LostReader())
                    return self.lost[0]
                return super().subscribe(topic, channel)

        broker = FlakyBroker()
        config = NsqConfig(topic="job", writer=WriterConfig(reconnect_interval=0.01))
        workers = PatternDispatcher()
        seen = []

        async def work(message):
            seen.append(message["n"])

        workers.add({"role": "job"}, work)

        with caplog.at_level(logging.ERROR):
            async with handle(workers, broker, config):
                broker.publish("job", b'{"role": "job", "n": 1}')
                await eventually(lambda: seen == [1])

        assert broker.lost[0].closed
        assert "connection lost" in caplog.text

    @pytest.mark.asyncio
    async def test_unmatched_reply_is_logged(self, broker: InMemoryBroker, job_config: NsqConfig, caplog):
        with caplog.at_level(logging.WARNING, logger="nsqt.correlation"):
            async with forward(PatternDispatcher(), broker, job_config, process_id="client") as client:
                broker.publish(client.reply_topic, json.dumps({"rd$": 12345, "out$": 1}).encode())
                await eventually(lambda: "No pending call for deadline 12345" in caplog.text)

    @pytest.mark.asyncio
    async def test_reply_without_deadline_is_dropped(
        self, broker: InMemoryBroker, job_config: NsqConfig, caplog
    ):
        with caplog.at_level(logging.WARNING):
            async with forward(PatternDispatcher(), broker, job_config) as client:
                broker.publish(client.reply_topic, b'{"out$": 1}')
                await eventually(lambda: "carries no deadline" in caplog.text)


class TestTopics:
    @pytest.mark.asyncio
    async def test_subscriptions_per_kind(self, broker: InMemoryBroker, job_config: NsqConfig):
        async with handle(PatternDispatcher(), broker, job_config, process_id="w") as worker:
            async with forward(PatternDispatcher(), broker, job_config, process_id="c") as client:
                assert worker.subscribed_topics == ["job", "job..w#ephemeral"]
                assert client.subscribed_topics == ["job..c#ephemeral"]

        assert "job..w#ephemeral" not in broker.topics()
        assert "job..c#ephemeral" not in broker.topics()

    @pytest.mark.asyncio
    async def test_plugin_names(self, broker: InMemoryBroker):
        config = NsqConfig(topic="job", chan="urgent")
        assert handle(PatternDispatcher(), broker, config).name == "nsqt::handle::job::urgent"
        assert forward(PatternDispatcher(), broker, config).name == "nsqt::forward::job::urgent"


class TestSharding:
    async def start_cluster(self, stack: AsyncExitStack, broker, config, handlers):
        dispatchers = {}
        transports = {}
        for name in handlers:
            dispatchers[name] = PatternDispatcher()
            transports[name] = await stack.enter_async_context(
                handle(dispatchers[name], broker, config, process_id=name)
            )
        client = await stack.enter_async_context(
            forward(PatternDispatcher(), broker, config, process_id="z")
        )
        return dispatchers, transports, client

    @pytest.mark.asyncio
    async def test_handlers_converge_and_subscribe_partitions(
        self, broker: InMemoryBroker, area_config: NsqConfig
    ):
        async with AsyncExitStack() as stack:
            _, transports, client = await self.start_cluster(stack, broker, area_config, ["a", "b"])
            a, b = transports["a"], transports["b"]

            await eventually(
                lambda: owners(a) == owners(b) == owners(client) == ["a", "b"], timeout=5.0
            )
            await eventually(lambda: "area..4" in a.subscribed_topics and "area..5" in b.subscribed_topics)

            assert a.view.is_coordinator
            assert not b.view.is_coordinator
            assert {"area..0", "area..2", "area..4"} <= set(a.subscribed_topics)
            assert {"area..1", "area..3", "area..5"} <= set(b.subscribed_topics)
            assert "area..SHARDS#ephemeral" in client.subscribed_topics
            assert broker.published_to("area..SHARDS#ephemeral")

    @pytest.mark.asyncio
    async def test_call_reaches_partition_owner(self, broker: InMemoryBroker, area_config: NsqConfig):
        async with AsyncExitStack() as stack:
            dispatchers, transports, client = await self.start_cluster(
                stack, broker, area_config, ["a", "b"]
            )
            for name, dispatcher in dispatchers.items():
                async def answer(message, name=name):
                    return name

                dispatcher.add({"role": "area"}, answer)

            await eventually(lambda: owners(client) == ["a", "b"], timeout=5.0)
            await eventually(lambda: "area..1" in transports["b"].subscribed_topics)

            key = key_with_residue(1, 2)
            assert client.destination({"areaId": key}) == "area..1"
            assert await client.call({"role": "area", "areaId": key}) == "b"
            assert await client.call({"role": "area", "areaId": key_with_residue(0, 2)}) == "a"

    @pytest.mark.asyncio
    async def test_misdirected_message_is_rerouted(self, broker: InMemoryBroker, area_config: NsqConfig):
        async with AsyncExitStack() as stack:
            dispatchers, transports, _ = await self.start_cluster(stack, broker, area_config, ["a", "b"])
            handled = []
            for name, dispatcher in dispatchers.items():
                async def record(message, name=name):
                    handled.append((name, message["areaId"]))

                dispatcher.add({"role": "area"}, record)

            await eventually(
                lambda: owners(transports["a"]) == owners(transports["b"]) == ["a", "b"], timeout=5.0
            )
            await eventually(
                lambda: "area..0" in transports["a"].subscribed_topics
                and "area..1" in transports["b"].subscribed_topics
            )

            key = key_with_residue(1, 2)
            body = json.dumps({"role": "area", "areaId": key}).encode()
            broker.publish("area..0", body)
            broker.publish("area", body)

            await eventually(lambda: len(handled) == 2)
            assert handled == [("b", key), ("b", key)]
            assert body in broker.published_to("area..1")

    @pytest.mark.asyncio
    async def test_partitions_migrate_when_handler_leaves(
        self, broker: InMemoryBroker, area_config: NsqConfig
    ):
        async with AsyncExitStack() as stack:
            dispatchers, transports, client = await self.start_cluster(
                stack, broker, area_config, ["a", "b", "c"]
            )
            for name, dispatcher in dispatchers.items():
                async def answer(message, name=name):
                    return name

                dispatcher.add({"role": "area"}, answer)
            a, b, c = transports["a"], transports["b"], transports["c"]

            await eventually(
                lambda: owners(a) == owners(b) == owners(c) == owners(client) == ["a", "b", "c"],
                timeout=5.0,
            )
            await eventually(lambda: partitions(c) == {"area..2", "area..5", "area..7"})
            moved = key_with_residue(2, 3)
            assert await client.call({"role": "area", "areaId": moved}) == "c"

            await c.stop()

            await eventually(lambda: owners(a) == owners(b) == owners(client) == ["a", "b"], timeout=5.0)
            await eventually(
                lambda: partitions(a) == {"area..0", "area..2", "area..4"}
                and partitions(b) == {"area..1", "area..3", "area..5"}
            )
            assert "area..6" not in b.subscribed_topics
            assert "area..7" not in a.subscribed_topics + b.subscribed_topics
            assert c.subscribed_topics == []

            expected = "a" if string_hash(moved) % 2 == 0 else "b"
            assert await client.call({"role": "area", "areaId": moved}) == expected

    @pytest.mark.asyncio
    async def test_invalid_gossip_does_not_stop_membership(
        self, broker: InMemoryBroker, area_config: NsqConfig, caplog
    ):
        worker = handle(PatternDispatcher(), broker, area_config, process_id="a")
        await worker.start()

        with caplog.at_level(logging.WARNING):
            for bad in (
                {"sender": "x", "generation": 1, "quiet": 0, "prefix": "area", "peers": [{}]},
                {"sender": "x", "coordinator": 5, "generation": 1, "quiet": 0, "prefix": "area"},
            ):
                broker.publish(worker.gossip_topic, json.dumps(bad).encode())

            valid = {"sender": "y", "coordinator": None, "generation": 0, "quiet": 0, "prefix": "area"}
            broker.publish(worker.gossip_topic, json.dumps(valid).encode())
            await eventually(lambda: "y" in worker.view.peers)

        assert "x" not in worker.view.peers
        assert "Dropping malformed gossip" in caplog.text
        await eventually(lambda: owners(worker) == ["a"], timeout=5.0)

        await asyncio.wait_for(worker.stop(), 2.0)
        assert not worker.writer.ready
        assert worker.subscribed_topics == []

    @pytest.mark.asyncio
    async def test_unroutable_message_does_not_stop_consumer(
        self, broker: InMemoryBroker, area_config: NsqConfig, caplog
    ):
        config = NsqConfig(
            topic="area",
            serializer="msgpack",
            reply=area_config.reply,
            sharding=area_config.sharding,
        )
        workers = PatternDispatcher()
        handled = []

        async def record(message):
            handled.append(message["areaId"])

        workers.add({"role": "area"}, record)

        async with handle(workers, broker, config, process_id="a") as worker:
            await eventually(lambda: owners(worker) == ["a"], timeout=5.0)

            with caplog.at_level(logging.ERROR):
                # bytes keys cannot be stringified for hashing
                broker.publish("area", msgpack.packb({"role": "area", "areaId": b"\x01"}))
                broker.publish("area", msgpack.packb({"role": "area", "areaId": "north"}))
                await eventually(lambda: handled == ["north"])

            assert "Dropping message" in caplog.text

        assert broker.stats("area", "area") == (2, 0)

    @pytest.mark.asyncio
    async def test_no_partition_before_assignment(self, broker: InMemoryBroker, area_config: NsqConfig):
        async with forward(PatternDispatcher(), broker, area_config) as client:
            with pytest.raises(NoPartitionAvailableError):
                await client.call({"role": "area", "areaId": "north"})

    @pytest.mark.asyncio
    async def test_inbound_requeued_until_assignment(self, broker: InMemoryBroker, area_config: NsqConfig):
        workers = PatternDispatcher()
        handled = []

        async def record(message):
            handled.append(message["areaId"])

        workers.add({"role": "area"}, record)
        broker.publish("area", b'{"role": "area", "areaId": "north"}')

        async with handle(workers, broker, area_config, process_id="a") as worker:
            await eventually(lambda: handled == ["north"], timeout=5.0)
            assert owners(worker) == ["a"]

        finished, requeued = broker.stats("area", "area")
        assert finished == 1
        assert requeued >= 1
