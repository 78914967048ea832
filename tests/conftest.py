"""Shared fixtures and helpers for nsqt tests."""

import asyncio
from collections.abc import Callable

import pytest

from nsqt import InMemoryBroker, NsqConfig, PatternDispatcher, ReplyConfig, ShardingConfig


async def eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll *predicate* until it holds or *timeout* elapses."""
    loop = asyncio.get_running_loop()
    end = loop.time() + timeout
    while not predicate():
        if loop.time() > end:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def broker() -> InMemoryBroker:
    return InMemoryBroker()


@pytest.fixture
def dispatcher() -> PatternDispatcher:
    return PatternDispatcher()


@pytest.fixture
def job_config() -> NsqConfig:
    """Unsharded config with short reply timings."""
    return NsqConfig(
        topic="job",
        requeue_delay=0.01,
        reply=ReplyConfig(timeout=1.0, sweep_interval=0.02),
    )


@pytest.fixture
def area_config() -> NsqConfig:
    """Sharded config with fast ticks."""
    return NsqConfig(
        topic="area",
        reply=ReplyConfig(timeout=2.0, sweep_interval=0.05),
        sharding=ShardingConfig(shard_property="areaId", tick_interval=0.02),
    )
