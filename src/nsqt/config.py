"""TOML-based configuration for nsqt transports.

Provides ``load_config`` / ``discover_config`` for loading ``nsqt.toml`` and
a small hierarchy of frozen dataclasses for the broker connection, the
request/reply machinery and the sharding protocol.

The message property names used for routing and reply correlation are chosen
here and read only by the transport when it builds or parses envelopes.
"""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Literal, TypeAlias

from nsqt.topics import PluginKind, plugin_name

__all__ = [
    "NsqConfig",
    "ReplyConfig",
    "SerializerKind",
    "ShardingConfig",
    "WriterConfig",
    "discover_config",
    "load_config",
]

SerializerKind: TypeAlias = Literal["json", "msgpack"]

CONFIG_FILE = "nsqt.toml"


@dataclass(frozen=True)
class ReplyConfig:
    """Request/reply settings.

    Parameters
    ----------
    enabled : bool
        Whether forwarded calls wait for a reply.
    timeout : float
        Seconds a call waits before it fails with ``ReplyTimeoutError``.
    address_property : str
        Message property carrying the topic the reply must be published to.
    deadline_property : str
        Message property carrying the deadline that correlates the reply.
    sweep_interval : float
        Seconds between sweeps of expired pending calls.

    Examples
    --------
    >>> ReplyConfig(timeout=2.5).deadline_property
    'rd$'
    """

    enabled: bool = True
    timeout: float = 10.0
    address_property: str = "rt$"
    deadline_property: str = "rd$"
    sweep_interval: float = 5.0


@dataclass(frozen=True)
class ShardingConfig:
    """Sharding settings.

    Parameters
    ----------
    shard_property : str
        Message property whose value is hashed to pick a partition.
    tick_interval : float
        Seconds between membership ticks (and gossip broadcasts).
    settle_ticks : int
        Ticks membership must stay unchanged before a coordinator is trusted.
    churn_ticks : int
        Ticks a peer may stay silent before it is evicted.

    Examples
    --------
    >>> ShardingConfig(shard_property="areaId").settle_ticks
    5
    """

    shard_property: str
    tick_interval: float = 1.0
    settle_ticks: int = 5
    churn_ticks: int = 3


@dataclass(frozen=True)
class WriterConfig:
    """Outbound connection tuning.

    Parameters
    ----------
    reconnect_interval : float
        Seconds to wait before reopening a closed or failed writer.
    max_pending : int
        Publishes kept while disconnected; the oldest are dropped beyond it.
    """

    reconnect_interval: float = 1.0
    max_pending: int = 1024


@dataclass(frozen=True)
class NsqConfig:
    """Settings for one transport.

    Parameters
    ----------
    topic : str
        Base topic; partition, reply and gossip topics derive from it.
    lookupd_http_addresses : tuple[str, ...]
        Lookup daemons used by readers to discover producers.
    writer_nsqd_host, writer_nsqd_port : str, int
        Broker daemon used for publishing.
    topic_property : str
        Message property the dispatcher matches the topic on.
    chan : str | None
        Channel handled by this process; ``None`` means a channel named after
        the topic.
    forward_delay, handle_delay : float
        Seconds to wait before connecting the writer and the readers.  Staggering
        them lets a pool of processes start without a thundering herd.
    requeue_delay : float
        Seconds before a requeued message is redelivered.  Sharded transports
        use the tick interval instead, since they wait for an assignment.
    serializer : SerializerKind
        Payload encoding, ``"json"`` or ``"msgpack"``.

    Examples
    --------
    >>> cfg = NsqConfig(topic="job")
    >>> cfg.base_pattern()
    {'role': 'job'}
    >>> cfg.options("t", "c").plugin_name("handle")
    'nsqt::handle::t::c'
    """

    topic: str
    lookupd_http_addresses: tuple[str, ...] = ("127.0.0.1:4161",)
    writer_nsqd_host: str = "127.0.0.1"
    writer_nsqd_port: int = 4150
    topic_property: str = "role"
    chan: str | None = None
    forward_delay: float = 0.0
    handle_delay: float = 0.0
    requeue_delay: float = 1.0
    serializer: SerializerKind = "json"
    reply: ReplyConfig = field(default_factory=ReplyConfig)
    sharding: ShardingConfig | None = None
    writer: WriterConfig = field(default_factory=WriterConfig)

    @property
    def channel(self) -> str:
        return self.chan if self.chan is not None else self.topic

    def options(self, topic: str, chan: str | None = None) -> NsqConfig:
        """Return a copy bound to *topic* and *chan*, keeping everything else."""
        return replace(self, topic=topic, chan=chan)

    def plugin_name(self, kind: PluginKind) -> str:
        return plugin_name(kind, self.topic, self.chan)

    def base_pattern(self) -> dict[str, str]:
        return {self.topic_property: self.topic}


def discover_config(start: Path | None = None) -> Path | None:
    """Walk up from *start* (default: cwd) looking for ``nsqt.toml``.

    Parameters
    ----------
    start : Path | None
        Directory to start searching from.

    Returns
    -------
    Path | None
        Path to the discovered config file, or ``None`` if not found.
    """
    current = (start or Path.cwd()).resolve()
    while True:
        candidate = current / CONFIG_FILE
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            return None
        current = parent


def load_config(path: Path | None = None, *, topic: str | None = None) -> NsqConfig:
    """Load an ``NsqConfig`` from a TOML file.

    If *path* is ``None``, auto-discovers ``nsqt.toml`` by walking up from the
    current working directory.  *topic* overrides the file's ``[nsq].topic``.

    Parameters
    ----------
    path : Path | None
        Explicit path to a TOML config file.
    topic : str | None
        Topic to bind the configuration to.

    Returns
    -------
    NsqConfig

    Raises
    ------
    FileNotFoundError
        If an explicit *path* is given but does not exist.
    ValueError
        If no topic is given either in the file or as an argument.

    Examples
    --------
    >>> config = load_config(Path("nsqt.toml"))
    >>> config.writer_nsqd_port
    4150
    """
    raw: dict[str, Any] = {}
    if path is None:
        path = discover_config()
    elif not path.exists():
        msg = f"Config file not found: {path}"
        raise FileNotFoundError(msg)

    if path is not None:
        with path.open("rb") as f:
            raw = tomllib.load(f)

    nsq_raw: dict[str, Any] = dict(raw.get("nsq", {}))
    if topic is not None:
        nsq_raw["topic"] = topic
    if "topic" not in nsq_raw:
        msg = "A topic is required (set [nsq].topic or pass topic=...)"
        raise ValueError(msg)

    if "lookupd_http_addresses" in nsq_raw:
        nsq_raw["lookupd_http_addresses"] = tuple(nsq_raw["lookupd_http_addresses"])

    sharding_raw = raw.get("sharding")
    sharding = ShardingConfig(**sharding_raw) if sharding_raw is not None else None

    return NsqConfig(
        **nsq_raw,
        reply=ReplyConfig(**raw.get("reply", {})),
        sharding=sharding,
        writer=WriterConfig(**raw.get("writer", {})),
    )
