from nsqt.broker import BrokerClient, InboundMessage, InMemoryBroker, Reader, Writer
from nsqt.codec import JsonSerializer, MsgPackSerializer, Serializer
from nsqt.config import (
    NsqConfig,
    ReplyConfig,
    ShardingConfig,
    WriterConfig,
    discover_config,
    load_config,
)
from nsqt.correlation import CorrelationTable, DeadlineClock, PendingCall
from nsqt.dispatcher import Dispatcher, NoHandlerError, PatternDispatcher
from nsqt.exceptions import (
    ChannelNotHandledError,
    MalformedMessageError,
    MissingRoutingKeyError,
    NoPartitionAvailableError,
    NsqtError,
    RemoteHandlerError,
    ReplyTimeoutError,
)
from nsqt.membership import (
    PartitionAssignment,
    PeerRecord,
    ShardGossip,
    ShardView,
    compute_assignment,
)
from nsqt.router import PartitionRouter, string_hash, stringify_key
from nsqt.topics import gossip_topic, partition_topic, plugin_name, reply_topic
from nsqt.transport import NsqTransport, forward, handle
from nsqt.writer import OutboundWriter

__all__ = [
    "BrokerClient",
    "ChannelNotHandledError",
    "CorrelationTable",
    "DeadlineClock",
    "Dispatcher",
    "InMemoryBroker",
    "InboundMessage",
    "JsonSerializer",
    "MalformedMessageError",
    "MissingRoutingKeyError",
    "MsgPackSerializer",
    "NoHandlerError",
    "NoPartitionAvailableError",
    "NsqConfig",
    "NsqTransport",
    "NsqtError",
    "OutboundWriter",
    "PartitionAssignment",
    "PartitionRouter",
    "PatternDispatcher",
    "PeerRecord",
    "PendingCall",
    "Reader",
    "RemoteHandlerError",
    "ReplyConfig",
    "ReplyTimeoutError",
    "Serializer",
    "ShardGossip",
    "ShardView",
    "ShardingConfig",
    "Writer",
    "WriterConfig",
    "compute_assignment",
    "discover_config",
    "forward",
    "gossip_topic",
    "handle",
    "load_config",
    "partition_topic",
    "plugin_name",
    "reply_topic",
    "string_hash",
    "stringify_key",
]
