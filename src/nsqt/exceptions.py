"""Errors raised by the transport, router and correlation table."""

from __future__ import annotations


class NsqtError(Exception):
    """Base class for every error raised by nsqt."""


class ReplyTimeoutError(NsqtError, TimeoutError):
    """A pending call was swept before any reply arrived."""

    def __init__(self, deadline: int) -> None:
        self.deadline = deadline
        super().__init__(f"No reply before deadline {deadline}")


class NoPartitionAvailableError(NsqtError):
    """The shard view has no partition assignment yet.

    Transient: inbound messages are requeued, outbound callers may retry once
    a coordinator has broadcast an assignment.
    """

    def __init__(self, topic: str) -> None:
        self.topic = topic
        super().__init__(f"No partition available for topic {topic!r}")


class MissingRoutingKeyError(NsqtError):
    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"Message has no routing key property {key!r}")


class ChannelNotHandledError(NsqtError):
    """A channel-scoped message reached a forward-only pattern."""

    def __init__(self, chan: str, plugin_name: str) -> None:
        self.chan = chan
        self.plugin_name = plugin_name
        super().__init__(f"Cannot handle channel {chan} in plugin {plugin_name}")


class MalformedMessageError(NsqtError):
    def __init__(self, message_id: str, reason: str) -> None:
        self.message_id = message_id
        self.reason = reason
        super().__init__(f"Malformed message {message_id}: {reason}")


class RemoteHandlerError(NsqtError):
    """The remote handler raised while processing a call."""

    def __init__(self, topic: str, message: str) -> None:
        self.topic = topic
        super().__init__(f"Handler for {topic!r} failed: {message}")
