"""Payload encoding for application messages, replies and gossip.

Application messages are plain mappings.  On the way in, the transport adds
the channel they arrived on and a metadata block::

    {"role": "job", ..., "chan": "job", "nsq$": {"time": 1700000000000, "id": "0a1b..."}}

Replies carry the correlation deadline plus either the handler's result
(``out$``) or its error message (``err$``).
"""

from __future__ import annotations

import json
from typing import Any, Protocol

import msgpack

from nsqt.config import SerializerKind
from nsqt.membership import PartitionAssignment, ShardGossip

CHAN_FIELD = "chan"
META_FIELD = "nsq$"
RESULT_FIELD = "out$"
ERROR_FIELD = "err$"


class Serializer(Protocol):
    def encode(self, obj: Any) -> bytes: ...
    def decode(self, data: bytes) -> Any: ...


class JsonSerializer:
    def encode(self, obj: Any) -> bytes:
        return json.dumps(obj, separators=(",", ":")).encode("utf-8")

    def decode(self, data: bytes) -> Any:
        return json.loads(data)


class MsgPackSerializer:
    def encode(self, obj: Any) -> bytes:
        return msgpack.packb(obj, use_bin_type=True)

    def decode(self, data: bytes) -> Any:
        return msgpack.unpackb(data, raw=False)


def get_serializer(kind: SerializerKind) -> Serializer:
    match kind:
        case "json":
            return JsonSerializer()
        case "msgpack":
            return MsgPackSerializer()
        case _:
            msg = f"Unknown serializer: {kind!r}"
            raise ValueError(msg)


def decode_message(serializer: Serializer, body: bytes) -> dict[str, Any]:
    """Decode an application message; anything but a mapping is rejected.

    Raises
    ------
    ValueError
        If *body* cannot be decoded or is not a mapping.
    """
    try:
        message = serializer.decode(body)
    except (ValueError, TypeError, msgpack.UnpackException) as e:
        raise ValueError(str(e)) from e
    if not isinstance(message, dict):
        msg = f"expected a mapping, got {type(message).__name__}"
        raise ValueError(msg)
    return message


def augment(message: dict[str, Any], *, chan: str, timestamp: int, message_id: str) -> dict[str, Any]:
    """Tag an inbound message with its channel and broker metadata."""
    message[CHAN_FIELD] = chan
    message[META_FIELD] = {"time": timestamp, "id": message_id}
    return message


def reply_body(deadline_property: str, deadline: int, *, result: Any = None, error: str | None = None) -> dict[str, Any]:
    body: dict[str, Any] = {deadline_property: deadline}
    if error is not None:
        body[ERROR_FIELD] = error
    else:
        body[RESULT_FIELD] = result
    return body


def gossip_to_dict(gossip: ShardGossip) -> dict[str, Any]:
    return {
        "sender": gossip.sender_id,
        "coordinator": gossip.coordinator_id,
        "generation": gossip.generation,
        "quiet": gossip.quiet_ticks,
        "prefix": gossip.topic_prefix,
        "peers": list(gossip.peers),
        "assignment": [
            {"owner": p.owner_id, "primary": p.primary_topic, "topics": list(p.topics)}
            for p in gossip.assignment
        ],
    }


def gossip_from_dict(data: dict[str, Any]) -> ShardGossip:
    """Rebuild a ``ShardGossip``.

    Raises
    ------
    ValueError
        If a required field is missing or has the wrong shape.
    """
    try:
        coordinator = data.get("coordinator")
        if coordinator is not None:
            coordinator = _text(coordinator, "coordinator")
        return ShardGossip(
            sender_id=_text(data["sender"], "sender"),
            coordinator_id=coordinator,
            generation=int(data["generation"]),
            quiet_ticks=int(data["quiet"]),
            topic_prefix=_text(data["prefix"], "prefix"),
            peers=tuple(_text(p, "peer") for p in data.get("peers", ())),
            assignment=tuple(
                PartitionAssignment(
                    owner_id=_text(p["owner"], "owner"),
                    primary_topic=_text(p["primary"], "primary"),
                    topics=tuple(_text(t, "topic") for t in p["topics"]),
                )
                for p in data.get("assignment", ())
            ),
        )
    except (KeyError, TypeError) as e:
        msg = f"invalid gossip: {e!r}"
        raise ValueError(msg) from e


def _text(value: Any, name: str) -> str:
    if not isinstance(value, str):
        msg = f"{name} must be a string, got {type(value).__name__}"
        raise TypeError(msg)
    return value


def encode_gossip(serializer: Serializer, gossip: ShardGossip) -> bytes:
    return serializer.encode(gossip_to_dict(gossip))


def decode_gossip(serializer: Serializer, body: bytes) -> ShardGossip:
    return gossip_from_dict(decode_message(serializer, body))
