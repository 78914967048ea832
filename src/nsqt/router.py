"""Stable message-to-partition routing.

Every process must pick the same partition for the same message, whatever
language or runtime it is written in, so the hash is the classic
order-sensitive ``h * 31 + c`` string hash folded to an unsigned 32-bit
value.  It is chosen for speed and distribution, not security.
"""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from typing import Any

from nsqt.exceptions import MissingRoutingKeyError, NoPartitionAvailableError
from nsqt.membership import PartitionAssignment

_MASK = 0xFFFFFFFF


def string_hash(text: str) -> int:
    """Hash *text* to an unsigned 32-bit integer.

    Examples
    --------
    >>> string_hash("")
    0
    >>> string_hash("a")
    97
    >>> string_hash("ab")
    3105
    """
    h = 0
    for ch in text:
        h = (h * 31 + ord(ch)) & _MASK
    return h


def stringify_key(value: Any) -> str:
    """Render a routing-key value as text.

    Strings are used as-is; everything else is rendered as compact JSON so
    ``42`` and ``"42"`` land on the same partition and booleans read
    ``true``/``false``.
    """
    if isinstance(value, str):
        return value
    return json.dumps(value, separators=(",", ":"), sort_keys=True)


class PartitionRouter:
    """Maps messages to partitions by the value of one property.

    Example:
        router = PartitionRouter("areaId", topic="area")
        partition = router.target({"areaId": "north"}, view.assignment)
        partition.primary_topic  # e.g. "area..1"
    """

    def __init__(self, routing_key: str, *, topic: str = "") -> None:
        self.routing_key = routing_key
        self.topic = topic

    def route(
        self, message: Mapping[str, Any], assignment: Sequence[PartitionAssignment]
    ) -> int:
        """Return the partition index for *message*.

        Raises
        ------
        NoPartitionAvailableError
            If *assignment* is empty.
        MissingRoutingKeyError
            If *message* lacks the routing key.
        """
        if not assignment:
            raise NoPartitionAvailableError(self.topic)
        if self.routing_key not in message:
            raise MissingRoutingKeyError(self.routing_key)
        key = stringify_key(message[self.routing_key])
        return string_hash(key) % len(assignment)

    def target(
        self, message: Mapping[str, Any], assignment: Sequence[PartitionAssignment]
    ) -> PartitionAssignment:
        return assignment[self.route(message, assignment)]

    def misdirected(
        self,
        message: Mapping[str, Any],
        assignment: Sequence[PartitionAssignment],
        self_id: str,
    ) -> PartitionAssignment | None:
        """Return the owning partition when it belongs to another peer.

        Messages can reach a process that does not own them through the shared
        base topic or a stale partition topic; those must be republished to
        the owner's primary topic instead of being processed here.
        """
        partition = self.target(message, assignment)
        if partition.owner_id == self_id:
            return None
        return partition
