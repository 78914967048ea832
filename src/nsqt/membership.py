"""Gossip-based shard membership.

Every process that handles a sharded topic keeps one ``ShardView``: the peers
it has heard from recently, which of them it believes to be the coordinator,
and the current partition assignment.  Views converge through two events:

- ``on_gossip`` applies a ``ShardGossip`` snapshot broadcast by any peer
  (including this process's own broadcast, which is how a process learns that
  its gossip loop works);
- ``on_tick`` ages peers, evicts silent ones and, once membership has been
  quiet for ``settle_ticks`` ticks, lets the lexicographically smallest peer
  take over as coordinator and compute the assignment.

There is no consensus here.  Two processes may briefly both believe they are
coordinator; the larger one steps down as soon as it sees gossip naming a
smaller coordinator it has seen itself.  The settlement delay keeps that
from oscillating while peers come and go.

A partition assignment lists owners sorted by id; position ``i`` of ``N``
consumes ``topic(i)``, ``topic(i + N)`` and ``topic(i + N + 2)`` so messages
published under a neighbouring topology are still drained while the
cluster resizes.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import TypeAlias
from dataclasses import dataclass, field

from nsqt.topics import partition_topic

logger = logging.getLogger(__name__)

PeerId: TypeAlias = str

DEFAULT_SETTLE_TICKS = 5
DEFAULT_CHURN_TICKS = 3


@dataclass(frozen=True, slots=True)
class PartitionAssignment:
    """One partition and the peer consuming it.

    Parameters
    ----------
    owner_id : PeerId
        Peer consuming the partition.
    primary_topic : str
        Topic new messages for this partition are published to.
    topics : tuple[str, ...]
        Every topic the owner subscribes to, primary first.
    """

    owner_id: PeerId
    primary_topic: str
    topics: tuple[str, ...]


@dataclass(slots=True)
class PeerRecord:
    peer_id: PeerId
    missed_ticks: int = 0
    seen_by: set[PeerId] = field(default_factory=set)


@dataclass(frozen=True, slots=True)
class ShardGossip:
    """Snapshot of a ``ShardView`` as broadcast on the gossip topic.

    Parameters
    ----------
    sender_id : PeerId
        Process that broadcast the snapshot.
    coordinator_id : PeerId | None
        Coordinator the sender follows (or is).
    generation : int
        Assignment generation under that coordinator.
    quiet_ticks : int
        Ticks since the sender last saw membership change.
    topic_prefix : str
        Base topic the view shards.
    peers : tuple[PeerId, ...]
        Peers the sender currently sees.
    assignment : tuple[PartitionAssignment, ...]
        Partition assignment the sender holds.
    """

    sender_id: PeerId
    coordinator_id: PeerId | None
    generation: int
    quiet_ticks: int
    topic_prefix: str
    peers: tuple[PeerId, ...] = ()
    assignment: tuple[PartitionAssignment, ...] = ()


def compute_assignment(
    topic_prefix: str, peer_ids: Iterable[PeerId]
) -> tuple[PartitionAssignment, ...]:
    """Assign one partition per peer, ordered by peer id.

    Examples
    --------
    >>> [a.topics for a in compute_assignment("t", ["b", "a"])]
    [('t..0', 't..2', 't..4'), ('t..1', 't..3', 't..5')]
    """
    owners = sorted(set(peer_ids))
    total = len(owners)
    return tuple(
        PartitionAssignment(
            owner_id=owner,
            primary_topic=partition_topic(topic_prefix, index),
            topics=(
                partition_topic(topic_prefix, index),
                partition_topic(topic_prefix, index + total),
                partition_topic(topic_prefix, index + total + 2),
            ),
        )
        for index, owner in enumerate(owners)
    )


def same_owners(
    left: tuple[PartitionAssignment, ...], right: tuple[PartitionAssignment, ...]
) -> bool:
    if len(left) != len(right):
        return False
    return all(a.owner_id == b.owner_id for a, b in zip(left, right))


class ShardView:
    """This process's view of shard membership.

    Mutated only by ``on_gossip`` and ``on_tick``, both of which run to
    completion on the event loop that owns the view.

    Example:
        view = ShardView("me", topic_prefix="area")
        view.on_gossip(other_view.snapshot())
        changed = view.on_tick(active=True)
    """

    def __init__(
        self,
        self_id: PeerId,
        topic_prefix: str,
        *,
        settle_ticks: int = DEFAULT_SETTLE_TICKS,
        churn_ticks: int = DEFAULT_CHURN_TICKS,
    ) -> None:
        self.self_id = self_id
        self.topic_prefix = topic_prefix
        self.settle_ticks = settle_ticks
        self.churn_ticks = churn_ticks
        self.coordinator_id: PeerId | None = None
        self.generation = 0
        self.quiet_ticks = 0
        self.peers: dict[PeerId, PeerRecord] = {}
        self.assignment: tuple[PartitionAssignment, ...] = ()

    def __repr__(self) -> str:
        return (
            f"ShardView(self_id={self.self_id!r}, coordinator_id={self.coordinator_id!r}, "
            f"generation={self.generation}, quiet_ticks={self.quiet_ticks}, "
            f"peers={sorted(self.peers)})"
        )

    @property
    def is_coordinator(self) -> bool:
        return self.coordinator_id == self.self_id

    @property
    def is_settled(self) -> bool:
        return self.quiet_ticks > self.settle_ticks

    def owned(self) -> PartitionAssignment | None:
        """Return the partition assigned to this process, if any."""
        for partition in self.assignment:
            if partition.owner_id == self.self_id:
                return partition
        return None

    def snapshot(self) -> ShardGossip:
        return ShardGossip(
            sender_id=self.self_id,
            coordinator_id=self.coordinator_id,
            generation=self.generation,
            quiet_ticks=self.quiet_ticks,
            topic_prefix=self.topic_prefix,
            peers=tuple(sorted(self.peers)),
            assignment=self.assignment,
        )

    def on_gossip(self, received: ShardGossip) -> bool:
        """Apply a peer's snapshot.

        Returns
        -------
        bool
            ``True`` when the coordinator, generation or assignment was
            adopted from *received*.
        """
        if received.topic_prefix != self.topic_prefix:
            logger.debug(
                "[%s] Ignoring gossip for %s from %s",
                self.self_id, received.topic_prefix, received.sender_id,
            )
            return False

        sender = self.peers.get(received.sender_id)
        if sender is None:
            sender = PeerRecord(received.sender_id)
            self.peers[received.sender_id] = sender
            self.quiet_ticks = 0
            logger.info("[%s] Peer joined: %s", self.self_id, received.sender_id)
        sender.missed_ticks = 0
        sender.seen_by.add(self.self_id)

        if 1 < received.quiet_ticks < self.quiet_ticks:
            self.quiet_ticks = received.quiet_ticks

        for peer_id in received.peers:
            record = self.peers.get(peer_id)
            if record is not None:
                record.seen_by.add(received.sender_id)

        # our own broadcast may predate a step-down; it only proves liveness
        if received.sender_id == self.self_id:
            return False

        candidate = received.coordinator_id
        if candidate is None:
            return False

        if self.is_coordinator:
            # candidate is the coordinator the sender defers to, not the sender
            if candidate < self.self_id and candidate in self.peers and self.is_settled:
                logger.info(
                    "[%s] Stepping down in favour of coordinator %s",
                    self.self_id, candidate,
                )
                self._adopt(received)
                return True
            return False

        if candidate == self.self_id:
            # stale relay of a role we gave up; only on_tick can take it back
            return False
        if candidate != self.coordinator_id or received.generation != self.generation:
            logger.debug(
                "[%s] Following coordinator %s generation %d",
                self.self_id, candidate, received.generation,
            )
            self._adopt(received)
            return True
        return False

    def on_tick(self, active: bool) -> bool:
        """Advance one tick.

        Parameters
        ----------
        active : bool
            Whether this process consumes the sharded topic.  Only active
            processes may become coordinator.

        Returns
        -------
        bool
            ``True`` when the assignment changed during the tick.
        """
        self.quiet_ticks += 1

        for peer_id, record in list(self.peers.items()):
            record.missed_ticks += 1
            if record.missed_ticks > self.churn_ticks:
                del self.peers[peer_id]
                self.quiet_ticks = 0
                logger.info("[%s] Peer left: %s", self.self_id, peer_id)

        changed = False
        if (
            active
            and self.is_settled
            and not self.is_coordinator
            and self.self_id in self.peers
            and self._outranks_owners()
        ):
            logger.info("[%s] Becoming coordinator for %s", self.self_id, self.topic_prefix)
            self.coordinator_id = self.self_id
            self.generation = 0
            changed = self.recompute()
        elif self.is_coordinator and not self.is_settled:
            changed = self.recompute()
        return changed

    def recompute(self) -> bool:
        """Recompute the assignment from the known peers.

        The generation is bumped only when the owners actually change, so
        calling this repeatedly with stable membership is a no-op.
        """
        assignment = compute_assignment(self.topic_prefix, self.peers)
        if same_owners(assignment, self.assignment):
            return False
        self.assignment = assignment
        self.generation += 1
        logger.info(
            "[%s] Assignment generation %d: %s",
            self.self_id, self.generation, [p.owner_id for p in assignment],
        )
        return True

    def _outranks_owners(self) -> bool:
        # owners that were evicted can no longer coordinate, so they don't count
        live = [
            p.owner_id
            for p in self.assignment
            if p.owner_id != self.self_id and p.owner_id in self.peers
        ]
        return not live or min(live) > self.self_id

    def _adopt(self, received: ShardGossip) -> None:
        self.coordinator_id = received.coordinator_id
        self.generation = received.generation
        self.assignment = received.assignment
