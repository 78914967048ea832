"""Wire-visible topic and channel names.

Every process sharing a topic must derive the same identifiers, so these
formats are fixed::

    <topic>..<index>                 partition topic
    <topic>..<process_id>#ephemeral  per-process reply topic
    <topic>..SHARDS#ephemeral        membership gossip topic
"""

from __future__ import annotations

from typing import Literal, TypeAlias

PluginKind: TypeAlias = Literal["forward", "handle"]

SEPARATOR = ".."
EPHEMERAL = "#ephemeral"
GOSSIP_SUFFIX = "SHARDS"
PLUGIN_PREFIX = "nsqt"


def partition_topic(topic: str, index: int) -> str:
    """Return the topic carrying partition *index* of *topic*.

    Examples
    --------
    >>> partition_topic("area", 2)
    'area..2'
    """
    return f"{topic}{SEPARATOR}{index}"


def reply_topic(topic: str, process_id: str) -> str:
    """Return the ephemeral topic on which *process_id* receives replies.

    Examples
    --------
    >>> reply_topic("job", "x1")
    'job..x1#ephemeral'
    """
    return f"{topic}{SEPARATOR}{process_id}{EPHEMERAL}"


def gossip_topic(topic: str) -> str:
    """Return the ephemeral topic carrying membership gossip for *topic*.

    Examples
    --------
    >>> gossip_topic("area")
    'area..SHARDS#ephemeral'
    """
    return f"{topic}{SEPARATOR}{GOSSIP_SUFFIX}{EPHEMERAL}"


def private_channel(process_id: str) -> str:
    # one channel per process so every process sees every gossip/reply message
    return f"{process_id}{EPHEMERAL}"


def is_ephemeral(name: str) -> bool:
    return name.endswith(EPHEMERAL)


def plugin_name(kind: PluginKind, topic: str, chan: str | None = None) -> str:
    """Build the name a transport registers under.

    Examples
    --------
    >>> plugin_name("forward", "job")
    'nsqt::forward::job'
    >>> plugin_name("handle", "t", "c")
    'nsqt::handle::t::c'
    """
    name = f"{PLUGIN_PREFIX}::{kind}::{topic}"
    if chan is not None:
        name += f"::{chan}"
    return name
