"""Sharded areas: users report into areas, each area lives on one worker.

Three ``handle`` transports share the ``area`` topic sharded by ``areaId``.
After the workers agree on a coordinator, every area is owned by exactly one
worker, so a worker's in-memory area state is never split.  A ``forward``
transport sends user updates and prints which worker answered.

    forwarder ──► area..<partition> ──► owning worker ──► reply topic
                         ▲                    │
                         └──── misdirected ◄──┘
"""

import asyncio
import time
from dataclasses import dataclass, field

from nsqt import InMemoryBroker, NsqConfig, PatternDispatcher, ShardingConfig, forward, handle

AREAS = 3
USERS = 5
ROUNDS = 3
MAX_IDLE_PERIODS = 3

config = NsqConfig(
    topic="area",
    sharding=ShardingConfig(shard_property="areaId", tick_interval=0.1),
)


@dataclass
class Worker:
    name: str
    areas: dict[str, dict[str, int]] = field(default_factory=dict)

    async def update(self, message: dict) -> dict:
        users = self.areas.setdefault(message["areaId"], {})
        users[message["userId"]] = 0
        return {
            "areaId": message["areaId"],
            "userId": message["userId"],
            "worker": self.name,
        }

    def period(self) -> None:
        for area_id, users in list(self.areas.items()):
            for user_id in list(users):
                users[user_id] += 1
                if users[user_id] > MAX_IDLE_PERIODS:
                    del users[user_id]
            if not users:
                del self.areas[area_id]


def area_for(user: int) -> str:
    area = AREAS
    while user % area != 0:
        area -= 1
    return f"area-{area}"


async def main() -> None:
    print("=== Sharded areas ===\n")
    broker = InMemoryBroker()
    workers = [Worker(name) for name in ("w1", "w2", "w3")]

    transports = []
    for worker in workers:
        dispatcher = PatternDispatcher()
        dispatcher.add({"role": "area", "chan": "area"}, worker.update)
        transports.append(handle(dispatcher, broker, config, process_id=worker.name))
    client = forward(PatternDispatcher(), broker, config, process_id="users")

    for transport in transports:
        await transport.start()
    await client.start()

    while len(client.view.assignment) < len(workers):
        await asyncio.sleep(0.1)
    print("Partitions:")
    for partition in client.view.assignment:
        print(f"  {partition.owner_id}: {', '.join(partition.topics)}")

    for round_ in range(1, ROUNDS + 1):
        print(f"\n--- round {round_} ---")
        now = time.strftime("%H:%M:%S")
        for user in range(1, USERS + 1):
            message = {"role": "area", "userId": f"user-{user}", "areaId": area_for(user), "time": now}
            reply = await client.call(message)
            print(f"  {reply['userId']} in {reply['areaId']} handled by {reply['worker']}")
        for worker in workers:
            worker.period()
            print(f"  {worker.name} holds {sorted(worker.areas)}")

    await client.stop()
    for transport in transports:
        await transport.stop()


if __name__ == "__main__":
    asyncio.run(main())
