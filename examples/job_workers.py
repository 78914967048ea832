"""Request/reply over a shared channel.

Two workers consume the ``job`` topic on the same channel, so each job goes
to one of them.  The client calls through its dispatcher: the forward
transport registers ``{"role": "job"}`` and publishes anything matching it.
One job asks for no reply, one hits a failing handler, one times out.
"""

import asyncio
import logging

from nsqt import (
    InMemoryBroker,
    NsqConfig,
    PatternDispatcher,
    RemoteHandlerError,
    ReplyConfig,
    ReplyTimeoutError,
    forward,
    handle,
)

logging.basicConfig(level=logging.INFO, format="%(name)s %(levelname)s %(message)s")

config = NsqConfig(topic="job", reply=ReplyConfig(timeout=2.0, sweep_interval=0.5))


def make_worker(name: str) -> PatternDispatcher:
    async def square(message: dict) -> dict:
        if message["n"] < 0:
            raise ValueError(f"negative input {message['n']}")
        await asyncio.sleep(0.05)
        return {"n": message["n"], "square": message["n"] ** 2, "worker": name}

    dispatcher = PatternDispatcher()
    dispatcher.add({"role": "job", "chan": "job"}, square)
    return dispatcher


async def main() -> None:
    broker = InMemoryBroker()
    clients = PatternDispatcher()

    async with (
        handle(make_worker("w1"), broker, config),
        handle(make_worker("w2"), broker, config),
        forward(clients, broker, config) as client,
    ):
        results = await asyncio.gather(*(clients.act({"role": "job", "n": n}) for n in range(6)))
        for result in results:
            print(f"{result['n']}^2 = {result['square']} ({result['worker']})")

        await client.call({"role": "job", "n": 7}, wants_reply=False)

        try:
            await client.call({"role": "job", "n": -1})
        except RemoteHandlerError as e:
            print(f"failed: {e}")

    # nobody consumes the topic now
    async with forward(PatternDispatcher(), broker, config) as client:
        try:
            await client.call({"role": "job", "n": 1}, timeout=0.2)
        except ReplyTimeoutError as e:
            print(f"timed out: {e}")


if __name__ == "__main__":
    asyncio.run(main())
