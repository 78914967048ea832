"""Message dispatch interface.

The transport hands inbound messages to a ``Dispatcher`` and registers its
forwarding action on one.  Any pattern-matching action framework can sit
behind the protocol; ``PatternDispatcher`` is the minimal in-process one used
by the tests and examples.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol, TypeAlias

Handler: TypeAlias = Callable[[dict[str, Any]], Awaitable[Any]]


class Dispatcher(Protocol):
    def add(self, pattern: Mapping[str, Any], handler: Handler) -> None: ...
    async def act(self, message: dict[str, Any]) -> Any: ...


class NoHandlerError(LookupError):
    def __init__(self, message: Mapping[str, Any]) -> None:
        self.message = dict(message)
        super().__init__(f"No handler matches {self.message!r}")


@dataclass(frozen=True, slots=True)
class _Route:
    pattern: tuple[tuple[str, Any], ...]
    handler: Handler

    def matches(self, message: Mapping[str, Any]) -> bool:
        return all(key in message and message[key] == value for key, value in self.pattern)


class PatternDispatcher:
    """Dispatch to the most specific handler whose pattern the message contains.

    A pattern matches when every one of its ``key: value`` pairs appears in the
    message.  The pattern with the most pairs wins; among equally specific
    patterns the most recently added wins.

    Example:
        dispatcher = PatternDispatcher()
        dispatcher.add({"role": "job"}, forward)
        dispatcher.add({"role": "job", "chan": "job"}, work)

        await dispatcher.act({"role": "job", "chan": "job", "n": 1})  # -> work
    """

    def __init__(self) -> None:
        self._routes: list[_Route] = []

    def add(self, pattern: Mapping[str, Any], handler: Handler) -> None:
        self._routes.append(_Route(tuple(sorted(pattern.items())), handler))

    def find(self, message: Mapping[str, Any]) -> Handler | None:
        best: _Route | None = None
        for route in self._routes:
            if route.matches(message) and (best is None or len(route.pattern) >= len(best.pattern)):
                best = route
        return best.handler if best else None

    async def act(self, message: dict[str, Any]) -> Any:
        handler = self.find(message)
        if handler is None:
            raise NoHandlerError(message)
        return await handler(message)
