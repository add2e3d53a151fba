"""Publish/subscribe value container used for all change propagation."""

import asyncio
from typing import Callable, Generic, TypeVar

from .typing import Subscriber, Unsubscribe

T = TypeVar("T")


class ReactiveStore(Generic[T]):
    """Holds a value and synchronously notifies subscribers when it is set.

    Subscribers are called in subscription order with the new value. There is
    no buffering: a subscriber added after a :meth:`set` does not receive the
    value that was set before it subscribed.

    Instances are owned by their creator and shared by reference.
    """

    def __init__(self, value: T):
        self._value = value
        self._subscribers: list[Subscriber[T]] = []

    def __repr__(self):
        return f"{type(self).__name__}({self._value!r})"

    def get(self) -> T:
        return self._value

    def set(self, value: T) -> None:
        self._value = value
        # Copy so subscribers may (un)subscribe while being notified.
        for subscriber in list(self._subscribers):
            subscriber(value)

    def update(self, fn: Callable[[T], T]) -> None:
        """Set the store to ``fn(current_value)``."""
        self.set(fn(self._value))

    def subscribe(self, subscriber: Subscriber[T]) -> Unsubscribe:
        """Register ``subscriber``.

        Returns
        -------
        Callable
            Call to unsubscribe. Calling it more than once is harmless.
        """
        self._subscribers.append(subscriber)

        def unsubscribe():
            try:
                self._subscribers.remove(subscriber)
            except ValueError:
                pass

        return unsubscribe

    async def next(self) -> T:
        """Wait for the next :meth:`set` and return its value."""
        future = asyncio.get_running_loop().create_future()

        def resolve(value):
            if not future.done():
                future.set_result(value)

        unsubscribe = self.subscribe(resolve)
        try:
            return await future
        finally:
            unsubscribe()
