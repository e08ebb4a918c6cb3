from __future__ import annotations

from typing import Callable, Generic, List, TypeVar

S = TypeVar("S")

Listener = Callable[[S], None]


class Store(Generic[S]):
    """In-memory holder of one immutable state value.

    Every change replaces the whole value; subscribers are called
    synchronously, in subscription order, with the new state.
    """

    def __init__(self, initial: S) -> None:
        self._state = initial
        self._listeners: List[Listener] = []

    def get(self) -> S:
        return self._state

    def set(self, mutate: Callable[[S], S]) -> S:
        return self.replace(mutate(self._state))

    def replace(self, state: S) -> S:
        self._state = state
        for listener in list(self._listeners):
            listener(state)
        return state

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe
