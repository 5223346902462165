"""Synchronous fan-out channel for arbitrary event types."""

import logging
from typing import Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class _Subscription(Generic[T]):
    __slots__ = ("callback",)

    def __init__(self, callback: Callable[[T], None]) -> None:
        self.callback = callback


class EventBus(Generic[T]):
    """Fan-out of events to any number of registered callbacks.

    Each ``subscribe`` call registers an independent subscription, even
    for the same callable, and returns an idempotent unsubscribe function.
    ``emit`` iterates over a snapshot of the subscriptions so callbacks may
    subscribe or unsubscribe while an event is being dispatched.  A callback
    that raises is logged and skipped; the remaining callbacks still receive
    the event.
    """

    def __init__(self, name: str = "event") -> None:
        self._name = name
        self._subscriptions: list[_Subscription[T]] = []

    def emit(self, event: T) -> int:
        """Deliver *event* to every subscriber.  Returns the delivery count."""
        delivered = 0
        for subscription in list(self._subscriptions):
            try:
                subscription.callback(event)
                delivered += 1
            except Exception:
                logger.error("Error in %s callback", self._name, exc_info=True)
        return delivered

    def subscribe(self, callback: Callable[[T], None]) -> Callable[[], None]:
        """Register *callback* and return a function that removes it."""
        subscription = _Subscription(callback)
        self._subscriptions.append(subscription)
        logger.debug(
            "New %s subscriber added (total: %d)", self._name, len(self._subscriptions)
        )

        def unsubscribe() -> None:
            try:
                self._subscriptions.remove(subscription)
                logger.debug(
                    "%s subscriber removed (remaining: %d)",
                    self._name,
                    len(self._subscriptions),
                )
            except ValueError:
                pass

        return unsubscribe

    def clear(self) -> None:
        """Remove every subscriber."""
        self._subscriptions.clear()

    @property
    def subscriber_count(self) -> int:
        """Return the current number of active subscribers."""
        return len(self._subscriptions)
