from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Tuple

from .protocol import Notification


Callback = Callable[[Notification], None]


@dataclass(frozen=True)
class Delivery:
    """One notification addressed to an already-resolved set of connections."""

    recipients: Tuple[str, ...]
    notification: Notification
    scope: str = "direct"


@dataclass
class Subscription:
    connection_id: str
    callback: Callback

    def deliver(self, notification: Notification) -> None:
        self.callback(notification)


class ConnectionHub:
    """Registers per-connection callbacks and hands deliveries to them.

    Callbacks must not block; the websocket transport only enqueues.
    """

    def __init__(self) -> None:
        self._subscriptions: Dict[str, Subscription] = {}

    def subscribe(self, connection_id: str, callback: Callback) -> Subscription:
        subscription = Subscription(connection_id=connection_id, callback=callback)
        self._subscriptions[connection_id] = subscription
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        current = self._subscriptions.get(subscription.connection_id)
        if current is subscription:
            self._subscriptions.pop(subscription.connection_id, None)

    def dispatch(self, deliveries: Iterable[Delivery]) -> int:
        """Deliver in order and return how many notifications were handed off."""

        sent = 0
        for delivery in deliveries:
            for connection_id in delivery.recipients:
                subscription = self._subscriptions.get(connection_id)
                if subscription is None:
                    continue
                subscription.deliver(delivery.notification)
                sent += 1
        return sent
