# Overview: Outbox subscriptions; one poller delivers domain events to in-process subscribers.

"""
Event Subscriptions

A single EventSubscriptionManager owns the connection to the outbox. Each
subscriber gets a Subscription handle with its own cursor; cancel() stops
delivery. Fetch failures back off exponentially (1s, 2s, 4s ... capped at
60s) and reset after the next successful poll.

Delivery is in id order and at-least-once per subscriber: a callback that
raises keeps its cursor on the failing event and sees it again next poll.
"""

from __future__ import annotations

import itertools
import logging
import threading
from typing import Callable, Iterable

from ..extensions import db
from . import event_service


logger = logging.getLogger(__name__)

EventCallback = Callable[[dict], None]


def backoff_delay(failures: int, *, base: float = 1.0, factor: float = 2.0, maximum: float = 60.0) -> float:
    if failures <= 0:
        return 0.0
    return min(base * (factor ** (failures - 1)), maximum)


class Subscription:
    _ids = itertools.count(1)

    def __init__(self, callback: EventCallback, *, after_id: int, event_types: Iterable[str] | None = None):
        self.id = next(self._ids)
        self.callback = callback
        self.cursor = after_id
        self.event_types = frozenset(event_types) if event_types else None
        self._cancelled = threading.Event()

    @property
    def active(self) -> bool:
        return not self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()

    def wants(self, event: dict) -> bool:
        return self.event_types is None or event["event_type"] in self.event_types

    def __repr__(self) -> str:
        return f"<Subscription id={self.id} cursor={self.cursor} active={self.active}>"


class EventSubscriptionManager:
    def __init__(
        self,
        app,
        *,
        poll_interval: float = 5.0,
        batch_size: int = 100,
        backoff_base: float = 1.0,
        backoff_factor: float = 2.0,
        backoff_max: float = 60.0,
        fetch: Callable[[int, int], list[dict]] | None = None,
    ):
        self.app = app
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self.backoff_base = backoff_base
        self.backoff_factor = backoff_factor
        self.backoff_max = backoff_max
        self._fetch = fetch or self._fetch_from_outbox
        self._subscriptions: dict[int, Subscription] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.consecutive_failures = 0

    def _fetch_from_outbox(self, after_id: int, limit: int) -> list[dict]:
        with self.app.app_context():
            try:
                return [ev.to_dict() for ev in event_service.list_events(after_id=after_id, limit=limit)]
            finally:
                db.session.remove()

    def subscribe(
        self,
        callback: EventCallback,
        *,
        after_id: int | None = None,
        event_types: Iterable[str] | None = None,
    ) -> Subscription:
        """Deliver events with id > after_id (default: only events from now on)."""
        if after_id is None:
            with self.app.app_context():
                after_id = event_service.latest_event_id()
        subscription = Subscription(callback, after_id=after_id, event_types=event_types)
        with self._lock:
            self._subscriptions[subscription.id] = subscription
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.cancel()
        with self._lock:
            self._subscriptions.pop(subscription.id, None)

    def active_subscriptions(self) -> list[Subscription]:
        with self._lock:
            for sub_id in [s.id for s in self._subscriptions.values() if not s.active]:
                del self._subscriptions[sub_id]
            return list(self._subscriptions.values())

    def next_delay(self) -> float:
        if self.consecutive_failures == 0:
            return self.poll_interval
        return backoff_delay(
            self.consecutive_failures,
            base=self.backoff_base,
            factor=self.backoff_factor,
            maximum=self.backoff_max,
        )

    def poll_once(self) -> int:
        """
        One fetch-and-deliver round. Returns events delivered.

        Each distinct cursor gets its own page, so a subscriber stuck on a
        failing event never holds back the others. Fetch errors propagate;
        the run loop turns them into backoff.
        """
        by_cursor: dict[int, list[Subscription]] = {}
        for subscription in self.active_subscriptions():
            by_cursor.setdefault(subscription.cursor, []).append(subscription)

        delivered = 0
        for cursor in sorted(by_cursor):
            events = self._fetch(cursor, self.batch_size)
            for subscription in by_cursor[cursor]:
                delivered += self._deliver(subscription, events)
        return delivered

    def _deliver(self, subscription: Subscription, events: list[dict]) -> int:
        delivered = 0
        for event in events:
            if not subscription.active:
                break
            if event["id"] <= subscription.cursor:
                continue
            if subscription.wants(event):
                try:
                    subscription.callback(event)
                except Exception:
                    logger.exception(
                        "Subscriber %s failed on event %s; will redeliver", subscription.id, event["id"]
                    )
                    break
                delivered += 1
            subscription.cursor = event["id"]
        return delivered

    def run(self) -> None:
        """Poll until stop() is called. start() runs this on a daemon thread."""
        while not self._stop.is_set():
            try:
                self.poll_once()
                self.consecutive_failures = 0
            except Exception as exc:
                self.consecutive_failures += 1
                logger.warning(
                    "Event fetch failed (%s in a row), retrying in %.0fs: %s",
                    self.consecutive_failures,
                    self.next_delay(),
                    exc,
                )
            self._stop.wait(self.next_delay())

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self.run, name="settlement-event-poller", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None
