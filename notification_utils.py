#!/usr/bin/env python3
"""Per-object terminal notifications and the observers that consume them."""

import sys
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional


class Verb(Enum):
    """Terminal outcome reported for a node or pod."""
    CORDONED = "cordoned"
    UNCORDONED = "uncordoned"
    ALREADY_CORDONED = "already cordoned"
    ALREADY_UNCORDONED = "already uncordoned"
    DRAINED = "drained"
    EVICTED = "evicted"
    DELETED = "deleted"
    SKIPPED = "skipped"
    FAILED = "failed"

    @classmethod
    def changed(cls, desired: bool) -> "Verb":
        return cls.CORDONED if desired else cls.UNCORDONED

    @classmethod
    def already(cls, desired: bool) -> "Verb":
        return cls.ALREADY_CORDONED if desired else cls.ALREADY_UNCORDONED


class RemovalMechanism(Enum):
    EVICTION = "eviction"
    DELETION = "deletion"

    @property
    def verb(self) -> Verb:
        return Verb.EVICTED if self is RemovalMechanism.EVICTION else Verb.DELETED


@dataclass(frozen=True)
class Notification:
    """A terminal outcome for one object."""
    kind: str
    name: str
    verb: Verb
    namespace: Optional[str] = None
    mechanism: Optional[RemovalMechanism] = None
    dry_run: Optional[str] = None
    message: Optional[str] = None

    @property
    def object_ref(self) -> str:
        return f"{self.kind.lower()}/{self.name}"


class DrainObserver:
    """Receives exactly one notification per terminal object outcome."""

    def notify(self, notification: Notification) -> None:
        raise NotImplementedError


class PrinterObserver(DrainObserver):
    """Prints kubectl-style ``kind/name verb`` lines."""

    def __init__(self, out=None):
        self.out = out or sys.stdout

    def notify(self, notification: Notification) -> None:
        line = f"{notification.object_ref} {notification.verb.value}"
        if notification.dry_run:
            line += f" ({notification.dry_run} dry run)"
        print(line, file=self.out)


class LoggingObserver(DrainObserver):
    """Forwards notifications to a DrainLogger."""

    def __init__(self, logger):
        self.logger = logger

    def notify(self, notification: Notification) -> None:
        context = {"object": notification.object_ref, "verb": notification.verb.value}
        if notification.namespace:
            context["namespace"] = notification.namespace
        if notification.mechanism:
            context["mechanism"] = notification.mechanism.value
        if notification.dry_run:
            context["dry_run"] = notification.dry_run
        if notification.verb is Verb.FAILED:
            self.logger.error("Object outcome", error=notification.message, **context)
        else:
            self.logger.debug("Object outcome", **context)


class SynchronizedObserver(DrainObserver):
    """Serializes notifications from concurrent workers."""

    def __init__(self, delegate: DrainObserver):
        self.delegate = delegate
        self._lock = threading.Lock()

    def notify(self, notification: Notification) -> None:
        with self._lock:
            self.delegate.notify(notification)


class CollectingObserver(DrainObserver):
    """Thread-safe in-memory collector of notifications."""

    def __init__(self):
        self._lock = threading.Lock()
        self._notifications: List[Notification] = []

    def notify(self, notification: Notification) -> None:
        with self._lock:
            self._notifications.append(notification)

    @property
    def notifications(self) -> List[Notification]:
        with self._lock:
            return list(self._notifications)

    def verbs_for(self, name: str) -> List[Verb]:
        return [n.verb for n in self.notifications if n.name == name]


class CompositeObserver(DrainObserver):
    """Fans a notification out to several observers."""

    def __init__(self, observers: Iterable[DrainObserver]):
        self.observers = list(observers)

    def notify(self, notification: Notification) -> None:
        for observer in self.observers:
            observer.notify(notification)
