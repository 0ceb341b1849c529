#!/usr/bin/env python3
"""Pod removal: eviction or deletion, retries, and waiting for pods to disappear."""

import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from kubernetes import client

from config import DrainConfig, DryRunStrategy
from errors import (
    AdmissionConstraintError,
    AggregateError,
    ConflictError,
    DisappearanceTimeoutError,
    NamespaceTerminatingError,
    NotFoundError,
    aggregate,
)
from logger_utils import DrainLogger, log_operation
from notification_utils import DrainObserver, Notification, RemovalMechanism, SynchronizedObserver, Verb
from pod_utils import pod_ref

# Upper bound on the backoff exponent so unbounded retries never overflow a float.
MAX_BACKOFF_EXPONENT = 16


class _IssueOutcome(Enum):
    ACCEPTED = "accepted"
    GONE = "gone"


@dataclass
class PodRemovalResult:
    """Terminal outcome for one pod."""
    namespace: str
    name: str
    uid: Optional[str]
    mechanism: RemovalMechanism
    verb: Verb
    attempts: int = 0
    error: Optional[Exception] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


@dataclass
class RemovalReport:
    """All pod outcomes of one ``remove`` call."""
    mechanism: Optional[RemovalMechanism] = None
    results: List[PodRemovalResult] = field(default_factory=list)
    error: Optional[AggregateError] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None

    def count(self, verb: Verb) -> int:
        return sum(1 for r in self.results if r.verb is verb)


class _ResultCollector:
    """Accumulates results from concurrent workers."""

    def __init__(self):
        self._lock = threading.Lock()
        self._results: List[PodRemovalResult] = []

    def add(self, result: PodRemovalResult) -> None:
        with self._lock:
            self._results.append(result)

    def results(self) -> List[PodRemovalResult]:
        with self._lock:
            return list(self._results)


def _same_pod(original: client.V1Pod, current: client.V1Pod) -> bool:
    """True unless ``current`` is a successor object reusing the name."""
    if not original.metadata.uid or not current.metadata.uid:
        return True
    return original.metadata.uid == current.metadata.uid


class EvictionExecutor:
    """Removes pods with bounded concurrency and reports one outcome per pod."""

    def __init__(self, config: DrainConfig, transport, logger: DrainLogger, observer: DrainObserver):
        self.config = config
        self.transport = transport
        self.logger = logger
        self.observer = SynchronizedObserver(observer)

    def deadline_from_now(self) -> Optional[float]:
        """Return a ``time.monotonic()`` deadline, or None when the timeout is disabled."""
        if not self.config.timeout_enabled:
            return None
        return time.monotonic() + self.config.timeout_seconds

    def resolve_mechanism(self):
        """
        Pick eviction or deletion once per ``remove`` call.

        Client dry-run assumes eviction without probing the server.

        Returns:
            Tuple[RemovalMechanism, Optional[str]]: The mechanism and, for
            eviction, the policy group version serving it.
        """
        if self.config.disable_eviction:
            return RemovalMechanism.DELETION, None
        if self.config.dry_run is DryRunStrategy.CLIENT:
            return RemovalMechanism.EVICTION, None
        group_version = self.transport.eviction_group_version()
        if group_version is None:
            self.logger.info("Eviction API not available, falling back to pod deletion")
            return RemovalMechanism.DELETION, None
        return RemovalMechanism.EVICTION, group_version

    @log_operation("remove_pods")
    def remove(self, pods: List[client.V1Pod], deadline: Optional[float] = None) -> RemovalReport:
        """
        Evict or delete ``pods`` and wait for them to disappear.

        Args:
            pods (List[client.V1Pod]): Pods planned for removal.
            deadline (Optional[float]): A ``time.monotonic()`` value. When omitted,
                it is derived from ``timeout_seconds``; zero means wait indefinitely.

        Returns:
            RemovalReport: One result per pod; ``error`` aggregates every failure.
        """
        if not pods:
            return RemovalReport()

        mechanism, group_version = self.resolve_mechanism()
        if deadline is None:
            deadline = self.deadline_from_now()

        if self.config.dry_run is DryRunStrategy.CLIENT:
            return self._simulate(pods, mechanism)

        max_workers = min(self.config.max_concurrency, len(pods))
        self.logger.info(
            "Removing pods",
            pod_count=len(pods),
            mechanism=mechanism.value,
            max_workers=max_workers,
            dry_run=self.config.dry_run.value
        )

        collector = _ResultCollector()
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            futures = [
                executor.submit(self._remove_one, pod, mechanism, group_version, deadline)
                for pod in pods
            ]
            for future in as_completed(futures):
                collector.add(future.result())

        results = collector.results()
        report = RemovalReport(
            mechanism=mechanism,
            results=results,
            error=aggregate([r.error for r in results if r.error is not None]),
        )
        self.logger.info(
            "Pod removal completed",
            mechanism=mechanism.value,
            total_pods=len(pods),
            removed=report.count(mechanism.verb),
            skipped=report.count(Verb.SKIPPED),
            failed=report.count(Verb.FAILED)
        )
        return report

    def _simulate(self, pods: List[client.V1Pod], mechanism: RemovalMechanism) -> RemovalReport:
        report = RemovalReport(mechanism=mechanism)
        for pod in pods:
            self.logger.info(f"{mechanism.verb.value} pod (dry run)", pod=pod_ref(pod))
            result = PodRemovalResult(
                namespace=pod.metadata.namespace,
                name=pod.metadata.name,
                uid=pod.metadata.uid,
                mechanism=mechanism,
                verb=mechanism.verb,
            )
            report.results.append(result)
            self._notify(result)
        return report

    def _remove_one(self, pod: client.V1Pod, mechanism: RemovalMechanism,
                    group_version: Optional[str], deadline: Optional[float]) -> PodRemovalResult:
        result = PodRemovalResult(
            namespace=pod.metadata.namespace,
            name=pod.metadata.name,
            uid=pod.metadata.uid,
            mechanism=mechanism,
            verb=Verb.FAILED,
        )
        try:
            outcome = self._issue_removal(pod, mechanism, group_version, deadline, result)
            if outcome is _IssueOutcome.GONE or self.config.dry_run is DryRunStrategy.SERVER:
                result.verb = mechanism.verb
            else:
                result.verb = self._wait_for_delete(pod, mechanism, deadline)
        except Exception as e:
            result.verb = Verb.FAILED
            result.error = e
            self.logger.error("Pod removal failed", pod=pod_ref(pod), mechanism=mechanism.value,
                              error=str(e), error_type=type(e).__name__)
        self._notify(result)
        return result

    def _issue_removal(self, pod: client.V1Pod, mechanism: RemovalMechanism, group_version: Optional[str],
                       deadline: Optional[float], result: PodRemovalResult) -> _IssueOutcome:
        """Send the eviction or delete until it is accepted or the pod is gone.

        Retries only ever target the original pod identity: once the name
        resolves to a different UID the original is treated as gone.
        """
        server_dry_run = self.config.dry_run is DryRunStrategy.SERVER
        active_pod = pod
        while True:
            result.attempts += 1
            try:
                if mechanism is RemovalMechanism.EVICTION:
                    self.transport.evict_pod(active_pod, self.config.grace_period_seconds,
                                             server_dry_run, group_version or "policy/v1")
                else:
                    self.transport.delete_pod(active_pod, self.config.grace_period_seconds, server_dry_run)
                return _IssueOutcome.ACCEPTED
            except NotFoundError:
                return _IssueOutcome.GONE
            except ConflictError:
                # UID precondition failed: the name now belongs to a successor.
                if mechanism is RemovalMechanism.DELETION:
                    return _IssueOutcome.GONE
                raise
            except NamespaceTerminatingError as e:
                if active_pod.metadata.deletion_timestamp is not None:
                    return _IssueOutcome.ACCEPTED
                self._backoff(pod, e, result.attempts, deadline)
            except AdmissionConstraintError as e:
                self._backoff(pod, e, result.attempts, deadline)

            try:
                fresh = self.transport.read_pod(pod.metadata.namespace, pod.metadata.name)
            except NotFoundError:
                return _IssueOutcome.GONE
            if not _same_pod(pod, fresh):
                return _IssueOutcome.GONE
            active_pod = fresh

    def _backoff(self, pod: client.V1Pod, error: Exception, attempt: int, deadline: Optional[float]) -> None:
        delay = min(
            self.config.eviction_retry_seconds * (2 ** min(attempt - 1, MAX_BACKOFF_EXPONENT)),
            self.config.eviction_max_backoff_seconds
        )
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise type(error)(
                    f"error when evicting pods/{pod.metadata.name!r} -n {pod.metadata.namespace!r}: "
                    f"global timeout reached: {error}",
                    getattr(error, "status", None),
                    getattr(error, "reason", None),
                ) from error
            delay = min(delay, remaining)
        self.logger.warning(
            f"error when evicting pod (will retry after {delay:g}s)",
            pod=pod_ref(pod),
            attempt=attempt,
            error=str(error)
        )
        time.sleep(delay)

    def should_skip_wait(self, pod: client.V1Pod) -> bool:
        """
        Check whether a terminating pod has outlived the skip-wait threshold.

        Args:
            pod (client.V1Pod): The pod as last read from the server.

        Returns:
            bool: True if its deletion timestamp is older than the threshold.
        """
        threshold = self.config.skip_wait_for_delete_timeout_seconds
        deleted_at = pod.metadata.deletion_timestamp
        if threshold <= 0 or deleted_at is None:
            return False
        if deleted_at.tzinfo is None:
            deleted_at = deleted_at.replace(tzinfo=timezone.utc)
        return (datetime.now(timezone.utc) - deleted_at).total_seconds() > threshold

    def _wait_for_delete(self, pod: client.V1Pod, mechanism: RemovalMechanism,
                         deadline: Optional[float]) -> Verb:
        """Poll until the pod is gone, skippable, or the deadline passes."""
        namespace, name = pod.metadata.namespace, pod.metadata.name
        while True:
            try:
                current = self.transport.read_pod(namespace, name)
            except NotFoundError:
                return mechanism.verb
            if not _same_pod(pod, current):
                return mechanism.verb
            if self.should_skip_wait(current):
                self.logger.info(
                    "Pod deletion timestamp older than threshold, skipping wait",
                    pod=pod_ref(pod),
                    skip_wait_seconds=self.config.skip_wait_for_delete_timeout_seconds
                )
                return Verb.SKIPPED

            delay = self.config.poll_interval_seconds
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise DisappearanceTimeoutError(namespace, name, self.config.timeout_seconds)
                delay = min(delay, remaining)
            time.sleep(delay)

    def _notify(self, result: PodRemovalResult) -> None:
        dry_run = None if self.config.dry_run is DryRunStrategy.NONE else self.config.dry_run.value
        self.observer.notify(Notification(
            kind="Pod",
            namespace=result.namespace,
            name=result.name,
            verb=result.verb,
            mechanism=result.mechanism,
            dry_run=dry_run,
            message=str(result.error) if result.error else None,
        ))
