from datetime import datetime, timedelta, timezone

import pytest
from urllib3.exceptions import MaxRetryError

from conftest import FakeTransport, make_pod
from config import DrainConfig, DryRunStrategy
from errors import (
    AdmissionConstraintError,
    DisappearanceTimeoutError,
    NamespaceTerminatingError,
    TransportError,
)
from eviction_utils import EvictionExecutor
from notification_utils import RemovalMechanism, Verb


@pytest.fixture(autouse=True)
def _fake_clock(clock):
    return clock


def executor_for(transport, logger, observer, **overrides):
    return EvictionExecutor(DrainConfig(**overrides), transport, logger, observer)


def add_pods(transport, *names):
    return [transport.add_pod(make_pod(name)) for name in names]


def test_evicts_pods_and_waits_for_them(transport, logger, observer):
    pods = add_pods(transport, "a", "b")

    report = executor_for(transport, logger, observer).remove(pods)

    assert report.succeeded
    assert report.mechanism is RemovalMechanism.EVICTION
    assert sorted(transport.calls_for("evict")) == ["default/a", "default/b"]
    assert {r.name: r.verb for r in report.results} == {"a": Verb.EVICTED, "b": Verb.EVICTED}
    assert transport.pods == {}
    assert sorted(n.name for n in observer.notifications) == ["a", "b"]


def test_empty_input_makes_no_calls(transport, logger, observer):
    report = executor_for(transport, logger, observer).remove([])

    assert report.results == []
    assert report.error is None
    assert transport.calls == []


def test_falls_back_to_deletion_without_eviction_api(transport, logger, observer):
    transport.eviction_gv = None
    pods = add_pods(transport, "a")

    report = executor_for(transport, logger, observer).remove(pods)

    assert report.mechanism is RemovalMechanism.DELETION
    assert transport.calls_for("delete") == ["default/a"]
    assert transport.calls_for("evict") == []
    assert observer.verbs_for("a") == [Verb.DELETED]


def test_disable_eviction_skips_discovery(transport, logger, observer):
    pods = add_pods(transport, "a")

    report = executor_for(transport, logger, observer, disable_eviction=True).remove(pods)

    assert report.mechanism is RemovalMechanism.DELETION
    assert transport.calls_for("discover_eviction") == []
    assert report.results[0].verb is Verb.DELETED


def test_missing_pod_counts_as_removed(transport, logger, observer):
    report = executor_for(transport, logger, observer).remove([make_pod("gone")])

    assert report.succeeded
    assert report.results[0].verb is Verb.EVICTED
    assert transport.calls_for("read_pod") == []


def test_deletion_of_replaced_pod_counts_as_removed(transport, logger, observer):
    transport.add_pod(make_pod("a", uid="successor"))

    report = executor_for(transport, logger, observer, disable_eviction=True).remove([make_pod("a", uid="original")])

    assert report.succeeded
    assert report.results[0].verb is Verb.DELETED
    assert ("default", "a") in transport.pods


def test_disruption_budget_rejections_are_retried_with_backoff(transport, logger, observer, clock):
    pods = add_pods(transport, "a")
    transport.fail("evict", "default/a",
                   AdmissionConstraintError("Cannot evict pod as it would violate the pod's disruption budget", 429),
                   AdmissionConstraintError("Cannot evict pod as it would violate the pod's disruption budget", 429))

    report = executor_for(transport, logger, observer).remove(pods)

    assert report.succeeded
    assert report.results[0].attempts == 3
    assert clock.sleeps == [5.0, 10.0]
    assert observer.verbs_for("a") == [Verb.EVICTED]


def test_backoff_is_capped(transport, logger, observer, clock):
    pods = add_pods(transport, "a")
    transport.fail("evict", "default/a", *[AdmissionConstraintError("budget", 429) for _ in range(4)])

    executor_for(transport, logger, observer).remove(pods)

    assert clock.sleeps == [5.0, 10.0, 20.0, 30.0]


def test_disruption_budget_retries_stop_at_timeout(transport, logger, observer, clock):
    pods = add_pods(transport, "a")
    transport.fail("evict", "default/a", *[AdmissionConstraintError("budget", 429) for _ in range(10)])

    report = executor_for(transport, logger, observer, timeout_seconds=12).remove(pods)

    assert not report.succeeded
    assert "global timeout reached" in str(report.error)
    assert isinstance(report.error.errors[0], AdmissionConstraintError)
    assert clock.sleeps == [5.0, 7.0]
    assert observer.verbs_for("a") == [Verb.FAILED]


def test_terminating_namespace_is_retried(transport, logger, observer, clock):
    pods = add_pods(transport, "a")
    transport.fail("evict", "default/a", NamespaceTerminatingError("namespace is being terminated", 403))

    report = executor_for(transport, logger, observer).remove(pods)

    assert report.succeeded
    assert transport.calls_for("evict") == ["default/a", "default/a"]
    assert clock.sleeps == [5.0]


def test_pod_that_never_disappears_times_out(transport, logger, observer, clock):
    pods = add_pods(transport, "stuck")
    transport.linger.add("default/stuck")

    report = executor_for(transport, logger, observer, timeout_seconds=3).remove(pods)

    assert not report.succeeded
    error = report.error.errors[0]
    assert isinstance(error, DisappearanceTimeoutError)
    assert (error.namespace, error.name) == ("default", "stuck")
    assert sum(clock.sleeps) == pytest.approx(3.0)
    assert observer.verbs_for("stuck") == [Verb.FAILED]


def test_long_terminating_pod_skips_wait(transport, logger, observer, clock):
    deleted_at = datetime.now(timezone.utc) - timedelta(minutes=10)
    pod = transport.add_pod(make_pod("slow", deletion_timestamp=deleted_at))
    transport.linger.add("default/slow")

    report = executor_for(transport, logger, observer, skip_wait_for_delete_timeout_seconds=60).remove([pod])

    assert report.succeeded
    assert report.results[0].verb is Verb.SKIPPED
    assert clock.sleeps == []


def test_successor_pod_is_not_waited_on(logger, observer):
    class SuccessorTransport(FakeTransport):
        def evict_pod(self, pod, *args, **kwargs):
            super().evict_pod(pod, *args, **kwargs)
            self.add_pod(make_pod(pod.metadata.name, uid="successor"))

    transport = SuccessorTransport()
    pods = add_pods(transport, "a")

    report = executor_for(transport, logger, observer).remove(pods)

    assert report.results[0].verb is Verb.EVICTED
    assert transport.calls_for("evict") == ["default/a"]
    assert transport.pods[("default", "a")].metadata.uid == "successor"


def test_failures_are_aggregated_without_stopping_other_pods(transport, logger, observer):
    pods = add_pods(transport, "a", "b", "c")
    transport.fail("evict", "default/a", TransportError("boom-a", 500))
    transport.fail("evict", "default/c", TransportError("boom-c", 500))

    report = executor_for(transport, logger, observer).remove(pods)

    assert len(report.error) == 2
    assert sorted(str(e) for e in report.error.errors) == ["boom-a", "boom-c"]
    assert observer.verbs_for("b") == [Verb.EVICTED]
    assert report.count(Verb.FAILED) == 2


def test_one_notification_per_pod_under_concurrency(transport, logger, observer):
    pods = add_pods(transport, *[f"pod-{i}" for i in range(20)])

    report = executor_for(transport, logger, observer, max_concurrency=4).remove(pods)

    notified = [n.name for n in observer.notifications]
    assert len(notified) == 20
    assert set(notified) == {pod.metadata.name for pod in pods}
    assert report.count(Verb.EVICTED) == 20


def test_client_dry_run_makes_no_calls(transport, logger, observer):
    pods = add_pods(transport, "a", "b")

    report = executor_for(transport, logger, observer, dry_run=DryRunStrategy.CLIENT).remove(pods)

    assert transport.calls == []
    assert report.count(Verb.EVICTED) == 2
    assert {n.dry_run for n in observer.notifications} == {"client"}


def test_server_dry_run_does_not_wait(transport, logger, observer):
    pods = add_pods(transport, "a")

    report = executor_for(transport, logger, observer, dry_run=DryRunStrategy.SERVER).remove(pods)

    assert report.results[0].verb is Verb.EVICTED
    assert transport.calls_for("read_pod") == []
    assert ("default", "a") in transport.pods


def test_deadline_is_disabled_by_zero_timeout(transport, logger, observer, clock):
    assert executor_for(transport, logger, observer).deadline_from_now() is None
    assert executor_for(transport, logger, observer, timeout_seconds=30).deadline_from_now() == clock.monotonic() + 30


def test_unexpected_client_error_fails_only_that_pod(transport, logger, observer):
    pods = add_pods(transport, "a", "b")
    transport.fail("evict", "default/a", MaxRetryError(None, "/api/v1/namespaces/default/pods/a/eviction"))

    report = executor_for(transport, logger, observer).remove(pods)

    assert len(report.error) == 1
    assert isinstance(report.error.errors[0], MaxRetryError)
    assert observer.verbs_for("a") == [Verb.FAILED]
    assert observer.verbs_for("b") == [Verb.EVICTED]


def test_unbounded_budget_retries_keep_backoff_capped(transport, logger, observer, clock):
    pods = add_pods(transport, "a")
    transport.fail("evict", "default/a", *[AdmissionConstraintError("budget", 429) for _ in range(1100)])

    report = executor_for(transport, logger, observer).remove(pods)

    assert report.succeeded
    assert report.results[0].attempts == 1101
    assert max(clock.sleeps) == 30.0
