"""Shared fixtures: Kubernetes object factories, an in-memory transport and a fake clock."""

import io
import threading
from collections import defaultdict
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

import pytest
from kubernetes import client

import batch_utils
import eviction_utils
import logger_utils
from config import DrainConfig
from errors import ConflictError, NotFoundError
from logger_utils import DrainLogger
from notification_utils import CollectingObserver


def make_node(name: str, unschedulable: bool = False, resource_version: str = "1", labels=None) -> client.V1Node:
    return client.V1Node(
        metadata=client.V1ObjectMeta(name=name, resource_version=resource_version, labels=labels or {}),
        spec=client.V1NodeSpec(unschedulable=unschedulable or None),
    )


def make_pod(
    name: str,
    namespace: str = "default",
    node_name: str = "n1",
    owner_kind: Optional[str] = "ReplicaSet",
    owner_name: Optional[str] = None,
    uid: Optional[str] = None,
    mirror: bool = False,
    empty_dir: bool = False,
    phase: str = "Running",
    deletion_timestamp: Optional[datetime] = None,
    labels=None,
) -> client.V1Pod:
    owners = None
    if owner_kind:
        owners = [client.V1OwnerReference(
            api_version="apps/v1",
            kind=owner_kind,
            name=owner_name or f"{owner_kind.lower()}-{name}",
            uid=f"owner-{name}",
            controller=True,
        )]
    annotations = {"kubernetes.io/config.mirror": "hash"} if mirror else None
    volumes = [client.V1Volume(name="scratch", empty_dir=client.V1EmptyDirVolumeSource())] if empty_dir else None
    return client.V1Pod(
        metadata=client.V1ObjectMeta(
            name=name,
            namespace=namespace,
            uid=uid or f"uid-{namespace}-{name}",
            owner_references=owners,
            annotations=annotations,
            labels=labels or {},
            deletion_timestamp=deletion_timestamp,
        ),
        spec=client.V1PodSpec(
            node_name=node_name,
            containers=[client.V1Container(name="app")],
            volumes=volumes,
        ),
        status=client.V1PodStatus(phase=phase),
    )


class FakeClock:
    """Deterministic replacement for the ``time`` module; sleeping advances the clock."""

    def __init__(self, start: float = 1000.0):
        self._now = start
        self._lock = threading.Lock()
        self.sleeps: List[float] = []

    def monotonic(self) -> float:
        with self._lock:
            return self._now

    def time(self) -> float:
        return self.monotonic()

    def sleep(self, seconds: float) -> None:
        with self._lock:
            self.sleeps.append(seconds)
            self._now += seconds

    def advance(self, seconds: float) -> None:
        self.sleep(seconds)


class FakeTransport:
    """In-memory stand-in for KubernetesTransport.

    ``failures`` maps ``(operation, key)`` to a list of exceptions raised in order
    before the operation behaves normally. Keys are node names or ``ns/name``.
    Pods listed in ``linger`` stay readable after removal until ``forget_pod``.
    """

    MUTATING = {"patch_node", "replace_node", "evict", "delete"}

    def __init__(self):
        self.nodes: Dict[str, client.V1Node] = {}
        self.pods: Dict[Tuple[str, str], client.V1Pod] = {}
        self.controllers = set()
        self.eviction_gv: Optional[str] = "policy/v1"
        self.dry_run_supported = True
        self.failures: Dict[Tuple[str, str], List[Exception]] = defaultdict(list)
        self.linger = set()
        self.calls: List[Tuple[str, str]] = []
        self._lock = threading.Lock()

    # Setup helpers

    def add_node(self, node: client.V1Node) -> client.V1Node:
        self.nodes[node.metadata.name] = node
        return node

    def add_pod(self, pod: client.V1Pod, controller_exists: bool = True) -> client.V1Pod:
        self.pods[(pod.metadata.namespace, pod.metadata.name)] = pod
        owners = pod.metadata.owner_references or []
        if owners and controller_exists:
            self.controllers.add((owners[0].kind, pod.metadata.namespace, owners[0].name))
        return pod

    def fail(self, operation: str, key: str, *errors: Exception) -> None:
        self.failures[(operation, key)].extend(errors)

    def forget_pod(self, namespace: str, name: str) -> None:
        self.pods.pop((namespace, name), None)

    @property
    def mutating_calls(self) -> List[Tuple[str, str]]:
        return [call for call in self.calls if call[0] in self.MUTATING]

    def calls_for(self, operation: str) -> List[str]:
        return [key for op, key in self.calls if op == operation]

    def _record(self, operation: str, key: str) -> None:
        with self._lock:
            self.calls.append((operation, key))
            pending = self.failures.get((operation, key))
            error = pending.pop(0) if pending else None
        if error is not None:
            raise error

    # Nodes

    def read_node(self, name):
        self._record("read_node", name)
        if name not in self.nodes:
            raise NotFoundError(f'nodes "{name}" not found', 404)
        return self.nodes[name]

    def list_nodes(self, label_selector="", limit=500):
        self._record("list_nodes", label_selector)
        key, _, value = label_selector.partition("=")
        return [n for n in self.nodes.values() if (n.metadata.labels or {}).get(key) == value]

    def patch_node_unschedulable(self, name, unschedulable, server_dry_run=False):
        self._record("patch_node", name)
        node = self.nodes[name]
        if not server_dry_run:
            node.spec.unschedulable = unschedulable
        return node

    def replace_node(self, node, server_dry_run=False):
        name = node.metadata.name
        self._record("replace_node", name)
        stored = self.nodes[name]
        if not server_dry_run:
            stored.spec.unschedulable = node.spec.unschedulable
            stored.metadata.resource_version = str(int(stored.metadata.resource_version) + 1)
        return stored

    # Pods

    def list_node_pods(self, node_name, label_selector="", limit=500):
        self._record("list_pods", node_name)
        pods = [p for p in self.pods.values() if p.spec.node_name == node_name]
        if label_selector:
            key, _, value = label_selector.partition("=")
            pods = [p for p in pods if (p.metadata.labels or {}).get(key) == value]
        return pods

    def read_pod(self, namespace, name):
        self._record("read_pod", f"{namespace}/{name}")
        pod = self.pods.get((namespace, name))
        if pod is None:
            raise NotFoundError(f'pods "{name}" not found', 404)
        return pod

    def _remove(self, pod, server_dry_run):
        key = (pod.metadata.namespace, pod.metadata.name)
        stored = self.pods.get(key)
        if stored is None:
            raise NotFoundError(f'pods "{pod.metadata.name}" not found', 404)
        if server_dry_run:
            return stored
        if "/".join(key) in self.linger:
            if stored.metadata.deletion_timestamp is None:
                stored.metadata.deletion_timestamp = datetime.now(timezone.utc)
        else:
            self.pods.pop(key)
        return stored

    def evict_pod(self, pod, grace_period_seconds=-1, server_dry_run=False, policy_group_version="policy/v1"):
        self._record("evict", f"{pod.metadata.namespace}/{pod.metadata.name}")
        self._remove(pod, server_dry_run)

    def delete_pod(self, pod, grace_period_seconds=-1, server_dry_run=False):
        self._record("delete", f"{pod.metadata.namespace}/{pod.metadata.name}")
        stored = self.pods.get((pod.metadata.namespace, pod.metadata.name))
        if stored is not None and stored.metadata.uid != pod.metadata.uid:
            raise ConflictError("Precondition failed: UID mismatch", 409)
        self._remove(pod, server_dry_run)

    # Controllers and capabilities

    def controller_exists(self, kind, namespace, name):
        self._record("read_controller", f"{kind}/{namespace}/{name}")
        return (kind, namespace, name) in self.controllers

    def eviction_group_version(self):
        self._record("discover_eviction", "")
        return self.eviction_gv

    def supports_dry_run(self, kind):
        self._record("discover_dry_run", kind)
        return self.dry_run_supported


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def clock(monkeypatch) -> FakeClock:
    fake = FakeClock()
    monkeypatch.setattr(eviction_utils, "time", fake)
    monkeypatch.setattr(batch_utils, "time", fake)
    monkeypatch.setattr(logger_utils, "time", fake)
    return fake


@pytest.fixture
def logger() -> DrainLogger:
    return DrainLogger(DrainConfig(log_level="DEBUG"), "node-drainer-test", stream=io.StringIO())


@pytest.fixture
def observer() -> CollectingObserver:
    return CollectingObserver()
