#!/usr/bin/env python3
"""Pod eligibility: which pods on a node may be removed, and why others may not."""

from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import Callable, Dict, List, Optional, Tuple

from kubernetes import client

from config import DrainConfig
from errors import AggregateError, BlockingEligibilityError, TransportError, aggregate
from logger_utils import DrainLogger, log_operation
from selector_utils import validate_selector

MIRROR_POD_ANNOTATION = "kubernetes.io/config.mirror"

DAEMONSET_FATAL = "DaemonSet-managed Pods (use --ignore-daemonsets to ignore)"
DAEMONSET_WARNING = "ignoring DaemonSet-managed Pods"
LOCAL_STORAGE_FATAL = "Pods with local storage (use --delete-emptydir-data to override)"
LOCAL_STORAGE_WARNING = "deleting Pods with local storage"
UNMANAGED_FATAL = "Pods declare no controller (use --force to override)"
UNMANAGED_WARNING = "deleting Pods that declare no controller"
ORPHANED_FATAL = "Pods with missing controller (use --force to override)"
ORPHANED_WARNING = "deleting Pods whose controller is missing"


class DeleteReason(Enum):
    OKAY = "okay"
    SKIP = "skip"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class PodDeleteStatus:
    delete: bool
    reason: DeleteReason
    message: str = ""

    @classmethod
    def okay(cls) -> "PodDeleteStatus":
        return cls(True, DeleteReason.OKAY)

    @classmethod
    def skip(cls) -> "PodDeleteStatus":
        return cls(False, DeleteReason.SKIP)

    @classmethod
    def warning(cls, delete: bool, message: str) -> "PodDeleteStatus":
        return cls(delete, DeleteReason.WARNING, message)

    @classmethod
    def error(cls, message: str) -> "PodDeleteStatus":
        return cls(False, DeleteReason.ERROR, message)


@dataclass
class PodDelete:
    """A pod and every non-okay status the filters produced for it."""
    pod: client.V1Pod
    statuses: List[PodDeleteStatus] = field(default_factory=list)

    @property
    def deletable(self) -> bool:
        return all(status.delete for status in self.statuses)


def pod_ref(pod: client.V1Pod) -> str:
    return f"{pod.metadata.namespace}/{pod.metadata.name}"


def _group(items: List[PodDelete], reason: DeleteReason) -> Dict[str, List[str]]:
    grouped: Dict[str, List[str]] = {}
    for item in items:
        for status in item.statuses:
            if status.reason is reason:
                grouped.setdefault(status.message, []).append(pod_ref(item.pod))
    return grouped


@dataclass
class PodDeleteList:
    """Planning result for one node."""
    items: List[PodDelete] = field(default_factory=list)

    @property
    def deletable(self) -> List[client.V1Pod]:
        return [item.pod for item in self.items if item.deletable]

    def warnings(self) -> str:
        """Human-readable summary of everything that was skipped or overridden.

        Pods that are also blocked are left out; they are reported by ``errors()``.
        """
        unblocked = [
            item for item in self.items
            if not any(status.reason is DeleteReason.ERROR for status in item.statuses)
        ]
        return "; ".join(
            f"{message}: {', '.join(pods)}"
            for message, pods in _group(unblocked, DeleteReason.WARNING).items()
        )

    def errors(self) -> List[BlockingEligibilityError]:
        return [
            BlockingEligibilityError(message, pods)
            for message, pods in _group(self.items, DeleteReason.ERROR).items()
        ]

    def error(self) -> Optional[AggregateError]:
        return aggregate(self.errors())


def controller_of(pod: client.V1Pod) -> Optional[client.V1OwnerReference]:
    for owner in pod.metadata.owner_references or []:
        if owner.controller:
            return owner
    return None


def is_finished(pod: client.V1Pod) -> bool:
    return bool(pod.status and pod.status.phase in ("Succeeded", "Failed"))


def is_mirror(pod: client.V1Pod) -> bool:
    return MIRROR_POD_ANNOTATION in (pod.metadata.annotations or {})


def has_local_storage(pod: client.V1Pod) -> bool:
    volumes = (pod.spec.volumes if pod.spec else None) or []
    return any(volume.empty_dir is not None for volume in volumes)


class DeletionPlanner:
    """Partitions a node's pods into deletable, skipped and blocking."""

    def __init__(self, config: DrainConfig, transport, logger: DrainLogger):
        self.config = config
        self.transport = transport
        self.logger = logger

    @log_operation("plan_deletions")
    def plan_deletions(self, node_name: str, pod_selector: Optional[str] = None) -> PodDeleteList:
        """List the pods bound to ``node_name`` and evaluate each one.

        Raises ValidationError for a malformed pod selector. Blocking conditions
        are not raised; they are returned through ``PodDeleteList.errors()``.
        """
        selector = self.config.pod_selector if pod_selector is None else pod_selector
        validate_selector(selector, "pod-selector")

        pods = self.transport.list_node_pods(node_name, selector, limit=self.config.chunk_size)
        controller_cache: Dict[Tuple[str, str, str], object] = {}
        filters = self._make_filters(controller_cache)

        plan = PodDeleteList()
        for pod in pods:
            item = PodDelete(pod=pod)
            for pod_filter in filters:
                status = pod_filter(pod)
                if status.reason is not DeleteReason.OKAY:
                    item.statuses.append(status)
                # A skip ends evaluation; an error does not, so every reason is reported.
                if not status.delete and status.reason is not DeleteReason.ERROR:
                    break
            plan.items.append(item)

        self.logger.info(
            "Planned pod deletions",
            node_name=node_name,
            total_pods=len(pods),
            deletable_pods=len(plan.deletable),
            blocking_reasons=len(plan.errors())
        )
        return plan

    def _make_filters(self, cache) -> List[Callable[[client.V1Pod], PodDeleteStatus]]:
        lookup = partial(self._controller_exists, cache)
        return [
            self._mirror_filter,
            partial(self._daemonset_filter, lookup=lookup),
            self._unreplicated_filter,
            self._local_storage_filter,
            partial(self._orphaned_filter, lookup=lookup),
        ]

    def _controller_exists(self, cache, kind: str, namespace: str, name: str):
        """Return True/False, or the TransportError raised by the lookup."""
        key = (kind, namespace, name)
        if key not in cache:
            try:
                cache[key] = self.transport.controller_exists(kind, namespace, name)
            except TransportError as e:
                cache[key] = e
        return cache[key]

    def _mirror_filter(self, pod: client.V1Pod) -> PodDeleteStatus:
        if is_mirror(pod):
            return PodDeleteStatus.skip()
        return PodDeleteStatus.okay()

    def _daemonset_filter(self, pod: client.V1Pod, lookup) -> PodDeleteStatus:
        controller = controller_of(pod)
        if controller is None or controller.kind != "DaemonSet":
            return PodDeleteStatus.okay()
        if is_finished(pod):
            return PodDeleteStatus.okay()

        exists = lookup(controller.kind, pod.metadata.namespace, controller.name)
        if isinstance(exists, Exception):
            return PodDeleteStatus.error(str(exists))
        if not exists:
            if self.config.force:
                return PodDeleteStatus.warning(True, ORPHANED_WARNING)
            return PodDeleteStatus.error(ORPHANED_FATAL)

        if not self.config.ignore_daemonsets:
            return PodDeleteStatus.error(DAEMONSET_FATAL)
        return PodDeleteStatus.warning(False, DAEMONSET_WARNING)

    def _unreplicated_filter(self, pod: client.V1Pod) -> PodDeleteStatus:
        if is_finished(pod) or controller_of(pod) is not None:
            return PodDeleteStatus.okay()
        if self.config.force:
            return PodDeleteStatus.warning(True, UNMANAGED_WARNING)
        return PodDeleteStatus.error(UNMANAGED_FATAL)

    def _local_storage_filter(self, pod: client.V1Pod) -> PodDeleteStatus:
        if not has_local_storage(pod) or is_finished(pod):
            return PodDeleteStatus.okay()
        if not self.config.delete_emptydir_data:
            return PodDeleteStatus.error(LOCAL_STORAGE_FATAL)
        return PodDeleteStatus.warning(True, LOCAL_STORAGE_WARNING)

    def _orphaned_filter(self, pod: client.V1Pod, lookup) -> PodDeleteStatus:
        controller = controller_of(pod)
        if controller is None or controller.kind == "DaemonSet" or is_finished(pod):
            return PodDeleteStatus.okay()

        exists = lookup(controller.kind, pod.metadata.namespace, controller.name)
        if isinstance(exists, Exception):
            return PodDeleteStatus.error(str(exists))
        if exists:
            return PodDeleteStatus.okay()
        if self.config.force:
            return PodDeleteStatus.warning(True, ORPHANED_WARNING)
        return PodDeleteStatus.error(ORPHANED_FATAL)
