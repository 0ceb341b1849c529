#!/usr/bin/env python3
"""Kubernetes transport for node and pod operations.

Wraps the generated API clients and translates ``ApiException`` statuses into
the drain error taxonomy so callers never inspect HTTP codes directly.
"""

import json
from typing import Any, Iterator, List, Optional

from kubernetes import client, config as k8s_config
from kubernetes.client.rest import ApiException

from errors import (
    AdmissionConstraintError,
    ConflictError,
    NamespaceTerminatingError,
    NotFoundError,
    PatchUnsupportedError,
    TransportError,
)

DRY_RUN_ALL = "All"
EVICTION_SUBRESOURCE = "pods/eviction"
NAMESPACE_TERMINATING_CAUSE = "NamespaceTerminating"

# Server-side dry-run went GA in 1.13.
_DRY_RUN_MIN_VERSION = (1, 13)

# Core group resources checked for dry-run support, keyed by kind.
_KIND_RESOURCES = {"Node": "nodes", "Pod": "pods"}


def _status_causes(e: ApiException) -> List[str]:
    try:
        body = json.loads(e.body) if e.body else {}
    except (TypeError, ValueError):
        return []
    details = body.get("details") or {}
    return [cause.get("type") for cause in details.get("causes") or [] if isinstance(cause, dict)]


def translate_api_exception(e: ApiException, action: str) -> TransportError:
    """Map an ApiException to the matching TransportError subclass."""
    message = f"{action}: ({e.status}) {e.reason}"
    if e.status == 404:
        return NotFoundError(message, e.status, e.reason)
    if e.status == 409:
        return ConflictError(message, e.status, e.reason)
    if e.status == 415:
        return PatchUnsupportedError(message, e.status, e.reason)
    if e.status == 429:
        return AdmissionConstraintError(message, e.status, e.reason)
    if e.status == 403 and NAMESPACE_TERMINATING_CAUSE in _status_causes(e):
        return NamespaceTerminatingError(message, e.status, e.reason)
    return TransportError(message, e.status, e.reason)


def _dry_run_param(server_dry_run: bool) -> Optional[str]:
    return DRY_RUN_ALL if server_dry_run else None


class KubernetesTransport:
    """Typed access to the node, pod and discovery endpoints the drainer needs."""

    def __init__(self, logger, core_v1=None, apps_v1=None, batch_v1=None, apis=None, version=None):
        self.logger = logger
        if core_v1 is None:
            self._initialize_k8s_client()
            core_v1 = client.CoreV1Api()
        self.core_v1 = core_v1
        self.apps_v1 = apps_v1 or client.AppsV1Api()
        self.batch_v1 = batch_v1 or client.BatchV1Api()
        self.apis = apis or client.ApisApi()
        self.version = version or client.VersionApi()
        self._core_resources: Optional[List[Any]] = None

    def _initialize_k8s_client(self) -> None:
        """Load in-cluster config, falling back to the local kubeconfig."""
        try:
            k8s_config.load_incluster_config()
            self.logger.info("Loaded in-cluster Kubernetes config")
        except k8s_config.ConfigException:
            try:
                k8s_config.load_kube_config()
                self.logger.info("Loaded local Kubernetes config")
            except k8s_config.ConfigException as e:
                self.logger.error("Could not load Kubernetes configuration", error=str(e))
                raise TransportError("Could not load Kubernetes configuration") from e

    # Nodes

    def read_node(self, name: str) -> client.V1Node:
        """
        Read a node by name.

        Args:
            name (str): Node name.

        Returns:
            client.V1Node: The node, including its resource version.
        """
        try:
            return self.core_v1.read_node(name=name)
        except ApiException as e:
            raise translate_api_exception(e, f"reading node {name!r}") from e

    def list_nodes(self, label_selector: str = "", limit: int = 500) -> List[client.V1Node]:
        """List nodes, following continue tokens in chunks of ``limit``."""
        nodes = []
        for page in self._paginate(self.core_v1.list_node, "listing nodes",
                                   label_selector=label_selector or None, limit=limit):
            nodes.extend(page.items)
        return nodes

    def patch_node_unschedulable(self, name: str, unschedulable: bool, server_dry_run: bool = False) -> client.V1Node:
        """
        Patch only ``spec.unschedulable`` on a node.

        Args:
            name (str): Node name.
            unschedulable (bool): Desired flag value.
            server_dry_run (bool): Ask the server to validate without persisting.

        Returns:
            client.V1Node: The node as returned by the server.
        """
        body = {"spec": {"unschedulable": unschedulable}}
        try:
            return self.core_v1.patch_node(name=name, body=body, dry_run=_dry_run_param(server_dry_run))
        except ApiException as e:
            raise translate_api_exception(e, f"patching node {name!r}") from e

    def replace_node(self, node: client.V1Node, server_dry_run: bool = False) -> client.V1Node:
        """Update the whole node; the server rejects a stale resource version with a conflict."""
        name = node.metadata.name
        try:
            return self.core_v1.replace_node(name=name, body=node, dry_run=_dry_run_param(server_dry_run))
        except ApiException as e:
            raise translate_api_exception(e, f"updating node {name!r}") from e

    # Pods

    def list_node_pods(self, node_name: str, label_selector: str = "", limit: int = 500) -> List[client.V1Pod]:
        """
        List the pods bound to a node across all namespaces.

        Args:
            node_name (str): Node name, matched through ``spec.nodeName``.
            label_selector (str): Optional pod label selector.
            limit (int): Page size for chunked listing.

        Returns:
            List[client.V1Pod]: Pods on the node.
        """
        pods = []
        for page in self._paginate(self.core_v1.list_pod_for_all_namespaces, f"listing pods on node {node_name!r}",
                                   field_selector=f"spec.nodeName={node_name}",
                                   label_selector=label_selector or None, limit=limit):
            pods.extend(page.items)
        return pods

    def read_pod(self, namespace: str, name: str) -> client.V1Pod:
        """Read a pod; raises NotFoundError once it is gone."""
        try:
            return self.core_v1.read_namespaced_pod(name=name, namespace=namespace)
        except ApiException as e:
            raise translate_api_exception(e, f"reading pod {namespace}/{name}") from e

    def delete_pod(self, pod: client.V1Pod, grace_period_seconds: int = -1, server_dry_run: bool = False) -> None:
        """
        Delete a pod directly, bypassing disruption budgets.

        The request carries a UID precondition, so a successor pod with the
        same name is never deleted; the server answers with a conflict instead.

        Args:
            pod (client.V1Pod): The pod to delete.
            grace_period_seconds (int): Termination grace period; negative uses the pod default.
            server_dry_run (bool): Ask the server to validate without persisting.
        """
        namespace, name = pod.metadata.namespace, pod.metadata.name
        grace = grace_period_seconds if grace_period_seconds >= 0 else None
        body = client.V1DeleteOptions(
            grace_period_seconds=grace,
            dry_run=[DRY_RUN_ALL] if server_dry_run else None,
            preconditions=client.V1Preconditions(uid=pod.metadata.uid) if pod.metadata.uid else None,
        )
        try:
            self.core_v1.delete_namespaced_pod(name=name, namespace=namespace, body=body)
        except ApiException as e:
            raise translate_api_exception(e, f"deleting pod {namespace}/{name}") from e

    def evict_pod(self, pod: client.V1Pod, grace_period_seconds: int = -1, server_dry_run: bool = False,
                  policy_group_version: str = "policy/v1") -> None:
        """
        Create an eviction for a pod (respects PDBs).

        Args:
            pod (client.V1Pod): The pod to evict.
            grace_period_seconds (int): Termination grace period; negative uses the pod default.
            server_dry_run (bool): Ask the server to validate without persisting.
            policy_group_version (str): Group version serving the eviction subresource.

        Raises:
            AdmissionConstraintError: The eviction would violate a disruption budget.
        """
        namespace, name = pod.metadata.namespace, pod.metadata.name
        delete_options = client.V1DeleteOptions(
            grace_period_seconds=grace_period_seconds if grace_period_seconds >= 0 else None,
            dry_run=[DRY_RUN_ALL] if server_dry_run else None,
        )
        eviction = client.V1Eviction(
            api_version=policy_group_version,
            kind="Eviction",
            metadata=client.V1ObjectMeta(name=name, namespace=namespace),
            delete_options=delete_options,
        )
        try:
            self.core_v1.create_namespaced_pod_eviction(name=name, namespace=namespace, body=eviction)
        except ApiException as e:
            raise translate_api_exception(e, f"evicting pod {namespace}/{name}") from e

    # Controllers

    def controller_exists(self, kind: str, namespace: str, name: str) -> bool:
        """Return whether the owning controller is still present.

        Kinds the drainer does not know how to read are assumed present.
        """
        readers = {
            "DaemonSet": self.apps_v1.read_namespaced_daemon_set,
            "ReplicaSet": self.apps_v1.read_namespaced_replica_set,
            "StatefulSet": self.apps_v1.read_namespaced_stateful_set,
            "Job": self.batch_v1.read_namespaced_job,
            "ReplicationController": self.core_v1.read_namespaced_replication_controller,
        }
        reader = readers.get(kind)
        if reader is None:
            return True
        try:
            reader(name=name, namespace=namespace)
            return True
        except ApiException as e:
            error = translate_api_exception(e, f"reading {kind} {namespace}/{name}")
            if isinstance(error, NotFoundError):
                return False
            raise error from e

    # Capabilities

    def _get_core_resources(self) -> List[Any]:
        if self._core_resources is None:
            try:
                self._core_resources = self.core_v1.get_api_resources().resources or []
            except ApiException as e:
                raise translate_api_exception(e, "discovering core API resources") from e
        return self._core_resources

    def eviction_group_version(self) -> Optional[str]:
        """Return the policy group version serving evictions, or None if unsupported."""
        try:
            groups = self.apis.get_api_versions().groups or []
        except ApiException as e:
            raise translate_api_exception(e, "discovering API groups") from e

        policy = next((g for g in groups if g.name == "policy"), None)
        if policy is None:
            return None
        for resource in self._get_core_resources():
            if resource.name == EVICTION_SUBRESOURCE and resource.kind == "Eviction":
                return policy.preferred_version.group_version
        return None

    def supports_dry_run(self, kind: str) -> bool:
        """Return whether the server honours dryRun on mutations of the given kind."""
        resource_name = _KIND_RESOURCES.get(kind)
        if resource_name is None:
            return False
        try:
            info = self.version.get_code()
        except ApiException as e:
            raise translate_api_exception(e, "reading server version") from e
        if _parse_version(info.major, info.minor) < _DRY_RUN_MIN_VERSION:
            return False
        for resource in self._get_core_resources():
            if resource.name == resource_name:
                return "patch" in (resource.verbs or [])
        return False

    def _paginate(self, list_func, action: str, **kwargs) -> Iterator[Any]:
        _continue = None
        while True:
            if _continue:
                kwargs["_continue"] = _continue
            try:
                page = list_func(**kwargs)
            except ApiException as e:
                raise translate_api_exception(e, action) from e
            yield page
            _continue = getattr(page.metadata, "_continue", None) if page.metadata else None
            if not _continue:
                return


def _parse_version(major: str, minor: str):
    """Parse discovery version strings such as ("1", "27+")."""
    def digits(value) -> int:
        return int("".join(ch for ch in str(value) if ch.isdigit()) or 0)

    return digits(major), digits(minor)
