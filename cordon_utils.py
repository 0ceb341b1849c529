#!/usr/bin/env python3
"""Cordon and uncordon: toggling a node's schedulable flag."""

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from kubernetes import client

from config import DrainConfig, DryRunStrategy
from errors import ConflictError, PatchUnsupportedError, ServerDryRunUnsupportedError
from logger_utils import DrainLogger, retry_with_logging
from node_utils import ResourceKind, TargetRef
from notification_utils import DrainObserver, Notification, Verb

CONFLICT_RETRIES = 5
CONFLICT_RETRY_DELAY_SECONDS = 1


class CommitStep(Enum):
    PATCH = "patch"
    REPLACE = "replace"


@dataclass
class CordonCommitResult:
    """Outcome of committing a flag change.

    The patch step always runs first. The replace step only runs when the patch
    media type was rejected, and its error is kept separate from the patch error.
    """
    steps: List[CommitStep] = field(default_factory=list)
    patch_error: Optional[Exception] = None
    replace_error: Optional[Exception] = None
    node: Optional[client.V1Node] = None

    @property
    def error(self) -> Optional[Exception]:
        if CommitStep.REPLACE in self.steps:
            return self.replace_error
        return self.patch_error

    @property
    def succeeded(self) -> bool:
        return self.error is None


class CordonHelper:
    """Holds one node and the desired value of its unschedulable flag."""

    def __init__(self, node: client.V1Node, logger: Optional[DrainLogger] = None):
        self.node = node
        self.logger = logger
        self.desired: Optional[bool] = None
        self.updated: Optional[client.V1Node] = None

    @property
    def name(self) -> str:
        return self.node.metadata.name

    @staticmethod
    def is_unschedulable(node: client.V1Node) -> bool:
        return bool(node.spec and node.spec.unschedulable)

    def update_if_required(self, desired: bool) -> bool:
        """Stage ``desired`` on a local copy; return False if the node already matches."""
        self.desired = desired
        if self.is_unschedulable(self.node) == desired:
            return False
        self.updated = copy.deepcopy(self.node)
        if self.updated.spec is None:
            self.updated.spec = client.V1NodeSpec()
        self.updated.spec.unschedulable = desired
        return True

    def commit(self, transport, server_dry_run: bool = False) -> CordonCommitResult:
        """Send the staged change: patch first, read-modify-write if patching is unsupported."""
        if self.desired is None:
            raise RuntimeError("update_if_required must be called before commit")

        result = CordonCommitResult()
        result.steps.append(CommitStep.PATCH)
        try:
            result.node = transport.patch_node_unschedulable(self.name, self.desired, server_dry_run)
            return result
        except PatchUnsupportedError as e:
            result.patch_error = e
        except Exception as e:
            result.patch_error = e
            return result

        if self.logger:
            self.logger.warning(
                "Patch rejected, falling back to update",
                node_name=self.name,
                error=str(result.patch_error)
            )
        result.steps.append(CommitStep.REPLACE)
        try:
            result.node = self._read_modify_write(transport, server_dry_run)
        except Exception as e:
            result.replace_error = e
        return result

    @retry_with_logging(
        max_retries=CONFLICT_RETRIES,
        delay_seconds=CONFLICT_RETRY_DELAY_SECONDS,
        retry_on=(ConflictError,)
    )
    def _read_modify_write(self, transport, server_dry_run: bool) -> client.V1Node:
        fresh = transport.read_node(self.name)
        if fresh.spec is None:
            fresh.spec = client.V1NodeSpec()
        fresh.spec.unschedulable = self.desired
        return transport.replace_node(fresh, server_dry_run)


@dataclass
class CordonOutcome:
    target: TargetRef
    verb: Optional[Verb] = None
    error: Optional[Exception] = None
    changed: bool = False

    @property
    def succeeded(self) -> bool:
        return self.error is None


class CordonRunner:
    """Applies cordon or uncordon to resolved targets and reports each outcome."""

    def __init__(self, config: DrainConfig, transport, logger: DrainLogger, observer: DrainObserver):
        self.config = config
        self.transport = transport
        self.logger = logger
        self.observer = observer

    @property
    def _dry_run_label(self) -> Optional[str]:
        if self.config.dry_run is DryRunStrategy.NONE:
            return None
        return self.config.dry_run.value

    def run(self, targets: List[TargetRef], desired: bool) -> List[CordonOutcome]:
        """Cordon (desired=True) or uncordon every target. Failures do not stop the loop."""
        return [self.cordon_target(target, desired) for target in targets]

    def cordon_target(self, target: TargetRef, desired: bool) -> CordonOutcome:
        handlers = {
            ResourceKind.NODE: self._cordon_node,
            ResourceKind.OTHER: self._skip_target,
        }
        return handlers[target.kind](target, desired)

    def _skip_target(self, target: TargetRef, desired: bool) -> CordonOutcome:
        self._notify(target, Verb.SKIPPED)
        return CordonOutcome(target=target, verb=Verb.SKIPPED)

    def _cordon_node(self, target: TargetRef, desired: bool) -> CordonOutcome:
        action = "cordon" if desired else "uncordon"
        helper = CordonHelper(target.node, self.logger)

        if not helper.update_if_required(desired):
            verb = Verb.already(desired)
            self._notify(target, verb)
            return CordonOutcome(target=target, verb=verb)

        if self.config.dry_run is not DryRunStrategy.CLIENT:
            server_dry_run = self.config.dry_run is DryRunStrategy.SERVER
            if server_dry_run and not self.transport.supports_dry_run("Node"):
                error = ServerDryRunUnsupportedError("Node")
            else:
                result = helper.commit(self.transport, server_dry_run)
                error = result.error
                if error is None and result.node is not None and not server_dry_run:
                    target.node = result.node
            if error is not None:
                self.logger.error(f"error: unable to {action} node", node_name=target.name, error=str(error))
                self._notify(target, Verb.FAILED, message=str(error))
                return CordonOutcome(target=target, verb=Verb.FAILED, error=error)

        verb = Verb.changed(desired)
        self.logger.log_node_action(verb.value, target.name, dry_run=self.config.dry_run.value)
        self._notify(target, verb)
        return CordonOutcome(target=target, verb=verb, changed=True)

    def _notify(self, target: TargetRef, verb: Verb, message: Optional[str] = None) -> None:
        self.observer.notify(Notification(
            kind=target.kind_name,
            name=target.name,
            verb=verb,
            dry_run=self._dry_run_label if verb is not Verb.FAILED else None,
            message=message,
        ))
