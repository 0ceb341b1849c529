#!/usr/bin/env python3
"""Fleet drain: cordon, plan and remove, one node at a time."""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

from config import DrainConfig, DryRunStrategy
from cordon_utils import CordonRunner
from errors import AggregateError, DrainError, DrainInterruptedError
from eviction_utils import EvictionExecutor, RemovalReport
from logger_utils import DrainLogger
from node_utils import TargetRef
from notification_utils import DrainObserver, Notification, Verb
from pod_utils import DeletionPlanner, pod_ref
from selector_utils import validate_selector


class NodeDrainState(Enum):
    DRAINED = "drained"
    SKIPPED = "skipped"
    FAILED = "failed"
    PENDING = "pending"


@dataclass
class NodeDrainOutcome:
    """Result of draining one node."""
    node_name: str
    state: NodeDrainState
    removal: Optional[RemovalReport] = None
    error: Optional[Exception] = None
    warnings: str = ""
    duration_seconds: float = 0.0


@dataclass
class BatchDrainResult:
    """Result of a fleet drain. ``fatal_error`` is set only when the batch aborted."""
    outcomes: List[NodeDrainOutcome] = field(default_factory=list)
    fatal_error: Optional[Exception] = None

    def _names(self, state: NodeDrainState) -> List[str]:
        return [o.node_name for o in self.outcomes if o.state is state]

    @property
    def drained_nodes(self) -> List[str]:
        return self._names(NodeDrainState.DRAINED)

    @property
    def failed_nodes(self) -> List[str]:
        return self._names(NodeDrainState.FAILED)

    @property
    def skipped_nodes(self) -> List[str]:
        return self._names(NodeDrainState.SKIPPED)

    @property
    def pending_nodes(self) -> List[str]:
        return self._names(NodeDrainState.PENDING)

    @property
    def succeeded(self) -> bool:
        return self.fatal_error is None and not self.failed_nodes


class BatchDrainOrchestrator:
    """Drains targets sequentially and applies the fleet error policy."""

    def __init__(
        self,
        config: DrainConfig,
        transport,
        logger: DrainLogger,
        observer: DrainObserver,
        cordon_runner: Optional[CordonRunner] = None,
        planner: Optional[DeletionPlanner] = None,
        executor: Optional[EvictionExecutor] = None,
        stop_requested: Optional[Callable[[], bool]] = None
    ):
        self.config = config
        self.logger = logger
        self.observer = observer
        self.cordon_runner = cordon_runner or CordonRunner(config, transport, logger, observer)
        self.planner = planner or DeletionPlanner(config, transport, logger)
        self.executor = executor or EvictionExecutor(config, transport, logger, observer)
        self.stop_requested = stop_requested or (lambda: False)

    def drain_all(self, targets: List[TargetRef]) -> BatchDrainResult:
        """
        Drain every target in order.

        Args:
            targets (List[TargetRef]): Resolved targets.

        Returns:
            BatchDrainResult: Per-node outcomes; ``fatal_error`` holds the first
            fatal node error when the batch aborted.
        """
        validate_selector(self.config.pod_selector, "pod-selector")

        result = BatchDrainResult()
        if not targets:
            self.logger.info("No nodes to drain")
            return result

        continue_on_error = self.config.ignore_errors and len(targets) > 1
        self.logger.info(
            "Starting node drain",
            node_count=len(targets),
            ignore_errors=self.config.ignore_errors,
            dry_run=self.config.dry_run.value
        )

        for index, target in enumerate(targets):
            if self.stop_requested():
                result.fatal_error = DrainInterruptedError("drain interrupted by shutdown request")
                self._mark_pending(result, targets[index:])
                break

            self.logger.log_node_progress(index + 1, len(targets), target.name)
            outcome = self.drain_node(target)
            result.outcomes.append(outcome)

            if outcome.state is not NodeDrainState.FAILED:
                continue

            if continue_on_error:
                self.logger.error(
                    "error: unable to drain node, continuing command...",
                    node_name=target.name,
                    error=str(outcome.error)
                )
                continue

            self.logger.error("error: unable to drain node, aborting command...", node_name=target.name)
            result.fatal_error = outcome.error
            self._mark_pending(result, targets[index + 1:])
            break

        self.logger.info(
            "Node drain completed",
            drained=len(result.drained_nodes),
            skipped=len(result.skipped_nodes),
            failed=len(result.failed_nodes),
            pending=len(result.pending_nodes)
        )
        return result

    def _mark_pending(self, result: BatchDrainResult, remaining: List[TargetRef]) -> None:
        if not remaining:
            return
        names = [target.name for target in remaining]
        self.logger.warning("There are pending nodes to be drained", pending_nodes=names)
        result.outcomes.extend(NodeDrainOutcome(node_name=name, state=NodeDrainState.PENDING) for name in names)

    def drain_node(self, target: TargetRef) -> NodeDrainOutcome:
        """Cordon, plan and remove for a single target."""
        start_time = time.time()
        deadline = self.executor.deadline_from_now()

        def finish(state: NodeDrainState, **kwargs) -> NodeDrainOutcome:
            return NodeDrainOutcome(
                node_name=target.name,
                state=state,
                duration_seconds=time.time() - start_time,
                **kwargs
            )

        try:
            cordon = self.cordon_runner.cordon_target(target, True)
            if cordon.error is not None:
                return finish(NodeDrainState.FAILED, error=cordon.error)
            if not target.is_node:
                return finish(NodeDrainState.SKIPPED)

            plan = self.planner.plan_deletions(target.name)
            blocking = plan.errors()
            if blocking:
                raise AggregateError(blocking)

            warnings = plan.warnings()
            if warnings:
                self.logger.warning(f"WARNING: {warnings}", node_name=target.name)

            if deadline is not None and time.monotonic() >= deadline:
                raise DrainError(f"Drain did not complete within {self.config.timeout_seconds:g}s")

            report = self.executor.remove(plan.deletable, deadline)
            if report.error is not None:
                self._log_pending_pods(target.name, report.error)
                return self._failed(finish, target, report.error, removal=report, warnings=warnings)
        except Exception as e:
            return self._failed(finish, target, e)

        self.logger.log_node_action(
            "drained",
            target.name,
            pods_removed=len(report.results),
            duration_seconds=round(time.time() - start_time, 2)
        )
        self._notify(target, Verb.DRAINED)
        return finish(NodeDrainState.DRAINED, removal=report, warnings=warnings)

    def _failed(self, finish, target: TargetRef, error: Exception, **kwargs) -> NodeDrainOutcome:
        self._notify(target, Verb.FAILED, message=str(error))
        return finish(NodeDrainState.FAILED, error=error, **kwargs)

    def _log_pending_pods(self, node_name: str, error: Exception) -> None:
        """Report pods still on the node after a failed removal phase."""
        try:
            pending = self.planner.plan_deletions(node_name).deletable
        except Exception as e:
            self.logger.error(
                "Following errors occurred while getting the list of pods to delete",
                node_name=node_name,
                error=str(e)
            )
            return
        if pending:
            self.logger.error(
                "There are pending pods in node when an error occurred",
                node_name=node_name,
                error=str(error),
                pending_pods=[pod_ref(pod) for pod in pending]
            )

    def _notify(self, target: TargetRef, verb: Verb, message: Optional[str] = None) -> None:
        dry_run = None if self.config.dry_run is DryRunStrategy.NONE else self.config.dry_run.value
        self.observer.notify(Notification(
            kind=target.kind_name,
            name=target.name,
            verb=verb,
            dry_run=dry_run if verb is not Verb.FAILED else None,
            message=message,
        ))
