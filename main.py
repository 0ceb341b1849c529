#!/usr/bin/env python3
"""
Node Drainer

A command line tool to cordon, uncordon and drain Kubernetes nodes.
"""

import argparse
import signal
import sys
import time
from contextlib import contextmanager
from typing import List, Mapping, Optional, Sequence

from alerts_utils import DRAIN_FAILURE_DEDUP_KEY, AlertManager, create_drain_failure_alert
from batch_utils import BatchDrainOrchestrator, BatchDrainResult
from config import DrainConfig, DryRunStrategy
from cordon_utils import CordonRunner
from errors import ValidationError
from kubernetes_utils import KubernetesTransport
from logger_utils import DrainLogger
from node_utils import resolve_targets
from notification_utils import CompositeObserver, DrainObserver, LoggingObserver, PrinterObserver

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_INTERRUPTED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="node-drainer",
        description="Cordon, uncordon and drain Kubernetes nodes."
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_common(sub):
        sub.add_argument("nodes", nargs="*", metavar="NODE", help="Node names, or kind/name")
        sub.add_argument("-l", "--selector", default=None, help="Selector (label query) to filter on")
        sub.add_argument("--dry-run", nargs="?", const="client", default=None,
                         choices=["none", "client", "server"],
                         help="Only print the object that would be sent, without sending it")

    add_common(subparsers.add_parser("cordon", help="Mark node as unschedulable"))
    add_common(subparsers.add_parser("uncordon", help="Mark node as schedulable"))

    drain = subparsers.add_parser("drain", help="Drain node in preparation for maintenance")
    add_common(drain)
    drain.add_argument("--force", action="store_true", default=None,
                       help="Continue even if there are pods not managed by a controller, "
                            "or whose controller is missing")
    drain.add_argument("--ignore-daemonsets", action="store_true", default=None,
                       help="Ignore DaemonSet-managed pods")
    drain.add_argument("--delete-emptydir-data", "--delete-local-data", dest="delete_emptydir_data",
                       action="store_true", default=None,
                       help="Continue even if there are pods using emptyDir (local data that will be deleted)")
    drain.add_argument("--disable-eviction", action="store_true", default=None,
                       help="Force drain to use delete, even if eviction is supported")
    drain.add_argument("--ignore-errors", action="store_true", default=None,
                       help="Ignore errors occurred between drain nodes in group")
    drain.add_argument("--grace-period", dest="grace_period_seconds", type=int, default=None,
                       help="Seconds given to each pod to terminate gracefully; negative uses the pod default")
    drain.add_argument("--timeout", dest="timeout_seconds", type=float, default=None,
                       help="Seconds to wait before giving up on a node, zero means infinite")
    drain.add_argument("--skip-wait-for-delete-timeout", dest="skip_wait_for_delete_timeout_seconds",
                       type=int, default=None,
                       help="If pod DeletionTimestamp is older than N seconds, skip waiting for the pod")
    drain.add_argument("--pod-selector", default=None, help="Label selector to filter pods on the node")
    drain.add_argument("--max-concurrency", type=int, default=None,
                       help="Maximum concurrent pod removals per node")
    drain.add_argument("--chunk-size", type=int, default=None,
                       help="Return large lists in chunks rather than all at once")
    return parser


class NodeDrainManager:
    """Main application class for node drain operations."""

    def __init__(self, config: DrainConfig, transport=None, observer: Optional[DrainObserver] = None,
                 alert_manager: Optional[AlertManager] = None, install_signal_handlers: bool = True):
        self.config = config
        self.logger = DrainLogger(config, "NodeDrainer", stream=sys.stderr)
        self.transport = transport
        self.observer = observer or CompositeObserver([PrinterObserver(), LoggingObserver(self.logger)])
        self.alert_manager = alert_manager
        self._shutdown_requested = False

        if install_signal_handlers:
            signal.signal(signal.SIGINT, self._signal_handler)
            signal.signal(signal.SIGTERM, self._signal_handler)

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals gracefully."""
        signal_name = signal.Signals(signum).name
        self.logger.warning(f"Received {signal_name}, finishing current node before stopping...")
        self._shutdown_requested = True

    @contextmanager
    def _application_context(self):
        """Initialize collaborators that were not injected."""
        if self.alert_manager is None:
            self.alert_manager = AlertManager(
                pagerduty_key=self.config.pagerduty_integration_key,
                logger=self.logger,
                enabled=self.config.alerts_enabled
            )
        if self.transport is None:
            self.transport = KubernetesTransport(self.logger)
        yield

    def run(self, command: str, names: Sequence[str]) -> int:
        """
        Main execution method.

        Returns:
            int: Exit code (0 for success, non-zero for failure).
        """
        start_time = time.time()
        self.logger.info(
            "Starting node drainer",
            command=command,
            dry_run=self.config.dry_run.value
        )

        try:
            with self._application_context():
                targets = resolve_targets(
                    self.transport, names, self.config.node_selector, self.config.chunk_size
                )
                if not targets:
                    self.logger.info("No resources found")
                    return EXIT_OK

                if command in ("cordon", "uncordon"):
                    return self._run_cordon(targets, desired=(command == "cordon"))
                return self._run_drain(targets, start_time)

        except ValidationError as e:
            self.logger.error(str(e))
            return EXIT_USAGE
        except KeyboardInterrupt:
            self.logger.warning("Operation interrupted by user")
            return EXIT_INTERRUPTED
        except Exception as e:
            self.logger.error(
                "Node drainer failed",
                error=str(e),
                error_type=type(e).__name__,
                total_duration_seconds=round(time.time() - start_time, 2)
            )
            return EXIT_FAILURE

    def _run_cordon(self, targets, desired: bool) -> int:
        runner = CordonRunner(self.config, self.transport, self.logger, self.observer)
        outcomes = runner.run(targets, desired)
        failed = [o.target.name for o in outcomes if not o.succeeded]
        if failed:
            self.logger.error("Some nodes could not be updated", failed_nodes=failed)
            return EXIT_FAILURE
        return EXIT_OK

    def _run_drain(self, targets, start_time: float) -> int:
        orchestrator = BatchDrainOrchestrator(
            self.config,
            self.transport,
            self.logger,
            self.observer,
            stop_requested=lambda: self._shutdown_requested
        )
        result = orchestrator.drain_all(targets)
        total_duration = round(time.time() - start_time, 2)

        if result.succeeded:
            self.logger.info(
                "Node drain completed successfully",
                drained_nodes=len(result.drained_nodes),
                total_duration_seconds=total_duration
            )
            self.alert_manager.resolve_alert(DRAIN_FAILURE_DEDUP_KEY)
            return EXIT_OK

        self._report_failure(result, total_duration)
        if self._shutdown_requested:
            return EXIT_INTERRUPTED
        # Failures tolerated by --ignore-errors leave no fatal error, as in kubectl.
        if result.fatal_error is None:
            return EXIT_OK
        return EXIT_FAILURE

    def _report_failure(self, result: BatchDrainResult, total_duration: float) -> None:
        error = str(result.fatal_error) if result.fatal_error is not None else None
        self.logger.error(
            "Node drain completed with errors",
            failed_nodes=result.failed_nodes,
            pending_nodes=result.pending_nodes,
            error=error,
            total_duration_seconds=total_duration
        )
        if self.config.dry_run is DryRunStrategy.NONE:
            create_drain_failure_alert(self.alert_manager, result.failed_nodes, result.pending_nodes, error)


def _config_from_args(args: argparse.Namespace, environ: Optional[Mapping[str, str]]) -> DrainConfig:
    overrides = {
        "node_selector": args.selector,
        "dry_run": args.dry_run,
    }
    for name in ("force", "ignore_daemonsets", "delete_emptydir_data", "disable_eviction", "ignore_errors",
                 "grace_period_seconds", "timeout_seconds", "skip_wait_for_delete_timeout_seconds",
                 "pod_selector", "max_concurrency", "chunk_size"):
        overrides[name] = getattr(args, name, None)
    config = DrainConfig.from_environment(environ).with_overrides(**overrides)
    config.validate()
    return config


def main(argv: Optional[List[str]] = None, environ: Optional[Mapping[str, str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    try:
        config = _config_from_args(args, environ)
    except ValidationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_USAGE

    manager = NodeDrainManager(config)
    return manager.run(args.command, args.nodes)


if __name__ == "__main__":
    sys.exit(main())
