#!/usr/bin/env python3
"""Configuration management for the node drainer."""

import os
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Mapping, Optional

from errors import ValidationError
from selector_utils import validate_selector


class DryRunStrategy(Enum):
    """How mutating calls are issued."""
    NONE = "none"
    CLIENT = "client"
    SERVER = "server"

    @classmethod
    def parse(cls, value: Any) -> "DryRunStrategy":
        if isinstance(value, cls):
            return value
        # kubectl accepts a bare --dry-run as "client"
        normalized = str(value if value is not None else "none").strip().lower()
        if normalized in ("", "false", "none"):
            return cls.NONE
        if normalized in ("true", "client"):
            return cls.CLIENT
        if normalized == "server":
            return cls.SERVER
        raise ValidationError(
            f"Invalid dry-run value ({value}). Must be \"none\", \"server\", or \"client\"."
        )


def _env_bool(environ: Mapping[str, str], name: str, default: bool = False) -> bool:
    raw = environ.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class DrainConfig:
    """Immutable drain policy, built once per invocation."""

    # Eligibility policy
    force: bool = False
    ignore_daemonsets: bool = False
    delete_emptydir_data: bool = False

    # Removal policy
    disable_eviction: bool = False
    grace_period_seconds: int = -1
    timeout_seconds: float = 0
    skip_wait_for_delete_timeout_seconds: int = 0
    max_concurrency: int = 10

    # Fleet policy
    ignore_errors: bool = False

    # Selection
    pod_selector: str = ""
    node_selector: str = ""
    chunk_size: int = 500

    dry_run: DryRunStrategy = DryRunStrategy.NONE

    # Retry Configuration
    eviction_retry_seconds: float = 5.0
    eviction_max_backoff_seconds: float = 30.0
    poll_interval_seconds: float = 1.0

    # Logging Configuration
    log_level: str = "INFO"
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    # Alerting Configuration
    pagerduty_integration_key: Optional[str] = None
    alerts_enabled: bool = True

    @classmethod
    def from_environment(cls, environ: Optional[Mapping[str, str]] = None) -> "DrainConfig":
        """Create configuration from environment variables."""
        environ = os.environ if environ is None else environ
        try:
            return cls(
                force=_env_bool(environ, 'DRAIN_FORCE'),
                ignore_daemonsets=_env_bool(environ, 'DRAIN_IGNORE_DAEMONSETS'),
                delete_emptydir_data=_env_bool(environ, 'DRAIN_DELETE_EMPTYDIR_DATA'),
                disable_eviction=_env_bool(environ, 'DRAIN_DISABLE_EVICTION'),
                ignore_errors=_env_bool(environ, 'DRAIN_IGNORE_ERRORS'),
                grace_period_seconds=int(environ.get('DRAIN_GRACE_PERIOD_SECONDS', '-1')),
                timeout_seconds=float(environ.get('DRAIN_TIMEOUT_SECONDS', '0')),
                skip_wait_for_delete_timeout_seconds=int(environ.get('DRAIN_SKIP_WAIT_FOR_DELETE_TIMEOUT', '0')),
                max_concurrency=int(environ.get('DRAIN_MAX_CONCURRENCY', '10')),
                pod_selector=environ.get('DRAIN_POD_SELECTOR', ''),
                node_selector=environ.get('DRAIN_NODE_SELECTOR', ''),
                chunk_size=int(environ.get('DRAIN_CHUNK_SIZE', '500')),
                dry_run=DryRunStrategy.parse(environ.get('DRAIN_DRY_RUN', 'none')),
                eviction_retry_seconds=float(environ.get('DRAIN_EVICTION_RETRY_SECONDS', '5')),
                eviction_max_backoff_seconds=float(environ.get('DRAIN_EVICTION_MAX_BACKOFF_SECONDS', '30')),
                poll_interval_seconds=float(environ.get('DRAIN_POLL_INTERVAL_SECONDS', '1')),
                log_level=environ.get('LOG_LEVEL', 'INFO').upper(),
                pagerduty_integration_key=environ.get('PAGERDUTY_INTEGRATION_KEY') or None,
                alerts_enabled=_env_bool(environ, 'ALERTS_ENABLED', default=True),
            )
        except ValueError as e:
            raise ValidationError(f"Invalid numeric configuration value: {e}") from e

    def with_overrides(self, **overrides: Any) -> "DrainConfig":
        """Return a copy with the given non-None fields replaced."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        if 'dry_run' in changes:
            changes['dry_run'] = DryRunStrategy.parse(changes['dry_run'])
        return replace(self, **changes)

    @property
    def timeout_enabled(self) -> bool:
        return self.timeout_seconds > 0

    def validate(self) -> None:
        """Validate configuration values."""
        if self.max_concurrency <= 0:
            raise ValidationError("max_concurrency must be positive")
        if self.chunk_size <= 0:
            raise ValidationError("chunk_size must be positive")
        if self.timeout_seconds < 0:
            raise ValidationError("timeout_seconds must be non-negative")
        if self.skip_wait_for_delete_timeout_seconds < 0:
            raise ValidationError("skip_wait_for_delete_timeout_seconds must be non-negative")
        if self.eviction_retry_seconds <= 0:
            raise ValidationError("eviction_retry_seconds must be positive")
        if self.poll_interval_seconds <= 0:
            raise ValidationError("poll_interval_seconds must be positive")
        if not isinstance(self.dry_run, DryRunStrategy):
            raise ValidationError(f"Invalid dry-run value ({self.dry_run})")
        validate_selector(self.pod_selector, "pod-selector")
        validate_selector(self.node_selector, "selector")
