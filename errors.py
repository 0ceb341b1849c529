#!/usr/bin/env python3
"""Error taxonomy for node drain operations."""

from typing import List, Optional, Sequence


class DrainError(Exception):
    """Base class for all drain engine errors."""


class ValidationError(DrainError):
    """Malformed selector or mutually exclusive options. Never retried."""


class TransportError(DrainError):
    """Kubernetes API call failed with an unclassified status."""

    def __init__(self, message: str, status: Optional[int] = None, reason: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.reason = reason


class NotFoundError(TransportError):
    """Object is gone. Removal paths treat this as success."""


class ConflictError(TransportError):
    """Version token mismatch on patch or update."""


class PatchUnsupportedError(TransportError):
    """The API surface rejected the patch media type."""


class AdmissionConstraintError(TransportError):
    """Eviction rejected by an admission or disruption budget constraint (429)."""


class NamespaceTerminatingError(TransportError):
    """Eviction forbidden because the pod's namespace is being deleted."""


class ServerDryRunUnsupportedError(DrainError):
    """Server-side dry-run requested for a kind that does not support it."""

    def __init__(self, kind: str):
        super().__init__(f"{kind} doesn't support dry-run")
        self.kind = kind


class BlockingEligibilityError(DrainError):
    """A workload category prevents removal without the matching override."""

    def __init__(self, reason: str, pods: Sequence[str]):
        self.reason = reason
        self.pods = list(pods)
        super().__init__(f"cannot delete {reason}: {', '.join(self.pods)}")


class DisappearanceTimeoutError(DrainError):
    """Removal was accepted but the pod was not confirmed gone before the deadline."""

    def __init__(self, namespace: str, name: str, timeout_seconds: float):
        super().__init__(
            f"pod {namespace}/{name} was not deleted within {timeout_seconds:g}s (global timeout reached)"
        )
        self.namespace = namespace
        self.name = name
        self.timeout_seconds = timeout_seconds


class DrainInterruptedError(DrainError):
    """Drain stopped early because a shutdown was requested."""


class AggregateError(DrainError):
    """Several independent failures reported as one error."""

    def __init__(self, errors: Sequence[Exception]):
        self.errors: List[Exception] = list(errors)
        super().__init__(self._format())

    def _format(self) -> str:
        if len(self.errors) == 1:
            return str(self.errors[0])
        return "[" + ", ".join(str(e) for e in self.errors) + "]"

    def __len__(self) -> int:
        return len(self.errors)


def aggregate(errors: Sequence[Exception]) -> Optional[AggregateError]:
    """Combine errors into one AggregateError, or None if there are none."""
    errors = [e for e in errors if e is not None]
    if not errors:
        return None
    return AggregateError(errors)
