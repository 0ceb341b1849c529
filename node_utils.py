#!/usr/bin/env python3
"""Target resolution for cordon, uncordon and drain."""

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence

from kubernetes import client

from errors import ValidationError
from selector_utils import validate_selector

_NODE_ALIASES = {"node", "nodes", "no"}


class ResourceKind(Enum):
    """Kinds the drainer dispatches on."""
    NODE = "Node"
    OTHER = "Other"


@dataclass
class TargetRef:
    """A resolved target. Only NODE targets carry a node object."""
    kind: ResourceKind
    name: str
    kind_name: str = "Node"
    node: Optional[client.V1Node] = None

    @classmethod
    def for_node(cls, node: client.V1Node) -> "TargetRef":
        return cls(kind=ResourceKind.NODE, name=node.metadata.name, kind_name="Node", node=node)

    @property
    def is_node(self) -> bool:
        return self.kind is ResourceKind.NODE


def _split_kind(arg: str):
    if "/" in arg:
        kind, _, name = arg.partition("/")
        if not kind or not name:
            raise ValidationError(f"arguments in resource/name form must have a single resource and name: {arg!r}")
        return kind, name
    return "node", arg


def resolve_targets(transport, names: Sequence[str], selector: str = "", chunk_size: int = 500) -> List[TargetRef]:
    """Resolve explicit names or a label selector into targets.

    Names may be bare node names or ``kind/name``. Non-node kinds resolve to
    OTHER targets without an API read. Errors from reads propagate unchanged.
    """
    names = list(names or [])
    if names and selector:
        raise ValidationError("error: cannot specify both a node name and a --selector option")
    if not names and not selector:
        raise ValidationError("error: resource name or --selector is required")

    if selector:
        validate_selector(selector, "selector")
        return [TargetRef.for_node(node) for node in transport.list_nodes(selector, limit=chunk_size)]

    targets = []
    for arg in names:
        kind, name = _split_kind(arg)
        if kind.lower() in _NODE_ALIASES:
            targets.append(TargetRef.for_node(transport.read_node(name)))
        else:
            targets.append(TargetRef(kind=ResourceKind.OTHER, name=name, kind_name=kind))
    return targets
