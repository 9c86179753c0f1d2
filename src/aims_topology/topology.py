from typing import Iterable, Iterator, Sequence

import structlog

from .models import Relationship, TopologyNode

logger = structlog.get_logger(__name__)

DEFAULT_MAX_FLATTEN_DEPTH = 64


def flatten_topology(
    nodes: Sequence[TopologyNode],
    relationship: Relationship | str,
    *,
    max_depth: int = DEFAULT_MAX_FLATTEN_DEPTH,
    ancestors: Iterable[str] = (),
) -> list[str]:
    """Flatten a topology into account ids by pre-order traversal along one axis.

    Each node contributes its own id followed by the ids beneath it, before moving
    on to its next sibling. Accounts reachable along several paths appear once per
    path. An id that reappears on its own ancestor path, or a node below
    ``max_depth``, is cut from the output together with its subtree.
    """
    if max_depth < 0:
        raise ValueError("max_depth must not be negative")

    axis = Relationship.coerce(relationship)
    return _flatten(nodes, axis, max_depth, set(ancestors))


def _flatten(
    nodes: Sequence[TopologyNode],
    axis: Relationship,
    max_depth: int,
    on_path: set[str],
) -> list[str]:
    """Walk the levels with an explicit stack of child iterators, one per open node."""
    ids: list[str] = []
    stack: list[tuple[Iterator[TopologyNode], str | None]] = [(iter(nodes), None)]

    while stack:
        children, owner = stack[-1]
        node = next(children, None)

        if node is None:
            stack.pop()
            if owner is not None:
                on_path.discard(owner)
            continue

        if node.id in on_path:
            logger.debug("topology_cycle_cut", account_id=node.id, relationship=axis.value)
            continue

        if len(stack) > max_depth:
            logger.debug("topology_depth_cut", account_id=node.id, relationship=axis.value)
            continue

        ids.append(node.id)
        on_path.add(node.id)
        stack.append((iter(node.children(axis)), node.id))

    return ids
