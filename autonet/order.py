"""Dependency ordering: flatten a node graph into an execution list.

The compiler consumes a list where every node appears after all the nodes
it reads from. This module produces that list from one or more roots by
depth-first post-order, visiting each layer's arguments left to right (then
any nodes named only in its inference-mode argument override).

The order is deterministic for a fixed graph — auto-generated names and
variable slots depend on it.
"""

from typing import Iterable

from .ir import Node


def build_order(roots: Node | Iterable[Node]) -> list[Node]:
    """Return all nodes reachable from `roots` in dependency order.

    Roots are visited in the order given; each node appears exactly once.
    Iterative so deep chains don't hit the recursion limit.
    """
    if isinstance(roots, Node):
        roots = [roots]

    order: list[Node] = []
    visited: set[int] = set()

    for root in roots:
        if id(root) in visited:
            continue
        # Stack entries: (node, index of next dependency to visit)
        stack: list[tuple[Node, int]] = [(root, 0)]
        visited.add(id(root))
        while stack:
            node, i = stack[-1]
            deps = node.deps
            if i < len(deps):
                stack[-1] = (node, i + 1)
                dep = deps[i]
                if id(dep) not in visited:
                    visited.add(id(dep))
                    stack.append((dep, 0))
            else:
                stack.pop()
                order.append(node)

    return order


def check_order(nodes: list[Node]) -> list[str]:
    """List dependency-order violations (empty = valid).

    Not called by the compiler, which trusts its input; useful when
    building node lists by hand.
    """
    errors = []
    seen: set[int] = set()
    for k, node in enumerate(nodes):
        for dep in node.deps:
            if id(dep) not in seen:
                errors.append(
                    f"Node {k} ({node!r}) reads {dep!r}, which does not appear before it"
                )
        seen.add(id(node))
    return errors
