from __future__ import annotations

from collections.abc import Iterable, Mapping

from tenantcore.core.errors import RoleHierarchyCycleError


class RoleGraph:
    """Role hierarchy as an explicit DAG of child -> parents edges.

    Multiple parents are allowed. Construction rejects cycles, so every graph
    instance has a topological order in which parents precede their children.
    """

    def __init__(self, parents: Mapping[str, Iterable[str]], roles: Iterable[str] = ()) -> None:
        nodes: dict[str, frozenset[str]] = {role: frozenset() for role in roles}
        for child, edges in parents.items():
            nodes[child] = frozenset(edges)
            for parent in nodes[child]:
                nodes.setdefault(parent, frozenset())
        self._parents = nodes
        self._order = _topological_order(nodes)

    @classmethod
    def from_edges(cls, edges: Iterable[tuple[str, str]], roles: Iterable[str] = ()) -> RoleGraph:
        # Build from (child, parent) pairs as stored in role_parents.
        parents: dict[str, set[str]] = {}
        for child, parent in edges:
            parents.setdefault(child, set()).add(parent)
        return cls(parents, roles)

    @property
    def roles(self) -> frozenset[str]:
        return frozenset(self._parents)

    def parents(self, role: str) -> frozenset[str]:
        return self._parents.get(role, frozenset())

    def ancestors(self, role: str) -> frozenset[str]:
        # Transitive parents, excluding the role itself.
        seen: set[str] = set()
        stack = list(self.parents(role))
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self.parents(current))
        return frozenset(seen)

    def topological_order(self) -> tuple[str, ...]:
        return self._order

    def would_create_cycle(self, child: str, parent: str) -> bool:
        # Adding child -> parent closes a loop when child is already an ancestor of parent.
        return child == parent or child in self.ancestors(parent)

    def with_edge(self, child: str, parent: str) -> RoleGraph:
        if self.would_create_cycle(child, parent):
            raise RoleHierarchyCycleError(f"Linking {child} to parent {parent} would create a cycle")
        parents = {role: set(edges) for role, edges in self._parents.items()}
        parents.setdefault(child, set()).add(parent)
        return RoleGraph(parents)


def _topological_order(parents: Mapping[str, frozenset[str]]) -> tuple[str, ...]:
    # Kahn's algorithm over parent edges; sorted queues keep the order deterministic.
    remaining = {role: set(edges) for role, edges in parents.items()}
    children: dict[str, set[str]] = {role: set() for role in parents}
    for child, edges in parents.items():
        for parent in edges:
            children[parent].add(child)
    ready = sorted(role for role, edges in remaining.items() if not edges)
    order: list[str] = []
    while ready:
        role = ready.pop(0)
        order.append(role)
        for child in sorted(children[role]):
            remaining[child].discard(role)
            if not remaining[child]:
                ready.append(child)
        ready.sort()
    if len(order) != len(parents):
        stuck = sorted(role for role, edges in remaining.items() if edges)
        raise RoleHierarchyCycleError(f"Role hierarchy contains a cycle involving: {', '.join(stuck)}")
    return tuple(order)
