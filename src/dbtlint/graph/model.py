"""Immutable project graph: nodes, columns, reference edges, lineage, and docs blocks."""

from __future__ import annotations

import heapq
import logging
from collections import deque
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

VALID_NODE_KINDS: frozenset[str] = frozenset({"source", "seed", "model", "snapshot", "exposure"})
VALID_LAYERS: frozenset[str] = frozenset({"staging", "intermediate", "marts", "other"})
VALID_RELATIONS: frozenset[str] = frozenset({"passthrough", "renamed", "transformed"})
VALID_REF_KINDS: frozenset[str] = frozenset({"model", "source"})

# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class GraphError(Exception):
    """Raised when the supplied facts do not form a valid project graph."""


class CycleError(GraphError):
    """Raised when the dependency set contains a cycle."""

    def __init__(self, path: list[str]) -> None:
        self.path = tuple(path)
        super().__init__(f"Circular dependency detected: {' -> '.join(path)}")


class DanglingReferenceError(GraphError):
    """Raised when edges, lineage links or docs references point at nothing."""

    def __init__(self, problems: list[str]) -> None:
        self.problems = tuple(problems)
        super().__init__("; ".join(problems))


class DuplicateNameError(GraphError):
    """Raised when node names or column names within a node collide."""

    def __init__(self, problems: list[str]) -> None:
        self.problems = tuple(problems)
        super().__init__("; ".join(problems))


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LineageLink:
    """Column-level mapping to an upstream ``(node, column)`` pair."""

    node: str
    column: str
    relation: str = "passthrough"  # "passthrough" | "renamed" | "transformed"


@dataclass(frozen=True)
class Column:
    name: str
    description: str = ""
    docs_block: str | None = None
    tests: tuple[str, ...] = ()
    lineage: tuple[LineageLink, ...] = ()


@dataclass(frozen=True)
class Node:
    """A named unit in the project graph.

    Parents and children are not stored here; they are derived from the
    edge set when the :class:`Graph` is built.
    """

    name: str
    kind: str  # "source" | "seed" | "model" | "snapshot" | "exposure"
    layer: str = "other"
    materialization: str | None = None
    columns: tuple[Column, ...] = ()
    description: str = ""
    docs_block: str | None = None
    tags: tuple[str, ...] = ()
    tests: tuple[str, ...] = ()
    path: str | None = None
    patch_path: str | None = None
    access: str = "protected"
    contract_enforced: bool = False
    has_freshness: bool = False
    loader: str | None = None

    def column(self, name: str) -> Column | None:
        for col in self.columns:
            if col.name == name:
                return col
        return None

    @property
    def file_path(self) -> str | None:
        """File holding this node's descriptions (YAML patch first, then the body)."""
        return self.patch_path or self.path


@dataclass(frozen=True)
class Edge:
    """Directed reference from *child* to the *parent* it reads from."""

    child: str
    parent: str
    kind: str = "model"  # "model" | "source"
    position: int = 0


@dataclass(frozen=True)
class DocsBlock:
    name: str
    text: str = ""
    path: str | None = None


# ---------------------------------------------------------------------------
# Graph
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Graph:
    """Read-only project graph.

    Construct with :func:`build`; every index is computed once there and the
    instance is safe to share between threads.
    """

    _nodes: dict[str, Node]
    _edges: tuple[Edge, ...]
    _docs_blocks: dict[str, DocsBlock]
    _parents: dict[str, tuple[str, ...]]
    _children: dict[str, tuple[str, ...]]
    _order: tuple[str, ...]
    _ancestor_depths: dict[str, dict[str, int]]
    _downstream: dict[tuple[str, str], tuple[tuple[str, str, str], ...]] = field(
        default_factory=dict
    )

    # -- lookups -----------------------------------------------------------

    @property
    def nodes(self) -> tuple[Node, ...]:
        """All nodes in name order."""
        return tuple(self._nodes[name] for name in sorted(self._nodes))

    @property
    def edges(self) -> tuple[Edge, ...]:
        return self._edges

    @property
    def docs_blocks(self) -> tuple[DocsBlock, ...]:
        return tuple(self._docs_blocks[name] for name in sorted(self._docs_blocks))

    def __contains__(self, name: object) -> bool:
        return name in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def node(self, name: str) -> Node:
        """Return the node called *name*; raises ``KeyError`` when unknown."""
        return self._nodes[name]

    def column(self, node: str, column: str) -> Column:
        col = self._nodes[node].column(column)
        if col is None:
            raise KeyError(f"{node}.{column}")
        return col

    def docs_block(self, name: str) -> DocsBlock:
        return self._docs_blocks[name]

    def effective_description(self, node: str, column: str) -> str:
        """Return the column's docs-block text when it references one, else its description."""
        col = self.column(node, column)
        if col.docs_block is not None:
            return self._docs_blocks[col.docs_block].text
        return col.description

    def node_description(self, name: str) -> str:
        node = self._nodes[name]
        if node.docs_block is not None:
            return self._docs_blocks[node.docs_block].text
        return node.description

    # -- structural queries -----------------------------------------------

    def parents_of(self, name: str) -> tuple[str, ...]:
        return self._parents.get(name, ())

    def children_of(self, name: str) -> tuple[str, ...]:
        return self._children.get(name, ())

    def edges_from(self, child: str) -> tuple[Edge, ...]:
        """Edges whose child is *child*, in position order."""
        return tuple(
            sorted(
                (e for e in self._edges if e.child == child),
                key=lambda e: (e.position, e.parent),
            )
        )

    def upstream_columns(self, node: str, column: str) -> tuple[tuple[str, str, str], ...]:
        """Return ``(node, column, relation)`` triples the column is derived from."""
        col = self.column(node, column)
        return tuple((link.node, link.column, link.relation) for link in col.lineage)

    def downstream_columns(self, node: str, column: str) -> tuple[tuple[str, str, str], ...]:
        """Return ``(node, column, relation)`` triples derived from this column."""
        return self._downstream.get((node, column), ())

    def topological_order(self) -> tuple[str, ...]:
        """Parents before children; ties broken by node name."""
        return self._order

    def ancestors(self, name: str) -> frozenset[str]:
        return frozenset(self._ancestor_depths.get(name, {}))

    def ancestors_within(self, name: str, depth: int) -> frozenset[str]:
        """Ancestors reachable in at most *depth* hops."""
        return frozenset(a for a, d in self._ancestor_depths.get(name, {}).items() if d <= depth)

    def ancestor_distance(self, name: str, ancestor: str) -> int | None:
        return self._ancestor_depths.get(name, {}).get(ancestor)

    def descendants(self, name: str) -> frozenset[str]:
        return frozenset(n for n, depths in self._ancestor_depths.items() if name in depths)

    def components(self) -> list[tuple[str, ...]]:
        """Weakly-connected node groups, each listed in topological order.

        Nodes whose columns reference the same docs block share a component,
        since a block edit is visible to every referencing column.
        """
        parent: dict[str, str] = {name: name for name in self._nodes}

        def _find(x: str) -> str:
            while parent[x] != x:
                parent[x] = parent[parent[x]]
                x = parent[x]
            return x

        def _union(a: str, b: str) -> None:
            ra, rb = _find(a), _find(b)
            if ra != rb:
                if rb < ra:
                    ra, rb = rb, ra
                parent[rb] = ra

        for edge in self._edges:
            _union(edge.child, edge.parent)
        block_owner: dict[str, str] = {}
        for node in self._nodes.values():
            for col in node.columns:
                for link in col.lineage:
                    _union(node.name, link.node)
                if col.docs_block is not None:
                    if col.docs_block in block_owner:
                        _union(node.name, block_owner[col.docs_block])
                    else:
                        block_owner[col.docs_block] = node.name

        groups: dict[str, list[str]] = {}
        for name in self._order:
            groups.setdefault(_find(name), []).append(name)
        return [tuple(members) for _, members in sorted(groups.items())]


# ---------------------------------------------------------------------------
# Build
# ---------------------------------------------------------------------------


def _merge_lineage(
    nodes: list[Node], lineage_links: Iterable[tuple[str, str, LineageLink]]
) -> list[Node]:
    """Fold separately supplied lineage facts into their owning columns."""
    extra: dict[tuple[str, str], list[LineageLink]] = {}
    for node_name, column_name, link in lineage_links:
        extra.setdefault((node_name, column_name), []).append(link)
    if not extra:
        return nodes

    merged: list[Node] = []
    for node in nodes:
        columns: list[Column] = []
        changed = False
        for col in node.columns:
            links = extra.pop((node.name, col.name), None)
            if links:
                combined = list(col.lineage)
                for link in links:
                    if link not in combined:
                        combined.append(link)
                columns.append(replace(col, lineage=tuple(combined)))
                changed = True
            else:
                columns.append(col)
        if changed:
            node = replace(node, columns=tuple(columns))
        merged.append(node)

    if extra:
        missing = [f"lineage fact for unknown column '{n}.{c}'" for n, c in sorted(extra)]
        raise DanglingReferenceError(missing)
    return merged


def _find_cycle(deps: dict[str, set[str]]) -> list[str] | None:
    """Return the first cycle found by white/grey/black DFS, closed on its start.

    Nodes and their dependencies are visited in name order so the reported
    path is stable.
    """
    white, grey, black = 0, 1, 2
    color: dict[str, int] = dict.fromkeys(deps, white)

    for start in sorted(deps):
        if color[start] != white:
            continue
        stack: list[tuple[str, list[str]]] = [(start, sorted(deps[start]))]
        path: list[str] = [start]
        color[start] = grey
        while stack:
            current, pending = stack[-1]
            if not pending:
                color[current] = black
                stack.pop()
                path.pop()
                continue
            nxt = pending.pop(0)
            if color[nxt] == grey:
                idx = path.index(nxt)
                return [*path[idx:], nxt]
            if color[nxt] == white:
                color[nxt] = grey
                path.append(nxt)
                stack.append((nxt, sorted(deps[nxt])))
    return None


def _shortest_cycle_through(deps: dict[str, set[str]], members: list[str]) -> list[str]:
    """Shrink a discovered cycle to the shortest one through its smallest member."""
    start = min(members)
    queue: deque[list[str]] = deque([[start]])
    seen: set[str] = {start}
    while queue:
        path = queue.popleft()
        for nxt in sorted(deps[path[-1]]):
            if nxt == start:
                return [*path, start]
            if nxt not in seen:
                seen.add(nxt)
                queue.append([*path, nxt])
    return [*members, members[0]]


def build(
    nodes: Iterable[Node],
    edges: Iterable[Edge],
    lineage_links: Iterable[tuple[str, str, LineageLink]] = (),
    docs_blocks: Iterable[DocsBlock] = (),
) -> Graph:
    """Validate the supplied facts and return an immutable :class:`Graph`.

    Raises
    ------
    DuplicateNameError
        When two nodes share a name or a node declares a column twice.
    DanglingReferenceError
        When an edge, lineage link or docs reference does not resolve.
        Every problem is collected before raising.
    CycleError
        When reference edges (or node dependencies implied by lineage)
        form a cycle.  The message names the minimal cycle path.
    """
    node_list = list(nodes)
    edge_list = list(edges)
    block_list = list(docs_blocks)

    duplicates: list[str] = []
    node_map: dict[str, Node] = {}
    for node in node_list:
        if node.kind not in VALID_NODE_KINDS:
            msg = f"Node '{node.name}': invalid kind '{node.kind}'"
            raise ValueError(msg)
        if node.layer not in VALID_LAYERS:
            msg = f"Node '{node.name}': invalid layer '{node.layer}'"
            raise ValueError(msg)
        if node.name in node_map:
            duplicates.append(f"duplicate node name '{node.name}'")
            continue
        node_map[node.name] = node
        seen_cols: set[str] = set()
        for col in node.columns:
            if col.name in seen_cols:
                duplicates.append(f"duplicate column '{node.name}.{col.name}'")
            seen_cols.add(col.name)
    block_map: dict[str, DocsBlock] = {}
    for block in block_list:
        if block.name in block_map:
            duplicates.append(f"duplicate docs block '{block.name}'")
        block_map[block.name] = block
    if duplicates:
        raise DuplicateNameError(duplicates)

    node_list = _merge_lineage(list(node_map.values()), lineage_links)
    node_map = {node.name: node for node in node_list}

    # Collect every unresolved reference before failing.
    dangling: list[str] = []
    for edge in edge_list:
        if edge.kind not in VALID_REF_KINDS:
            msg = f"Edge '{edge.child}' -> '{edge.parent}': invalid kind '{edge.kind}'"
            raise ValueError(msg)
        for end in (edge.child, edge.parent):
            if end not in node_map:
                dangling.append(
                    f"edge '{edge.child}' -> '{edge.parent}' references unknown node '{end}'"
                )
    for node in node_list:
        if node.docs_block is not None and node.docs_block not in block_map:
            dangling.append(
                f"node '{node.name}' references unknown docs block '{node.docs_block}'"
            )
        for col in node.columns:
            if col.docs_block is not None and col.docs_block not in block_map:
                dangling.append(
                    f"column '{node.name}.{col.name}' references unknown docs block "
                    f"'{col.docs_block}'"
                )
            for link in col.lineage:
                if link.relation not in VALID_RELATIONS:
                    msg = (
                        f"Column '{node.name}.{col.name}': invalid relation '{link.relation}'"
                    )
                    raise ValueError(msg)
                target = node_map.get(link.node)
                if target is None or target.column(link.column) is None:
                    dangling.append(
                        f"column '{node.name}.{col.name}' lineage references unknown column "
                        f"'{link.node}.{link.column}'"
                    )
    if dangling:
        raise DanglingReferenceError(dangling)

    # Dependencies: reference edges plus node-level deps implied by lineage.
    deps: dict[str, set[str]] = {name: set() for name in node_map}
    for edge in edge_list:
        deps[edge.child].add(edge.parent)
    for node in node_list:
        for col in node.columns:
            for link in col.lineage:
                deps[node.name].add(link.node)

    cycle = _find_cycle(deps)
    if cycle is not None:
        raise CycleError(_shortest_cycle_through(deps, cycle[:-1]))

    parents: dict[str, tuple[str, ...]] = {}
    children_sets: dict[str, set[str]] = {}
    by_child: dict[str, list[Edge]] = {}
    for edge in edge_list:
        by_child.setdefault(edge.child, []).append(edge)
        children_sets.setdefault(edge.parent, set()).add(edge.child)
    for child, child_edges in by_child.items():
        ordered: list[str] = []
        for edge in sorted(child_edges, key=lambda e: (e.position, e.parent)):
            if edge.parent not in ordered:
                ordered.append(edge.parent)
        parents[child] = tuple(ordered)
    children = {name: tuple(sorted(kids)) for name, kids in children_sets.items()}

    # Kahn's algorithm with a name-ordered ready queue.
    dependents: dict[str, set[str]] = {name: set() for name in node_map}
    in_degree: dict[str, int] = {}
    for name, node_deps in deps.items():
        in_degree[name] = len(node_deps)
        for dep in node_deps:
            dependents[dep].add(name)
    ready = [name for name, count in in_degree.items() if count == 0]
    heapq.heapify(ready)
    order: list[str] = []
    while ready:
        name = heapq.heappop(ready)
        order.append(name)
        for dependent in dependents[name]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                heapq.heappush(ready, dependent)

    # Ancestor index with minimal hop distance, computed once per graph.
    ancestor_depths: dict[str, dict[str, int]] = {}
    for name in order:
        depths: dict[str, int] = {}
        for dep in deps[name]:
            depths[dep] = 1
            for ancestor, dist in ancestor_depths[dep].items():
                if dist + 1 < depths.get(ancestor, dist + 2):
                    depths[ancestor] = dist + 1
        ancestor_depths[name] = depths

    downstream: dict[tuple[str, str], list[tuple[str, str, str]]] = {}
    for name in order:
        for col in node_map[name].columns:
            for link in col.lineage:
                downstream.setdefault((link.node, link.column), []).append(
                    (name, col.name, link.relation)
                )

    logger.debug(
        "Built graph: %d nodes, %d edges, %d docs blocks",
        len(node_map),
        len(edge_list),
        len(block_map),
    )

    return Graph(
        _nodes=node_map,
        _edges=tuple(edge_list),
        _docs_blocks=block_map,
        _parents=parents,
        _children=children,
        _order=tuple(order),
        _ancestor_depths=ancestor_depths,
        _downstream={key: tuple(value) for key, value in downstream.items()},
    )
