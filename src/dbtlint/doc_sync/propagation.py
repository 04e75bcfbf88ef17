"""Description propagation: inherit column documentation from upstream lineage.

Columns without a description inherit it from the upstream columns they are
copied from.  Nodes are visited in topological order and every lookup of an
upstream value consults the edits already planned in this run, so a chain
A -> B -> C is filled in a single pass.  When upstream candidates disagree,
the column is left alone and a conflict finding is recorded instead.

Empty docs blocks shared by several columns may be read before the column
that fills them is planned.  Components holding such blocks are planned
again with the block texts of the previous pass until they stop changing.
"""

from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING

from dbtlint.graph.model import build
from dbtlint.graph.rule_engine import (
    PROPAGATION_CONFLICT_RULE_ID,
    Finding,
    ProposedEdit,
    sort_findings,
)

if TYPE_CHECKING:
    from collections.abc import Iterable

    from dbtlint.graph.model import Column, Graph, LineageLink

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PropagationPolicy:
    """Which columns are filled and from which kinds of upstream links."""

    fill_from_upstream: bool = False
    propagate_docs_blocks: bool = True
    force_inherit: bool = False
    allow_transformed_source: bool = False

    @property
    def relations(self) -> frozenset[str]:
        if self.allow_transformed_source:
            return frozenset({"passthrough", "renamed", "transformed"})
        return frozenset({"passthrough", "renamed"})


@dataclass(frozen=True)
class FixPlan:
    """Proposed edits in application order, plus conflicts that were not resolved."""

    edits: tuple[ProposedEdit, ...] = ()
    conflicts: tuple[Finding, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.edits and not self.conflicts


@dataclass(frozen=True)
class _Value:
    """Effective documentation of a column: its text and the block it comes from."""

    text: str
    docs_block: str | None = None


@dataclass(frozen=True)
class _BlockFill:
    """A column that would write inherited text into its shared docs block."""

    node: str
    column: str
    text: str
    provenance: tuple[str, str]
    position: tuple[int, int]
    candidates: tuple[tuple[LineageLink, _Value], ...]


# ---------------------------------------------------------------------------
# Planner
# ---------------------------------------------------------------------------


class _ComponentPlanner:
    """Plans one connected component; state is private to the component.

    A docs block shared by several columns can be filled by a column that is
    visited after other readers of the block.  The component is therefore
    planned in passes: each pass sees the block texts settled by the previous
    one, and passes repeat until the set of filled blocks stops changing.
    A block whose fills disagree, or whose text shifts between passes, is
    never filled.
    """

    def __init__(self, graph: Graph, policy: PropagationPolicy, index: dict[str, int]) -> None:
        self._graph = graph
        self._policy = policy
        self._index = index
        self._resolved: dict[tuple[str, str], _Value] = {}
        self._block_text: dict[str, str] = {}
        self._fills: dict[str, list[_BlockFill]] = {}
        self.edits: list[ProposedEdit] = []
        self.conflicts: list[Finding] = []

    def current(self, node: str, column: str) -> _Value:
        """Effective value of a column, including edits planned earlier in this run."""
        planned = self._resolved.get((node, column))
        if planned is not None:
            return planned
        col = self._graph.column(node, column)
        if col.docs_block is not None:
            text = self._block_text.get(col.docs_block)
            if text is None:
                text = self._graph.docs_block(col.docs_block).text
            return _Value(text, col.docs_block)
        return _Value(col.description)

    def plan_component(self, members: Iterable[str]) -> None:
        members = tuple(members)
        settled: dict[str, str] = {}
        unstable: set[str] = set()
        while True:
            self._run_pass(members, settled)
            changed = False
            proposed: dict[str, str] = {}
            for block, fills in self._fills.items():
                texts = {fill.text for fill in fills}
                if block in unstable:
                    continue
                if len(texts) > 1 or (block in settled and settled[block] not in texts):
                    unstable.add(block)
                    changed = True
                    continue
                proposed[block] = texts.pop()
            for block in settled:
                if block not in proposed and block not in unstable:
                    unstable.add(block)
                    changed = True
            if not changed and proposed == settled:
                break
            settled = proposed

        for block in sorted(self._fills):
            fills = sorted(self._fills[block], key=lambda fill: fill.position)
            if block in unstable:
                for fill in fills:
                    self._block_conflict(block, fill, fills)
                continue
            first = fills[0]
            self._propose(
                ProposedEdit(
                    action="update_docs_block",
                    node=first.node,
                    column=first.column,
                    text=first.text,
                    docs_block=block,
                    provenance=first.provenance,
                    position=first.position,
                )
            )

    def _run_pass(self, members: tuple[str, ...], settled: dict[str, str]) -> None:
        self._resolved = {}
        self._block_text = dict(settled)
        self._fills = {}
        self.edits = []
        self.conflicts = []
        for name in members:
            for col_idx, col in enumerate(self._graph.node(name).columns):
                self._plan_column(name, col, (self._index[name], col_idx))

    def _plan_column(self, node: str, col: Column, position: tuple[int, int]) -> None:
        own = self.current(node, col.name)
        stored = None
        if col.docs_block is not None:
            stored = self._graph.docs_block(col.docs_block).text
        fills_block = stored is not None and not stored.strip()
        if own.text.strip() and not self._policy.force_inherit and not fills_block:
            return

        candidates: list[tuple[LineageLink, _Value]] = []
        for link in col.lineage:
            if link.relation not in self._policy.relations:
                continue
            value = self.current(link.node, link.column)
            if value.text.strip():
                candidates.append((link, value))
        if not candidates:
            return

        texts = {value.text for _, value in candidates}
        blocks = sorted({value.docs_block for _, value in candidates if value.docs_block})
        use_blocks = self._policy.propagate_docs_blocks
        if len(texts) > 1 or (use_blocks and len(blocks) > 1):
            self._conflict(node, col.name, candidates)
            return

        winner = _Value(texts.pop(), blocks[0] if use_blocks and blocks else None)
        provenance = next(
            (link.node, link.column)
            for link, value in candidates
            if value.text == winner.text
            and (winner.docs_block is None or value.docs_block == winner.docs_block)
        )

        if winner.docs_block is not None:
            if own.docs_block == winner.docs_block:
                return
            self._propose(
                ProposedEdit(
                    action="set_docs_reference",
                    node=node,
                    column=col.name,
                    text=winner.text,
                    docs_block=winner.docs_block,
                    provenance=provenance,
                    position=position,
                ),
                winner,
            )
            return

        if col.docs_block is not None and stored is not None:
            # The text lives in a shared block: record the fill and settle it per block.
            if stored != winner.text:
                self._fills.setdefault(col.docs_block, []).append(
                    _BlockFill(
                        node=node,
                        column=col.name,
                        text=winner.text,
                        provenance=provenance,
                        position=position,
                        candidates=tuple(candidates),
                    )
                )
            return

        if own.text == winner.text:
            return

        self._propose(
            ProposedEdit(
                action="set_description",
                node=node,
                column=col.name,
                text=winner.text,
                provenance=provenance,
                position=position,
            ),
            winner,
        )

    def _propose(self, edit: ProposedEdit, value: _Value | None = None) -> None:
        # Columns are visited once per pass, so each key is proposed at most once.
        if value is not None:
            self._resolved[(edit.node or "", edit.column or "")] = value
        self.edits.append(edit)
        logger.debug(
            "Planned %s for %s.%s from %s.%s",
            edit.action,
            edit.node,
            edit.column,
            *(edit.provenance or ("?", "?")),
        )

    def _conflict(
        self,
        node: str,
        column: str,
        candidates: Iterable[tuple[LineageLink, _Value]],
        *,
        reason: str = "upstream descriptions disagree",
        related: Iterable[str] = (),
    ) -> None:
        sources: list[str] = []
        names: list[str] = list(dict.fromkeys(related))
        for link, value in candidates:
            label = f"doc('{value.docs_block}')" if value.docs_block else repr(value.text)
            sources.append(f"{link.node}.{link.column} = {label}")
            if link.node not in names:
                names.append(link.node)
        self.conflicts.append(
            Finding(
                rule_id=PROPAGATION_CONFLICT_RULE_ID,
                severity="warn",
                node=node,
                column=column,
                message=(
                    f"Cannot inherit description for '{node}.{column}': {reason}: "
                    f"{'; '.join(sources)}"
                ),
                related=tuple(names),
            )
        )
        logger.debug("Conflict for %s.%s: %s", node, column, reason)

    def _block_conflict(self, block: str, fill: _BlockFill, fills: list[_BlockFill]) -> None:
        if len({other.text for other in fills}) > 1:
            reason = f"columns sharing docs block '{block}' inherit different text"
        else:
            reason = f"the text of docs block '{block}' depends on other propagated edits"
        self._conflict(
            fill.node,
            fill.column,
            [(link, value) for other in fills for link, value in other.candidates],
            reason=reason,
            related=[other.node for other in fills if other.node != fill.node],
        )


def plan(
    graph: Graph,
    policy: PropagationPolicy | None = None,
    *,
    max_workers: int | None = None,
) -> FixPlan:
    """Compute the description edits implied by lineage under *policy*.

    Disconnected components are planned concurrently; the merged edits are
    ordered by topological node order, then column declaration order.
    Running ``plan`` again after the edits are applied yields an empty plan.
    """
    if policy is None:
        policy = PropagationPolicy()
    if not policy.fill_from_upstream:
        return FixPlan()

    index = {name: i for i, name in enumerate(graph.topological_order())}
    components = graph.components()

    def _run(members: tuple[str, ...]) -> _ComponentPlanner:
        planner = _ComponentPlanner(graph, policy, index)
        planner.plan_component(members)
        return planner

    workers = max_workers or min(len(components), os.cpu_count() or 1) or 1
    edits: list[ProposedEdit] = []
    conflicts: list[Finding] = []
    with ThreadPoolExecutor(max_workers=workers) as pool:
        for planner in pool.map(_run, components):
            edits.extend(planner.edits)
            conflicts.extend(planner.conflicts)

    edits.sort(key=lambda e: e.position)
    logger.debug("Propagation planned %d edits, %d conflicts", len(edits), len(conflicts))
    return FixPlan(edits=tuple(edits), conflicts=tuple(sort_findings(conflicts)))


# ---------------------------------------------------------------------------
# Plan helpers
# ---------------------------------------------------------------------------


def with_structural_edits(plan: FixPlan, graph: Graph, findings: Iterable[Finding]) -> FixPlan:
    """Return *plan* extended by the edits proposed in *findings* (unsafe rules)."""
    index = {name: i for i, name in enumerate(graph.topological_order())}
    extra: list[ProposedEdit] = []
    for finding in findings:
        edit = finding.proposed_edit
        if edit is None or edit.node is None or edit.node not in graph:
            continue
        col_idx = -1
        if edit.column is not None:
            names = [col.name for col in graph.node(edit.node).columns]
            col_idx = names.index(edit.column) if edit.column in names else len(names)
        extra.append(replace(edit, position=(index[edit.node], col_idx)))
    if not extra:
        return plan
    edits = sorted([*plan.edits, *extra], key=lambda e: e.position)
    return FixPlan(edits=tuple(edits), conflicts=plan.conflicts)


def apply_plan_to_graph(graph: Graph, plan: FixPlan) -> Graph:
    """Return a new graph with *plan*'s edits applied; *graph* itself is untouched."""
    descriptions: dict[tuple[str, str], ProposedEdit] = {}
    block_texts: dict[str, str] = {}
    removed_columns: set[tuple[str, str]] = set()
    removed_nodes: set[str] = set()
    for edit in plan.edits:
        if edit.action == "update_docs_block" and edit.docs_block is not None:
            block_texts[edit.docs_block] = edit.text or ""
        elif edit.action == "remove_node" and edit.node is not None:
            removed_nodes.add(edit.node)
        elif edit.node is not None and edit.column is not None:
            if edit.action == "remove_column":
                removed_columns.add((edit.node, edit.column))
            else:
                descriptions[(edit.node, edit.column)] = edit

    def _gone(node: str, column: str) -> bool:
        return node in removed_nodes or (node, column) in removed_columns

    nodes = []
    for node in graph.nodes:
        if node.name in removed_nodes:
            continue
        columns = []
        for col in node.columns:
            if (node.name, col.name) in removed_columns:
                continue
            edit = descriptions.get((node.name, col.name))
            if edit is not None and edit.action == "set_description":
                col = replace(col, description=edit.text or "", docs_block=None)
            elif edit is not None and edit.action == "set_docs_reference":
                col = replace(col, docs_block=edit.docs_block)
            lineage = tuple(link for link in col.lineage if not _gone(link.node, link.column))
            columns.append(replace(col, lineage=lineage))
        nodes.append(replace(node, columns=tuple(columns)))

    edges = [
        edge
        for edge in graph.edges
        if edge.child not in removed_nodes and edge.parent not in removed_nodes
    ]
    blocks = [
        replace(block, text=block_texts[block.name]) if block.name in block_texts else block
        for block in graph.docs_blocks
    ]
    return build(nodes, edges, (), blocks)
