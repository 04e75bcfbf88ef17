"""Fix applier: turn a fix plan into ordered edit intents for a structure-preserving writer."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from dbtlint.graph.rule_engine import (
    PROPAGATION_CONFLICT_RULE_ID,
    UNSAFE_EDIT_REJECTED_RULE_ID,
    Finding,
    ProposedEdit,
    sort_findings,
)

if TYPE_CHECKING:
    from dbtlint.doc_sync.propagation import FixPlan
    from dbtlint.graph.model import Graph

logger = logging.getLogger(__name__)

VALID_SAFETY_MODES: frozenset[str] = frozenset({"safe", "unsafe"})


@dataclass(frozen=True)
class EditIntent:
    """One change for the external writer, naming its file-relative target."""

    action: str
    node: str | None
    column: str | None
    file_path: str | None
    text: str | None = None
    docs_block: str | None = None
    provenance: tuple[str, str] | None = None

    def to_dict(self) -> dict[str, object]:
        data: dict[str, object] = {
            "action": self.action,
            "file_path": self.file_path,
            "node": self.node,
            "column": self.column,
        }
        if self.docs_block is not None:
            data["docs_block"] = self.docs_block
        if self.text is not None:
            data["text"] = self.text
        if self.provenance is not None:
            data["provenance"] = {"node": self.provenance[0], "column": self.provenance[1]}
        return data


ApplyResult = list[EditIntent | Finding]


def _target_file(edit: ProposedEdit, graph: Graph | None) -> str | None:
    if graph is None:
        return None
    if edit.action == "update_docs_block" and edit.docs_block is not None:
        return graph.docs_block(edit.docs_block).path
    if edit.node is not None and edit.node in graph:
        return graph.node(edit.node).file_path
    return None


def _describe(edit: ProposedEdit) -> str:
    if edit.action == "update_docs_block":
        return f"docs block '{edit.docs_block}'"
    if edit.column is None:
        return f"'{edit.node}'"
    return f"'{edit.node}.{edit.column}'"


def _conflict(edit: ProposedEdit, prior: ProposedEdit) -> Finding:
    return Finding(
        rule_id=PROPAGATION_CONFLICT_RULE_ID,
        severity="warn",
        node=edit.node,
        column=edit.column,
        message=(
            f"Conflicting edits for {_describe(edit)}: {prior.action} "
            f"{prior.text or prior.docs_block or ''!r} vs {edit.action} "
            f"{edit.text or edit.docs_block or ''!r}; neither was applied"
        ),
    )


def apply(
    plan: FixPlan,
    safety_mode: str = "safe",
    *,
    graph: Graph | None = None,
) -> ApplyResult:
    """Validate *plan* against *safety_mode* and return intents followed by findings.

    Parameters
    ----------
    plan:
        The fix plan, usually from :func:`~dbtlint.doc_sync.propagation.plan`
        extended with structural edits from unsafe rules.
    safety_mode:
        ``"safe"`` emits only description and docs edits; structural edits
        are downgraded to ``unsafe-edit-rejected`` findings.  ``"unsafe"``
        emits structural edits too.
    graph:
        When given, used to resolve each intent's ``file_path``.

    Returns
    -------
    list
        :class:`EditIntent` objects in topological node / column declaration
        order, then :class:`Finding` objects (plan conflicts, rejected unsafe
        edits, and duplicate-key conflicts) in standard finding order.
    """
    if safety_mode not in VALID_SAFETY_MODES:
        msg = f"invalid safety mode '{safety_mode}', must be one of {sorted(VALID_SAFETY_MODES)}"
        raise ValueError(msg)

    findings: list[Finding] = list(plan.conflicts)
    accepted: dict[tuple[str, str | None], ProposedEdit] = {}
    rejected_keys: set[tuple[str, str | None]] = set()
    removed_nodes: set[str] = set()

    for edit in sorted(plan.edits, key=lambda e: e.position):
        if edit.structural and safety_mode == "safe":
            findings.append(
                Finding(
                    rule_id=UNSAFE_EDIT_REJECTED_RULE_ID,
                    severity="warn",
                    node=edit.node,
                    column=edit.column,
                    message=(
                        f"Skipped unsafe edit {edit.action} on {_describe(edit)}; "
                        f"rerun in unsafe mode to apply it"
                    ),
                    fixable=True,
                )
            )
            continue

        key = edit.key
        if key in rejected_keys:
            continue
        prior = accepted.get(key)
        if prior is None and edit.node in removed_nodes and edit.action != "update_docs_block":
            prior = accepted.get((edit.node or "", None))
        if prior is not None:
            if prior.action == edit.action and prior.text == edit.text and (
                prior.docs_block == edit.docs_block
            ):
                continue
            findings.append(_conflict(edit, prior))
            del accepted[prior.key]
            rejected_keys.update({prior.key, key})
            continue

        accepted[key] = edit
        if edit.action == "remove_node" and edit.node is not None:
            removed_nodes.add(edit.node)

    intents: list[EditIntent] = [
        EditIntent(
            action=edit.action,
            node=edit.node,
            column=edit.column,
            file_path=_target_file(edit, graph),
            text=edit.text,
            docs_block=edit.docs_block,
            provenance=edit.provenance,
        )
        for edit in sorted(accepted.values(), key=lambda e: e.position)
    ]
    logger.debug(
        "Applier (%s): %d intents, %d findings", safety_mode, len(intents), len(findings)
    )
    return [*intents, *sort_findings(findings)]
