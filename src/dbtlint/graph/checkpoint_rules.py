"""dbt-checkpoint rule suite: descriptions, tags, tests, and unused-object detection."""

from __future__ import annotations

from typing import TYPE_CHECKING

from dbtlint.graph.rule_engine import ProposedEdit, Rule, rule_decorator

if TYPE_CHECKING:
    from collections.abc import Iterator

    from dbtlint.graph.model import Graph, Node
    from dbtlint.graph.rule_engine import Finding, RuleContext

SUITE = "dbt-checkpoint"

RULES: list[Rule] = []
rule = rule_decorator(SUITE, RULES)


@rule("check-model-has-description", "documentation", severity="error")
def check_model_has_description(graph: Graph, ctx: RuleContext) -> Iterator[Finding]:
    """Models must have a description."""
    for node in ctx.applicable_nodes(graph):
        if not graph.node_description(node.name).strip():
            yield ctx.finding(node.name, f"Model '{node.name}' has no description")


@rule("check-model-has-tags", "structure", severity="error", params={"tags": []})
def check_model_has_tags(graph: Graph, ctx: RuleContext) -> Iterator[Finding]:
    """Models must have at least one tag, drawn from ``tags`` when that list is set."""
    allowed = set(ctx.list_param("tags"))
    for node in ctx.applicable_nodes(graph):
        if not node.tags:
            yield ctx.finding(node.name, f"Model '{node.name}' has no tags")
            continue
        unknown = sorted(set(node.tags) - allowed) if allowed else []
        if unknown:
            yield ctx.finding(
                node.name,
                f"Model '{node.name}' has tags outside the allowed list: {', '.join(unknown)}",
            )


@rule(
    "check-source-has-description",
    "documentation",
    node_kinds=("source",),
    severity="error",
)
def check_source_has_description(graph: Graph, ctx: RuleContext) -> Iterator[Finding]:
    """Sources must have a description."""
    for node in ctx.applicable_nodes(graph):
        if not graph.node_description(node.name).strip():
            yield ctx.finding(node.name, f"Source '{node.name}' has no description")


@rule(
    "check-model-columns-have-desc",
    "documentation",
    node_kinds=("model", "seed", "snapshot"),
    severity="error",
    params={"relations": ["passthrough", "renamed"]},
)
def check_model_columns_have_desc(graph: Graph, ctx: RuleContext) -> Iterator[Finding]:
    """Every declared column must have a description.

    A column is marked fixable when it has a lineage link of one of the
    ``relations`` that description propagation inherits from.
    """
    relations = set(ctx.list_param("relations"))
    for node in ctx.applicable_nodes(graph):
        for col in node.columns:
            if graph.effective_description(node.name, col.name).strip():
                continue
            fixable = any(link.relation in relations for link in col.lineage)
            yield ctx.finding(
                node.name,
                f"Column '{col.name}' of '{node.name}' has no description",
                column=col.name,
                fixable=fixable,
            )


@rule(
    "check-column-desc-are-same",
    "documentation",
    node_kinds=("model", "seed", "snapshot"),
    params={"ignore": []},
    enabled=False,
)
def check_column_desc_are_same(graph: Graph, ctx: RuleContext) -> Iterator[Finding]:
    """Columns sharing a name across models must share a description."""
    ignore = set(ctx.list_param("ignore"))
    by_name: dict[str, list[tuple[str, str]]] = {}
    for node in ctx.applicable_nodes(graph):
        for col in node.columns:
            if col.name in ignore:
                continue
            text = graph.effective_description(node.name, col.name).strip()
            if text:
                by_name.setdefault(col.name, []).append((node.name, text))

    for column_name, owners in sorted(by_name.items()):
        if len({text for _, text in owners}) < 2:
            continue
        for node_name, _ in owners:
            others = tuple(other for other, _ in owners if other != node_name)
            yield ctx.finding(
                node_name,
                f"Column '{column_name}' of '{node_name}' is described differently in: "
                f"{', '.join(others)}",
                column=column_name,
                related=others,
            )


@rule("check-model-has-tests", "testing", severity="error", params={"min_tests": 1})
def check_model_has_tests(graph: Graph, ctx: RuleContext) -> Iterator[Finding]:
    """Models must have at least ``min_tests`` tests (node and column level combined)."""
    min_tests = ctx.int_param("min_tests")
    for node in ctx.applicable_nodes(graph):
        count = len(node.tests) + sum(len(col.tests) for col in node.columns)
        if count < min_tests:
            yield ctx.finding(
                node.name,
                f"Model '{node.name}' has {count} test(s), at least {min_tests} required",
            )


# ---------------------------------------------------------------------------
# Unsafe rules: these propose structural edits
# ---------------------------------------------------------------------------


def _lineage_complete(graph: Graph, node: Node) -> bool:
    """True when every child declares at least one lineage link into *node*.

    Without that, the absence of downstream links says nothing about usage.
    """
    children = graph.children_of(node.name)
    if not children:
        return False
    for child_name in children:
        child = graph.node(child_name)
        if child.kind == "exposure":
            return False
        if not any(
            link.node == node.name for col in child.columns for link in col.lineage
        ):
            return False
    return True


@rule(
    "check-unused-columns",
    "structure",
    params={"layers": ["staging", "intermediate"]},
    enabled=False,
    unsafe=True,
)
def check_unused_columns(graph: Graph, ctx: RuleContext) -> Iterator[Finding]:
    """Columns that no downstream model reads should be removed."""
    layers = set(ctx.list_param("layers"))
    for node in ctx.applicable_nodes(graph):
        if node.layer not in layers or not _lineage_complete(graph, node):
            continue
        for col in node.columns:
            if graph.downstream_columns(node.name, col.name):
                continue
            yield ctx.finding(
                node.name,
                f"Column '{col.name}' of '{node.name}' is not used by any child model",
                column=col.name,
                fixable=True,
                proposed_edit=ProposedEdit(
                    action="remove_column", node=node.name, column=col.name
                ),
            )


@rule(
    "check-unused-models",
    "structure",
    params={"layers": ["staging", "intermediate"]},
    enabled=False,
    unsafe=True,
)
def check_unused_models(graph: Graph, ctx: RuleContext) -> Iterator[Finding]:
    """Staging and intermediate models without children should be removed."""
    layers = set(ctx.list_param("layers"))
    for node in ctx.applicable_nodes(graph):
        if node.layer in layers and not graph.children_of(node.name):
            yield ctx.finding(
                node.name,
                f"Model '{node.name}' is not referenced by any node",
                fixable=True,
                proposed_edit=ProposedEdit(action="remove_node", node=node.name),
            )
