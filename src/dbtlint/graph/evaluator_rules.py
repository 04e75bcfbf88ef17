"""Project-evaluator rule suite: modeling, coverage, structure, performance, governance."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import TYPE_CHECKING

from dbtlint.graph.rule_engine import Rule, RuleEvaluationError, rule_decorator

if TYPE_CHECKING:
    from collections.abc import Iterator

    from dbtlint.graph.model import Graph, Node
    from dbtlint.graph.rule_engine import Finding, RuleContext

SUITE = "project-evaluator"

RULES: list[Rule] = []
rule = rule_decorator(SUITE, RULES)

_MODEL_LIKE: frozenset[str] = frozenset({"model", "snapshot"})
_PRIMARY_KEY_TESTS: tuple[str, ...] = (
    "unique_combination_of_columns",
    "dbt_utils.unique_combination_of_columns",
)


def _coverage_threshold(ctx: RuleContext) -> float:
    threshold = ctx.float_param("min_coverage")
    if not (0.0 <= threshold <= 1.0):
        msg = "parameter 'min_coverage' must be between 0.0 and 1.0"
        raise RuleEvaluationError(msg)
    return threshold


def _has_tests(node: Node) -> bool:
    return bool(node.tests) or any(col.tests for col in node.columns)


# ---------------------------------------------------------------------------
# Modeling
# ---------------------------------------------------------------------------


@rule(
    "staging_dependent_on_staging",
    "modeling",
    node_kinds=("model", "snapshot"),
    params={"layers": ["staging"]},
)
def staging_dependent_on_staging(graph: Graph, ctx: RuleContext) -> Iterator[Finding]:
    """Models in a self-restricted layer must not reference models of the same layer."""
    layers = set(ctx.list_param("layers"))
    for node in ctx.applicable_nodes(graph):
        if node.layer not in layers:
            continue
        for parent_name in graph.parents_of(node.name):
            parent = graph.node(parent_name)
            if parent.kind in _MODEL_LIKE and parent.layer == node.layer:
                yield ctx.finding(
                    node.name,
                    f"{node.layer.capitalize()} model '{node.name}' depends on "
                    f"{parent.layer} model '{parent_name}'",
                    related=(parent_name,),
                )


@rule("staging_dependent_on_downstream_models", "modeling", node_kinds=("model", "snapshot"))
def staging_dependent_on_downstream_models(graph: Graph, ctx: RuleContext) -> Iterator[Finding]:
    """Staging models must not reference intermediate or marts models."""
    for node in ctx.applicable_nodes(graph):
        if node.layer != "staging":
            continue
        for parent_name in graph.parents_of(node.name):
            parent = graph.node(parent_name)
            if parent.layer in ("intermediate", "marts"):
                yield ctx.finding(
                    node.name,
                    f"Staging model '{node.name}' depends on {parent.layer} model "
                    f"'{parent_name}'",
                    related=(parent_name,),
                )


@rule("marts_or_intermediate_dependent_on_source", "modeling")
def marts_or_intermediate_dependent_on_source(
    graph: Graph, ctx: RuleContext
) -> Iterator[Finding]:
    """Intermediate and marts models must read sources through staging models."""
    for node in ctx.applicable_nodes(graph):
        if node.layer not in ("intermediate", "marts"):
            continue
        for parent_name in graph.parents_of(node.name):
            if graph.node(parent_name).kind == "source":
                yield ctx.finding(
                    node.name,
                    f"{node.layer.capitalize()} model '{node.name}' selects directly "
                    f"from source '{parent_name}'",
                    related=(parent_name,),
                )


@rule("source_fanout", "modeling", node_kinds=("source",))
def source_fanout(graph: Graph, ctx: RuleContext) -> Iterator[Finding]:
    """A source should feed exactly one staging model."""
    for node in ctx.applicable_nodes(graph):
        consumers = tuple(
            child for child in graph.children_of(node.name) if graph.node(child).kind == "model"
        )
        if len(consumers) > 1:
            yield ctx.finding(
                node.name,
                f"Source '{node.name}' is referenced by {len(consumers)} models: "
                f"{', '.join(consumers)}",
                related=consumers,
            )


@rule("model_fanout", "modeling", params={"max_children": 3})
def model_fanout(graph: Graph, ctx: RuleContext) -> Iterator[Finding]:
    """A model should not feed more direct children than the configured threshold."""
    max_children = ctx.int_param("max_children")
    for node in ctx.applicable_nodes(graph):
        children = graph.children_of(node.name)
        if len(children) > max_children:
            yield ctx.finding(
                node.name,
                f"Model '{node.name}' has {len(children)} direct children "
                f"(threshold {max_children})",
                related=children,
            )


@rule("rejoining_of_upstream_concepts", "modeling", params={"max_depth": 3})
def rejoining_of_upstream_concepts(graph: Graph, ctx: RuleContext) -> Iterator[Finding]:
    """Two parents of a model should not share an upstream node within a few hops."""
    max_depth = ctx.int_param("max_depth")
    for node in ctx.applicable_nodes(graph):
        parents = graph.parents_of(node.name)
        if len(parents) < 2:
            continue
        closed = {p: graph.ancestors_within(p, max_depth) | {p} for p in parents}
        for i, first in enumerate(parents):
            for second in parents[i + 1 :]:
                shared = sorted(closed[first] & closed[second])
                if not shared:
                    continue
                yield ctx.finding(
                    node.name,
                    f"Parents '{first}' and '{second}' of '{node.name}' rejoin upstream "
                    f"concept(s) {', '.join(shared)}",
                    related=(first, second, *shared),
                )


@rule("direct_join_to_source", "modeling")
def direct_join_to_source(graph: Graph, ctx: RuleContext) -> Iterator[Finding]:
    """A model should not reference both a source and another model."""
    for node in ctx.applicable_nodes(graph):
        parents = graph.parents_of(node.name)
        sources = tuple(p for p in parents if graph.node(p).kind == "source")
        others = tuple(p for p in parents if graph.node(p).kind != "source")
        if sources and others:
            yield ctx.finding(
                node.name,
                f"Model '{node.name}' joins source(s) {', '.join(sources)} directly "
                f"with model(s) {', '.join(others)}",
                related=sources,
            )


@rule("multiple_sources_joined", "modeling")
def multiple_sources_joined(graph: Graph, ctx: RuleContext) -> Iterator[Finding]:
    """A model should not reference more than one source."""
    for node in ctx.applicable_nodes(graph):
        sources = tuple(p for p in graph.parents_of(node.name) if graph.node(p).kind == "source")
        if len(sources) > 1:
            yield ctx.finding(
                node.name,
                f"Model '{node.name}' joins {len(sources)} sources: {', '.join(sources)}",
                related=sources,
            )


@rule("root_models", "modeling")
def root_models(graph: Graph, ctx: RuleContext) -> Iterator[Finding]:
    """Every model should depend on at least one source, seed, or model."""
    for node in ctx.applicable_nodes(graph):
        if not graph.parents_of(node.name):
            yield ctx.finding(node.name, f"Model '{node.name}' has no parents")


# ---------------------------------------------------------------------------
# Documentation & testing
# ---------------------------------------------------------------------------


@rule("documentation_coverage", "documentation", params={"min_coverage": 1.0})
def documentation_coverage(graph: Graph, ctx: RuleContext) -> Iterator[Finding]:
    """Share of documented models must reach the configured threshold."""
    threshold = _coverage_threshold(ctx)
    models = list(ctx.applicable_nodes(graph))
    if not models:
        return
    documented = sum(1 for node in models if graph.node_description(node.name).strip())
    coverage = documented / len(models)
    if coverage < threshold:
        yield ctx.finding(
            None,
            f"Documentation coverage {coverage:.0%} is below {threshold:.0%} "
            f"({documented}/{len(models)} models documented)",
        )


@rule(
    "column_documentation_coverage",
    "documentation",
    params={"min_coverage": 1.0},
    enabled=False,
)
def column_documentation_coverage(graph: Graph, ctx: RuleContext) -> Iterator[Finding]:
    """Share of documented model columns must reach the configured threshold."""
    threshold = _coverage_threshold(ctx)
    total = 0
    documented = 0
    for node in ctx.applicable_nodes(graph):
        for col in node.columns:
            total += 1
            if graph.effective_description(node.name, col.name).strip():
                documented += 1
    if total == 0:
        return
    coverage = documented / total
    if coverage < threshold:
        yield ctx.finding(
            None,
            f"Column documentation coverage {coverage:.0%} is below {threshold:.0%} "
            f"({documented}/{total} columns documented)",
        )


@rule("undocumented_models", "documentation")
def undocumented_models(graph: Graph, ctx: RuleContext) -> Iterator[Finding]:
    """Every model should carry a description."""
    for node in ctx.applicable_nodes(graph):
        if not graph.node_description(node.name).strip():
            yield ctx.finding(node.name, f"Model '{node.name}' is not documented")


@rule("test_coverage", "testing", params={"min_coverage": 1.0})
def model_test_coverage(graph: Graph, ctx: RuleContext) -> Iterator[Finding]:
    """Share of models with at least one test must reach the configured threshold."""
    threshold = _coverage_threshold(ctx)
    models = list(ctx.applicable_nodes(graph))
    if not models:
        return
    tested = sum(1 for node in models if _has_tests(node))
    coverage = tested / len(models)
    if coverage < threshold:
        yield ctx.finding(
            None,
            f"Test coverage {coverage:.0%} is below {threshold:.0%} "
            f"({tested}/{len(models)} models tested)",
        )


@rule("missing_primary_key_tests", "testing", params={"pk_tests": list(_PRIMARY_KEY_TESTS)})
def missing_primary_key_tests(graph: Graph, ctx: RuleContext) -> Iterator[Finding]:
    """Every model needs a primary key test: unique + not_null on one column, or a combo test."""
    pk_tests = set(ctx.list_param("pk_tests"))
    for node in ctx.applicable_nodes(graph):
        if pk_tests.intersection(node.tests):
            continue
        if any({"unique", "not_null"} <= set(col.tests) for col in node.columns):
            continue
        yield ctx.finding(node.name, f"Model '{node.name}' has no primary key test")


# ---------------------------------------------------------------------------
# Structure
# ---------------------------------------------------------------------------


@rule(
    "model_naming_conventions",
    "structure",
    params={
        "prefixes": {
            "staging": ["stg_"],
            "intermediate": ["int_"],
            "marts": ["fct_", "dim_"],
        }
    },
)
def model_naming_conventions(graph: Graph, ctx: RuleContext) -> Iterator[Finding]:
    """Model names must start with a prefix configured for their layer."""
    prefixes = ctx.mapping_param("prefixes")
    for node in ctx.applicable_nodes(graph):
        allowed = prefixes.get(node.layer)
        if not allowed:
            continue
        if not node.name.startswith(allowed):
            yield ctx.finding(
                node.name,
                f"Model '{node.name}' in layer '{node.layer}' should start with one of: "
                f"{', '.join(allowed)}",
            )


@rule(
    "model_directories",
    "structure",
    params={
        "directories": {
            "staging": "staging",
            "intermediate": "intermediate",
            "marts": "marts",
        }
    },
)
def model_directories(graph: Graph, ctx: RuleContext) -> Iterator[Finding]:
    """Model files must live under the directory configured for their layer."""
    directories = ctx.mapping_param("directories")
    for node in ctx.applicable_nodes(graph):
        expected = directories.get(node.layer)
        if not expected or node.path is None:
            continue
        parts = PurePosixPath(node.path).parts[:-1]
        if not any(directory in parts for directory in expected):
            yield ctx.finding(
                node.name,
                f"Model '{node.name}' in layer '{node.layer}' is at '{node.path}', "
                f"expected under a '{expected[0]}' directory",
            )


# ---------------------------------------------------------------------------
# Performance
# ---------------------------------------------------------------------------


@rule(
    "chained_views_dependencies",
    "performance",
    node_kinds=("model", "snapshot"),
    params={"max_depth": 4},
)
def chained_views_dependencies(graph: Graph, ctx: RuleContext) -> Iterator[Finding]:
    """Chains of views longer than the threshold should be materialized somewhere."""
    max_depth = ctx.int_param("max_depth")
    chain: dict[str, tuple[str, ...]] = {}
    for name in graph.topological_order():
        node = graph.node(name)
        if node.materialization != "view":
            continue
        longest: tuple[str, ...] = ()
        for parent in graph.parents_of(name):
            if len(chain.get(parent, ())) > len(longest):
                longest = chain[parent]
        chain[name] = (*longest, name)

    for node in ctx.applicable_nodes(graph):
        path = chain.get(node.name, ())
        if len(path) <= max_depth:
            continue
        if any(child in chain for child in graph.children_of(node.name)):
            continue
        yield ctx.finding(
            node.name,
            f"Chain of {len(path)} views ends at '{node.name}': {' -> '.join(path)}",
            related=path[:-1],
        )


# ---------------------------------------------------------------------------
# Governance
# ---------------------------------------------------------------------------


@rule("public_models_without_contract", "governance")
def public_models_without_contract(graph: Graph, ctx: RuleContext) -> Iterator[Finding]:
    """Public models must enforce a contract."""
    for node in ctx.applicable_nodes(graph):
        if node.access == "public" and not node.contract_enforced:
            yield ctx.finding(
                node.name, f"Public model '{node.name}' does not enforce a contract"
            )


@rule("exposures_dependent_on_private_models", "governance", node_kinds=("exposure",))
def exposures_dependent_on_private_models(graph: Graph, ctx: RuleContext) -> Iterator[Finding]:
    """Exposures should only reference public models."""
    for node in ctx.applicable_nodes(graph):
        for parent_name in graph.parents_of(node.name):
            parent = graph.node(parent_name)
            if parent.kind == "model" and parent.access != "public":
                yield ctx.finding(
                    node.name,
                    f"Exposure '{node.name}' depends on {parent.access} model "
                    f"'{parent_name}'",
                    related=(parent_name,),
                )


@rule("sources_without_freshness", "governance", node_kinds=("source",))
def sources_without_freshness(graph: Graph, ctx: RuleContext) -> Iterator[Finding]:
    """Sources should declare a freshness check."""
    for node in ctx.applicable_nodes(graph):
        if not node.has_freshness:
            yield ctx.finding(node.name, f"Source '{node.name}' has no freshness configured")
