"""Rule engine: rule descriptors, registry, and parallel evaluation against the project graph."""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from functools import partial
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator

    from dbtlint.graph.model import Graph, Node

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

VALID_SEVERITIES: frozenset[str] = frozenset({"error", "warn", "info"})
VALID_CATEGORIES: frozenset[str] = frozenset(
    {"modeling", "testing", "documentation", "structure", "performance", "governance"}
)
VALID_SUITES: frozenset[str] = frozenset({"project-evaluator", "dbt-checkpoint"})
VALID_EDIT_ACTIONS: frozenset[str] = frozenset(
    {"set_description", "set_docs_reference", "update_docs_block", "remove_column", "remove_node"}
)
STRUCTURAL_ACTIONS: frozenset[str] = frozenset({"remove_column", "remove_node"})

# Reserved rule ids for findings produced outside the rule registry.
GRAPH_INTEGRITY_RULE_ID = "graph-integrity"
PROPAGATION_CONFLICT_RULE_ID = "propagation-conflict"
UNSAFE_EDIT_REJECTED_RULE_ID = "unsafe-edit-rejected"
FIX_NOT_IDEMPOTENT_RULE_ID = "fix-not-idempotent"

# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class RuleEvaluationError(Exception):
    """Raised by a rule whose preconditions are not met (bad params, missing metadata)."""


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProposedEdit:
    """A single proposed change to a column, node, or docs block."""

    action: str  # one of VALID_EDIT_ACTIONS
    node: str | None
    column: str | None = None
    text: str | None = None
    docs_block: str | None = None
    provenance: tuple[str, str] | None = None  # originating upstream (node, column)
    position: tuple[int, int] = (0, 0)  # (topological index, column index)

    @property
    def structural(self) -> bool:
        return self.action in STRUCTURAL_ACTIONS

    @property
    def key(self) -> tuple[str, str | None]:
        """Identity used to detect two proposals for the same target."""
        if self.action == "update_docs_block":
            return (f"docs:{self.docs_block}", None)
        return (self.node or "", self.column)


@dataclass(frozen=True)
class Finding:
    """A single lint result: rule violation, coverage gap, or conflict."""

    rule_id: str
    severity: str  # "error" | "warn" | "info"
    node: str | None  # None for project-wide findings
    column: str | None
    message: str
    fixable: bool = False
    related: tuple[str, ...] = ()
    proposed_edit: ProposedEdit | None = None

    @property
    def blocking(self) -> bool:
        return self.severity == "error"


def finding_sort_key(finding: Finding) -> tuple[str, bool, str, str, str]:
    """Sort by node, then column (none first), then rule id."""
    return (
        finding.node or "",
        finding.column is not None,
        finding.column or "",
        finding.rule_id,
        finding.message,
    )


def sort_findings(findings: Iterable[Finding]) -> list[Finding]:
    return sorted(findings, key=finding_sort_key)


@dataclass(frozen=True)
class RuleConfig:
    """Configured state of one rule."""

    enabled: bool = True
    severity: str | None = None  # overrides the rule's default severity
    params: Mapping[str, object] = field(default_factory=dict)


@dataclass(frozen=True)
class RuleContext:
    """What a rule sees at evaluation time: itself, its merged params, and severity."""

    rule: Rule
    params: Mapping[str, object]
    severity: str

    def finding(
        self,
        node: str | None,
        message: str,
        *,
        column: str | None = None,
        fixable: bool = False,
        related: tuple[str, ...] = (),
        proposed_edit: ProposedEdit | None = None,
    ) -> Finding:
        return Finding(
            rule_id=self.rule.id,
            severity=self.severity,
            node=node,
            column=column,
            message=message,
            fixable=fixable,
            related=related,
            proposed_edit=proposed_edit,
        )

    def applicable_nodes(self, graph: Graph) -> Iterator[Node]:
        """Yield the graph's nodes whose kind this rule applies to, in name order."""
        for node in graph.nodes:
            if node.kind in self.rule.node_kinds:
                yield node

    # -- typed parameter access -------------------------------------------

    def int_param(self, name: str) -> int:
        value = self.params.get(name)
        if isinstance(value, bool) or not isinstance(value, int):
            msg = f"parameter '{name}' must be an integer, got {value!r}"
            raise RuleEvaluationError(msg)
        if value < 0:
            msg = f"parameter '{name}' must be non-negative"
            raise RuleEvaluationError(msg)
        return value

    def float_param(self, name: str) -> float:
        value = self.params.get(name)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            msg = f"parameter '{name}' must be a number, got {value!r}"
            raise RuleEvaluationError(msg)
        return float(value)

    def list_param(self, name: str) -> tuple[str, ...]:
        value = self.params.get(name)
        if isinstance(value, str):
            return (value,)
        if not isinstance(value, (list, tuple)):
            msg = f"parameter '{name}' must be a list, got {value!r}"
            raise RuleEvaluationError(msg)
        return tuple(str(item) for item in value)

    def mapping_param(self, name: str) -> dict[str, tuple[str, ...]]:
        """Return a ``{key: (values...)}`` parameter; scalar values become 1-tuples."""
        value = self.params.get(name)
        if not isinstance(value, Mapping):
            msg = f"parameter '{name}' must be a mapping, got {value!r}"
            raise RuleEvaluationError(msg)
        result: dict[str, tuple[str, ...]] = {}
        for key, raw in value.items():
            if isinstance(raw, (list, tuple)):
                result[str(key)] = tuple(str(item) for item in raw)
            else:
                result[str(key)] = (str(raw),)
        return result


EvaluateFn = Callable[["Graph", RuleContext], Iterable[Finding]]


@dataclass(frozen=True)
class Rule:
    """Immutable rule descriptor.

    ``evaluate`` must be a pure function of the graph and the context: rules
    never see each other's output, so they can run in any order or in
    parallel.
    """

    id: str
    category: str
    suite: str
    evaluate: EvaluateFn
    description: str = ""
    node_kinds: frozenset[str] = frozenset({"model"})
    severity: str = "warn"
    default_params: Mapping[str, object] = field(default_factory=dict)
    enabled_by_default: bool = True
    unsafe: bool = False


def rule_decorator(
    suite: str, target: list[Rule]
) -> Callable[..., Callable[[EvaluateFn], EvaluateFn]]:
    """Return a ``@rule(id, category, ...)`` decorator that appends to *target*.

    The first line of the decorated function's docstring becomes the rule
    description.
    """

    def rule(
        rule_id: str,
        category: str,
        *,
        node_kinds: Iterable[str] = ("model",),
        severity: str = "warn",
        params: Mapping[str, object] | None = None,
        enabled: bool = True,
        unsafe: bool = False,
    ) -> Callable[[EvaluateFn], EvaluateFn]:
        def decorator(fn: EvaluateFn) -> EvaluateFn:
            doc = (fn.__doc__ or "").strip()
            target.append(
                Rule(
                    id=rule_id,
                    category=category,
                    suite=suite,
                    evaluate=fn,
                    description=doc.splitlines()[0] if doc else "",
                    node_kinds=frozenset(node_kinds),
                    severity=severity,
                    default_params=dict(params or {}),
                    enabled_by_default=enabled,
                    unsafe=unsafe,
                )
            )
            return fn

        return decorator

    return rule


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class RuleRegistry:
    """Table of rules keyed by id."""

    def __init__(self, rules: Iterable[Rule] = ()) -> None:
        self._rules: dict[str, Rule] = {}
        for rule in rules:
            self.register(rule)

    def register(self, rule: Rule) -> None:
        """Add *rule*; raises ``ValueError`` on duplicates or invalid descriptors."""
        if rule.id in self._rules:
            msg = f"Duplicate rule id '{rule.id}'"
            raise ValueError(msg)
        if rule.category not in VALID_CATEGORIES:
            msg = (
                f"Rule '{rule.id}': invalid category '{rule.category}', "
                f"must be one of {sorted(VALID_CATEGORIES)}"
            )
            raise ValueError(msg)
        if rule.suite not in VALID_SUITES:
            msg = (
                f"Rule '{rule.id}': invalid suite '{rule.suite}', "
                f"must be one of {sorted(VALID_SUITES)}"
            )
            raise ValueError(msg)
        if rule.severity not in VALID_SEVERITIES:
            msg = (
                f"Rule '{rule.id}': invalid severity '{rule.severity}', "
                f"must be one of {sorted(VALID_SEVERITIES)}"
            )
            raise ValueError(msg)
        self._rules[rule.id] = rule

    def get(self, rule_id: str) -> Rule:
        return self._rules[rule_id]

    def rules(self) -> list[Rule]:
        """All registered rules in id order."""
        return [self._rules[rule_id] for rule_id in sorted(self._rules)]

    def __contains__(self, rule_id: object) -> bool:
        return rule_id in self._rules

    def __len__(self) -> int:
        return len(self._rules)


def default_registry() -> RuleRegistry:
    """Return a fresh registry holding both built-in rule suites."""
    # Lazy import: the suites import this module for Rule/RuleContext.
    from dbtlint.graph.checkpoint_rules import RULES as CHECKPOINT_RULES
    from dbtlint.graph.evaluator_rules import RULES as EVALUATOR_RULES

    return RuleRegistry([*EVALUATOR_RULES, *CHECKPOINT_RULES])


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


def _select(
    registry: RuleRegistry, config: Mapping[str, RuleConfig]
) -> list[RuleContext]:
    """Build a context for every enabled rule, merging default and configured params."""
    contexts: list[RuleContext] = []
    for rule in registry.rules():
        rule_config = config.get(rule.id)
        enabled = rule.enabled_by_default if rule_config is None else rule_config.enabled
        if not enabled:
            continue
        params: dict[str, object] = dict(rule.default_params)
        severity = rule.severity
        if rule_config is not None:
            params.update(rule_config.params)
            if rule_config.severity is not None:
                severity = rule_config.severity
        contexts.append(RuleContext(rule=rule, params=params, severity=severity))
    return contexts


def _evaluate_one(graph: Graph, ctx: RuleContext) -> list[Finding]:
    start = time.monotonic()
    try:
        findings = list(ctx.rule.evaluate(graph, ctx))
    except RuleEvaluationError as exc:
        logger.warning("Rule '%s' could not be evaluated: %s", ctx.rule.id, exc)
        return [
            Finding(
                rule_id=ctx.rule.id,
                severity="error",
                node=None,
                column=None,
                message=f"Rule '{ctx.rule.id}' could not be evaluated: {exc}",
            )
        ]
    logger.debug(
        "Rule '%s': %d findings in %.1fms",
        ctx.rule.id,
        len(findings),
        (time.monotonic() - start) * 1000,
    )
    return findings


def run(
    graph: Graph,
    config: Mapping[str, RuleConfig] | None = None,
    *,
    registry: RuleRegistry | None = None,
    max_workers: int | None = None,
) -> list[Finding]:
    """Evaluate every enabled rule against *graph* and return sorted findings.

    Rules absent from *config* fall back to their ``enabled_by_default``
    flag and default params.  Rules are evaluated on a bounded thread pool;
    the merged output is sorted so that parallelism never changes it.
    """
    if registry is None:
        registry = default_registry()
    contexts = _select(registry, config or {})
    if not contexts:
        return []

    workers = max_workers or min(len(contexts), os.cpu_count() or 1)
    findings: list[Finding] = []
    with ThreadPoolExecutor(max_workers=workers) as pool:
        for batch in pool.map(partial(_evaluate_one, graph), contexts):
            findings.extend(batch)

    return sort_findings(findings)
