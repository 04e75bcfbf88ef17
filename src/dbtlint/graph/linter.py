"""Linter orchestrator: build the graph, evaluate rules, plan and apply fixes, format results."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING

import yaml

from dbtlint.doc_sync.applier import EditIntent, apply
from dbtlint.doc_sync.propagation import (
    FixPlan,
    apply_plan_to_graph,
    plan,
    with_structural_edits,
)
from dbtlint.graph.model import CycleError, GraphError
from dbtlint.graph.rule_engine import (
    FIX_NOT_IDEMPOTENT_RULE_ID,
    GRAPH_INTEGRITY_RULE_ID,
    PROPAGATION_CONFLICT_RULE_ID,
    UNSAFE_EDIT_REJECTED_RULE_ID,
    Finding,
    ProposedEdit,
    RuleConfig,
    default_registry,
    run,
)
from dbtlint.infrastructure.config import EngineConfig

if TYPE_CHECKING:
    from dbtlint.graph.loader import ProjectFacts
    from dbtlint.graph.model import Graph
    from dbtlint.graph.rule_engine import RuleRegistry

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class LintError(Exception):
    """Raised when the supplied facts are invalid beyond graph integrity (bad kinds or layers)."""


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass
class LintResult:
    """Result of a check run."""

    findings: list[Finding] = field(default_factory=list)
    rules_evaluated: int = 0
    nodes_checked: int = 0
    elapsed_ms: float = 0.0

    @property
    def exit_code(self) -> int:
        return 1 if any(f.blocking for f in self.findings) else 0


@dataclass
class FixResult:
    """Result of a fix run.

    ``findings`` are the applier's findings (conflicts and rejected unsafe
    edits); ``remaining`` are the rule findings left once the intents are
    applied.
    """

    intents: list[EditIntent] = field(default_factory=list)
    findings: list[Finding] = field(default_factory=list)
    remaining: list[Finding] = field(default_factory=list)
    safety_mode: str = "safe"
    elapsed_ms: float = 0.0

    @property
    def exit_code(self) -> int:
        unresolved = (PROPAGATION_CONFLICT_RULE_ID, UNSAFE_EDIT_REJECTED_RULE_ID)
        if any(f.rule_id in unresolved or f.blocking for f in self.findings):
            return 1
        return 1 if any(f.blocking for f in self.remaining) else 0


# ---------------------------------------------------------------------------
# Main entry points
# ---------------------------------------------------------------------------


def _integrity_findings(exc: GraphError) -> list[Finding]:
    if isinstance(exc, CycleError):
        return [
            Finding(
                rule_id=GRAPH_INTEGRITY_RULE_ID,
                severity="error",
                node=exc.path[0] if exc.path else None,
                column=None,
                message=str(exc),
                related=tuple(dict.fromkeys(exc.path[1:])),
            )
        ]
    problems = getattr(exc, "problems", ()) or (str(exc),)
    return [
        Finding(
            rule_id=GRAPH_INTEGRITY_RULE_ID,
            severity="error",
            node=None,
            column=None,
            message=problem,
        )
        for problem in problems
    ]


def _build(facts: ProjectFacts) -> tuple[Graph | None, list[Finding]]:
    """Build the graph, turning integrity failures into findings."""
    try:
        return facts.build(), []
    except GraphError as exc:
        logger.debug("Graph build failed: %s", exc)
        return None, _integrity_findings(exc)
    except ValueError as exc:
        msg = f"Invalid project facts: {exc}"
        raise LintError(msg) from exc


def _enabled_count(registry: RuleRegistry, config: EngineConfig) -> int:
    count = 0
    for rule in registry.rules():
        rule_config = config.rules.get(rule.id)
        if rule.enabled_by_default if rule_config is None else rule_config.enabled:
            count += 1
    return count


def _rule_configs(config: EngineConfig, registry: RuleRegistry) -> dict[str, RuleConfig]:
    """Rule configs with the policy's inheritable relations given to rules that take them.

    Fixability then matches what propagation will actually fill.  A
    ``relations`` value set in the configuration file wins.
    """
    rules = dict(config.rules)
    relations = sorted(config.policy.relations)
    for rule in registry.rules():
        if "relations" not in rule.default_params:
            continue
        configured = rules.get(rule.id) or RuleConfig(enabled=rule.enabled_by_default)
        if "relations" not in configured.params:
            params = {**configured.params, "relations": relations}
            rules[rule.id] = replace(configured, params=params)
    return rules


def check(
    facts: ProjectFacts,
    config: EngineConfig | None = None,
    *,
    registry: RuleRegistry | None = None,
) -> LintResult:
    """Build the graph from *facts* and evaluate every enabled rule.

    When the facts do not form a valid graph (cycle, dangling reference or
    duplicate name), the result holds only ``graph-integrity`` findings.

    Raises
    ------
    LintError
        When a node, edge or lineage link carries an invalid kind.
    """
    start = time.monotonic()
    registry = registry or default_registry()
    config = config or EngineConfig()

    graph, integrity = _build(facts)
    if graph is None:
        return LintResult(findings=integrity, elapsed_ms=(time.monotonic() - start) * 1000)

    findings = run(graph, _rule_configs(config, registry), registry=registry)
    return LintResult(
        findings=findings,
        rules_evaluated=_enabled_count(registry, config),
        nodes_checked=len(graph),
        elapsed_ms=(time.monotonic() - start) * 1000,
    )


def _as_plan(intents: list[EditIntent]) -> FixPlan:
    return FixPlan(
        edits=tuple(
            ProposedEdit(
                action=intent.action,
                node=intent.node,
                column=intent.column,
                text=intent.text,
                docs_block=intent.docs_block,
                provenance=intent.provenance,
            )
            for intent in intents
        )
    )


def _idempotence_findings(fixed: Graph, config: EngineConfig) -> list[Finding]:
    """Findings for every edit that planning proposes again once the fix is applied."""
    findings: list[Finding] = []
    for edit in plan(fixed, config.policy).edits:
        target = f"{edit.node}.{edit.column}" if edit.column else str(edit.node)
        findings.append(
            Finding(
                rule_id=FIX_NOT_IDEMPOTENT_RULE_ID,
                severity="error",
                node=edit.node,
                column=edit.column,
                message=(
                    f"Planning again after the fix still proposes {edit.action} for '{target}'"
                ),
            )
        )
    return findings


def fix(
    facts: ProjectFacts,
    config: EngineConfig | None = None,
    *,
    safety_mode: str = "safe",
    check_idempotent: bool = False,
    registry: RuleRegistry | None = None,
) -> FixResult:
    """Plan description propagation plus unsafe-rule edits and validate them.

    The graph is never modified; the returned intents are for an external
    writer.  ``remaining`` is computed by re-evaluating the rules against a
    copy of the graph with the intents applied.  With *check_idempotent*,
    planning is repeated on that copy and every edit it still proposes is
    reported as a ``fix-not-idempotent`` error.
    """
    start = time.monotonic()
    registry = registry or default_registry()
    config = config or EngineConfig()

    graph, integrity = _build(facts)
    if graph is None:
        return FixResult(
            findings=integrity,
            safety_mode=safety_mode,
            elapsed_ms=(time.monotonic() - start) * 1000,
        )

    rules = _rule_configs(config, registry)
    findings = run(graph, rules, registry=registry)
    fix_plan = with_structural_edits(plan(graph, config.policy), graph, findings)
    output = apply(fix_plan, safety_mode, graph=graph)

    intents = [item for item in output if isinstance(item, EditIntent)]
    applier_findings = [item for item in output if isinstance(item, Finding)]
    fixed = apply_plan_to_graph(graph, _as_plan(intents)) if intents else graph
    remaining = run(fixed, rules, registry=registry)
    if check_idempotent:
        applier_findings.extend(_idempotence_findings(fixed, config))

    logger.info(
        "Fix (%s): %d intents, %d unresolved, %d findings remain",
        safety_mode,
        len(intents),
        len(applier_findings),
        len(remaining),
    )
    return FixResult(
        intents=intents,
        findings=applier_findings,
        remaining=remaining,
        safety_mode=safety_mode,
        elapsed_ms=(time.monotonic() - start) * 1000,
    )


# ---------------------------------------------------------------------------
# Formatters
# ---------------------------------------------------------------------------

_SEVERITY_MARKS: dict[str, str] = {"error": "✗", "warn": "!", "info": "i"}


def _target(finding: Finding) -> str:
    if finding.node is None:
        return "<project>"
    if finding.column is None:
        return finding.node
    return f"{finding.node}.{finding.column}"


def _finding_dict(finding: Finding) -> dict[str, object]:
    return {
        "rule_id": finding.rule_id,
        "severity": finding.severity,
        "node": finding.node,
        "column": finding.column,
        "message": finding.message,
        "fixable": finding.fixable,
        "related": list(finding.related),
    }


def format_rich(result: LintResult | FixResult) -> str:
    """Format a result as human-readable text (plain text, no Rich dependency).

    Example output::

        ✗ check-model-has-description  stg_orders
          Model 'stg_orders' has no description

        ! staging_dependent_on_staging  stg_b
          Staging model 'stg_b' depends on staging model 'stg_a'

        2 findings (1 error, 1 warn) in 12 nodes (31 rules evaluated, 0.0s)
    """
    lines: list[str] = []
    if isinstance(result, FixResult):
        for intent in result.intents:
            lines.append(
                f"~ {intent.action}  {intent.node or ''}"
                f"{'.' + intent.column if intent.column else ''}"
                f"{'  (' + intent.file_path + ')' if intent.file_path else ''}"
            )
        if result.intents:
            lines.append("")
        findings = [*result.findings, *result.remaining]
    else:
        findings = result.findings

    for f in findings:
        fixable = " [fixable]" if f.fixable else ""
        lines.append(f"{_SEVERITY_MARKS.get(f.severity, '?')} {f.rule_id}  {_target(f)}{fixable}")
        lines.append(f"  {f.message}")
        lines.append("")

    elapsed_str = f"{result.elapsed_ms / 1000:.1f}s"
    if isinstance(result, FixResult):
        lines.append(
            f"{len(result.intents)} edits planned ({result.safety_mode} mode), "
            f"{len(result.findings)} unresolved, {len(result.remaining)} findings remain "
            f"({elapsed_str})"
        )
    elif findings:
        errors = sum(1 for f in findings if f.severity == "error")
        warns = sum(1 for f in findings if f.severity == "warn")
        lines.append(
            f"{len(findings)} findings ({errors} error, {warns} warn) in "
            f"{result.nodes_checked} nodes ({result.rules_evaluated} rules evaluated, "
            f"{elapsed_str})"
        )
    else:
        lines.append(
            f"✓ No findings in {result.nodes_checked} nodes "
            f"({result.rules_evaluated} rules evaluated, {elapsed_str})"
        )
    return "\n".join(lines)


def format_json(result: LintResult | FixResult) -> str:
    """Format a result as structured JSON with a ``summary`` object."""
    if isinstance(result, FixResult):
        output: dict[str, object] = {
            "intents": [intent.to_dict() for intent in result.intents],
            "findings": [_finding_dict(f) for f in result.findings],
            "remaining": [_finding_dict(f) for f in result.remaining],
            "summary": {
                "safety_mode": result.safety_mode,
                "intents_count": len(result.intents),
                "unresolved_count": len(result.findings),
                "remaining_count": len(result.remaining),
                "elapsed_ms": result.elapsed_ms,
            },
        }
    else:
        output = {
            "findings": [_finding_dict(f) for f in result.findings],
            "summary": {
                "rules_evaluated": result.rules_evaluated,
                "nodes_checked": result.nodes_checked,
                "findings_count": len(result.findings),
                "errors_count": sum(1 for f in result.findings if f.blocking),
                "elapsed_ms": result.elapsed_ms,
            },
        }
    return json.dumps(output, indent=2)


def format_porcelain(result: LintResult | FixResult) -> str:
    """One line per finding (and per intent for fix results).

    Findings: ``severity:rule_id:node:column:message``.
    Intents: ``action:file_path:node:column``.
    Empty fields are empty strings; no output when there is nothing to report.
    """
    lines: list[str] = []
    if isinstance(result, FixResult):
        for intent in result.intents:
            lines.append(
                f"{intent.action}:{intent.file_path or ''}:{intent.node or ''}:"
                f"{intent.column or ''}"
            )
        findings = [*result.findings, *result.remaining]
    else:
        findings = result.findings
    for f in findings:
        lines.append(f"{f.severity}:{f.rule_id}:{f.node or ''}:{f.column or ''}:{f.message}")
    return "\n".join(lines)


def format_intents_yaml(result: FixResult) -> str:
    """Serialize the intents (and unresolved findings) as a YAML document for a writer."""
    document = {
        "intents": [intent.to_dict() for intent in result.intents],
        "unresolved": [_finding_dict(f) for f in result.findings],
    }
    return yaml.safe_dump(document, sort_keys=False, allow_unicode=True)
