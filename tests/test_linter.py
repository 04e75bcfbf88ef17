"""Tests for dbtlint.graph.linter — Check/fix orchestration and output formatters."""

from __future__ import annotations

import json

import pytest
import yaml

from dbtlint.doc_sync.applier import EditIntent
from dbtlint.doc_sync.propagation import FixPlan, PropagationPolicy
from dbtlint.graph import linter
from dbtlint.graph.linter import (
    FixResult,
    LintError,
    LintResult,
    check,
    fix,
    format_intents_yaml,
    format_json,
    format_porcelain,
    format_rich,
)
from dbtlint.graph.loader import ProjectFacts
from dbtlint.graph.model import Column, Edge, LineageLink, Node
from dbtlint.graph.rule_engine import Finding, ProposedEdit, RuleConfig, default_registry
from dbtlint.infrastructure.config import EngineConfig

FILL = PropagationPolicy(fill_from_upstream=True)


def _config(*enabled: str, policy: PropagationPolicy | None = None) -> EngineConfig:
    """Enable exactly the *enabled* rules."""
    registry = default_registry()
    rules = {rule.id: RuleConfig(enabled=rule.id in enabled) for rule in registry.rules()}
    return EngineConfig(rules=rules, policy=policy or PropagationPolicy())


def _inheritable() -> ProjectFacts:
    """``stg.id`` is an undocumented passthrough of the documented ``raw.s.id``."""
    return ProjectFacts(
        nodes=(
            Node(name="raw.s", kind="source", columns=(Column("id", description="Identifier"),)),
            Node(
                name="stg",
                kind="model",
                columns=(Column("id", lineage=(LineageLink("raw.s", "id"),)),),
                patch_path="models/stg.yml",
            ),
        ),
        edges=(Edge("stg", "raw.s", kind="source"),),
    )


def _unused_column() -> ProjectFacts:
    """``stg.junk`` is read by no child."""
    return ProjectFacts(
        nodes=(
            Node(
                name="stg",
                kind="model",
                layer="staging",
                columns=(Column("id"), Column("junk")),
            ),
            Node(
                name="int_a",
                kind="model",
                layer="intermediate",
                columns=(Column("id", lineage=(LineageLink("stg", "id"),)),),
            ),
        ),
        edges=(Edge("int_a", "stg"),),
    )


def _cyclic() -> ProjectFacts:
    return ProjectFacts(
        nodes=(Node(name="X", kind="model"), Node(name="Y", kind="model")),
        edges=(Edge("X", "Y"), Edge("Y", "X")),
    )


# ---------------------------------------------------------------------------
# check
# ---------------------------------------------------------------------------


class TestCheck:
    def test_findings_and_exit_code(self) -> None:
        result = check(_inheritable(), _config("check-model-columns-have-desc"))
        assert result.rules_evaluated == 1
        assert result.nodes_checked == 2
        assert [(f.node, f.column, f.fixable) for f in result.findings] == [("stg", "id", True)]
        assert result.exit_code == 1

    def test_clean_run(self) -> None:
        result = check(_inheritable(), _config("staging_dependent_on_staging"))
        assert result.findings == []
        assert result.exit_code == 0

    def test_default_config(self) -> None:
        result = check(_inheritable())
        enabled = [rule for rule in default_registry().rules() if rule.enabled_by_default]
        assert result.rules_evaluated == len(enabled)

    def test_cycle_becomes_integrity_finding(self) -> None:
        result = check(_cyclic(), _config("root_models"))
        assert len(result.findings) == 1
        finding = result.findings[0]
        assert (finding.rule_id, finding.severity) == ("graph-integrity", "error")
        assert finding.message == "Circular dependency detected: X -> Y -> X"
        assert finding.related == ("Y", "X")
        assert result.exit_code == 1
        assert result.nodes_checked == 0

    def test_dangling_references_all_reported(self) -> None:
        facts = ProjectFacts(
            nodes=(Node(name="a", kind="model", docs_block="missing"),),
            edges=(Edge("a", "ghost"),),
        )
        result = check(facts)
        assert len(result.findings) == 2
        assert {f.rule_id for f in result.findings} == {"graph-integrity"}

    def test_fixable_follows_policy_relations(self) -> None:
        facts = ProjectFacts(
            nodes=(
                Node(name="raw.s", kind="source", columns=(Column("v", description="Value"),)),
                Node(
                    name="m",
                    kind="model",
                    columns=(Column("w", lineage=(LineageLink("raw.s", "v", "transformed"),)),),
                ),
            ),
            edges=(Edge("m", "raw.s", kind="source"),),
        )
        rule_id = "check-model-columns-have-desc"
        default = check(facts, _config(rule_id, policy=FILL))
        assert [f.fixable for f in default.findings] == [False]

        relaxed = PropagationPolicy(fill_from_upstream=True, allow_transformed_source=True)
        result = check(facts, _config(rule_id, policy=relaxed))
        assert [f.fixable for f in result.findings] == [True]

    def test_invalid_kind_raises(self) -> None:
        facts = ProjectFacts(nodes=(Node(name="a", kind="table"),))
        with pytest.raises(LintError, match="invalid kind 'table'"):
            check(facts)


# ---------------------------------------------------------------------------
# fix
# ---------------------------------------------------------------------------


class TestFix:
    def test_propagation_resolves_findings(self) -> None:
        result = fix(_inheritable(), _config("check-model-columns-have-desc", policy=FILL))
        assert [(i.action, i.node, i.column, i.text, i.file_path) for i in result.intents] == [
            ("set_description", "stg", "id", "Identifier", "models/stg.yml")
        ]
        assert result.findings == []
        assert result.remaining == []
        assert result.exit_code == 0

    def test_without_fill_nothing_changes(self) -> None:
        result = fix(_inheritable(), _config("check-model-columns-have-desc"))
        assert result.intents == []
        assert len(result.remaining) == 1
        assert result.exit_code == 1

    def test_safe_mode_rejects_unsafe_rule_edits(self) -> None:
        result = fix(_unused_column(), _config("check-unused-columns"))
        assert result.intents == []
        assert [(f.rule_id, f.node, f.column) for f in result.findings] == [
            ("unsafe-edit-rejected", "stg", "junk")
        ]
        assert result.exit_code == 1

    def test_unsafe_mode_emits_removals(self) -> None:
        result = fix(_unused_column(), _config("check-unused-columns"), safety_mode="unsafe")
        assert [(i.action, i.node, i.column) for i in result.intents] == [
            ("remove_column", "stg", "junk")
        ]
        assert result.findings == []
        assert result.remaining == []
        assert result.exit_code == 0

    def test_cycle_short_circuits(self) -> None:
        result = fix(_cyclic(), _config(policy=FILL))
        assert result.intents == []
        assert [f.rule_id for f in result.findings] == ["graph-integrity"]
        assert result.exit_code == 1

    def test_idempotence_check_passes(self) -> None:
        config = _config("check-model-columns-have-desc", policy=FILL)
        result = fix(_inheritable(), config, check_idempotent=True)
        assert len(result.intents) == 1
        assert result.findings == []
        assert result.exit_code == 0

    def test_repeated_edits_are_reported(self, monkeypatch: pytest.MonkeyPatch) -> None:
        repeated = ProposedEdit(
            "set_description",
            "stg",
            "id",
            text="Identifier",
            provenance=("raw.s", "id"),
            position=(1, 0),
        )
        monkeypatch.setattr(linter, "plan", lambda graph, policy: FixPlan(edits=(repeated,)))

        result = fix(_inheritable(), _config(policy=FILL), check_idempotent=True)
        assert [(f.rule_id, f.severity, f.node, f.column) for f in result.findings] == [
            ("fix-not-idempotent", "error", "stg", "id")
        ]
        assert "still proposes set_description for 'stg.id'" in result.findings[0].message
        assert result.exit_code == 1

        unchecked = fix(_inheritable(), _config(policy=FILL))
        assert unchecked.findings == []


# ---------------------------------------------------------------------------
# Formatters
# ---------------------------------------------------------------------------


def _lint_result() -> LintResult:
    return LintResult(
        findings=[
            Finding("documentation_coverage", "warn", None, None, "Coverage low"),
            Finding("check-model-has-description", "error", "stg", None, "No description"),
            Finding(
                "check-model-columns-have-desc", "error", "stg", "id", "No column desc", True
            ),
        ],
        rules_evaluated=3,
        nodes_checked=2,
        elapsed_ms=12.0,
    )


def _fix_result() -> FixResult:
    return FixResult(
        intents=[
            EditIntent(
                action="set_description",
                node="stg",
                column="id",
                file_path="models/stg.yml",
                text="Identifier",
                provenance=("raw.s", "id"),
            )
        ],
        findings=[Finding("propagation-conflict", "warn", "c", "x", "Cannot inherit")],
    )


class TestFormatters:
    def test_rich(self) -> None:
        output = format_rich(_lint_result())
        assert "✗ check-model-has-description  stg" in output
        assert "! documentation_coverage  <project>" in output
        assert "stg.id [fixable]" in output
        assert output.splitlines()[-1].startswith("3 findings (2 error, 1 warn) in 2 nodes")

    def test_rich_clean(self) -> None:
        output = format_rich(LintResult(rules_evaluated=5, nodes_checked=4))
        assert output.startswith("✓ No findings in 4 nodes (5 rules evaluated")

    def test_rich_fix(self) -> None:
        output = format_rich(_fix_result())
        assert "~ set_description  stg.id  (models/stg.yml)" in output
        assert "1 edits planned (safe mode), 1 unresolved, 0 findings remain" in output

    def test_json(self) -> None:
        data = json.loads(format_json(_lint_result()))
        assert data["summary"]["findings_count"] == 3
        assert data["summary"]["errors_count"] == 2
        assert data["findings"][0]["node"] is None
        assert data["findings"][2]["fixable"] is True

    def test_json_fix(self) -> None:
        data = json.loads(format_json(_fix_result()))
        assert data["intents"][0]["provenance"] == {"node": "raw.s", "column": "id"}
        assert data["summary"]["unresolved_count"] == 1

    def test_porcelain(self) -> None:
        lines = format_porcelain(_lint_result()).splitlines()
        assert lines == [
            "warn:documentation_coverage:::Coverage low",
            "error:check-model-has-description:stg::No description",
            "error:check-model-columns-have-desc:stg:id:No column desc",
        ]
        assert format_porcelain(LintResult()) == ""

    def test_porcelain_fix(self) -> None:
        lines = format_porcelain(_fix_result()).splitlines()
        assert lines[0] == "set_description:models/stg.yml:stg:id"
        assert lines[1] == "warn:propagation-conflict:c:x:Cannot inherit"

    def test_intents_yaml(self) -> None:
        document = yaml.safe_load(format_intents_yaml(_fix_result()))
        assert document["intents"] == [
            {
                "action": "set_description",
                "file_path": "models/stg.yml",
                "node": "stg",
                "column": "id",
                "text": "Identifier",
                "provenance": {"node": "raw.s", "column": "id"},
            }
        ]
        assert document["unresolved"][0]["rule_id"] == "propagation-conflict"
