"""Tests for dbtlint.doc_sync.propagation — Description inheritance planning."""

from __future__ import annotations

from typing import TYPE_CHECKING

from dbtlint.doc_sync.propagation import (
    FixPlan,
    PropagationPolicy,
    apply_plan_to_graph,
    plan,
    with_structural_edits,
)
from dbtlint.graph.model import Column, DocsBlock, Edge, LineageLink, Node, build
from dbtlint.graph.rule_engine import Finding, ProposedEdit

if TYPE_CHECKING:
    from dbtlint.graph.model import Graph

FILL = PropagationPolicy(fill_from_upstream=True)


def _model(name: str, *columns: Column, **kwargs: object) -> Node:
    return Node(name=name, kind="model", columns=columns, **kwargs)  # type: ignore[arg-type]


def _two_upstreams(first: str, second: str) -> Graph:
    """``c.x`` is a passthrough of both ``a.x`` and ``b.x``."""
    return build(
        [
            _model("a", Column("x", description=first)),
            _model("b", Column("x", description=second)),
            _model(
                "c",
                Column("x", lineage=(LineageLink("a", "x"), LineageLink("b", "x"))),
            ),
        ],
        [Edge("c", "a", position=0), Edge("c", "b", position=1)],
    )


# ---------------------------------------------------------------------------
# Policy gates
# ---------------------------------------------------------------------------


class TestPolicy:
    def test_disabled_by_default(self, chain_graph: Graph) -> None:
        result = plan(chain_graph)
        assert result == FixPlan()
        assert result.is_empty

    def test_relations(self) -> None:
        assert PropagationPolicy().relations == {"passthrough", "renamed"}
        assert PropagationPolicy(allow_transformed_source=True).relations == {
            "passthrough",
            "renamed",
            "transformed",
        }

    def test_transformed_links_need_opt_in(self) -> None:
        graph = build(
            [
                Node(name="raw.s", kind="source", columns=(Column("v", description="Value"),)),
                _model("m", Column("w", lineage=(LineageLink("raw.s", "v", "transformed"),))),
            ],
            [Edge("m", "raw.s", kind="source")],
        )
        assert plan(graph, FILL).is_empty
        relaxed = PropagationPolicy(fill_from_upstream=True, allow_transformed_source=True)
        edits = plan(graph, relaxed).edits
        assert [(e.action, e.node, e.column, e.text) for e in edits] == [
            ("set_description", "m", "w", "Value")
        ]

    def test_force_inherit_overwrites_differing_text(self) -> None:
        graph = build(
            [
                _model("a", Column("x", description="Upstream")),
                _model("b", Column("x", description="Local", lineage=(LineageLink("a", "x"),))),
                _model("c", Column("x", description="Upstream", lineage=(LineageLink("a", "x"),))),
            ],
            [Edge("b", "a"), Edge("c", "a")],
        )
        assert plan(graph, FILL).is_empty
        forced = plan(graph, PropagationPolicy(fill_from_upstream=True, force_inherit=True))
        assert [(e.node, e.text) for e in forced.edits] == [("b", "Upstream")]


# ---------------------------------------------------------------------------
# Propagation
# ---------------------------------------------------------------------------


class TestTransitive:
    def test_chain_filled_in_one_pass(self, chain_graph: Graph) -> None:
        result = plan(chain_graph, FILL)
        assert result.conflicts == ()
        assert [(e.node, e.column, e.text, e.provenance) for e in result.edits] == [
            ("stg_orders", "order_id", "Order identifier", ("raw.orders", "id")),
            ("int_orders", "order_id", "Order identifier", ("stg_orders", "order_id")),
            ("fct_orders", "order_id", "Order identifier", ("int_orders", "order_id")),
        ]
        assert all(e.action == "set_description" for e in result.edits)

    def test_idempotent_after_apply(self, chain_graph: Graph) -> None:
        fixed = apply_plan_to_graph(chain_graph, plan(chain_graph, FILL))
        assert fixed.effective_description("fct_orders", "order_id") == "Order identifier"
        assert plan(fixed, FILL).is_empty
        # The input graph is untouched.
        assert chain_graph.effective_description("fct_orders", "order_id") == ""

    def test_deterministic_across_worker_counts(self, chain_graph: Graph) -> None:
        assert plan(chain_graph, FILL, max_workers=1) == plan(chain_graph, FILL, max_workers=4)


class TestConflicts:
    def test_disagreeing_upstreams_are_not_guessed(self) -> None:
        result = plan(_two_upstreams("foo", "bar"), FILL)
        assert result.edits == ()
        assert len(result.conflicts) == 1
        conflict = result.conflicts[0]
        assert (conflict.rule_id, conflict.severity) == ("propagation-conflict", "warn")
        assert (conflict.node, conflict.column) == ("c", "x")
        assert conflict.related == ("a", "b")
        assert "a.x = 'foo'" in conflict.message
        assert "b.x = 'bar'" in conflict.message

    def test_agreeing_upstreams_propagate(self) -> None:
        result = plan(_two_upstreams("same", "same"), FILL)
        assert result.conflicts == ()
        assert [(e.node, e.text, e.provenance) for e in result.edits] == [
            ("c", "same", ("a", "x"))
        ]

    def test_empty_upstream_is_not_a_candidate(self) -> None:
        result = plan(_two_upstreams("only", ""), FILL)
        assert [e.text for e in result.edits] == ["only"]


class TestDocsBlocks:
    def test_prefers_block_reference(self, docs_graph: Graph) -> None:
        result = plan(docs_graph, FILL)
        assert len(result.edits) == 1
        edit = result.edits[0]
        assert edit.action == "set_docs_reference"
        assert edit.docs_block == "order_id"
        assert (edit.node, edit.column, edit.provenance) == ("b", "id", ("a", "id"))

        fixed = apply_plan_to_graph(docs_graph, result)
        assert fixed.column("b", "id").docs_block == "order_id"
        assert plan(fixed, FILL).is_empty

    def test_copies_text_when_blocks_disabled(self, docs_graph: Graph) -> None:
        policy = PropagationPolicy(fill_from_upstream=True, propagate_docs_blocks=False)
        edits = plan(docs_graph, policy).edits
        assert [(e.action, e.text, e.docs_block) for e in edits] == [
            ("set_description", "The order identifier.", None)
        ]

    def test_different_blocks_conflict(self) -> None:
        graph = build(
            [
                _model("a", Column("x", docs_block="one")),
                _model("b", Column("x", docs_block="two")),
                _model(
                    "c",
                    Column("x", lineage=(LineageLink("a", "x"), LineageLink("b", "x"))),
                ),
            ],
            [Edge("c", "a"), Edge("c", "b")],
            docs_blocks=[DocsBlock("one", text="Same"), DocsBlock("two", text="Same")],
        )
        result = plan(graph, FILL)
        assert result.edits == ()
        assert "doc('one')" in result.conflicts[0].message

    def test_empty_block_updated_once(self) -> None:
        graph = build(
            [
                Node(name="raw.s", kind="source", columns=(Column("a", description="Alpha"),)),
                _model(
                    "m",
                    Column("x", docs_block="blk", lineage=(LineageLink("raw.s", "a"),)),
                    Column("y", docs_block="blk", lineage=(LineageLink("raw.s", "a"),)),
                ),
            ],
            [Edge("m", "raw.s", kind="source")],
            docs_blocks=[DocsBlock("blk", text="", path="models/docs.md")],
        )
        result = plan(graph, FILL)
        assert [(e.action, e.docs_block, e.text) for e in result.edits] == [
            ("update_docs_block", "blk", "Alpha")
        ]
        fixed = apply_plan_to_graph(graph, result)
        assert fixed.docs_block("blk").text == "Alpha"
        assert plan(fixed, FILL).is_empty

    def test_block_filled_after_its_readers(self) -> None:
        # Topological order is a, b, c, z: b and c read block E before z fills it.
        graph = build(
            [
                _model("a", Column("c", description="x")),
                _model("b", Column("c", docs_block="E")),
                _model("c", Column("c", lineage=(LineageLink("b", "c"),))),
                _model("z", Column("c", docs_block="E", lineage=(LineageLink("a", "c"),))),
            ],
            [Edge("c", "b"), Edge("z", "a")],
            docs_blocks=[DocsBlock("E", text="")],
        )
        assert graph.topological_order() == ("a", "b", "c", "z")

        result = plan(graph, FILL)
        assert result.conflicts == ()
        assert [(e.action, e.node, e.column, e.docs_block, e.text) for e in result.edits] == [
            ("set_docs_reference", "c", "c", "E", "x"),
            ("update_docs_block", "z", "c", "E", "x"),
        ]

        fixed = apply_plan_to_graph(graph, result)
        assert fixed.effective_description("c", "c") == "x"
        assert plan(fixed, FILL).is_empty

    def test_block_sharing_columns_with_disagreeing_upstreams(self) -> None:
        graph = build(
            [
                Node(
                    name="raw.s",
                    kind="source",
                    columns=(Column("a", description="Alpha"), Column("b", description="Beta")),
                ),
                _model(
                    "m",
                    Column("x", docs_block="E", lineage=(LineageLink("raw.s", "a"),)),
                    Column("y", docs_block="E", lineage=(LineageLink("raw.s", "b"),)),
                ),
            ],
            [Edge("m", "raw.s", kind="source")],
            docs_blocks=[DocsBlock("E", text="")],
        )
        result = plan(graph, FILL)
        assert result.edits == ()
        assert [(f.rule_id, f.node, f.column) for f in result.conflicts] == [
            ("propagation-conflict", "m", "x"),
            ("propagation-conflict", "m", "y"),
        ]
        message = result.conflicts[0].message
        assert "columns sharing docs block 'E' inherit different text" in message
        assert "raw.s.a = 'Alpha'" in message
        assert "raw.s.b = 'Beta'" in message
        assert result.conflicts[0].related == ("raw.s",)


# ---------------------------------------------------------------------------
# Plan helpers
# ---------------------------------------------------------------------------


class TestStructuralEdits:
    def test_positions_follow_topological_order(self, chain_graph: Graph) -> None:
        findings = [
            Finding(
                "check-unused-models",
                "warn",
                "int_orders",
                None,
                "unused",
                proposed_edit=ProposedEdit("remove_node", "int_orders"),
            ),
            Finding("other", "warn", "stg_orders", None, "no edit"),
        ]
        merged = with_structural_edits(plan(chain_graph, FILL), chain_graph, findings)
        assert [(e.action, e.node, e.position) for e in merged.edits] == [
            ("set_description", "stg_orders", (1, 0)),
            ("remove_node", "int_orders", (2, -1)),
            ("set_description", "int_orders", (2, 0)),
            ("set_description", "fct_orders", (3, 0)),
        ]

    def test_apply_removes_nodes_and_dangling_lineage(self, chain_graph: Graph) -> None:
        removal = FixPlan(
            edits=(
                ProposedEdit("remove_column", "stg_orders", "amount_usd"),
                ProposedEdit("remove_node", "fct_orders"),
            )
        )
        fixed = apply_plan_to_graph(chain_graph, removal)
        assert "fct_orders" not in fixed
        assert [c.name for c in fixed.node("stg_orders").columns] == ["order_id"]
        assert fixed.children_of("int_orders") == ()
