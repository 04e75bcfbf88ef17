"""Shared test fixtures for dbtlint."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

import pytest

from dbtlint.graph.model import Column, DocsBlock, Edge, LineageLink, Node, build

if TYPE_CHECKING:
    from pathlib import Path

    from dbtlint.graph.model import Graph


@pytest.fixture()
def chain_graph() -> Graph:
    """Source -> stg_orders -> int_orders -> fct_orders, with passthrough lineage.

    Only the source column ``raw.orders.id`` is documented.
    """
    nodes = [
        Node(
            name="raw.orders",
            kind="source",
            columns=(Column("id", description="Order identifier"), Column("amount")),
        ),
        Node(
            name="stg_orders",
            kind="model",
            layer="staging",
            columns=(
                Column("order_id", lineage=(LineageLink("raw.orders", "id", "renamed"),)),
                Column(
                    "amount_usd",
                    lineage=(LineageLink("raw.orders", "amount", "transformed"),),
                ),
            ),
            patch_path="models/staging/_stg.yml",
        ),
        Node(
            name="int_orders",
            kind="model",
            layer="intermediate",
            columns=(Column("order_id", lineage=(LineageLink("stg_orders", "order_id"),)),),
            patch_path="models/intermediate/_int.yml",
        ),
        Node(
            name="fct_orders",
            kind="model",
            layer="marts",
            columns=(Column("order_id", lineage=(LineageLink("int_orders", "order_id"),)),),
            patch_path="models/marts/_marts.yml",
        ),
    ]
    edges = [
        Edge("stg_orders", "raw.orders", kind="source"),
        Edge("int_orders", "stg_orders"),
        Edge("fct_orders", "int_orders"),
    ]
    return build(nodes, edges)


@pytest.fixture()
def docs_graph() -> Graph:
    """``a.id`` references docs block ``order_id``; ``b.id`` is a passthrough of it."""
    nodes = [
        Node(name="a", kind="model", columns=(Column("id", docs_block="order_id"),)),
        Node(
            name="b",
            kind="model",
            columns=(Column("id", lineage=(LineageLink("a", "id"),)),),
            patch_path="models/b.yml",
        ),
    ]
    blocks = [DocsBlock("order_id", text="The order identifier.", path="models/docs.md")]
    return build(nodes, [Edge("b", "a")], docs_blocks=blocks)


@pytest.fixture()
def facts_file(tmp_path: Path) -> Path:
    """Write a small facts document (JSON) with one undocumented inheritable column."""
    document = {
        "nodes": [
            {
                "name": "raw.customers",
                "kind": "source",
                "description": "Raw customers",
                "has_freshness": True,
                "columns": [{"name": "id", "description": "Customer identifier"}],
            },
            {
                "name": "stg_customers",
                "kind": "model",
                "layer": "staging",
                "materialization": "view",
                "description": "Staged customers",
                "tags": ["core"],
                "path": "models/staging/stg_customers.sql",
                "patch_path": "models/staging/_stg.yml",
                "columns": [
                    {
                        "name": "customer_id",
                        "tests": ["unique", "not_null"],
                        "lineage": [
                            {"node": "raw.customers", "column": "id", "relation": "renamed"}
                        ],
                    }
                ],
            },
        ],
        "edges": [{"child": "stg_customers", "parent": "raw.customers", "kind": "source"}],
    }
    path = tmp_path / "facts.json"
    path.write_text(json.dumps(document))
    return path
