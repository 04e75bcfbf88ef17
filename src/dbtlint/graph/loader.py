"""Load project facts (nodes, edges, lineage, docs blocks) from a facts document or a manifest."""

from __future__ import annotations

import fnmatch
import json
import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import yaml

from dbtlint.graph.model import Column, DocsBlock, Edge, LineageLink, Node, build

if TYPE_CHECKING:
    from collections.abc import Mapping
    from pathlib import Path

    from dbtlint.graph.model import Graph

logger = logging.getLogger(__name__)

_LAYER_ORDER: tuple[str, ...] = ("staging", "intermediate", "marts")
_MANIFEST_NODE_KINDS: dict[str, str] = {
    "model": "model",
    "seed": "seed",
    "snapshot": "snapshot",
}
_DOC_RE = re.compile(r"""\{\{\s*doc\(\s*["']([^"']+)["']\s*\)\s*\}\}""")

# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class LoaderError(Exception):
    """Raised when a facts document or manifest cannot be read or is malformed."""


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProjectFacts:
    """Record sequences the graph is built from."""

    nodes: tuple[Node, ...] = ()
    edges: tuple[Edge, ...] = ()
    lineage: tuple[tuple[str, str, LineageLink], ...] = ()
    docs_blocks: tuple[DocsBlock, ...] = ()

    def build(self) -> Graph:
        return build(self.nodes, self.edges, self.lineage, self.docs_blocks)


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------


def _read_document(path: Path) -> Any:
    try:
        with path.open("r", encoding="utf-8") as fh:
            if path.suffix == ".json":
                return json.load(fh)
            return yaml.safe_load(fh)
    except (OSError, json.JSONDecodeError, yaml.YAMLError) as exc:
        msg = f"{path.name}: {exc}"
        raise LoaderError(msg) from exc


def _mapping(value: object, context: str) -> Mapping[str, Any]:
    if not isinstance(value, dict):
        msg = f"{context} must be a mapping"
        raise LoaderError(msg)
    return value


def _submapping(record: Mapping[str, Any], key: str, context: str) -> Mapping[str, Any]:
    """Nested mapping under *key*; a missing or null value is an empty mapping."""
    return _mapping(record.get(key) or {}, f"{context}: '{key}'")


def _list(record: Mapping[str, Any], key: str, context: str) -> list[Any]:
    value = record.get(key) or []
    if not isinstance(value, list):
        msg = f"{context}: '{key}' must be a list"
        raise LoaderError(msg)
    return value


def _records(data: Mapping[str, Any], key: str) -> list[Mapping[str, Any]]:
    raw = data.get(key) or []
    if not isinstance(raw, list):
        msg = f"'{key}' must be a list"
        raise LoaderError(msg)
    return [_mapping(item, f"{key}[{idx}]") for idx, item in enumerate(raw)]


def _required_str(record: Mapping[str, Any], key: str, context: str) -> str:
    value = record.get(key)
    if not isinstance(value, str) or not value.strip():
        msg = f"{context}: missing required '{key}'"
        raise LoaderError(msg)
    return value


def _optional_str(record: Mapping[str, Any], key: str) -> str | None:
    value = record.get(key)
    return None if value is None else str(value)


def _optional_int(record: Mapping[str, Any], key: str, context: str) -> int | None:
    value = record.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        msg = f"{context}: '{key}' must be an integer, got {value!r}"
        raise LoaderError(msg)
    return value


def _str_tuple(record: Mapping[str, Any], key: str, context: str) -> tuple[str, ...]:
    value = record.get(key) or []
    if isinstance(value, str):
        return (value,)
    if not isinstance(value, list):
        msg = f"{context}: '{key}' must be a list"
        raise LoaderError(msg)
    return tuple(str(item) for item in value)


# ---------------------------------------------------------------------------
# Facts documents
# ---------------------------------------------------------------------------


def _parse_link(record: Mapping[str, Any], context: str) -> LineageLink:
    return LineageLink(
        node=_required_str(record, "node", context),
        column=_required_str(record, "column", context),
        relation=str(record.get("relation", "passthrough")),
    )


def _parse_column(record: Mapping[str, Any], context: str) -> Column:
    name = _required_str(record, "name", context)
    context = f"{context} '{name}'"
    links = tuple(
        _parse_link(_mapping(item, f"{context} lineage[{idx}]"), f"{context} lineage[{idx}]")
        for idx, item in enumerate(_list(record, "lineage", context))
    )
    return Column(
        name=name,
        description=str(record.get("description") or ""),
        docs_block=_optional_str(record, "docs_block"),
        tests=_str_tuple(record, "tests", context),
        lineage=links,
    )


def _parse_node(record: Mapping[str, Any], context: str) -> Node:
    name = _required_str(record, "name", context)
    context = f"node '{name}'"
    columns_raw = _list(record, "columns", context)
    return Node(
        name=name,
        kind=_required_str(record, "kind", context),
        layer=str(record.get("layer") or "other"),
        materialization=_optional_str(record, "materialization"),
        columns=tuple(
            _parse_column(_mapping(col, f"{context} column"), f"{context} column")
            for col in columns_raw
        ),
        description=str(record.get("description") or ""),
        docs_block=_optional_str(record, "docs_block"),
        tags=_str_tuple(record, "tags", context),
        tests=_str_tuple(record, "tests", context),
        path=_optional_str(record, "path"),
        patch_path=_optional_str(record, "patch_path"),
        access=str(record.get("access") or "protected"),
        contract_enforced=bool(record.get("contract_enforced", False)),
        has_freshness=bool(record.get("has_freshness", False)),
        loader=_optional_str(record, "loader"),
    )


def _parse_lineage_facts(data: Mapping[str, Any]) -> tuple[tuple[str, str, LineageLink], ...]:
    facts: list[tuple[str, str, LineageLink]] = []
    for idx, record in enumerate(_records(data, "lineage")):
        context = f"lineage[{idx}]"
        facts.append(
            (
                _required_str(record, "node", context),
                _required_str(record, "column", context),
                LineageLink(
                    node=_required_str(record, "upstream_node", context),
                    column=_required_str(record, "upstream_column", context),
                    relation=str(record.get("relation", "passthrough")),
                ),
            )
        )
    return tuple(facts)


def parse_facts(data: object) -> ProjectFacts:
    """Validate an already-loaded facts mapping."""
    document = _mapping(data, "facts document")

    nodes = tuple(
        _parse_node(record, f"nodes[{idx}]")
        for idx, record in enumerate(_records(document, "nodes"))
    )

    edges: list[Edge] = []
    positions: dict[str, int] = {}
    for idx, record in enumerate(_records(document, "edges")):
        context = f"edges[{idx}]"
        child = _required_str(record, "child", context)
        position = _optional_int(record, "position", context)
        if position is None:
            position = positions.get(child, 0)
        positions[child] = position + 1
        edges.append(
            Edge(
                child=child,
                parent=_required_str(record, "parent", context),
                kind=str(record.get("kind", "model")),
                position=position,
            )
        )

    blocks = tuple(
        DocsBlock(
            name=_required_str(record, "name", f"docs_blocks[{idx}]"),
            text=str(record.get("text") or ""),
            path=_optional_str(record, "path"),
        )
        for idx, record in enumerate(_records(document, "docs_blocks"))
    )

    return ProjectFacts(
        nodes=nodes,
        edges=tuple(edges),
        lineage=_parse_lineage_facts(document),
        docs_blocks=blocks,
    )


def load_facts(path: Path) -> ProjectFacts:
    """Read a JSON or YAML facts document with ``nodes``/``edges``/``lineage``/``docs_blocks``."""
    facts = parse_facts(_read_document(path))
    logger.debug(
        "Loaded %d nodes, %d edges, %d lineage facts from %s",
        len(facts.nodes),
        len(facts.edges),
        len(facts.lineage),
        path,
    )
    return facts


# ---------------------------------------------------------------------------
# dbt manifest
# ---------------------------------------------------------------------------


def classify_layer(file_path: str | None, layers: Mapping[str, tuple[str, ...]]) -> str:
    """Return the first configured layer whose globs match *file_path*, else ``other``."""
    if file_path is None:
        return "other"
    for layer in _LAYER_ORDER:
        for pattern in layers.get(layer, ()):
            if fnmatch.fnmatch(file_path, pattern):
                return layer
    return "other"


def _strip_project(patch_path: str | None) -> str | None:
    """``my_project://models/schema.yml`` -> ``models/schema.yml``."""
    if patch_path is None:
        return None
    _, sep, rest = patch_path.partition("://")
    return rest if sep else patch_path


def _doc_name(doc_blocks: object) -> str | None:
    """First docs block name from a ``doc_blocks`` list like ``["doc.project.name"]``."""
    if not isinstance(doc_blocks, list) or not doc_blocks:
        return None
    return str(doc_blocks[0]).rsplit(".", 1)[-1]


def _doc_reference(description: object) -> str | None:
    """Block name from an unrendered ``{{ doc("name") }}`` description."""
    if not isinstance(description, str):
        return None
    match = _DOC_RE.fullmatch(description.strip())
    return match.group(1) if match else None


def _test_name(test: Mapping[str, Any], context: str) -> str:
    metadata = _submapping(test, "test_metadata", context)
    name = str(metadata.get("name") or test.get("name") or "")
    namespace = metadata.get("namespace")
    return f"{namespace}.{name}" if namespace else name


def _manifest_columns(
    record: Mapping[str, Any], column_tests: Mapping[str, list[str]], context: str
) -> tuple[Column, ...]:
    columns: list[Column] = []
    for key, raw in _submapping(record, "columns", context).items():
        col = _mapping(raw or {}, f"{context}: column '{key}'")
        name = str(col.get("name") or key)
        columns.append(
            Column(
                name=name,
                description=str(col.get("description") or ""),
                docs_block=(
                    _doc_name(col.get("doc_blocks")) or _doc_reference(col.get("description"))
                ),
                tests=tuple(column_tests.get(name, [])),
            )
        )
    return tuple(columns)


def _has_freshness(record: Mapping[str, Any], context: str) -> bool:
    freshness = _submapping(record, "freshness", context)
    for key in ("warn_after", "error_after"):
        threshold = _submapping(freshness, key, f"{context}: 'freshness'")
        if threshold.get("count") is not None:
            return True
    return False


def _manifest_records(manifest: Mapping[str, Any], key: str) -> dict[str, Mapping[str, Any]]:
    """Records of one manifest section, keyed by unique id."""
    section = _submapping(manifest, key, "manifest")
    return {
        str(uid): _mapping(record, f"manifest {key} '{uid}'") for uid, record in section.items()
    }


def _depends_on(record: Mapping[str, Any], uid: str) -> list[str]:
    depends = _submapping(record, "depends_on", f"'{uid}'")
    return [str(parent) for parent in _list(depends, "nodes", f"'{uid}': 'depends_on'")]


def parse_manifest(
    data: object, *, layers: Mapping[str, tuple[str, ...]] | None = None
) -> ProjectFacts:
    """Map a dbt ``manifest.json`` mapping onto project facts.

    Column lineage is not part of the manifest; supply it separately via
    :func:`load_manifest`'s *lineage_path*.
    """
    manifest = _mapping(data, "manifest")
    layers = layers or {}
    raw_nodes = _manifest_records(manifest, "nodes")
    raw_sources = _manifest_records(manifest, "sources")
    raw_exposures = _manifest_records(manifest, "exposures")
    raw_docs = _manifest_records(manifest, "docs")

    names: dict[str, str] = {}
    kinds: dict[str, str] = {}
    for uid, record in sorted(raw_nodes.items()):
        kind = _MANIFEST_NODE_KINDS.get(str(record.get("resource_type")))
        if kind is not None:
            names[uid] = str(record.get("name"))
            kinds[uid] = kind
    for uid, record in sorted(raw_sources.items()):
        names[uid] = f"{record.get('source_name')}.{record.get('name')}"
        kinds[uid] = "source"
    for uid, record in sorted(raw_exposures.items()):
        names[uid] = str(record.get("name"))
        kinds[uid] = "exposure"

    # Tests attach to nodes or columns.
    node_tests: dict[str, list[str]] = {}
    column_tests: dict[str, dict[str, list[str]]] = {}
    for test_uid, record in raw_nodes.items():
        if record.get("resource_type") != "test":
            continue
        attached = record.get("attached_node")
        if attached is None:
            depends = _depends_on(record, test_uid)
            attached = next((uid for uid in depends if uid in names), None)
        if attached is None or attached not in names:
            continue
        test = _test_name(record, f"'{test_uid}'")
        column_name = record.get("column_name")
        if column_name:
            column_tests.setdefault(attached, {}).setdefault(str(column_name), []).append(test)
        else:
            node_tests.setdefault(attached, []).append(test)

    nodes: list[Node] = []
    edges: list[Edge] = []
    for uid, record in sorted({**raw_nodes, **raw_sources, **raw_exposures}.items()):
        if uid not in names:
            continue
        kind = kinds[uid]
        context = f"'{uid}'"
        config = _submapping(record, "config", context)
        file_path = _optional_str(record, "original_file_path")
        access = record.get("access") or config.get("access") or "protected"
        layer = "other" if kind in ("source", "exposure") else classify_layer(file_path, layers)
        nodes.append(
            Node(
                name=names[uid],
                kind=kind,
                layer=layer,
                materialization=_optional_str(config, "materialized"),
                columns=_manifest_columns(record, column_tests.get(uid, {}), context),
                description=str(record.get("description") or ""),
                docs_block=(
                    _doc_name(record.get("doc_blocks"))
                    or _doc_reference(record.get("description"))
                ),
                tags=tuple(str(t) for t in (record.get("tags") or config.get("tags") or [])),
                tests=tuple(sorted(node_tests.get(uid, []))),
                path=file_path,
                patch_path=_strip_project(_optional_str(record, "patch_path")),
                access=str(access),
                contract_enforced=bool(
                    _submapping(config, "contract", context).get("enforced", False)
                ),
                has_freshness=_has_freshness(record, context) if kind == "source" else False,
                loader=_optional_str(record, "loader") or None,
            )
        )
        position = 0
        for parent_uid in _depends_on(record, uid):
            if parent_uid not in names:
                continue
            edges.append(
                Edge(
                    child=names[uid],
                    parent=names[parent_uid],
                    kind="source" if kinds[parent_uid] == "source" else "model",
                    position=position,
                )
            )
            position += 1

    blocks: list[DocsBlock] = []
    seen_blocks: set[str] = set()
    for uid, record in sorted(raw_docs.items()):
        name = str(record.get("name"))
        if name in seen_blocks:
            logger.debug("Skipping duplicate docs block '%s' (%s)", name, uid)
            continue
        seen_blocks.add(name)
        blocks.append(
            DocsBlock(
                name=name,
                text=str(record.get("block_contents") or ""),
                path=_optional_str(record, "original_file_path"),
            )
        )

    return ProjectFacts(nodes=tuple(nodes), edges=tuple(edges), docs_blocks=tuple(blocks))


def load_manifest(
    path: Path,
    *,
    lineage_path: Path | None = None,
    layers: Mapping[str, tuple[str, ...]] | None = None,
) -> ProjectFacts:
    """Read a dbt ``manifest.json`` and, optionally, a lineage facts document."""
    facts = parse_manifest(_read_document(path), layers=layers)
    if lineage_path is not None:
        lineage = _parse_lineage_facts(_mapping(_read_document(lineage_path), "lineage document"))
        facts = ProjectFacts(
            nodes=facts.nodes,
            edges=facts.edges,
            lineage=lineage,
            docs_blocks=facts.docs_blocks,
        )
    logger.debug(
        "Loaded manifest %s: %d nodes, %d edges", path, len(facts.nodes), len(facts.edges)
    )
    return facts
