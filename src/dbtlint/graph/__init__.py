"""Graph domain — project graph model, fact loader, rule engine and rule suites.

Note: ``dbtlint.graph.linter`` is not re-exported here because it orchestrates
the doc_sync and infrastructure domains, which themselves import from this
package; eagerly importing it would create circular imports.  Import it
directly::

    from dbtlint.graph.linter import check, fix
"""

from dbtlint.graph.loader import (
    LoaderError,
    ProjectFacts,
    load_facts,
    load_manifest,
    parse_facts,
    parse_manifest,
)
from dbtlint.graph.model import (
    Column,
    CycleError,
    DanglingReferenceError,
    DocsBlock,
    DuplicateNameError,
    Edge,
    Graph,
    GraphError,
    LineageLink,
    Node,
    build,
)
from dbtlint.graph.rule_engine import (
    Finding,
    ProposedEdit,
    Rule,
    RuleConfig,
    RuleContext,
    RuleEvaluationError,
    RuleRegistry,
    default_registry,
    run,
)

__all__ = [
    "Column",
    "CycleError",
    "DanglingReferenceError",
    "DocsBlock",
    "DuplicateNameError",
    "Edge",
    "Finding",
    "Graph",
    "GraphError",
    "LineageLink",
    "LoaderError",
    "Node",
    "ProjectFacts",
    "ProposedEdit",
    "Rule",
    "RuleConfig",
    "RuleContext",
    "RuleEvaluationError",
    "RuleRegistry",
    "build",
    "default_registry",
    "load_facts",
    "load_manifest",
    "parse_facts",
    "parse_manifest",
    "run",
]
