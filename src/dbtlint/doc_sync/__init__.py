"""Doc Sync domain — description propagation planner and fix applier."""

from dbtlint.doc_sync.applier import EditIntent, apply
from dbtlint.doc_sync.propagation import (
    FixPlan,
    PropagationPolicy,
    apply_plan_to_graph,
    plan,
    with_structural_edits,
)

__all__ = [
    "EditIntent",
    "FixPlan",
    "PropagationPolicy",
    "apply",
    "apply_plan_to_graph",
    "plan",
    "with_structural_edits",
]
