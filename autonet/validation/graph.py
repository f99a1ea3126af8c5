"""Node-list validators.

Covers the POST_ORDER phase. Validators receive a GraphSpec. Only the
builder's contract is checked here — the list is trusted to be in
dependency order.
"""

from collections import Counter

from ..ir import NodeKind
from ..program import GraphSpec
from .core import Phase, Severity, ValidationResult, register_validator


@register_validator("unique_input_names", Phase.POST_ORDER)
def validate_unique_input_names(spec: GraphSpec) -> list[ValidationResult]:
    """Inputs are looked up by name, so names must be unique.

    Checks the names inputs compile under, so an explicit "input1" that
    collides with a generated one is caught too.
    """
    counts = Counter(
        name for node, name in zip(spec.nodes, spec.names)
        if node.kind is NodeKind.INPUT
    )
    return [
        ValidationResult("unique_input_names", Severity.ERROR,
                         f"{count} inputs share the name '{name}'")
        for name, count in counts.items() if count > 1
    ]


@register_validator("single_meta_source", Phase.POST_ORDER)
def validate_single_meta_source(spec: GraphSpec) -> list[ValidationResult]:
    """Shared metadata may come from at most one place.

    Sources are nodes carrying `meta` and the explicit `meta=` compile
    option.
    """
    owners = [
        f"{name} ({node.source})" if node.source else name
        for node, name in zip(spec.nodes, spec.names) if node.meta is not None
    ]
    if spec.meta is not None:
        owners.insert(0, "compile option meta=")
    if len(owners) > 1:
        return [ValidationResult(
            "single_meta_source", Severity.ERROR,
            f"More than one source of meta: {', '.join(owners)}",
        )]
    return []
