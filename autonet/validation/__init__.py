"""Checks run by the compiler between its stages.

A validator takes the artifact of one phase (a GraphSpec after ordering,
a CompiledNet after compilation) and returns ValidationResults. The
compiler fails on ERROR in "normal" mode and on WARNING in "strict" mode.
They can also be run by hand:

    from autonet.validation import run_validators, Phase
    results = run_validators(Phase.POST_COMPILE, compiled, fail_on=None)

    graph.py    unique input names, a single meta source
    program.py  slot pairing, argument bindings, adjoint coverage,
                inferred derivative counts
"""

from .core import (  # noqa: F401
    Phase,
    Severity,
    ValidationResult,
    ValidationError,
    Validator,
    VALIDATORS,
    register_validator,
    run_validators,
    validators_for,
)

# Registers the built-in checks.
from . import graph, program  # noqa: F401
