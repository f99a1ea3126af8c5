"""Validation types, the validator registry and the phase runner.

Submodules register their checks here; __init__ re-exports the public
names so callers never import core directly.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

logger = logging.getLogger(__name__)


class Phase(Enum):
    """Points in compile_nodes() where checks run.

        POST_ORDER    receives a GraphSpec: the ordered nodes, their
                      assigned names and the compile options.
        POST_COMPILE  receives the finished CompiledNet.
    """
    POST_ORDER = "post_order"
    POST_COMPILE = "post_compile"


class Severity(Enum):
    """How serious a finding is. Lower rank is more serious.

    ERROR:   The net cannot be evaluated correctly.
    WARNING: Some evaluation modes will fail (e.g. backward without adjoint).
    INFO:    A heuristic the compiler applied that the user may want to know.
    """
    ERROR = 0
    WARNING = 1
    INFO = 2

    def at_least(self, threshold: "Severity") -> bool:
        return self.value <= threshold.value


_LOG_LEVELS = {
    Severity.ERROR: logging.ERROR,
    Severity.WARNING: logging.WARNING,
    Severity.INFO: logging.DEBUG,
}


@dataclass
class ValidationResult:
    validator: str
    severity: Severity
    message: str

    def __str__(self) -> str:
        return f"[{self.severity.name}] {self.validator}: {self.message}"


class ValidationError(Exception):
    """Compilation stopped because a check reached the fail_on severity.

    `results` holds every finding of the phase; `fatal` only those that
    caused the failure.
    """

    def __init__(self, phase: Phase, results: list[ValidationResult],
                 fail_on: Severity = Severity.ERROR) -> None:
        self.phase = phase
        self.results = results
        self.fatal = [r for r in results if r.severity.at_least(fail_on)]
        lines = [f"Validation failed at {phase.name} ({len(self.fatal)} issue(s)):"]
        lines += [f"  {r}" for r in self.fatal]
        super().__init__("\n".join(lines))


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

@dataclass
class Validator:
    name: str
    phase: Phase
    check: Callable[[Any], list[ValidationResult]]


VALIDATORS: list[Validator] = []


def register_validator(name: str, phase: Phase):
    """Register `fn(target) -> list[ValidationResult]` to run at `phase`.

        @register_validator("no_empty_streams", Phase.POST_COMPILE)
        def check_streams(net: CompiledNet) -> list[ValidationResult]:
            ...
    """
    def decorator(fn):
        if any(v.name == name for v in VALIDATORS):
            raise ValueError(f"Validator '{name}' is already registered")
        VALIDATORS.append(Validator(name, phase, fn))
        return fn
    return decorator


def validators_for(phase: Phase) -> list[Validator]:
    return [v for v in VALIDATORS if v.phase == phase]


def run_validators(phase: Phase, target: Any, *,
                   fail_on: Severity | None = Severity.ERROR) -> list[ValidationResult]:
    """Run every check registered for `phase` against `target`.

    Each finding is also logged (INFO findings at DEBUG level). With
    fail_on=None all findings are returned and nothing is raised.

    Raises:
        ValidationError: Some finding is at least as severe as fail_on.
    """
    results: list[ValidationResult] = []
    for v in validators_for(phase):
        found = v.check(target)
        for r in found:
            logger.log(_LOG_LEVELS[r.severity], "%s: %s", phase.name, r)
        results.extend(found)

    if fail_on is not None and any(r.severity.at_least(fail_on) for r in results):
        raise ValidationError(phase, results, fail_on)
    return results
