"""Compiled net validators.

Covers the POST_COMPILE phase. Validators receive a CompiledNet and check
the compiler's own output: slot pairing, argument bindings, and ops the
backward pass can't run.
"""

from ..program import CompiledNet, Instruction
from .core import Phase, Severity, ValidationResult, register_validator


def _streams(net: CompiledNet) -> list[tuple[str, list[Instruction]]]:
    return [("forward", net.forward), ("backward", net.backward), ("test", net.test)]


@register_validator("slot_pairing", Phase.POST_COMPILE)
def validate_slot_pairing(net: CompiledNet) -> list[ValidationResult]:
    """Every slot reference is inside the store and respects value/derivative pairing.

    Outputs, inputs, parameters, and diagnostics must name value (even)
    slots; a backward instruction's last input is a derivative (odd) slot.
    """
    NAME = "slot_pairing"
    results = []
    r = lambda sev, msg: results.append(ValidationResult(NAME, sev, msg))

    if net.num_vars % 2 or (net.names and net.num_vars != 2 * len(net.names)):
        r(Severity.ERROR, f"Store has {net.num_vars} slots for {len(net.names)} nodes")

    for stream_name, stream in _streams(net):
        for k, instr in enumerate(stream):
            for var in instr.input_vars:
                if not 0 <= var < net.num_vars:
                    r(Severity.ERROR,
                      f"{stream_name}[{k}] ({instr.name}) reads slot {var} "
                      f"outside the store ({net.num_vars} slots)")
            if instr.kind == "backward":
                if not instr.input_vars or instr.input_vars[-1] % 2 != 1:
                    r(Severity.ERROR,
                      f"{stream_name}[{k}] ({instr.name}) does not read a derivative slot last")
                value_inputs = instr.input_vars[:-1]
            else:
                value_inputs = instr.input_vars
                if instr.output_var is None or instr.output_var % 2:
                    r(Severity.ERROR,
                      f"{stream_name}[{k}] ({instr.name}) writes non-value slot {instr.output_var}")
            for var in value_inputs:
                if var % 2:
                    r(Severity.ERROR,
                      f"{stream_name}[{k}] ({instr.name}) reads derivative slot {var} as a value")

    for name, var in net.inputs.items():
        if var % 2:
            r(Severity.ERROR, f"Input '{name}' mapped to derivative slot {var}")
    for p in net.params:
        if p.var % 2:
            r(Severity.ERROR, f"Param '{p.name}' mapped to derivative slot {p.var}")
    for d in net.diagnostics:
        if d.der != d.var + 1:
            r(Severity.ERROR, f"Diagnostic '{d.name}' derivative slot {d.der} is not {d.var + 1}")

    return results


@register_validator("binding_positions", Phase.POST_COMPILE)
def validate_binding_positions(net: CompiledNet) -> list[ValidationResult]:
    """Every bound input lands on a placeholder inside its argument template."""
    NAME = "binding_positions"
    results = []
    for stream_name, stream in _streams(net):
        for k, instr in enumerate(stream):
            if len(instr.input_vars) != len(instr.input_arg_pos):
                results.append(ValidationResult(NAME, Severity.ERROR,
                    f"{stream_name}[{k}] ({instr.name}) has {len(instr.input_vars)} "
                    f"input slots but {len(instr.input_arg_pos)} positions"))
                continue
            if len(set(instr.input_arg_pos)) != len(instr.input_arg_pos):
                results.append(ValidationResult(NAME, Severity.ERROR,
                    f"{stream_name}[{k}] ({instr.name}) binds two inputs to one position"))
            for pos in instr.input_arg_pos:
                if not 0 <= pos < len(instr.args):
                    results.append(ValidationResult(NAME, Severity.ERROR,
                        f"{stream_name}[{k}] ({instr.name}) binds position {pos} "
                        f"outside its {len(instr.args)} arguments"))
                elif instr.args[pos] is not None:
                    results.append(ValidationResult(NAME, Severity.ERROR,
                        f"{stream_name}[{k}] ({instr.name}) binds over constant "
                        f"argument at position {pos}"))
    return results


@register_validator("adjoint_coverage", Phase.POST_COMPILE)
def validate_adjoint_coverage(net: CompiledNet) -> list[ValidationResult]:
    """Warn about layers whose op has no adjoint (normal mode would fail)."""
    return [
        ValidationResult("adjoint_coverage", Severity.WARNING,
                         f"Layer '{instr.name}' uses op '{instr.op.name}' which has "
                         f"no adjoint; normal-mode evaluation will fail")
        for instr in net.backward
        if instr.op.adjoint is None and not instr.op.scatter
    ]


@register_validator("inferred_der_count", Phase.POST_COMPILE)
def validate_inferred_der_count(net: CompiledNet) -> list[ValidationResult]:
    """Note layers whose inferred derivative count spans constant arguments.

    The count is the position of the last node-valued argument, so any
    constants before it are expected to get (ignored) derivatives too.
    """
    results = []
    for instr in net.backward:
        # Positions as in the forward call, before the derivative was inserted
        insert_at = instr.input_arg_pos[-1]
        value_positions = {p - 1 if p > insert_at else p for p in instr.input_arg_pos[:-1]}
        covered = instr.num_input_der or 0
        constants = [pos for pos in range(min(covered, len(instr.args) - 1))
                     if pos not in value_positions]
        if constants:
            results.append(ValidationResult("inferred_der_count", Severity.INFO,
                f"Layer '{instr.name}' expects {covered} derivatives from "
                f"'{instr.op.name}', including constant argument position(s) "
                f"{constants}"))
    return results
