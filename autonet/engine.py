"""Execution engine: run a compiled net's instruction streams on a store.

Three modes:
    forward    — forward stream only.
    inference  — inference ("test") stream only.
    normal     — forward stream, then the backward stream, which fills
                 every derivative slot with d(root)/d(value).

The backward pass accumulates: a node read by several layers receives one
partial derivative from each, summed into its derivative slot. Layers whose
op is a scatter op (indexing) skip the adjoint call and add the output
derivative straight into the indexed region of the source's derivative.

Not reentrant on a single store — give each concurrent caller its own
(VariableStore.copy()).
"""

from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
import logging
import time
from typing import Any

import numpy as np

from .program import CompiledNet, Instruction
from .store import VariableStore, der_slot

logger = logging.getLogger(__name__)


class Mode(Enum):
    """Evaluation mode."""
    FORWARD = "forward"
    NORMAL = "normal"
    INFERENCE = "inference"

    @classmethod
    def parse(cls, mode: "Mode | str") -> "Mode":
        if isinstance(mode, cls):
            return mode
        try:
            return cls(mode)
        except ValueError:
            raise ValueError(
                f"Unknown mode '{mode}' "
                f"(expected 'forward', 'normal', or 'inference')"
            ) from None


# ---------------------------------------------------------------------------
# Profiling types
# ---------------------------------------------------------------------------

@dataclass
class OpTiming:
    """Timing for a single instruction."""
    index: int           # position in its stream
    name: str            # layer name
    op: str              # OpDef.name
    stage: str           # "forward", "backward" or "inference"
    time_ns: int


@dataclass
class RunProfile:
    """Profiling results from a single evaluation."""
    op_timings: list[OpTiming] = field(default_factory=list)
    total_ns: int = 0

    def __str__(self) -> str:
        total_ms = self.total_ns / 1e6
        if not self.op_timings:
            return f"Execution Profile:\n  Total: {total_ms:.2f} ms (no per-op breakdown)"

        # Group by op and stage
        by_op: dict[str, list[int]] = defaultdict(list)
        for t in self.op_timings:
            by_op[f"{t.op} ({t.stage})"].append(t.time_ns)

        lines = ["Execution Profile:"]
        lines.append(f"  Total: {total_ms:.2f} ms ({len(self.op_timings)} ops)")

        # Sort by total time descending
        op_totals = [(op, sum(times), len(times)) for op, times in by_op.items()]
        op_totals.sort(key=lambda x: x[1], reverse=True)

        for op, total_ns, count in op_totals:
            ms = total_ns / 1e6
            pct = total_ns / self.total_ns * 100 if self.total_ns > 0 else 0
            lines.append(f"  {op:<28} {ms:7.2f} ms ({pct:5.1f}%)  {count} ops")

        return "\n".join(lines)


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------

def evaluate(net: CompiledNet, store: VariableStore, mode: Mode | str = "normal",
             der_output: Any = 1.0, accumulate_param_ders: bool = False,
             profile: RunProfile | None = None) -> VariableStore:
    """Evaluate a compiled net against a store, in place.

    Args:
        net: The compiled net.
        store: Its variable store, with inputs set. Mutated in place.
        mode: "forward", "normal" (forward + backward), or "inference".
        der_output: Derivative of the objective w.r.t. the root's output,
            seeded into the root's derivative slot (normal mode only).
        accumulate_param_ders: Leave parameter derivatives as they are
            instead of zeroing them, so repeated calls sum them (e.g. over
            sub-batches).
        profile: If given, per-instruction timings are appended to it.

    Returns:
        The same store.

    Raises:
        ValueError: Unknown mode, missing/empty der_output in normal mode,
            or a store of the wrong size. Checked before anything runs.
        Anything raised by an op propagates unchanged; the store keeps the
        updates made up to that point.
    """
    mode = Mode.parse(mode)
    if mode is Mode.NORMAL and _is_empty(der_output):
        raise ValueError("Must specify a non-empty output derivative for normal mode")
    if len(store) != net.num_vars:
        raise ValueError(
            f"Store has {len(store)} slots, compiled net needs {net.num_vars}"
        )

    t0 = time.perf_counter_ns()

    if mode is Mode.INFERENCE:
        _run_forward(net.test, store, "inference", profile)
    else:
        _run_forward(net.forward, store, "forward", profile)

    if mode is Mode.NORMAL:
        keep = [der_slot(var) for var in net.param_vars] if accumulate_param_ders else ()
        store.reset_ders(keep)
        store[len(store) - 1] = der_output
        _run_backward(net.backward, store, profile)

    elapsed = time.perf_counter_ns() - t0
    if profile is not None:
        profile.total_ns += elapsed
    logger.debug("Evaluated %s mode in %.3f ms", mode.value, elapsed / 1e6)
    return store


def _is_empty(value: Any) -> bool:
    """True for None and for zero-size arrays/sequences."""
    if value is None:
        return True
    shape = getattr(value, "shape", None)
    if shape is not None:
        return 0 in tuple(shape)
    if isinstance(value, (list, tuple)):
        return len(value) == 0
    return False


def _run_forward(stream: list[Instruction], store: VariableStore, stage: str,
                 profile: RunProfile | None) -> None:
    """Run a forward or inference stream: each result goes to its output slot."""
    for k, instr in enumerate(stream):
        args = instr.bind(store)
        if profile is None:
            store[instr.output_var] = instr.func(*args, **instr.kwargs)
        else:
            t0 = time.perf_counter_ns()
            store[instr.output_var] = instr.func(*args, **instr.kwargs)
            profile.op_timings.append(OpTiming(
                index=k, name=instr.name, op=instr.op.name, stage=stage,
                time_ns=time.perf_counter_ns() - t0,
            ))


def _run_backward(stream: list[Instruction], store: VariableStore,
                  profile: RunProfile | None) -> None:
    """Run the backward stream, accumulating into derivative slots."""
    # Derivative slots holding arrays this pass created, which the sparse
    # update may modify in place.
    owned: set[int] = set()

    for k, instr in enumerate(stream):
        t0 = time.perf_counter_ns() if profile is not None else 0
        args = instr.bind(store)

        if instr.op.scatter:
            _scatter_der(instr, args, store, owned)
        elif instr.num_input_der:
            _adjoint_der(instr, args, store, owned)

        if profile is not None:
            profile.op_timings.append(OpTiming(
                index=k, name=instr.name, op=instr.op.name, stage="backward",
                time_ns=time.perf_counter_ns() - t0,
            ))


def _scatter_der(instr: Instruction, args: list[Any], store: VariableStore,
                 owned: set[int]) -> None:
    """Sparse update for indexing ops: args are (source, index, dy).

    The source's derivative is only materialized (as zeros shaped like the
    source) the first time something writes to it, and dy is added at
    `index` without building a full-size derivative for the layer.
    """
    source, index, dy = args[0], args[1], args[2]
    slot = der_slot(instr.input_vars[0])
    current = store[slot]
    if current is None or store.is_zero(slot):
        store[slot] = np.zeros(np.shape(source), dtype=np.result_type(source, dy))
    elif slot not in owned or np.shape(current) != np.shape(source):
        store[slot] = np.array(np.broadcast_to(current, np.shape(source)),
                               dtype=np.result_type(current, dy), copy=True)
    owned.add(slot)
    np.add.at(store[slot], index, dy)


def _adjoint_der(instr: Instruction, args: list[Any], store: VariableStore,
                 owned: set[int]) -> None:
    """General case: call the adjoint and sum its outputs into input derivatives."""
    func = instr.func
    if func is None:
        raise RuntimeError(
            f"Op '{instr.op.name}' has no adjoint "
            f"(layer '{instr.name}', {instr.source or 'unknown source'})"
        )

    out = func(*args, **instr.kwargs)
    if not isinstance(out, tuple):
        out = (out,)
    out = out[:instr.num_input_der]

    # The last input is this layer's own derivative, not an operand.
    for var, pos in zip(instr.input_vars[:-1], instr.input_arg_pos[:-1]):
        if pos < len(out) and out[pos] is not None:
            slot = der_slot(var)
            store.accumulate(slot, out[pos])
            owned.add(slot)
