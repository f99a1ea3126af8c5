"""Compiled artifact types: instructions, registries, and the compiled net.

These are the compiler's output and the executor's input. They live apart
from compiler.py so validators and persistence can use them without
importing the compiler.
"""

from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Callable

from .ir import Node
from .ops import OpDef
from .store import VariableStore


@dataclass
class Instruction:
    """One op invocation, with its argument template pre-bound to slots.

    `args` is the full positional argument list with a None placeholder at
    every position fed from the store; `input_vars[i]` is the slot copied
    into `args[input_arg_pos[i]]` at run time. The template itself is never
    written to — bind() returns a fresh list.

    Forward/inference instructions write their result to `output_var`.
    Backward instructions call the op's adjoint; their last input is the
    layer's own derivative slot, and `num_input_der` is how many input
    derivatives the adjoint is expected to return.
    """
    op: OpDef
    kind: str                       # "forward" or "backward"
    name: str
    source: str
    args: tuple[Any, ...]
    kwargs: dict[str, Any]
    input_vars: tuple[int, ...]
    input_arg_pos: tuple[int, ...]
    output_var: int | None = None
    num_input_der: int | None = None

    @property
    def func(self) -> Callable | None:
        return self.op.adjoint if self.kind == "backward" else self.op.forward

    def bind(self, store: VariableStore) -> list[Any]:
        """Fill the argument template with current slot contents."""
        args = list(self.args)
        for var, pos in zip(self.input_vars, self.input_arg_pos):
            args[pos] = store[var]
        return args

    def signature(self) -> tuple:
        """Comparable summary (constant arguments by repr)."""
        return (
            self.op.name, self.kind, self.name, self.source,
            tuple(repr(a) for a in self.args),
            tuple(sorted((k, repr(v)) for k, v in self.kwargs.items())),
            self.input_vars, self.input_arg_pos,
            self.output_var, self.num_input_der,
        )


@dataclass
class ParamEntry:
    """A learnable parameter's slot and training metadata."""
    var: int
    name: str
    weight_decay: float
    learning_rate: float
    source: str
    train_method: str


@dataclass
class DiagnosticEntry:
    """A monitored node: its value slot, derivative slot, and display name."""
    var: int
    der: int
    name: str


@dataclass
class GraphSpec:
    """Compiler input: the ordered node list plus compile options.

    `roots` are the outputs designated by the caller (before any implicit
    aggregation node). `names` holds the name each node compiles under,
    explicit or generated. `meta` is the explicitly supplied shared
    metadata, if any.
    """
    nodes: list[Node]
    roots: list[Node]
    names: list[str]
    meta: Any = None


@dataclass
class CompiledNet:
    """Everything needed to evaluate a graph, independent of its store.

    `names` and `nodes` are indexed by compiled position. `nodes` only
    exists for node-handle lookup; it is empty after loading from disk.
    """
    forward: list[Instruction]
    backward: list[Instruction]
    test: list[Instruction]
    inputs: dict[str, int]
    params: list[ParamEntry]
    diagnostics: list[DiagnosticEntry]
    num_vars: int
    meta: Any = None
    names: list[str] = field(default_factory=list)
    nodes: list[Node] = field(default_factory=list, repr=False)

    def __post_init__(self) -> None:
        self._index: dict[int, int] = {id(n): 2 * k for k, n in enumerate(self.nodes)}

    def var_index(self, node: Node) -> int:
        """Value slot of a node handle."""
        var = self._index.get(id(node))
        if var is None:
            raise ValueError(f"{node!r} is not part of this net")
        return var

    @property
    def param_vars(self) -> list[int]:
        return [p.var for p in self.params]

    def new_store(self) -> VariableStore:
        """An empty store of the right size (no parameter values)."""
        return VariableStore(self.num_vars)

    def summary(self) -> str:
        """Human-readable summary of the compiled net."""
        n_nodes = self.num_vars // 2
        header = (f"Net: {n_nodes} nodes, {self.num_vars} slots "
                  f"({len(self.inputs)} inputs, {len(self.params)} params, "
                  f"{len(self.forward)} layers)")

        op_counts = Counter(instr.op.name for instr in self.forward)
        ops_str = ", ".join(f"{name}: {cnt}" for name, cnt in op_counts.most_common())

        lines = [header, f"  Ops:     {ops_str}"]
        if self.inputs:
            lines.append("  Inputs:  " + ", ".join(
                f"{name} [{var}]" for name, var in self.inputs.items()))
        if self.params:
            lines.append("  Params:  " + ", ".join(
                f"{p.name} [{p.var}]" for p in self.params))
        if self.diagnostics:
            lines.append("  Monitor: " + ", ".join(d.name for d in self.diagnostics))
        overridden = [t.name for f, t in zip(self.forward, self.test) if t.op is not f.op]
        if overridden:
            lines.append("  Inference overrides: " + ", ".join(overridden))
        return "\n".join(lines)
