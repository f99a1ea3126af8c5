"""Net: the primary user-facing API.

Pairs a compiled net with the variable store it runs against, behind a
compile / bind / evaluate / read interface:

    x = Input("x")
    w = Param(np.float64(2.0), name="w")
    net = Net(w * x ** 2)
    net.set_inputs("x", 3.0)
    net.eval()                          # forward + backward
    net.get_value(net.num_vars - 2)     # 18.0
    net.get_der(w)                      # 9.0

    # With observability:
    net = Net(loss, verbose=True)       # prints summary and validation results
    net.eval(profile=True)
    print(net.last_profile)             # per-op timing breakdown
    print(net.dump())                   # every slot with its value/derivative
"""

import logging
from pathlib import Path
from typing import Any, Sequence

import numpy as np
import torch

from . import persistence, placement
from .compiler import compile_net
from .diagnostics import DiagnosticSample, snapshot
from .engine import Mode, RunProfile, evaluate
from .ir import Node
from .program import CompiledNet, ParamEntry
from .store import VariableStore, der_slot

logger = logging.getLogger(__name__)

SlotRef = int | Node | Sequence[int | Node]


class Net:
    """A compiled graph and its variable store.

    Values and derivatives can be addressed by slot index, by a list of
    slot indices, or by the node handles the graph was built from (not
    available on a net restored with load()).
    """

    def __init__(self, *roots: Node, meta: Any = None, diagnose_roots: bool = True,
                 validation: str = "normal", verbose: bool = False) -> None:
        """Compile the graph under `roots`.

        Args:
            *roots: Output nodes. Several roots are concatenated into one.
            meta: Shared metadata (conflicts with meta set on a node).
            diagnose_roots: Monitor roots whose diagnostics flag is unset.
            validation: "strict" (fail on WARNING or ERROR) or "normal"
                (fail on ERROR only).
            verbose: Print the compiled summary and validation results.
        """
        compiled, store = compile_net(*roots, meta=meta, diagnose_roots=diagnose_roots,
                                      validation=validation, verbose=verbose)
        self._compiled = compiled
        self._store: VariableStore | None = store
        self._last_profile: RunProfile | None = None

    @classmethod
    def from_compiled(cls, compiled: CompiledNet, store: VariableStore) -> "Net":
        """Wrap an existing compiled net and store."""
        if len(store) != compiled.num_vars:
            raise ValueError(
                f"Store has {len(store)} slots, compiled net needs {compiled.num_vars}"
            )
        net = cls.__new__(cls)
        net._compiled = compiled
        net._store = store
        net._last_profile = None
        return net

    # --- Properties ---

    @property
    def compiled(self) -> CompiledNet:
        return self._compiled

    @property
    def store(self) -> VariableStore:
        if self._store is None:
            raise RuntimeError("Store is in use by a running evaluation")
        return self._store

    @property
    def num_vars(self) -> int:
        return self._compiled.num_vars

    @property
    def inputs(self) -> dict[str, int]:
        """Input name -> value slot."""
        return dict(self._compiled.inputs)

    @property
    def params(self) -> list[ParamEntry]:
        return list(self._compiled.params)

    @property
    def meta(self) -> Any:
        return self._compiled.meta

    @property
    def last_profile(self) -> RunProfile | None:
        """Profiling results from the most recent eval(profile=True) call."""
        return self._last_profile

    # --- Evaluation ---

    def eval(self, mode: Mode | str = "normal", der_output: Any = 1.0,
             accumulate_param_ders: bool = False, profile: bool = False) -> Any:
        """Evaluate the net and return the root's output value.

        Args:
            mode: How to evaluate.
                "forward"   — Forward stream only.
                "normal"    — Forward, then backward from the root (default).
                "inference" — Inference stream (test-time ops) only.
            der_output: Seed for the root's derivative (normal mode).
            accumulate_param_ders: Add to the existing parameter derivatives
                instead of zeroing them first.
            profile: Record per-instruction timings into last_profile.

        If an op raises, the exception propagates and the store keeps the
        updates made before it.
        """
        run_profile = RunProfile() if profile else None
        store, self._store = self.store, None
        try:
            evaluate(self._compiled, store, mode=mode, der_output=der_output,
                     accumulate_param_ders=accumulate_param_ders, profile=run_profile)
        finally:
            self._store = store
        self._last_profile = run_profile
        return store[self._compiled.num_vars - 2]

    # --- Slot access ---

    def var_index(self, node: Node) -> int:
        """Value slot of a node handle. Its derivative is the next slot."""
        return self._compiled.var_index(node)

    def _slot(self, ref: int | Node) -> int:
        if isinstance(ref, Node):
            return self._compiled.var_index(ref)
        if isinstance(ref, (int, np.integer)) and not isinstance(ref, bool):
            return int(ref)
        raise TypeError(f"Expected a slot index or a node, got {type(ref).__name__}")

    def _slots(self, ref: SlotRef) -> int | list[int]:
        if isinstance(ref, (list, tuple)):
            return [self._slot(r) for r in ref]
        return self._slot(ref)

    def get_value(self, ref: SlotRef) -> Any:
        slots = self._slots(ref)
        if isinstance(slots, list):
            return self.store.get_many(slots)
        return self.store[slots]

    def get_der(self, ref: SlotRef) -> Any:
        """Derivative(s) paired with the given value slot(s) or node(s)."""
        slots = self._slots(ref)
        if isinstance(slots, list):
            return self.store.get_many([der_slot(s) for s in slots])
        return self.store[der_slot(slots)]

    def set_value(self, ref: SlotRef, value: Any) -> None:
        """Write a value, or a list of values when `ref` is a list."""
        slots = self._slots(ref)
        if isinstance(slots, list):
            self.store.set_many(slots, value)
        else:
            self.store[slots] = value

    def set_der(self, ref: SlotRef, value: Any) -> None:
        slots = self._slots(ref)
        if isinstance(slots, list):
            self.store.set_many([der_slot(s) for s in slots], value)
        else:
            self.store[der_slot(slots)] = value

    def set_inputs(self, *pairs: Any, **named: Any) -> None:
        """Bind input values by name.

        Accepts alternating name/value positional pairs and/or keywords:

            net.set_inputs("x", x, "y", y)
            net.set_inputs(x=x, y=y)

        Nothing is written unless every name is known.
        """
        if len(pairs) % 2:
            raise ValueError(
                f"set_inputs() takes name/value pairs, got {len(pairs)} positional arguments"
            )
        items = list(zip(pairs[0::2], pairs[1::2])) + list(named.items())
        inputs = self._compiled.inputs
        for name, _ in items:
            if name not in inputs:
                raise ValueError(
                    f"Unknown input '{name}' "
                    f"(expected one of {', '.join(repr(n) for n in inputs) or 'none'})"
                )
        store = self.store
        for name, value in items:
            store[inputs[name]] = value

    # --- Placement / copies ---

    def move(self, device: str) -> None:
        """Move every stored value to "cpu" (numpy) or "gpu" (CUDA tensors)."""
        placement.move(self.store, device)
        logger.debug("Moved %d slots to %s", self.num_vars, device)

    def clone(self) -> "Net":
        """A net sharing the compiled streams with an independent store."""
        return Net.from_compiled(self._compiled, self.store.copy())

    # --- Persistence ---

    def save(self, path: str | Path) -> None:
        """Write {path}.json and {path}.weights."""
        persistence.save(self._compiled, self.store, path)

    @classmethod
    def load(cls, path: str | Path) -> "Net":
        """Restore a saved net. Only slot addressing is available on it."""
        compiled, store = persistence.load(path)
        return cls.from_compiled(compiled, store)

    # --- Inspection ---

    def diagnostics(self) -> list[DiagnosticSample]:
        """Current value and derivative of every monitored node."""
        return snapshot(self._compiled, self.store)

    def summary(self) -> str:
        return self._compiled.summary()

    def dump(self) -> str:
        """Table of every node: slot, type, function, name, value, derivative."""
        rows = [("slot", "type", "function", "name", "value", "derivative")]
        for var, (kind, func, name) in sorted(self._describe_nodes().items()):
            rows.append((str(var), kind, func, name,
                         _describe_value(self.store[var]),
                         _describe_value(self.store[der_slot(var)])))

        widths = [max(len(row[i]) for row in rows) for i in range(len(rows[0]))]
        lines = ["  ".join(cell.ljust(w) for cell, w in zip(row, widths)).rstrip()
                 for row in rows]
        lines.insert(1, "  ".join("-" * w for w in widths))
        return "\n".join(lines)

    def _describe_nodes(self) -> dict[int, tuple[str, str, str]]:
        """Value slot -> (type, function, name), from the compiled registries."""
        nodes: dict[int, tuple[str, str, str]] = {}
        for name, var in self._compiled.inputs.items():
            nodes[var] = ("input", "", name)
        for p in self._compiled.params:
            nodes[p.var] = ("param", "", p.name)
        for instr in self._compiled.forward:
            nodes[instr.output_var] = ("layer", instr.op.name, instr.name)
        return nodes

    def __repr__(self) -> str:
        c = self._compiled
        return (f"Net({c.num_vars // 2} nodes, {len(c.inputs)} inputs, "
                f"{len(c.params)} params)")


def _describe_value(value: Any) -> str:
    """Short display form: "[3x4 float32]" for arrays, the number for scalars."""
    if value is None:
        return "-"
    if isinstance(value, torch.Tensor):
        dtype = str(value.dtype).replace("torch.", "")
        if value.dim() == 0:
            return f"{value.item():.6g} ({value.device.type})"
        return f"[{'x'.join(str(d) for d in value.shape)} {dtype} {value.device.type}]"
    if isinstance(value, np.ndarray) and value.ndim > 0:
        return f"[{'x'.join(str(d) for d in value.shape)} {value.dtype}]"
    if isinstance(value, (int, float, np.number, np.ndarray)) and not isinstance(value, bool):
        return f"{float(value):.6g}"
    return repr(value)
