"""Graph compiler: node list -> flat instruction streams.

Takes a dependency-ordered node list and produces everything the executor
needs to evaluate it repeatedly:

  - forward, backward and inference ("test") instruction streams, one
    instruction per Layer, each with its argument template pre-bound to
    variable slots;
  - the input map (name -> value slot), parameter registry, and
    diagnostics registry;
  - a variable store sized 2 x node count, with parameter values filled in.

Slots are assigned by position: the k-th node owns value slot 2k and
derivative slot 2k + 1. The compiler only reads nodes; generated names live
in CompiledNet.names.

    compiled, store = compile_net(loss)
    compiled, store = compile_net(loss, prediction)   # several roots
"""

from collections import Counter
import logging
from typing import Any, Sequence

import numpy as np

from .ir import Layer, Node, NodeKind, Param
from .ops import DEAL, ROOTS
from .order import build_order
from .program import CompiledNet, DiagnosticEntry, GraphSpec, Instruction, ParamEntry
from .store import VariableStore, der_slot, value_slot
from .validation import Phase, Severity, run_validators

logger = logging.getLogger(__name__)


def compile_net(*roots: Node, meta: Any = None, diagnose_roots: bool = True,
                validation: str = "normal",
                verbose: bool = False) -> tuple[CompiledNet, VariableStore]:
    """Order the graph under `roots` and compile it.

    Several roots are flattened and joined into one vector by an implicit
    `roots` layer, which becomes the compiled root. The caller's roots (not
    that layer) get diagnostics by default.

    See compile_nodes() for the options.
    """
    if not roots:
        raise ValueError("compile_net() needs at least one root node")
    if len(roots) == 1:
        root = roots[0]
    else:
        root = Layer(ROOTS, *roots)
    nodes = build_order(root)
    return compile_nodes(nodes, roots=list(roots), meta=meta,
                         diagnose_roots=diagnose_roots,
                         validation=validation, verbose=verbose)


def compile_nodes(nodes: Sequence[Node], roots: Sequence[Node] | None = None, *,
                  meta: Any = None, diagnose_roots: bool = True,
                  validation: str = "normal",
                  verbose: bool = False) -> tuple[CompiledNet, VariableStore]:
    """Compile an already dependency-ordered node list.

    Args:
        nodes: Every node of the graph, each after the nodes it reads. The
            last node is the root: normal-mode evaluation seeds its
            derivative.
        roots: Nodes that get diagnostics by default (when their own flag
            is unset). Defaults to the last node.
        meta: Shared metadata for the compiled net. Counts as a meta source
            alongside any node carrying `meta`; more than one is an error.
        diagnose_roots: Turn on diagnostics for roots whose flag is unset.
        validation: How strictly to enforce validation checks.
            "strict"  — Fail on WARNING or ERROR.
            "normal"  — Fail on ERROR only (default).
        verbose: Print the compiled summary and validation results.

    Returns:
        (compiled net, initial variable store).

    Raises:
        ValidationError: Duplicate input names, several meta sources, or
            (strict) any warning.
    """
    nodes = list(nodes)
    if not nodes:
        raise ValueError("Cannot compile an empty node list")
    roots = list(roots) if roots is not None else [nodes[-1]]
    fail_on = _validation_severity(validation)

    names = assign_names(nodes)
    spec = GraphSpec(nodes=nodes, roots=roots, names=names, meta=meta)
    results = run_validators(Phase.POST_ORDER, spec, fail_on=fail_on)

    if meta is None:
        meta = next((n.meta for n in nodes if n.meta is not None), None)

    var_of = {id(node): value_slot(k) for k, node in enumerate(nodes)}
    store = VariableStore(2 * len(nodes))

    # --- Inputs and params ---
    inputs: dict[str, int] = {}
    params: list[ParamEntry] = []
    for k, node in enumerate(nodes):
        var = value_slot(k)
        if node.kind is NodeKind.INPUT:
            inputs[names[k]] = var
        elif node.kind is NodeKind.PARAM:
            params.append(ParamEntry(
                var=var,
                name=names[k],
                weight_decay=node.weight_decay,
                learning_rate=node.learning_rate,
                source=node.source,
                train_method=node.train_method,
            ))
            value = node.value
            store[var] = value.copy() if isinstance(value, np.ndarray) else value

    # --- Instruction streams ---
    layers = [(k, node) for k, node in enumerate(nodes) if node.kind is NodeKind.LAYER]
    forward = [_forward_instruction(node, names[k], value_slot(k), var_of)
               for k, node in layers]
    backward = [_backward_instruction(node, names[k], value_slot(k), var_of)
                for k, node in reversed(layers)]
    test = [_test_instruction(node, names[k], value_slot(k), var_of)
            for k, node in layers]

    # --- Diagnostics ---
    root_ids = {id(r) for r in roots}
    diagnostics = []
    for k, node in enumerate(nodes):
        flag = node.diagnostics
        if flag is None:
            flag = diagnose_roots and id(node) in root_ids
        if flag:
            var = value_slot(k)
            diagnostics.append(DiagnosticEntry(var=var, der=der_slot(var), name=names[k]))

    compiled = CompiledNet(
        forward=forward,
        backward=backward,
        test=test,
        inputs=inputs,
        params=params,
        diagnostics=diagnostics,
        num_vars=len(store),
        meta=meta,
        names=names,
        nodes=nodes,
    )
    results += run_validators(Phase.POST_COMPILE, compiled, fail_on=fail_on)

    logger.debug("Compiled %d nodes into %d instructions per stream (%d slots)",
                 len(nodes), len(forward), len(store))
    if verbose:
        print(compiled.summary())
        print()
        for r in results:
            print(r)

    return compiled, store


def _validation_severity(validation: str) -> Severity:
    """Map validation preference string to fail_on severity."""
    if validation == "strict":
        return Severity.WARNING
    if validation == "normal":
        return Severity.ERROR
    raise ValueError(
        f"Unknown validation '{validation}' "
        f"(expected 'strict' or 'normal')"
    )


# ---------------------------------------------------------------------------
# Naming
# ---------------------------------------------------------------------------

def assign_names(nodes: Sequence[Node]) -> list[str]:
    """Name every node, keeping explicit names and generating the rest.

    Left to right over the ordered list:
      1. unnamed Input  -> input<k>, k counting unnamed Inputs so far;
      2. unnamed Layer  -> <op><k>, k counting Layers with the same op so far;
         its unnamed Param arguments -> <layer>_p<position> (1-based);
      3. anything left  -> <kind><k>, k counting nodes of that kind so far.
    """
    names: list[str | None] = [n.name for n in nodes]
    position = {id(n): k for k, n in enumerate(nodes)}

    unnamed_inputs = 0
    op_counts: Counter[str] = Counter()
    for k, node in enumerate(nodes):
        if node.kind is NodeKind.INPUT and names[k] is None:
            unnamed_inputs += 1
            names[k] = f"input{unnamed_inputs}"

        elif node.kind is NodeKind.LAYER:
            op_counts[node.op.name] += 1
            if names[k] is None:
                names[k] = f"{node.op.name}{op_counts[node.op.name]}"
                for i, arg in enumerate(node.args):
                    if isinstance(arg, Param):
                        j = position[id(arg)]
                        if names[j] is None:
                            names[j] = f"{names[k]}_p{i + 1}"

    kind_counts: Counter[NodeKind] = Counter()
    for k, node in enumerate(nodes):
        kind_counts[node.kind] += 1
        if names[k] is None:
            names[k] = f"{node.kind.value}{kind_counts[node.kind]}"

    return names


# ---------------------------------------------------------------------------
# Instruction generation
# ---------------------------------------------------------------------------

def _parse_args(args: Sequence[Any],
                var_of: dict[int, int]) -> tuple[list[Any], list[int], list[int]]:
    """Split an argument list into a constant template and slot bindings.

    Returns (template, input_vars, input_arg_pos): node-valued arguments
    become None in the template, and their value slots and positions are
    recorded in parallel lists.
    """
    template: list[Any] = []
    input_vars: list[int] = []
    input_arg_pos: list[int] = []
    for pos, arg in enumerate(args):
        if isinstance(arg, Node):
            input_vars.append(var_of[id(arg)])
            input_arg_pos.append(pos)
            template.append(None)
        else:
            template.append(arg)
    return template, input_vars, input_arg_pos


def _forward_instruction(layer: Layer, name: str, var: int,
                         var_of: dict[int, int]) -> Instruction:
    args, input_vars, input_arg_pos = _parse_args(layer.args, var_of)
    return Instruction(
        op=layer.op,
        kind="forward",
        name=name,
        source=layer.source,
        args=tuple(args),
        kwargs=dict(layer.kwargs),
        input_vars=tuple(input_vars),
        input_arg_pos=tuple(input_arg_pos),
        output_var=var,
    )


def _backward_instruction(layer: Layer, name: str, var: int,
                          var_of: dict[int, int]) -> Instruction:
    """Adjoint call: the forward arguments plus this layer's output derivative.

    The derivative goes right before the first string argument (the start
    of "name", value configuration pairs), or at the end if there is none.
    Positions at or after that point shift by one.
    """
    args, input_vars, input_arg_pos = _parse_args(layer.args, var_of)

    insert_at = next((i for i, a in enumerate(args) if isinstance(a, str)), len(args))

    # Assume the adjoint returns one derivative per argument up to the last
    # node-valued one, constants included.
    if layer.num_input_der is None:
        num_input_der = max(input_arg_pos) + 1 if input_arg_pos else 0
    else:
        num_input_der = layer.num_input_der

    args.insert(insert_at, None)
    input_arg_pos = [p + 1 if p >= insert_at else p for p in input_arg_pos]
    input_arg_pos.append(insert_at)
    input_vars.append(der_slot(var))

    return Instruction(
        op=layer.op,
        kind="backward",
        name=name,
        source=layer.source,
        args=tuple(args),
        kwargs=dict(layer.kwargs),
        input_vars=tuple(input_vars),
        input_arg_pos=tuple(input_arg_pos),
        num_input_der=num_input_der,
    )


def _test_instruction(layer: Layer, name: str, var: int,
                      var_of: dict[int, int]) -> Instruction:
    """Inference-mode call: the forward op, an override, or a pass-through.

    Pass-through layers stay in the stream (forwarding their first argument)
    so every output slot is still written.
    """
    if isinstance(layer.test_args, str):
        args, kwargs = layer.args, layer.kwargs
    else:
        args, kwargs = layer.test_args, layer.test_kwargs

    if layer.test_op is None:
        op = layer.op
    elif isinstance(layer.test_op, str):
        op = DEAL
        args, kwargs = args[:1], {}
    else:
        op = layer.test_op

    template, input_vars, input_arg_pos = _parse_args(args, var_of)
    return Instruction(
        op=op,
        kind="forward",
        name=name,
        source=layer.source,
        args=tuple(template),
        kwargs=dict(kwargs),
        input_vars=tuple(input_vars),
        input_arg_pos=tuple(input_arg_pos),
        output_var=var,
    )
