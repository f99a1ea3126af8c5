"""Save/load a compiled net: {path}.json (streams, registries) + {path}.weights.

The JSON file holds everything needed to rebuild the CompiledNet (the three
instruction streams, input map, parameter and diagnostics registries, meta,
slot count) and a weight manifest with byte offsets into the binary file.
The weights file holds the raw bytes of every array: parameter values and
any array constants found in argument templates. Human-readable JSON for
inspection and diffing, as with the graph format it is modelled on.

Ops are stored by registry name. Custom ops must be registered (import the
module that calls register_op) before loading a net that uses them.

Argument constants are encoded as JSON where possible; tuples, slices,
Ellipsis, dicts and numpy values use tagged objects:

    {"__tuple__": [...]}       {"__slice__": [start, stop, step]}
    {"__ellipsis__": true}     {"__dict__": {...}}
    {"__array__": {"offset": 0, "size": 48, "dtype": "<f4",
                   "shape": [3, 4], "scalar": false}}
"""

import json
import logging
from pathlib import Path
from typing import Any

import numpy as np
import torch

from .ops import resolve_op
from .program import CompiledNet, DiagnosticEntry, Instruction, ParamEntry
from .store import VariableStore

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1


# ---------------------------------------------------------------------------
# Value encoding
# ---------------------------------------------------------------------------

class _WeightWriter:
    """Packs arrays into a flat binary blob, recording manifest entries."""

    def __init__(self) -> None:
        self.blobs: list[bytes] = []
        self.offset = 0

    def add(self, value: np.ndarray | np.generic) -> dict:
        scalar = isinstance(value, np.generic)
        buf = np.asarray(value)
        raw = buf.tobytes(order="C")
        entry = {
            "offset": self.offset,
            "size": len(raw),
            "dtype": buf.dtype.str,
            "shape": list(buf.shape),
            "scalar": scalar,
        }
        self.blobs.append(raw)
        self.offset += len(raw)
        return entry


def _encode(value: Any, writer: _WeightWriter) -> Any:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, torch.Tensor):
        value = value.detach().cpu().numpy()
    if isinstance(value, (np.ndarray, np.generic)):
        if value.dtype == object:
            raise TypeError("Cannot save object arrays")
        return {"__array__": writer.add(value)}
    if isinstance(value, tuple):
        return {"__tuple__": [_encode(v, writer) for v in value]}
    if isinstance(value, list):
        return [_encode(v, writer) for v in value]
    if isinstance(value, slice):
        return {"__slice__": [_encode(v, writer) for v in (value.start, value.stop, value.step)]}
    if value is Ellipsis:
        return {"__ellipsis__": True}
    if isinstance(value, dict):
        if not all(isinstance(k, str) for k in value):
            raise TypeError("Cannot save a dict with non-string keys")
        return {"__dict__": {k: _encode(v, writer) for k, v in value.items()}}
    raise TypeError(f"Cannot save value of type {type(value).__name__}")


def _decode(obj: Any, raw: bytes | None) -> Any:
    if isinstance(obj, list):
        return [_decode(v, raw) for v in obj]
    if not isinstance(obj, dict):
        return obj
    if "__tuple__" in obj:
        return tuple(_decode(v, raw) for v in obj["__tuple__"])
    if "__slice__" in obj:
        return slice(*(_decode(v, raw) for v in obj["__slice__"]))
    if "__ellipsis__" in obj:
        return Ellipsis
    if "__dict__" in obj:
        return {k: _decode(v, raw) for k, v in obj["__dict__"].items()}
    if "__array__" in obj:
        return _read_array(obj["__array__"], raw)
    raise ValueError(f"Unrecognized encoded value: {obj!r}")


def _read_array(entry: dict, raw: bytes | None) -> np.ndarray | np.generic:
    if raw is None:
        raise FileNotFoundError("Weights file is missing but the manifest references it")
    dtype = np.dtype(entry["dtype"])
    shape = tuple(entry["shape"])
    arr = np.frombuffer(raw, dtype=dtype, offset=entry["offset"],
                        count=int(np.prod(shape))).reshape(shape).copy()
    return arr[()] if entry["scalar"] else arr


# ---------------------------------------------------------------------------
# Instructions
# ---------------------------------------------------------------------------

def _instruction_to_dict(instr: Instruction, writer: _WeightWriter) -> dict:
    return {
        "op": instr.op.name,
        "kind": instr.kind,
        "name": instr.name,
        "source": instr.source,
        "args": [_encode(a, writer) for a in instr.args],
        "kwargs": _encode(instr.kwargs, writer),
        "input_vars": list(instr.input_vars),
        "input_arg_pos": list(instr.input_arg_pos),
        "output_var": instr.output_var,
        "num_input_der": instr.num_input_der,
    }


def _instruction_from_dict(d: dict, raw: bytes | None) -> Instruction:
    return Instruction(
        op=resolve_op(d["op"]),
        kind=d["kind"],
        name=d["name"],
        source=d["source"],
        args=tuple(_decode(a, raw) for a in d["args"]),
        kwargs=_decode(d["kwargs"], raw),
        input_vars=tuple(d["input_vars"]),
        input_arg_pos=tuple(d["input_arg_pos"]),
        output_var=d["output_var"],
        num_input_der=d["num_input_der"],
    )


# ---------------------------------------------------------------------------
# Save / load
# ---------------------------------------------------------------------------

def save(net: CompiledNet, store: VariableStore, path: str | Path) -> None:
    """Save a compiled net and its parameter values.

    Writes {path}.json and, if there are any arrays to store, {path}.weights.
    Only parameter value slots are saved from the store.

    Args:
        net: The compiled net.
        store: Its variable store (parameter values are read from here).
        path: Stem/prefix.
    """
    path = Path(path)
    writer = _WeightWriter()

    def _default(obj):
        if isinstance(obj, np.integer):
            return int(obj)
        if isinstance(obj, np.floating):
            return float(obj)
        raise TypeError(f"Not JSON serializable: {type(obj)}")

    d = {
        "format": FORMAT_VERSION,
        "num_vars": net.num_vars,
        "inputs": net.inputs,
        "params": [
            {
                "var": p.var,
                "name": p.name,
                "weight_decay": p.weight_decay,
                "learning_rate": p.learning_rate,
                "source": p.source,
                "train_method": p.train_method,
                "value": _encode(store[p.var], writer),
            }
            for p in net.params
        ],
        "diagnostics": [
            {"var": e.var, "der": e.der, "name": e.name} for e in net.diagnostics
        ],
        "meta": _encode(net.meta, writer),
        "forward": [_instruction_to_dict(i, writer) for i in net.forward],
        "backward": [_instruction_to_dict(i, writer) for i in net.backward],
        "test": [_instruction_to_dict(i, writer) for i in net.test],
        "weights_size": writer.offset,
    }

    with open(path.with_suffix(".json"), "w") as f:
        json.dump(d, f, indent=2, default=_default)

    if writer.blobs:
        with open(path.with_suffix(".weights"), "wb") as f:
            for blob in writer.blobs:
                f.write(blob)

    logger.debug("Saved net to %s (%d bytes of weights)",
                 path.with_suffix(".json"), writer.offset)


def load(path: str | Path) -> tuple[CompiledNet, VariableStore]:
    """Load a compiled net saved by save().

    Returns (compiled net, store). The store has the saved slot count with
    parameter values restored; every other slot is None. The returned net
    has no node handles.

    Raises:
        ValueError: An op name not in the registry, or an unsupported format.
        FileNotFoundError: The JSON file, or a weights file it references,
            is missing.
    """
    path = Path(path)

    with open(path.with_suffix(".json")) as f:
        d = json.load(f)

    if d.get("format") != FORMAT_VERSION:
        raise ValueError(
            f"Unsupported net format {d.get('format')!r} (expected {FORMAT_VERSION})"
        )

    weights_path = path.with_suffix(".weights")
    raw = weights_path.read_bytes() if weights_path.exists() else None

    params = []
    store = VariableStore(d["num_vars"])
    for p in d["params"]:
        params.append(ParamEntry(
            var=p["var"],
            name=p["name"],
            weight_decay=p["weight_decay"],
            learning_rate=p["learning_rate"],
            source=p["source"],
            train_method=p["train_method"],
        ))
        store[p["var"]] = _decode(p["value"], raw)

    net = CompiledNet(
        forward=[_instruction_from_dict(i, raw) for i in d["forward"]],
        backward=[_instruction_from_dict(i, raw) for i in d["backward"]],
        test=[_instruction_from_dict(i, raw) for i in d["test"]],
        inputs=dict(d["inputs"]),
        params=params,
        diagnostics=[DiagnosticEntry(**e) for e in d["diagnostics"]],
        num_vars=d["num_vars"],
        meta=_decode(d["meta"], raw),
    )

    logger.debug("Loaded net from %s (%d slots)", path.with_suffix(".json"), net.num_vars)
    return net, store
