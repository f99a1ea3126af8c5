"""Graph definition: the nodes a network is built from.

Three kinds of node make up a graph. Edges are implicit in each Layer's
argument list — an argument is either a constant or another node, whose
output is fed in when the layer runs.

    Input   — named placeholder, set by the caller before each evaluation.
    Param   — learnable value with training metadata (weight decay,
              learning rate, training method).
    Layer   — an op applied to an ordered argument list.

Nodes are only read by the compiler. Names are optional: anything left
unnamed gets a deterministic name at compile time (see compiler.assign_names),
but the nodes themselves are never modified.

    x = Input("x")
    w = Param(np.float32(2.0))
    y = w * x ** 2           # operator sugar builds Layers over built-in ops
    net = Net(y)
"""

from enum import Enum
from pathlib import Path
import inspect
from typing import Any, Sequence

from .ops import OpDef, resolve_op


class NodeKind(Enum):
    """Role of a node in the graph. Values double as default name stems."""
    INPUT = "input"
    PARAM = "param"
    LAYER = "layer"


# Training methods a Param can declare. The tag is carried into the compiled
# parameter registry for whatever solver consumes it.
TRAIN_METHODS = ("gradient", "average", "none")


_PACKAGE_DIR = Path(__file__).resolve().parent


def _caller_source() -> str:
    """Return "file:line" of the first stack frame outside this package."""
    frame = inspect.currentframe()
    try:
        while frame is not None:
            filename = Path(frame.f_code.co_filename)
            if filename.resolve().parent != _PACKAGE_DIR:
                return f"{filename.name}:{frame.f_lineno}"
            frame = frame.f_back
        return ""
    finally:
        del frame


class Node:
    """Base class for graph vertices.

    Nodes hash by identity, so they can be used as handles into a compiled
    net (Net.get_value(node), etc.). Arithmetic operators build Layers.
    """
    kind: NodeKind

    def __init__(self, name: str | None = None, diagnostics: bool | None = None,
                 meta: Any = None) -> None:
        self.name = name
        self.diagnostics = diagnostics
        self.meta = meta
        self.source = _caller_source()

    @property
    def deps(self) -> list["Node"]:
        """Nodes this node reads from, in argument order."""
        return []

    def __repr__(self) -> str:
        label = self.name if self.name is not None else "?"
        return f"{type(self).__name__}({label})"

    # --- Operator sugar ---

    def __add__(self, other):
        return Layer("plus", self, other)

    def __radd__(self, other):
        return Layer("plus", other, self)

    def __sub__(self, other):
        return Layer("minus", self, other)

    def __rsub__(self, other):
        return Layer("minus", other, self)

    def __mul__(self, other):
        return Layer("times", self, other)

    def __rmul__(self, other):
        return Layer("times", other, self)

    def __truediv__(self, other):
        return Layer("rdivide", self, other)

    def __rtruediv__(self, other):
        return Layer("rdivide", other, self)

    def __matmul__(self, other):
        return Layer("mtimes", self, other)

    def __rmatmul__(self, other):
        return Layer("mtimes", other, self)

    def __pow__(self, other):
        if isinstance(other, (int, float)) and other == 2:
            return Layer("square", self)
        return Layer("power", self, other)

    def __neg__(self):
        return Layer("times", self, -1.0)

    def __getitem__(self, index):
        if not isinstance(index, tuple):
            index = (index,)
        return Layer("slice", self, index)


class Input(Node):
    """Placeholder for data supplied by the caller (Net.set_inputs)."""
    kind = NodeKind.INPUT

    def __init__(self, name: str | None = None, diagnostics: bool | None = None) -> None:
        super().__init__(name=name, diagnostics=diagnostics)


class Param(Node):
    """A learnable parameter.

    The compiler copies `value` into the parameter's value slot once; after
    that the net's variable store owns it and solvers update it there.
    """
    kind = NodeKind.PARAM

    def __init__(self, value: Any, name: str | None = None,
                 weight_decay: float = 1.0, learning_rate: float = 1.0,
                 train_method: str = "gradient",
                 diagnostics: bool | None = None) -> None:
        if train_method not in TRAIN_METHODS:
            raise ValueError(
                f"Unknown train_method '{train_method}' "
                f"(expected one of {', '.join(TRAIN_METHODS)})"
            )
        super().__init__(name=name, diagnostics=diagnostics)
        self.value = value
        self.weight_decay = weight_decay
        self.learning_rate = learning_rate
        self.train_method = train_method


class Layer(Node):
    """An op applied to an ordered argument list.

    Args:
        op: OpDef, registered op name, or registered forward callable.
        *args: Positional arguments. Nodes are replaced by their outputs at
            run time; anything else is passed through as a constant. A
            string among them starts the configuration part of the list
            ("name", value pairs): the backward pass inserts the output
            derivative just before it.
        name: Optional explicit name.
        test_op: Op to run in inference mode instead of `op`. None means
            same as `op`; "none" makes the layer a pass-through of its first
            argument (e.g. dropout).
        test_args: Positional arguments for inference mode, or "same".
        test_kwargs: Keyword arguments used with an explicit `test_args`.
        num_input_der: How many input derivatives the adjoint returns. None
            infers it from the position of the last node-valued argument.
        diagnostics: Monitor this node's value and derivative. None lets the
            compiler decide (roots are monitored by default).
        meta: Arbitrary metadata to attach to the compiled net. At most one
            node in a graph may carry it.
        **kwargs: Constant keyword arguments, passed to both the forward op
            and its adjoint.
    """
    kind = NodeKind.LAYER

    def __init__(self, op: OpDef | str, *args: Any, name: str | None = None,
                 test_op: OpDef | str | None = None,
                 test_args: Sequence[Any] | str = "same",
                 test_kwargs: dict[str, Any] | None = None,
                 num_input_der: int | None = None,
                 diagnostics: bool | None = None, meta: Any = None,
                 **kwargs: Any) -> None:
        super().__init__(name=name, diagnostics=diagnostics, meta=meta)
        self.op = resolve_op(op)
        self.args = list(args)
        self.kwargs = kwargs
        if test_op is None or (isinstance(test_op, str) and test_op == "none"):
            self.test_op = test_op
        else:
            self.test_op = resolve_op(test_op)
        if isinstance(test_args, str) and test_args != "same":
            raise ValueError(f"test_args must be 'same' or a sequence, got '{test_args}'")
        self.test_args = test_args if isinstance(test_args, str) else list(test_args)
        self.test_kwargs = dict(test_kwargs or {})
        self.num_input_der = num_input_der

    @property
    def deps(self) -> list[Node]:
        nodes = [a for a in self.args if isinstance(a, Node)]
        if not isinstance(self.test_args, str):
            nodes.extend(a for a in self.test_args if isinstance(a, Node))
        return nodes

    def __repr__(self) -> str:
        label = self.name if self.name is not None else "?"
        return f"Layer({self.op.name}, {label})"
