"""Op definitions: forward/adjoint pairs unified in one registry.

Each OpDef describes everything the runtime needs to know about an op:
the forward function, its adjoint (the backward counterpart), and whether
the backward pass should treat it as a sparse indexing update.

Calling conventions:
    forward(*args, **kwargs) -> output
    adjoint(*args, dy, *config, **kwargs) -> derivative or tuple of derivatives

The adjoint receives the forward arguments with the output derivative `dy`
inserted before the first string-tagged configuration argument (or at the
end of the positional list), and returns one derivative per positional
argument up to the last node-valued one. Entries for constant arguments may
be None. Keyword arguments are passed to both functions unchanged.

Adding a new op: write the two functions and call register_op().
"""

from dataclasses import dataclass
from typing import Any, Callable

import numpy as np


ForwardFn = Callable[..., Any]
AdjointFn = Callable[..., Any]

# Conventional prefix for op function identifiers. Stripped when deriving
# the op name: nn_relu -> "relu".
OP_PREFIX = "nn_"


@dataclass(frozen=True)
class OpDef:
    """Complete definition of an op kind.

    Fields:
        name: Registry key, also the stem for auto-generated layer names.
        forward: Computes the op's output from its arguments.
        adjoint: Computes input derivatives given the output derivative.
            None = op is not differentiable; normal-mode evaluation of a
            graph containing it fails when its backward instruction runs.
        scatter: Backward is a sparse indexed update instead of an adjoint
            call. Arguments must be (source, index); the executor adds the
            output derivative into the source's derivative at `index`.
    """
    name: str
    forward: ForwardFn
    adjoint: AdjointFn | None = None
    scatter: bool = False


OP_REGISTRY: dict[str, OpDef] = {}


def op_name(fn: Callable) -> str:
    """Derive an op name from a function identifier."""
    name = getattr(fn, "__name__", None) or type(fn).__name__
    if name.startswith(OP_PREFIX):
        name = name[len(OP_PREFIX):]
    return name


def register_op(forward: ForwardFn, adjoint: AdjointFn | None = None, *,
                name: str | None = None, scatter: bool = False) -> OpDef:
    """Register a forward/adjoint pair. Returns the created OpDef.

    Re-registering the same forward function replaces its entry; reusing a
    name for a different function is an error.
    """
    name = name or op_name(forward)
    existing = OP_REGISTRY.get(name)
    if existing is not None and existing.forward is not forward:
        raise ValueError(f"Op name '{name}' already registered to {existing.forward!r}")
    op_def = OpDef(name=name, forward=forward, adjoint=adjoint, scatter=scatter)
    OP_REGISTRY[name] = op_def
    return op_def


def resolve_op(ref: OpDef | str | Callable) -> OpDef:
    """Look up an OpDef from an OpDef, a registered name, or a forward function."""
    if isinstance(ref, OpDef):
        return ref
    if isinstance(ref, str):
        op_def = OP_REGISTRY.get(ref)
        if op_def is None:
            raise ValueError(f"Unknown op '{ref}'")
        return op_def
    if callable(ref):
        for op_def in OP_REGISTRY.values():
            if op_def.forward is ref:
                return op_def
        raise ValueError(
            f"Function {op_name(ref)!r} is not a registered op — "
            f"call register_op() first"
        )
    raise TypeError(f"Cannot resolve op from {type(ref).__name__}")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _unbroadcast(der: Any, like: Any) -> np.ndarray:
    """Reduce a derivative to the shape of the operand it belongs to.

    Reverses numpy broadcasting: leading dims the operand doesn't have are
    summed away, and dims where the operand has size 1 are summed with
    keepdims. A derivative smaller than the operand (e.g. a scalar seed) is
    broadcast up first.
    """
    shape = np.shape(like)
    der = np.asarray(der)
    if der.shape == shape:
        return der
    der = np.broadcast_to(der, np.broadcast_shapes(der.shape, shape))
    extra = der.ndim - len(shape)
    if extra:
        der = der.sum(axis=tuple(range(extra)))
    axes = tuple(i for i, n in enumerate(shape) if n == 1 and der.shape[i] != 1)
    if axes:
        der = der.sum(axis=axes, keepdims=True)
    return der.reshape(shape)


def _expand_reduced(dy: Any, x: np.ndarray, axis: int | tuple[int, ...] | None) -> np.ndarray:
    """Broadcast the derivative of a reduction back to the input's shape."""
    dy = np.asarray(dy)
    if axis is not None and dy.ndim:
        dy = np.expand_dims(dy, axis)
    return np.broadcast_to(dy, np.shape(x))


# ---------------------------------------------------------------------------
# Element-wise binary
# ---------------------------------------------------------------------------

def nn_plus(a, b):
    return a + b


def _plus_der(a, b, dy):
    return _unbroadcast(dy, a), _unbroadcast(dy, b)


def nn_minus(a, b):
    return a - b


def _minus_der(a, b, dy):
    return _unbroadcast(dy, a), _unbroadcast(-np.asarray(dy), b)


def nn_times(a, b):
    return a * b


def _times_der(a, b, dy):
    return _unbroadcast(dy * b, a), _unbroadcast(dy * a, b)


def nn_rdivide(a, b):
    return a / b


def _rdivide_der(a, b, dy):
    return _unbroadcast(dy / b, a), _unbroadcast(-dy * a / (b * b), b)


def nn_power(x, p):
    return np.power(x, p)


def _power_der(x, p, dy):
    # Integer bases reject negative integer powers (p - 1 when p == 0).
    x = np.asarray(x, dtype=np.result_type(x, float))
    dx = _unbroadcast(dy * p * np.power(x, p - 1), x)
    # log(x) is undefined for x <= 0; the exponent derivative is only
    # meaningful (and only consumed) when p is itself a graph node.
    with np.errstate(divide="ignore", invalid="ignore"):
        dp = _unbroadcast(dy * np.power(x, p) * np.log(x), p)
    return dx, dp


# ---------------------------------------------------------------------------
# Matrix product
# ---------------------------------------------------------------------------

def nn_mtimes(a, b):
    """Matrix product. Operands must be at least 2-D."""
    return np.matmul(a, b)


def _mtimes_der(a, b, dy):
    da = np.matmul(dy, np.swapaxes(b, -1, -2))
    db = np.matmul(np.swapaxes(a, -1, -2), dy)
    return _unbroadcast(da, a), _unbroadcast(db, b)


# ---------------------------------------------------------------------------
# Element-wise unary
# ---------------------------------------------------------------------------

def nn_square(x):
    return x * x


def _square_der(x, dy):
    return 2 * x * dy


def nn_exp(x):
    return np.exp(x)


def _exp_der(x, dy):
    return np.exp(x) * dy


def nn_log(x):
    return np.log(x)


def _log_der(x, dy):
    return dy / x


def nn_relu(x):
    return np.maximum(x, 0)


def _relu_der(x, dy):
    return dy * (np.asarray(x) > 0)


def nn_sigmoid(x):
    return 1.0 / (1.0 + np.exp(-x))


def _sigmoid_der(x, dy):
    s = nn_sigmoid(x)
    return dy * s * (1.0 - s)


def nn_tanh(x):
    return np.tanh(x)


def _tanh_der(x, dy):
    t = np.tanh(x)
    return dy * (1.0 - t * t)


def nn_deal(x):
    """Identity. Used for layers that are pass-through in inference mode."""
    return x


def _deal_der(x, dy):
    return dy


# ---------------------------------------------------------------------------
# Reductions
# ---------------------------------------------------------------------------

def nn_sum(x, *, axis=None):
    return np.sum(x, axis=axis)


def _sum_der(x, dy, *, axis=None):
    return _expand_reduced(dy, x, axis)


def nn_mean(x, *, axis=None):
    return np.mean(x, axis=axis)


def _mean_der(x, dy, *, axis=None):
    count = np.size(x) // max(np.size(np.mean(x, axis=axis)), 1)
    return _expand_reduced(dy, x, axis) / count


# ---------------------------------------------------------------------------
# Shape / indexing
# ---------------------------------------------------------------------------

def nn_reshape(x, shape):
    return np.reshape(x, shape)


def _reshape_der(x, shape, dy):
    return np.reshape(dy, np.shape(x))


def nn_slice(x, index):
    """Select a sub-region of x. `index` is anything numpy indexing accepts."""
    return np.asarray(x)[index]


def _slice_der(x, index, dy):
    # Dense fallback. The executor normally takes the sparse path instead
    # (OpDef.scatter) and never materializes this.
    dx = np.zeros(np.shape(x), dtype=np.result_type(x, dy))
    np.add.at(dx, index, dy)
    return dx


def nn_cat(axis, *xs):
    """Concatenate along `axis`. Scalars are treated as 1-element vectors."""
    return np.concatenate([np.atleast_1d(x) for x in xs], axis=axis)


def _cat_der(axis, *rest):
    *xs, dy = rest
    if np.ndim(dy) == 0:
        # A scalar derivative applies to every concatenated part.
        return (None, *(_unbroadcast(dy, x) for x in xs))
    sizes = [np.atleast_1d(x).shape[axis] for x in xs]
    parts = np.split(np.asarray(dy), np.cumsum(sizes)[:-1], axis=axis)
    return (None, *(part.reshape(np.shape(x)) for part, x in zip(parts, xs)))


def nn_roots(*xs):
    """Flatten every argument and join them into one vector.

    Used by the compiler to combine several roots of any shape.
    """
    return np.concatenate([np.ravel(x) for x in xs])


def _roots_der(*rest):
    *xs, dy = rest
    if np.ndim(dy) == 0:
        return tuple(_unbroadcast(dy, x) for x in xs)
    sizes = [np.size(x) for x in xs]
    parts = np.split(np.ravel(dy), np.cumsum(sizes)[:-1])
    return tuple(part.reshape(np.shape(x)) for part, x in zip(parts, xs))


# ---------------------------------------------------------------------------
# Losses
# ---------------------------------------------------------------------------

def nn_l2loss(x, target):
    """Half the sum of squared differences."""
    diff = x - target
    return 0.5 * np.sum(diff * diff)


def _l2loss_der(x, target, dy):
    diff = x - target
    return dy * diff, -dy * diff


def nn_softmaxloss(x, labels):
    """Summed cross-entropy of row-wise softmax scores x [N, C] against int labels [N]."""
    shifted = x - np.max(x, axis=-1, keepdims=True)
    log_probs = shifted - np.log(np.sum(np.exp(shifted), axis=-1, keepdims=True))
    rows = np.arange(np.shape(x)[0])
    return -np.sum(log_probs[rows, np.asarray(labels, dtype=np.intp)])


def _softmaxloss_der(x, labels, dy):
    shifted = x - np.max(x, axis=-1, keepdims=True)
    e = np.exp(shifted)
    probs = e / np.sum(e, axis=-1, keepdims=True)
    rows = np.arange(np.shape(x)[0])
    probs[rows, np.asarray(labels, dtype=np.intp)] -= 1.0
    return dy * probs, None


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

PLUS = register_op(nn_plus, _plus_der)
MINUS = register_op(nn_minus, _minus_der)
TIMES = register_op(nn_times, _times_der)
RDIVIDE = register_op(nn_rdivide, _rdivide_der)
POWER = register_op(nn_power, _power_der)
MTIMES = register_op(nn_mtimes, _mtimes_der)
SQUARE = register_op(nn_square, _square_der)
EXP = register_op(nn_exp, _exp_der)
LOG = register_op(nn_log, _log_der)
RELU = register_op(nn_relu, _relu_der)
SIGMOID = register_op(nn_sigmoid, _sigmoid_der)
TANH = register_op(nn_tanh, _tanh_der)
DEAL = register_op(nn_deal, _deal_der)
SUM = register_op(nn_sum, _sum_der)
MEAN = register_op(nn_mean, _mean_der)
RESHAPE = register_op(nn_reshape, _reshape_der)
SLICE = register_op(nn_slice, _slice_der, scatter=True)
CAT = register_op(nn_cat, _cat_der)
ROOTS = register_op(nn_roots, _roots_der)
L2LOSS = register_op(nn_l2loss, _l2loss_der)
SOFTMAXLOSS = register_op(nn_softmaxloss, _softmaxloss_der)
