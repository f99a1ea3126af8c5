"""Op registry and kernel tests.

Each built-in forward kernel is compared against the equivalent torch op,
and each adjoint against torch.autograd with a random output derivative.
"""

import numpy as np
import pytest
import torch
import torch.nn.functional as F

from autonet.ops import (
    CAT, OP_REGISTRY, ROOTS, OpDef, op_name, register_op, resolve_op,
)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

BUILTIN_OPS = [
    "plus", "minus", "times", "rdivide", "power", "mtimes", "square", "exp",
    "log", "relu", "sigmoid", "tanh", "deal", "sum", "mean", "reshape",
    "slice", "cat", "roots", "l2loss", "softmaxloss",
]


@pytest.mark.parametrize("name", BUILTIN_OPS)
def test_builtin_registered(name):
    op_def = OP_REGISTRY[name]
    assert op_def.name == name
    assert op_def.adjoint is not None


def test_only_slice_is_scatter():
    assert [n for n, op in OP_REGISTRY.items() if op.scatter] == ["slice"]


class TestResolve:

    def test_by_name_callable_and_opdef(self):
        cat = OP_REGISTRY["cat"]
        assert resolve_op("cat") is cat
        assert resolve_op(cat.forward) is cat
        assert resolve_op(cat) is cat
        assert cat is CAT

    def test_unknown_name(self):
        with pytest.raises(ValueError, match="Unknown op 'conv'"):
            resolve_op("conv")

    def test_unregistered_callable(self):
        def nn_unregistered(x):
            return x
        with pytest.raises(ValueError, match="not a registered op"):
            resolve_op(nn_unregistered)

    def test_bad_type(self):
        with pytest.raises(TypeError):
            resolve_op(3)


class TestRegister:

    def test_name_strips_prefix(self):
        def nn_halve(x):
            return x / 2

        assert op_name(nn_halve) == "halve"
        op_def = register_op(nn_halve, lambda x, dy: dy / 2)
        try:
            assert isinstance(op_def, OpDef)
            assert OP_REGISTRY["halve"] is op_def
        finally:
            del OP_REGISTRY["halve"]

    def test_reregister_same_function_replaces(self):
        def nn_twice(x):
            return 2 * x

        first = register_op(nn_twice)
        try:
            second = register_op(nn_twice, lambda x, dy: 2 * dy)
            assert OP_REGISTRY["twice"] is second
            assert second.adjoint is not None and first.adjoint is None
        finally:
            del OP_REGISTRY["twice"]

    def test_name_clash_rejected(self):
        def other_relu(x):
            return x

        with pytest.raises(ValueError, match="already registered"):
            register_op(other_relu, name="relu")


# ---------------------------------------------------------------------------
# Kernels vs torch
# ---------------------------------------------------------------------------

def _check_against_torch(name, inputs, torch_fn, kwargs=None, grad_of=None, seed=0):
    """Compare forward output and adjoint of op `name` with torch.

    `grad_of` lists the positions whose derivatives are compared (default:
    all inputs). Other positions are passed to torch as constants.
    """
    kwargs = kwargs or {}
    grad_of = range(len(inputs)) if grad_of is None else grad_of
    op_def = OP_REGISTRY[name]

    out = op_def.forward(*inputs, **kwargs)
    dy = np.asarray(np.random.default_rng(seed).standard_normal(np.shape(out)))
    ders = op_def.adjoint(*inputs, dy, **kwargs)
    if not isinstance(ders, tuple):
        ders = (ders,)

    tensors = [torch.tensor(v, requires_grad=i in grad_of) if isinstance(v, np.ndarray) else v
               for i, v in enumerate(inputs)]
    ref_out = torch_fn(*tensors)
    np.testing.assert_allclose(out, ref_out.detach().numpy(), rtol=1e-6, atol=1e-10)

    refs = torch.autograd.grad(ref_out, [tensors[i] for i in grad_of],
                               grad_outputs=torch.tensor(dy))
    for i, ref in zip(grad_of, refs):
        np.testing.assert_allclose(ders[i], ref.numpy(), rtol=1e-6, atol=1e-10,
                                   err_msg=f"{name}: derivative {i}")


def _rand(rng, *shape, positive=False):
    x = rng.standard_normal(shape)
    return np.abs(x) + 0.5 if positive else x


class TestElementwise:

    @pytest.mark.parametrize("name,fn", [
        ("plus", lambda a, b: a + b),
        ("minus", lambda a, b: a - b),
        ("times", lambda a, b: a * b),
    ])
    def test_binary_same_shape(self, rng, name, fn):
        _check_against_torch(name, [_rand(rng, 3, 4), _rand(rng, 3, 4)], fn)

    @pytest.mark.parametrize("name,fn", [
        ("plus", lambda a, b: a + b),
        ("minus", lambda a, b: a - b),
        ("times", lambda a, b: a * b),
        ("rdivide", lambda a, b: a / b),
    ])
    @pytest.mark.parametrize("shape_a,shape_b", [
        ((3, 4), (4,)),
        ((3, 1), (1, 4)),
        ((2, 3, 4), (3, 1)),
    ])
    def test_binary_broadcast(self, rng, name, fn, shape_a, shape_b):
        a = _rand(rng, *shape_a)
        b = _rand(rng, *shape_b, positive=True)
        _check_against_torch(name, [a, b], fn)

    def test_power(self, rng):
        x = _rand(rng, 3, 4, positive=True)
        p = _rand(rng, 3, 4, positive=True)
        _check_against_torch("power", [x, p], torch.pow)

    def test_power_constant_exponent(self, rng):
        x = _rand(rng, 5)
        _check_against_torch("power", [x, np.float64(3.0)], lambda a, p: a ** p,
                             grad_of=[0])

    def test_power_integer_base_zero_exponent(self):
        x = np.array([1, 2, 3])
        dx, _ = OP_REGISTRY["power"].adjoint(x, 0, np.ones(3))
        np.testing.assert_array_equal(dx, np.zeros(3))
        assert dx.dtype.kind == "f"

    @pytest.mark.parametrize("name,fn,positive", [
        ("square", lambda x: x * x, False),
        ("exp", torch.exp, False),
        ("log", torch.log, True),
        ("relu", torch.relu, False),
        ("sigmoid", torch.sigmoid, False),
        ("tanh", torch.tanh, False),
        ("deal", lambda x: x.clone(), False),
    ])
    def test_unary(self, rng, name, fn, positive):
        _check_against_torch(name, [_rand(rng, 4, 5, positive=positive)], fn)


class TestMatmul:

    def test_2d(self, rng):
        _check_against_torch("mtimes", [_rand(rng, 3, 4), _rand(rng, 4, 2)], torch.matmul)

    def test_batched_against_shared(self, rng):
        _check_against_torch("mtimes", [_rand(rng, 2, 3, 4), _rand(rng, 4, 5)], torch.matmul)


class TestReductions:

    @pytest.mark.parametrize("axis,dim", [(None, None), (0, 0), (1, 1), ((0, 2), (0, 2))])
    def test_sum(self, rng, axis, dim):
        fn = (lambda x: x.sum()) if dim is None else (lambda x: x.sum(dim=dim))
        _check_against_torch("sum", [_rand(rng, 2, 3, 4)], fn, kwargs={"axis": axis})

    @pytest.mark.parametrize("axis,dim", [(None, None), (0, 0), (2, 2)])
    def test_mean(self, rng, axis, dim):
        fn = (lambda x: x.mean()) if dim is None else (lambda x: x.mean(dim=dim))
        _check_against_torch("mean", [_rand(rng, 2, 3, 4)], fn, kwargs={"axis": axis})


class TestShape:

    def test_reshape(self, rng):
        x = _rand(rng, 3, 4)
        _check_against_torch("reshape", [x, (2, 6)], lambda t, s: t.reshape(s), grad_of=[0])

    def test_slice_dense_adjoint(self, rng):
        x = _rand(rng, 4, 5)
        index = (slice(1, 3), slice(None, None, 2))
        _check_against_torch("slice", [x, index], lambda t, i: t[i], grad_of=[0])

    def test_cat(self, rng):
        a, b = _rand(rng, 2, 3), _rand(rng, 4, 3)
        out = CAT.forward(0, a, b)
        np.testing.assert_array_equal(out, np.concatenate([a, b]))
        dy = _rand(rng, 6, 3)
        none, da, db = CAT.adjoint(0, a, b, dy)
        assert none is None
        np.testing.assert_array_equal(da, dy[:2])
        np.testing.assert_array_equal(db, dy[2:])

    def test_cat_scalars(self):
        out = CAT.forward(0, 1.0, 2.0)
        np.testing.assert_array_equal(out, [1.0, 2.0])
        _, da, db = CAT.adjoint(0, 1.0, 2.0, np.array([3.0, 4.0]))
        assert float(da) == 3.0 and float(db) == 4.0
        assert np.shape(da) == ()

    def test_cat_scalar_derivative_broadcast(self, rng):
        a, b = _rand(rng, 2), _rand(rng, 3)
        _, da, db = CAT.adjoint(0, a, b, 1.0)
        np.testing.assert_array_equal(da, np.ones(2))
        np.testing.assert_array_equal(db, np.ones(3))

    def test_roots_mixed_ranks(self, rng):
        a, b = np.float64(2.5), _rand(rng, 2, 3)
        out = ROOTS.forward(a, b)
        np.testing.assert_array_equal(out, np.concatenate([[2.5], b.ravel()]))
        dy = _rand(rng, 7)
        da, db = ROOTS.adjoint(a, b, dy)
        assert np.shape(da) == () and float(da) == dy[0]
        np.testing.assert_array_equal(db, dy[1:].reshape(2, 3))

    def test_roots_scalar_derivative_broadcast(self, rng):
        a, b = _rand(rng, 4), _rand(rng, 2, 2)
        da, db = ROOTS.adjoint(a, b, 2.0)
        np.testing.assert_array_equal(da, np.full(4, 2.0))
        np.testing.assert_array_equal(db, np.full((2, 2), 2.0))


class TestLosses:

    def test_l2loss(self, rng):
        _check_against_torch("l2loss", [_rand(rng, 4, 3), _rand(rng, 4, 3)],
                             lambda x, t: 0.5 * ((x - t) ** 2).sum())

    def test_softmaxloss(self, rng):
        x = _rand(rng, 6, 4)
        labels = np.array([0, 3, 1, 1, 2, 0])
        _check_against_torch(
            "softmaxloss", [x, labels],
            lambda t, l: F.cross_entropy(t, l, reduction="sum"),
            grad_of=[0],
        )

    def test_softmaxloss_label_derivative_is_none(self, rng):
        op_def = OP_REGISTRY["softmaxloss"]
        x = _rand(rng, 2, 3)
        _, dlabels = op_def.adjoint(x, np.array([0, 2]), 1.0)
        assert dlabels is None
