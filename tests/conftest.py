"""Shared fixtures and helpers for the test suite.

pytest discovers conftest.py automatically — fixtures defined here are
available to all test files in this directory without explicit imports.
Plain helpers are imported explicitly (`from conftest import ...`).
"""

import numpy as np
import pytest
import torch
import torch.nn as nn

from autonet.ir import Input, Layer, Param


# ---------------------------------------------------------------------------
# Graphs
# ---------------------------------------------------------------------------

def square_scale_graph():
    """y = w * x², the smallest graph with a parameter, an input and two layers.

    Compiled order: w (slots 0/1), x (2/3), square (4/5), times (6/7).
    """
    x = Input("x")
    w = Param(2.0, name="w")
    y = w * x ** 2
    return x, w, y


def affine_graph(rng, n=5):
    """loss = sum(a * x + b) over vectors of length n."""
    x = Input("x")
    a = Param(rng.standard_normal(n), name="a")
    b = Param(rng.standard_normal(n), name="b")
    loss = Layer("sum", a * x + b, name="loss")
    return x, a, b, loss


class TwoLayerMLP(nn.Module):
    """Linear→Tanh→Linear, the torch reference for mlp_graph()."""
    def __init__(self, n_in, n_hidden, n_out):
        super().__init__()
        self.fc1 = nn.Linear(n_in, n_hidden).double()
        self.fc2 = nn.Linear(n_hidden, n_out).double()

    def forward(self, x):
        return self.fc2(torch.tanh(self.fc1(x)))


def mlp_graph(model: TwoLayerMLP, loss_op="softmaxloss"):
    """The same network as `model`, built from nodes with its weights copied.

    Weights are stored transposed ([in, out]) so the layers are x @ W + b.
    Returns (x, labels, params, loss) with params in fc1.w, fc1.b, fc2.w,
    fc2.b order.
    """
    x = Input("x")
    labels = Input("labels")
    w1 = Param(model.fc1.weight.detach().numpy().T.copy(), name="w1")
    b1 = Param(model.fc1.bias.detach().numpy().copy(), name="b1")
    w2 = Param(model.fc2.weight.detach().numpy().T.copy(), name="w2")
    b2 = Param(model.fc2.bias.detach().numpy().copy(), name="b2")
    h = Layer("tanh", x @ w1 + b1, name="hidden")
    scores = Layer("plus", h @ w2, b2, name="scores")
    loss = Layer(loss_op, scores, labels, name="loss")
    return x, labels, [w1, b1, w2, b2], loss


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def rng():
    return np.random.default_rng(0)


@pytest.fixture
def cuda():
    if not torch.cuda.is_available():
        pytest.skip("CUDA not available")
    return torch.device("cuda")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def numeric_grad(f, x, eps=1e-6):
    """Central-difference gradient of scalar f at array x."""
    x = np.array(x, dtype=np.float64)
    grad = np.zeros_like(x)
    it = np.nditer(x, flags=["multi_index"])
    for _ in it:
        idx = it.multi_index
        orig = x[idx]
        x[idx] = orig + eps
        hi = f(x.copy())
        x[idx] = orig - eps
        lo = f(x.copy())
        x[idx] = orig
        grad[idx] = (hi - lo) / (2 * eps)
    return grad
