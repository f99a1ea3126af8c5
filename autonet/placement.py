"""Placement transfer: move every stored value between host and accelerator.

    "cpu" — torch tensors become numpy arrays; everything else is kept.
    "gpu" — numpy arrays and numeric scalars become CUDA torch tensors.

Empty (None) slots are left alone. Ops must accept whatever type the store
holds after a move; the built-in numpy kernels only run on "cpu".
"""

from typing import Any, Callable

import numpy as np
import torch

from .store import VariableStore


def _to_cpu(value: Any) -> Any:
    if isinstance(value, torch.Tensor):
        return value.detach().cpu().numpy()
    return value


def _to_gpu(value: Any) -> Any:
    if isinstance(value, torch.Tensor):
        return value.to("cuda")
    if isinstance(value, (np.ndarray, np.number, int, float)) and not isinstance(value, bool):
        return torch.as_tensor(value, device="cuda")
    return value


DEVICES: dict[str, Callable[[Any], Any]] = {
    "cpu": _to_cpu,
    "gpu": _to_gpu,
}


def move(store: VariableStore, device: str) -> None:
    """Apply the transfer for `device` to every slot of `store`, in place."""
    move_op = DEVICES.get(device)
    if move_op is None:
        raise ValueError(
            f"Unknown device '{device}' (expected {' or '.join(repr(d) for d in DEVICES)})"
        )
    if device == "gpu" and not torch.cuda.is_available():
        raise RuntimeError("Cannot move to 'gpu': CUDA is not available")
    store.apply(lambda v: None if v is None else move_op(v))
