"""Diagnostics: read-only snapshots of monitored values and derivatives.

The compiler registers a DiagnosticEntry (value slot, derivative slot, name)
for every monitored node. This module pulls their current contents out of a
store and reduces them to summary statistics. Rendering is left to callers:

    history = DiagnosticsHistory(num_points=100)
    for batch in batches:
        net.eval()
        history.update(net.diagnostics())
    history.series("loss")            # -> list of SummaryStats, oldest first
"""

from collections import deque
from dataclasses import dataclass
from typing import Any

import numpy as np
import torch

from .program import CompiledNet
from .store import VariableStore


@dataclass
class DiagnosticSample:
    """Current contents of one monitored node."""
    name: str
    var: int
    der: int
    value: Any
    derivative: Any


@dataclass
class SummaryStats:
    """Mean, min and max of a slot's contents (NaN when empty)."""
    mean: float
    min: float
    max: float


def snapshot(net: CompiledNet, store: VariableStore) -> list[DiagnosticSample]:
    """Current value and derivative of every registered diagnostic entry."""
    return [
        DiagnosticSample(name=d.name, var=d.var, der=d.der,
                         value=store[d.var], derivative=store[d.der])
        for d in net.diagnostics
    ]


def summarize(value: Any) -> SummaryStats:
    """Reduce a slot's contents (array, tensor, scalar, or None) to statistics."""
    if value is None:
        return SummaryStats(float("nan"), float("nan"), float("nan"))
    if isinstance(value, torch.Tensor):
        value = value.detach().cpu().numpy()
    data = np.asarray(value, dtype=np.float64).ravel()
    if data.size == 0:
        return SummaryStats(float("nan"), float("nan"), float("nan"))
    return SummaryStats(float(data.mean()), float(data.min()), float(data.max()))


class DiagnosticsHistory:
    """Rolling window of summary statistics per monitored value and derivative.

    Derivative series are keyed as "d<name>".
    """

    def __init__(self, num_points: int = 100) -> None:
        if num_points < 1:
            raise ValueError(f"num_points must be positive, got {num_points}")
        self.num_points = num_points
        self._series: dict[str, deque[SummaryStats]] = {}

    def update(self, samples: list[DiagnosticSample]) -> None:
        """Append one point per sample value and derivative."""
        for s in samples:
            self._push(s.name, summarize(s.value))
            self._push(f"d{s.name}", summarize(s.derivative))

    def _push(self, key: str, stats: SummaryStats) -> None:
        series = self._series.get(key)
        if series is None:
            series = self._series[key] = deque(maxlen=self.num_points)
        series.append(stats)

    def names(self) -> list[str]:
        return list(self._series)

    def series(self, name: str) -> list[SummaryStats]:
        """Recorded points for `name`, oldest first."""
        if name not in self._series:
            raise KeyError(f"No diagnostics recorded for '{name}'")
        return list(self._series[name])

    def clear(self) -> None:
        self._series.clear()
