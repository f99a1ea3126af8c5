"""Net API tests: input binding, slot access, placement, inspection."""

import numpy as np
import pytest
import torch

from autonet.diagnostics import DiagnosticsHistory, summarize
from autonet.ir import Input, Layer, Param
from autonet.net import Net
from autonet.placement import move
from autonet.store import VariableStore

from conftest import affine_graph, square_scale_graph


@pytest.fixture
def scenario_net():
    x, w, y = square_scale_graph()
    return Net(y), x, w, y


# ---------------------------------------------------------------------------
# Input binding
# ---------------------------------------------------------------------------

class TestSetInputs:

    def test_pairs_and_keywords(self):
        a, b = Input("a"), Input("b")
        net = Net(a + b)
        net.set_inputs("a", 1.0, b=2.0)
        assert net.get_value([a, b]) == [1.0, 2.0]
        assert net.eval(mode="forward") == 3.0

    def test_odd_argument_count(self, scenario_net):
        net, *_ = scenario_net
        with pytest.raises(ValueError, match="name/value pairs"):
            net.set_inputs("x", 1.0, "y")

    def test_unknown_name_writes_nothing(self, scenario_net):
        net, x, *_ = scenario_net
        with pytest.raises(ValueError, match="Unknown input 'y'"):
            net.set_inputs("x", 1.0, "y", 2.0)
        assert net.get_value(x) is None


# ---------------------------------------------------------------------------
# Slot access
# ---------------------------------------------------------------------------

class TestAccess:

    def test_by_slot_list_and_node(self, scenario_net):
        net, x, w, y = scenario_net
        net.set_inputs("x", 3.0)
        net.eval()
        assert net.get_value(0) == 2.0
        assert net.get_value([0, 2]) == [2.0, 3.0]
        assert net.get_value(w) == 2.0
        assert float(net.get_der(0)) == pytest.approx(9.0)
        assert [float(d) for d in net.get_der([w, x])] == pytest.approx([9.0, 12.0])

    def test_set_value_and_der(self, scenario_net):
        net, x, w, y = scenario_net
        net.set_value(w, 5.0)
        net.set_value([x], [1.5])
        assert net.get_value([w, x]) == [5.0, 1.5]
        net.set_der(y, 0.25)
        assert net.store[7] == 0.25
        net.set_der([0, 2], [1.0, 2.0])
        assert net.store[1] == 1.0 and net.store[3] == 2.0

    def test_set_many_length_mismatch(self, scenario_net):
        net, *_ = scenario_net
        with pytest.raises(ValueError, match="values for"):
            net.set_value([0, 2], [1.0])

    def test_foreign_node(self, scenario_net):
        net, *_ = scenario_net
        with pytest.raises(ValueError, match="not part of this net"):
            net.get_value(Input("x"))

    def test_bad_reference(self, scenario_net):
        net, *_ = scenario_net
        with pytest.raises(TypeError):
            net.get_value("x")

    def test_registries(self, scenario_net):
        net, x, w, y = scenario_net
        assert net.inputs == {"x": 2}
        assert [p.name for p in net.params] == ["w"]
        assert net.var_index(y) == 6
        assert net.num_vars == 8
        assert net.meta is None

    def test_from_compiled_checks_size(self, scenario_net):
        net, *_ = scenario_net
        with pytest.raises(ValueError, match="slots"):
            Net.from_compiled(net.compiled, VariableStore(2))


class TestClone:

    def test_independent_store(self, scenario_net):
        net, x, w, y = scenario_net
        net.set_inputs("x", 3.0)
        copy = net.clone()
        copy.set_inputs("x", 1.0)
        assert net.eval() == 18.0
        assert copy.eval() == 2.0
        assert float(net.get_der(w)) == pytest.approx(9.0)
        assert float(copy.get_der(w)) == pytest.approx(1.0)


# ---------------------------------------------------------------------------
# Placement
# ---------------------------------------------------------------------------

class TestPlacement:

    def test_cpu_converts_tensors(self):
        store = VariableStore(4)
        store[0] = torch.ones(2, 3)
        store[1] = 0.0
        store[2] = np.arange(3.0)
        move(store, "cpu")
        assert isinstance(store[0], np.ndarray)
        assert store[0].shape == (2, 3)
        assert store[1] == 0.0
        assert store[3] is None

    def test_unknown_device(self, scenario_net):
        net, *_ = scenario_net
        with pytest.raises(ValueError, match="Unknown device 'tpu'"):
            net.move("tpu")

    def test_gpu_round_trip(self, cuda, rng):
        x, a, b, loss = affine_graph(rng)
        net = Net(loss)
        net.set_inputs(x=rng.standard_normal(5))
        net.move("gpu")
        assert isinstance(net.get_value(a), torch.Tensor)
        assert net.get_value(a).device.type == "cuda"
        net.move("cpu")
        assert isinstance(net.get_value(a), np.ndarray)
        net.eval()
        np.testing.assert_allclose(net.get_der(b), np.ones(5))


# ---------------------------------------------------------------------------
# Inspection
# ---------------------------------------------------------------------------

class TestInspection:

    def test_summary(self, scenario_net):
        net, *_ = scenario_net
        text = net.summary()
        assert "Net: 4 nodes, 8 slots (1 inputs, 1 params, 2 layers)" in text
        assert "Params:  w [0]" in text
        assert "Monitor: times1" in text

    def test_dump(self):
        x = Input("x")
        p = Param(np.ones((3, 4), dtype=np.float32), name="p")
        y = Layer("sum", x @ p)
        net = Net(y)
        net.set_inputs("x", np.ones((2, 3), dtype=np.float32))
        net.eval()
        lines = net.dump().splitlines()
        assert lines[0].split() == ["slot", "type", "function", "name", "value", "derivative"]
        assert lines[1].startswith("----")
        # x, p, mtimes1, sum1 in compiled order
        assert lines[2].split()[:3] == ["0", "input", "x"]
        assert "[3x4 float32]" in lines[3]
        assert lines[4].split()[:4] == ["4", "layer", "mtimes", "mtimes1"]
        assert "[2x4 float32]" in lines[4]
        assert lines[5].split()[4] == "24"

    def test_dump_before_eval(self, scenario_net):
        net, *_ = scenario_net
        lines = net.dump().splitlines()
        assert len(lines) == 2 + 4
        assert lines[-1].split() == ["6", "layer", "times", "times1", "-", "-"]

    def test_repr(self, scenario_net):
        net, *_ = scenario_net
        assert repr(net) == "Net(4 nodes, 1 inputs, 1 params)"


class TestDiagnostics:

    def test_snapshot(self, scenario_net):
        net, x, w, y = scenario_net
        net.set_inputs("x", 3.0)
        net.eval()
        [sample] = net.diagnostics()
        assert (sample.name, sample.var, sample.der) == ("times1", 6, 7)
        assert sample.value == 18.0
        assert sample.derivative == 1.0

    def test_summarize(self):
        stats = summarize(np.array([1.0, 2.0, 6.0]))
        assert (stats.mean, stats.min, stats.max) == (3.0, 1.0, 6.0)
        assert np.isnan(summarize(None).mean)
        assert summarize(torch.tensor([2.0, 4.0])).mean == 3.0

    def test_history_window(self):
        x = Input("x")
        y = Layer("sum", x * x)
        net = Net(y)
        history = DiagnosticsHistory(num_points=3)
        for k in range(5):
            net.set_inputs("x", np.full(2, float(k)))
            net.eval()
            history.update(net.diagnostics())
        assert history.names() == ["sum1", "dsum1"]
        values = [s.mean for s in history.series("sum1")]
        assert values == [8.0, 18.0, 32.0]
        assert [s.mean for s in history.series("dsum1")] == [1.0, 1.0, 1.0]
        with pytest.raises(KeyError):
            history.series("missing")

    def test_history_rejects_empty_window(self):
        with pytest.raises(ValueError):
            DiagnosticsHistory(num_points=0)
