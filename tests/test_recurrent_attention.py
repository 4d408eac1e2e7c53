import copy

import pytest
import torch
import torch.nn as nn

from ram import (
    GLIMPSE_LAYOUT, AttentionCell, AttentionConfig, Glimpse, HistoryUnderflowError,
    ModuleAdapter, OverlappingPassError, RecurrentAttention, Sequential, ShapeMismatchError,
    TanH, ZeroHorizonError, build_attention,
)
from ram.utils import unflatten_columns


def _split(composite: torch.Tensor, input_size: int, location_size: int):
    batch = composite.shape[0] // input_size
    features = unflatten_columns(composite[:, GLIMPSE_LAYOUT.feature_col], input_size)
    location = unflatten_columns(
        composite[:location_size * batch, GLIMPSE_LAYOUT.location_col], location_size)
    return features, location


# ============================================================================
# Construction
# ============================================================================

def test_zero_horizon_rejected():
    glimpse = Glimpse(4, 2, 3)
    action = Sequential(TanH())
    with pytest.raises(ZeroHorizonError):
        RecurrentAttention(3, glimpse, action, rho=0)


def test_modules_are_private_copies(cell):
    assert AttentionCell is RecurrentAttention
    prototype = Glimpse(4, 2, 3)
    owned = RecurrentAttention(3, prototype, cell.action_module, rho=2)
    owned.parameters().zero_()
    assert prototype.parameters().abs().sum() > 0


def test_parameters_are_glimpse_then_action(cell):
    n_glimpse = cell.rnn_module.num_parameters
    assert cell.num_parameters == n_glimpse + cell.action_module.num_parameters
    cell.parameters()[:n_glimpse].fill_(1.0)
    cell.parameters()[n_glimpse:].fill_(2.0)
    assert torch.all(cell.rnn_module.parameters() == 1.0)
    assert torch.all(cell.action_module.layers[0].weight == 2.0)


# ============================================================================
# Forward
# ============================================================================

def test_forward_records_history(cell):
    x = torch.randn(4, 2)
    out = cell.forward(x)
    assert out.shape == (3, 2)
    assert out is cell.output_parameter()
    assert len(cell.history) == 2 * cell.rho
    assert cell.pending_steps == cell.rho
    assert cell.forward_step == 0 and cell.backward_step == 0
    assert cell.initial_input.shape == (cell.out_size, 2)
    assert torch.equal(cell.initial_input, torch.zeros(3, 2))


def test_forward_discards_stale_history(cell):
    x = torch.randn(4, 2)
    cell.forward(x)
    cell.forward(x)
    assert len(cell.history) == 2 * cell.rho


def test_deterministic_forward(cell):
    cell.deterministic = True
    x = torch.randn(4, 2)
    first = cell.forward(x).clone()
    assert len(cell.history) == 0
    assert cell.action_module.deterministic
    assert torch.equal(cell.forward(x), first)

    with pytest.raises(HistoryUnderflowError):
        cell.backward(x, torch.ones_like(first))


def test_composite_must_fit_location():
    config = AttentionConfig(rho=2, input_size=1, hidden_size=2, location_size=3)
    cell = build_attention(config)
    with pytest.raises(ShapeMismatchError):
        cell.forward(torch.randn(1, 1))


def test_forward_requires_matrix(cell):
    with pytest.raises(ShapeMismatchError):
        cell.forward(torch.randn(4))


def test_batch_size_change(cell):
    for batch in (1, 3, 2):
        x = torch.randn(4, batch)
        out = cell.forward(x)
        g = cell.backward(x, torch.ones_like(out))
        assert g.shape == x.shape
        assert cell.action_error.shape == (2, batch)


# ============================================================================
# Scenario A: single step
# ============================================================================

def test_single_step_zero_parameters():
    config = AttentionConfig(rho=1, input_size=4, hidden_size=2, location_size=2)
    cell = build_attention(config)
    cell.parameters().zero_()
    x = torch.randn(4, 1)

    out = cell.forward(x)
    assert torch.equal(out, torch.zeros(2, 1))

    g = cell.backward(x, torch.ones(2, 1))
    assert g.shape == x.shape
    assert torch.equal(g, torch.zeros(4, 1))


def test_single_step_matches_glimpse():
    config = AttentionConfig(rho=1, input_size=4, hidden_size=2, location_size=2)
    cell = build_attention(config)
    reference = copy.deepcopy(cell.rnn_module)
    x = torch.randn(4, 1)

    out = cell.forward(x)
    composite = cell.history.latest('glimpse').input
    assert torch.allclose(out, reference.forward(composite))
    # Action saw the zero placeholder
    assert torch.equal(cell.history.latest('action').input, torch.zeros(2, 1))

    gy = torch.ones(2, 1)
    g = cell.backward(x, gy)
    delta = reference.backward(composite, gy)
    expected = unflatten_columns(delta[:, GLIMPSE_LAYOUT.location_col], 4)
    assert torch.allclose(g, expected)


# ============================================================================
# Scenario B: gradient is the sum of per-step contributions
# ============================================================================

def test_accumulated_gradient_is_sum_over_steps(cell, small_config):
    cfg = small_config
    sampler = cell.action_module.layers[1]
    sampler.reward = 0.7
    x = torch.randn(cfg.input_size, 2)
    out = cell.forward(x)
    gy = torch.randn_like(out)
    assert len(cell.history) == 6

    entries = list(cell.history)
    glimpse_w = cell.rnn_module.parameters().clone()
    head = cell.action_module.layers[0]
    head_w = head.weight.clone()

    # Closed-form replay, most recent step first
    n_x = cfg.hidden_size * cfg.input_size
    n_l = cfg.hidden_size * cfg.location_size
    w_l = glimpse_w[n_x:n_x + n_l].view(cfg.hidden_size, cfg.location_size)

    expected = torch.zeros(cell.num_parameters)
    expected_g = torch.zeros_like(x)
    error = gy
    for t in reversed(range(cfg.rho)):
        g_snap, a_snap = entries[2 * t], entries[2 * t + 1]
        assert (g_snap.module, a_snap.module, g_snap.step) == ('glimpse', 'action', t)

        h = g_snap.state
        features, location = _split(g_snap.input, cfg.input_size, cfg.location_size)
        delta = error * (1 - h * h)
        glimpse_grad = torch.cat([
            (delta @ features.t()).reshape(-1),
            (delta @ location.t()).reshape(-1),
            delta.sum(dim=1),
        ])

        _, (sample, mean) = a_snap.state
        e_loc = sampler.reward * (sample - mean) / sampler.stdev ** 2
        action_grad = torch.cat([(e_loc @ a_snap.input.t()).reshape(-1), e_loc.sum(dim=1)])

        expected += torch.cat([glimpse_grad, action_grad])
        expected_g += unflatten_columns(
            torch.cat([(w_l.t() @ delta).t().reshape(-1),
                       torch.zeros(x.numel() - location.numel())]), cfg.input_size)
        error = head_w.t() @ e_loc

    g = cell.backward(x, gy)
    assert len(cell.history) == 0
    assert cell.backward_step == cfg.rho
    assert torch.allclose(cell.attention_gradient, expected, atol=1e-5)
    assert torch.allclose(g, expected_g, atol=1e-5)


def test_zero_reward_blocks_earlier_steps(cell):
    x = torch.randn(4, 2)
    out = cell.forward(x)
    gy = torch.randn_like(out)
    last = cell.history.latest('glimpse')
    reference = copy.deepcopy(cell.rnn_module)
    reference.restore(last.state)
    reference.gradient(last.input, gy)

    cell.backward(x, gy)
    n_glimpse = cell.rnn_module.num_parameters
    assert torch.allclose(cell.attention_gradient[:n_glimpse], reference.grad, atol=1e-6)
    assert torch.equal(cell.attention_gradient[n_glimpse:],
                       torch.zeros(cell.action_module.num_parameters))


# ============================================================================
# Scenario C: Gradient() is idempotent
# ============================================================================

def test_gradient_is_idempotent(cell):
    cell.action_module.layers[1].reward = 1.0
    x = torch.randn(4, 2)
    out = cell.forward(x)
    cell.backward(x, torch.ones_like(out))
    accumulated = cell.attention_gradient.clone()

    cell.gradient(x, out)
    first = (cell.rnn_module.grad.clone(), cell.action_module.grad.clone())
    cell.gradient(x, out)
    assert torch.equal(cell.rnn_module.grad, first[0])
    assert torch.equal(cell.action_module.grad, first[1])
    assert torch.equal(cell.attention_gradient, accumulated)

    n_glimpse = cell.rnn_module.num_parameters
    assert torch.equal(cell.rnn_module.grad, accumulated[:n_glimpse])
    assert torch.equal(cell.action_module.grad, accumulated[n_glimpse:])
    assert cell.grad is cell.attention_gradient


def test_gradient_before_backward_raises(cell):
    with pytest.raises(HistoryUnderflowError):
        cell.gradient()


# ============================================================================
# Buffers
# ============================================================================

def test_gradient_regions_alias_intermediate_buffer(cell):
    x = torch.randn(4, 1)
    out = cell.forward(x)
    cell.backward(x, torch.ones_like(out))

    n_glimpse = cell.rnn_module.num_parameters
    buffers = cell.buffers
    assert buffers.sizes == [n_glimpse, cell.action_module.num_parameters]
    assert buffers.total_size == cell.num_parameters
    assert cell.intermediate_gradient.numel() == cell.num_parameters

    element = buffers.intermediate.element_size()
    assert cell.rnn_module.grad.data_ptr() == buffers.intermediate.data_ptr()
    assert cell.action_module.grad.data_ptr() == \
        buffers.intermediate.data_ptr() + n_glimpse * element


def test_accumulator_reset_between_passes(cell):
    cell.action_module.layers[1].reward = 0.3
    x = torch.randn(4, 2)
    gy = torch.randn(3, 2)

    cell.forward(x)
    cell.backward(x, gy)
    assert cell.attention_gradient.abs().sum() > 0

    # Second pass: compare against a copy that starts from fresh buffers
    cell.forward(x)
    fresh = copy.deepcopy(cell)
    fresh.buffers.reset()
    cell.backward(x, gy)
    fresh.backward(x, gy)
    assert torch.allclose(cell.attention_gradient, fresh.attention_gradient, atol=1e-6)
    assert cell.buffers.allocate(cell.buffers.sizes) is False


# ============================================================================
# Resumable backward / overlapping passes
# ============================================================================

def test_backward_in_pieces_matches_full_pass(cell):
    cell.action_module.layers[1].reward = 0.5
    x = torch.randn(4, 2)
    out = cell.forward(x)
    gy = torch.randn_like(out)
    piecewise = copy.deepcopy(cell)

    g_full = cell.backward(x, gy).clone()

    piecewise.backward(x, gy, steps=1)
    assert piecewise.backward_step == 1
    assert piecewise.pending_steps == cell.rho - 1
    piecewise.gradient()
    g_pieces = piecewise.backward(x, gy)
    assert piecewise.backward_step == cell.rho

    assert torch.allclose(g_pieces, g_full, atol=1e-6)
    assert torch.allclose(piecewise.attention_gradient, cell.attention_gradient, atol=1e-6)


def test_forward_during_backward_is_rejected(cell):
    x = torch.randn(4, 1)
    out = cell.forward(x)
    cell.backward(x, torch.ones_like(out), steps=1)
    with pytest.raises(OverlappingPassError):
        cell.forward(x)

    cell.backward(x, torch.ones_like(out))
    cell.forward(x)


def test_backward_after_completion_raises(cell):
    x = torch.randn(4, 1)
    out = cell.forward(x)
    cell.backward(x, torch.ones_like(out))
    with pytest.raises(HistoryUnderflowError):
        cell.backward(x, torch.ones_like(out))


# ============================================================================
# Polymorphic sub-modules
# ============================================================================

def test_wrapped_torch_module_as_action():
    # The last unrolled step replays the action module on its own output,
    # so a recomputing module needs matching input and output widths
    glimpse = Glimpse(input_size=4, location_size=2, hidden_size=2)
    action = ModuleAdapter(nn.Sequential(nn.Linear(2, 2), nn.Tanh()))
    cell = RecurrentAttention(2, glimpse, action, rho=2)

    x = torch.randn(4, 2)
    out = cell.forward(x)
    g = cell.backward(x, torch.ones_like(out))
    cell.gradient()

    assert g.shape == x.shape
    assert cell.action_module.grad.shape == (action.num_parameters,)
    # The wrapped module reads the cell's flat parameter vector
    cell.parameters()[glimpse.num_parameters:].fill_(0.0)
    assert torch.all(cell.action_module.module[0].weight == 0.0)


# ============================================================================
# Persistence
# ============================================================================

def test_save_load_roundtrip(cell, tmp_path):
    path = tmp_path / "cell.pt"
    cell.save(path)
    loaded = RecurrentAttention.load(path)

    assert loaded.rho == cell.rho
    assert loaded.out_size == cell.out_size
    assert torch.equal(loaded.parameters(), cell.parameters())
    assert type(loaded.action_module) is Sequential

    cell.deterministic = loaded.deterministic = True
    x = torch.randn(4, 2)
    assert torch.allclose(loaded.forward(x), cell.forward(x))


def test_state_dict_keeps_counters(cell):
    x = torch.randn(4, 1)
    out = cell.forward(x)
    cell.backward(x, torch.ones_like(out))
    state = cell.state_dict()
    assert state['backward_step'] == cell.rho
    assert state['rnn_module']['type'] == 'Glimpse'

    restored = RecurrentAttention.from_state_dict(state)
    assert restored.backward_step == cell.rho
    assert repr(restored).startswith("RecurrentAttention(out_size=3, rho=3")


def test_checkpoint_saved_mid_backward_can_start_a_new_pass(cell, tmp_path):
    x = torch.randn(4, 2)
    out = cell.forward(x)
    cell.backward(x, torch.ones_like(out), steps=1)
    path = tmp_path / "partial.pt"
    cell.save(path)

    loaded = RecurrentAttention.load(path)
    assert loaded.backward_step == 1
    assert len(loaded.history) == 0
    # Nothing recorded to resume, so backward refuses but forward starts fresh
    with pytest.raises(HistoryUnderflowError):
        loaded.backward(x, torch.ones_like(out))

    out = loaded.forward(x)
    assert loaded.backward_step == 0
    g = loaded.backward(x, torch.ones_like(out))
    assert g.shape == x.shape
    assert loaded.backward_step == loaded.rho


# ============================================================================
# Argument validation
# ============================================================================

def test_rejected_backward_leaves_pass_retryable(cell):
    x = torch.randn(4, 2)
    out = cell.forward(x)
    gy = torch.ones_like(out)

    with pytest.raises(ShapeMismatchError):
        cell.backward(torch.randn(5, 2), gy)
    assert len(cell.history) == 2 * cell.rho
    assert cell.backward_step == 0

    g = cell.backward(x, gy)
    assert g.shape == x.shape
    assert len(cell.history) == 0


@pytest.mark.parametrize("steps", [0, -1])
def test_backward_steps_must_be_positive(cell, steps):
    x = torch.randn(4, 1)
    out = cell.forward(x)
    with pytest.raises(ValueError, match="steps must be positive"):
        cell.backward(x, torch.ones_like(out), steps=steps)
    assert len(cell.history) == 2 * cell.rho


def test_set_deterministic_reaches_modules_immediately(cell):
    cell.set_deterministic(True)
    assert cell.deterministic
    assert cell.rnn_module.deterministic
    assert cell.action_module.deterministic
    assert cell.action_module.layers[1].deterministic

    cell.set_deterministic(False)
    assert not cell.action_module.layers[1].deterministic


# ============================================================================
# Nesting
# ============================================================================

def test_cell_inside_sequential(cell):
    seq = Sequential(cell, TanH())
    inner = seq.layers[0]
    inner.action_module.layers[1].reward = 0.5
    x = torch.randn(4, 2)

    out = seq.forward(x)
    assert out.shape == (3, 2)
    g = seq.backward(x, torch.ones_like(out))
    assert g.shape == x.shape
    seq.gradient(x, torch.ones_like(out))

    n = inner.num_parameters
    assert seq.num_parameters == n
    assert torch.equal(seq.grad[:n], inner.attention_gradient)
    assert inner.grad.data_ptr() == seq.grad.data_ptr()
    n_glimpse = inner.rnn_module.num_parameters
    assert torch.equal(inner.rnn_module.grad, inner.attention_gradient[:n_glimpse])

    seq.set_deterministic(True)
    assert inner.action_module.deterministic
