import pytest
import torch

from ram import GradientBuffers, HistoryUnderflowError, Linear, TanH


def test_allocate_is_idempotent():
    buffers = GradientBuffers()
    assert not buffers.is_allocated
    assert buffers.allocate([3, 2]) is True
    assert buffers.allocate([3, 2]) is False
    assert buffers.total_size == 5
    assert buffers.intermediate.shape == (5,)
    assert buffers.accumulator.shape == (5,)


def test_resize_requires_reset():
    buffers = GradientBuffers()
    buffers.allocate([3, 2])
    with pytest.raises(ValueError):
        buffers.allocate([4, 2])
    buffers.reset()
    assert not buffers.is_allocated
    buffers.allocate([4, 2])
    assert buffers.total_size == 6


def test_region_before_allocate_raises():
    with pytest.raises(HistoryUnderflowError):
        GradientBuffers().region(0)


def test_invalid_buffer_name():
    buffers = GradientBuffers()
    buffers.allocate([1])
    with pytest.raises(ValueError):
        buffers.region(0, 'other')


def test_regions_are_views():
    buffers = GradientBuffers()
    buffers.allocate([3, 2])
    buffers.region(1).fill_(7.0)
    buffers.region(0, 'accumulator').fill_(1.0)
    assert torch.equal(buffers.intermediate, torch.tensor([0., 0., 0., 7., 7.]))
    assert torch.equal(buffers.accumulator, torch.tensor([1., 1., 1., 0., 0.]))


def test_bind_aliases_module_gradients():
    a, b = Linear(2, 1), Linear(1, 1)
    buffers = GradientBuffers()
    buffers.allocate([a.num_parameters, b.num_parameters])
    buffers.bind([a, b])

    a.gradient(torch.ones(2, 1), torch.ones(1, 1))
    b.gradient(torch.full((1, 1), 2.0), torch.full((1, 1), 3.0))
    assert torch.equal(buffers.intermediate, torch.tensor([1., 1., 1., 6., 3.]))


def test_accumulate_and_zero():
    buffers = GradientBuffers()
    buffers.allocate([2])
    buffers.intermediate.fill_(1.5)
    buffers.accumulate()
    buffers.accumulate()
    assert torch.equal(buffers.accumulator, torch.full((2,), 3.0))
    buffers.zero_intermediate()
    assert torch.equal(buffers.intermediate, torch.zeros(2))
    buffers.zero_accumulator()
    assert torch.equal(buffers.accumulator, torch.zeros(2))


def test_scatter_copies_and_skips_empty_regions():
    a, act = Linear(2, 1), TanH()
    buffers = GradientBuffers()
    buffers.allocate([a.num_parameters, act.num_parameters])
    buffers.accumulator.copy_(torch.tensor([1., 2., 3.]))

    buffers.scatter([a, act])
    assert torch.equal(a.grad, torch.tensor([1., 2., 3.]))
    assert act.grad.numel() == 0

    # Fresh storage, not an alias of the accumulator
    buffers.zero_accumulator()
    assert torch.equal(a.grad, torch.tensor([1., 2., 3.]))
