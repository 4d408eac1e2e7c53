import pytest
import torch

from ram import AttentionConfig, build_attention


@pytest.fixture(autouse=True)
def _seed():
    torch.manual_seed(0)


@pytest.fixture
def small_config() -> AttentionConfig:
    return AttentionConfig(rho=3, input_size=4, hidden_size=3, location_size=2, location_stdev=0.5)


@pytest.fixture
def cell(small_config):
    return build_attention(small_config)
