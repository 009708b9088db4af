# tests/conftest.py
"""
Shared fixtures and reference batch-norm math for persistbn tests.
"""

import pytest
import torch

from persistbn.config import BatchNormConfig


def reference_forward(x, gamma, beta, eps=1e-5):
    """
    Spatial batch norm written out by hand.
    x: (N, C, H, W); gamma, beta: (C,)
    """
    mean = x.mean(dim=(0, 2, 3))
    var = x.var(dim=(0, 2, 3), unbiased=False)
    std = torch.sqrt(var + eps)
    x_hat = (x - mean.view(1, -1, 1, 1)) / std.view(1, -1, 1, 1)
    out = gamma.view(1, -1, 1, 1) * x_hat + beta.view(1, -1, 1, 1)
    return out, mean, var, std, x_hat


def reference_backward(dout, x, gamma, eps=1e-5):
    _, _, _, std, x_hat = reference_forward(x, gamma, torch.zeros_like(gamma), eps)
    m = x.shape[0] * x.shape[2] * x.shape[3]
    dims = (0, 2, 3)

    dbeta = dout.sum(dim=dims)
    dgamma = (dout * x_hat).sum(dim=dims)

    dx_hat = dout * gamma.view(1, -1, 1, 1)
    dx = (1.0 / m) * (1.0 / std.view(1, -1, 1, 1)) * (
        m * dx_hat
        - dx_hat.sum(dim=dims, keepdim=True)
        - x_hat * (dx_hat * x_hat).sum(dim=dims, keepdim=True)
    )
    return dx, dgamma, dbeta


@pytest.fixture
def x_dims():
    return (4, 3, 5, 5)


@pytest.fixture
def quiet_config():
    return BatchNormConfig(verbose=False)


@pytest.fixture
def sample(x_dims):
    g = torch.Generator().manual_seed(0)
    x = 2.0 * torch.randn(x_dims, generator=g) + 1.5
    scale = torch.rand(x_dims[1], generator=g) + 0.5
    bias = torch.randn(x_dims[1], generator=g)
    return x, scale, bias


@pytest.fixture
def stats_path(tmp_path):
    return str(tmp_path / "stats" / "bn1")
