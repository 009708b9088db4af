# Thin calls into the batch-norm primitives shipped with torch.
# CUDA tensors go through cuDNN, everything else through the native ATen kernel.
# All tensors are NCHW; scale/bias/statistics are 1-d of length C.

import torch


def select_backend(x: torch.Tensor) -> str:
    if (
        x.is_cuda
        and torch.backends.cudnn.is_available()
        and torch.backends.cudnn.enabled
    ):
        return "cudnn"
    return "native"


def _empty_reserve(x):
    return torch.empty(0, dtype=torch.uint8, device=x.device)


def batch_norm_forward_training(x, scale, bias, running_mean, running_var,
                                factor, epsilon):
    """
    Normalize x with its batch statistics.

    running_mean / running_var are updated in place:
        running = (1 - factor) * running + factor * batch
    The variance folded into running_var is the unbiased batch variance.

    Returns (y, saved_mean, saved_inv_variance, reserve). `reserve` is the
    cuDNN workspace needed by the backward call (empty for the native kernel).
    """
    x = x.contiguous()
    if select_backend(x) == "cudnn":
        y, saved_mean, saved_inv_variance, reserve = torch.cudnn_batch_norm(
            x, scale, bias, running_mean, running_var,
            True, factor, epsilon,
        )
        return y, saved_mean, saved_inv_variance, reserve

    y, saved_mean, saved_inv_variance = torch.native_batch_norm(
        x, scale, bias, running_mean, running_var,
        True, factor, epsilon,
    )
    return y, saved_mean, saved_inv_variance, _empty_reserve(x)


def batch_norm_forward_inference(x, scale, bias, running_mean, running_var, epsilon):
    # Normalize with the running statistics; they are not modified.
    x = x.contiguous()
    if select_backend(x) == "cudnn":
        y, _, _, _ = torch.cudnn_batch_norm(
            x, scale, bias, running_mean, running_var,
            False, 0.0, epsilon,
        )
        return y

    y, _, _ = torch.native_batch_norm(
        x, scale, bias, running_mean, running_var,
        False, 0.0, epsilon,
    )
    return y


def batch_norm_backward(dy, x, scale, saved_mean, saved_inv_variance, epsilon,
                        reserve=None):
    # Returns (dx, d_scale, d_bias) from the statistics saved by the training forward.
    x = x.contiguous()
    dy = dy.contiguous()
    if select_backend(x) == "cudnn":
        if reserve is None:
            reserve = _empty_reserve(x)
        dx, d_scale, d_bias = torch.ops.aten.cudnn_batch_norm_backward(
            x, dy, scale, None, None,
            saved_mean, saved_inv_variance, epsilon, reserve,
        )
        return dx, d_scale, d_bias

    dx, d_scale, d_bias = torch.ops.aten.native_batch_norm_backward(
        dy, x, scale, None, None,
        saved_mean, saved_inv_variance, True, epsilon, [True, True, True],
    )
    return dx, d_scale, d_bias
