# - nn.Module / autograd wrapper around CudnnBatchNorm
#     - **Custom Autograd Function:** forward and backward both go to the layer,
#           so autograd never traces through the batch-norm primitive itself.

import torch
import torch.nn as nn

from persistbn.batch_norm import CudnnBatchNorm


class CudnnBatchNormFunction(torch.autograd.Function):
    @staticmethod
    def forward(ctx, x, scale, bias, layer, training):
        ctx.layer = layer
        if not training:
            ctx.training = False
            return layer.forward_inference(x, scale, bias)

        y = layer.forward(x, scale, bias)
        ctx.training = True
        # Keep this call's statistics; the layer's buffers are overwritten by the next forward.
        ctx.saved = (layer.saved_mean, layer.saved_inv_variance, layer.reserve)
        ctx.save_for_backward(x, scale)
        return y

    @staticmethod
    def backward(ctx, grad_output):
        if not ctx.training:
            raise RuntimeError("backward through batch norm inference is not supported")
        x, scale = ctx.saved_tensors
        dx, d_scale, d_bias = ctx.layer.backward(
            grad_output, x, scale, saved=ctx.saved, inplace=False
        )
        return dx, d_scale.view_as(scale), d_bias.view_as(scale), None, None


class PersistentBatchNorm2d(nn.Module):
    """
    Batch norm whose running statistics live on disk under `path`.

    x_dims is the full NCHW input shape; the batch size is fixed by the
    underlying descriptor.
    """

    def __init__(self, path, x_dims, config=None, device=None):
        super().__init__()
        self.layer = CudnnBatchNorm(path, x_dims, config=config, device=device)

        # Trainable parameters registered automatically
        self.weight = nn.Parameter(torch.ones(self.layer.norm_dims, device=self.layer.device))
        self.bias = nn.Parameter(torch.zeros(self.layer.norm_dims, device=self.layer.device))

    def forward(self, x):
        return CudnnBatchNormFunction.apply(x, self.weight, self.bias, self.layer, self.training)

    def _apply(self, fn, *args, **kwargs):
        super()._apply(fn, *args, **kwargs)
        self.layer.apply_to_tensors(fn)
        return self

    @property
    def forward_count(self):
        return self.layer.forward_count

    def free(self):
        self.layer.free()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.free()
        return False

    def extra_repr(self):
        return f"path={self.layer.path!r}, x_dims={self.layer.x_dims}, mode={self.layer.config.mode.value}"
