# - Batch normalization layer over the accelerated primitives
#     - forward (training), forward_inference, backward
#     - running mean / variance restored from `path` on construction and saved back on free()
#     - descriptors and device buffers released explicitly with free()

import torch

from persistbn import functional as BF
from persistbn.config import BatchNormConfig, BatchNormMode
from persistbn.descriptor import TensorDescriptor
from persistbn.running_stats import RunningMeanVariance
from persistbn.utils.memory import clear_gpu_memory
from persistbn.utils.timing import cuda_timing, now_ns


class CudnnBatchNorm:
    def __init__(self, path, x_dims, config=None, device=None):
        self.config = config or BatchNormConfig()
        self.path = path
        self.device = torch.device(
            device or ("cuda" if torch.cuda.is_available() else "cpu")
        )

        self.x_dptr = TensorDescriptor(x_dims)
        self.norm_dptr = self.x_dptr.norm_descriptor(self.config.mode)
        self.x_dims = self.x_dptr.dims
        self.norm_dims = self.norm_dptr.dims
        self.dim = self.norm_dptr.numel
        # Unbiased variance needs at least two values per normalized element.
        if self.x_dptr.numel // self.dim < 2:
            raise ValueError(
                f"x_dims {self.x_dims} leave fewer than 2 values per element "
                f"of norm dims {self.norm_dims}"
            )

        running = RunningMeanVariance(self.dim).load(
            path, self.config.stats_suffix, self.config.verbose
        ).to(self.device)
        self.running_mean = running.mean
        self.running_variance = running.variance
        self.forward_count = running.forward_count

        self.saved_mean = torch.zeros(self.dim, device=self.device)
        self.saved_inv_variance = torch.zeros(self.dim, device=self.device)
        self.reserve = None

        # True once a training forward has run; backward needs the saved statistics.
        self.has_saved = False
        self.trained = False
        self.freed = False

    # ---- lifecycle ----

    def free(self):
        if self.freed:
            return
        if self.trained:
            self.running_stats().save(
                self.path, self.config.stats_suffix, self.config.verbose
            )
        self.x_dptr.free()
        self.norm_dptr.free()
        on_cuda = self.device.type == "cuda"
        self.running_mean = None
        self.running_variance = None
        self.saved_mean = None
        self.saved_inv_variance = None
        self.reserve = None
        self.freed = True
        if on_cuda:
            clear_gpu_memory()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.free()
        return False

    def apply_to_tensors(self, fn):
        # Keeps the statistics next to the module parameters after .to() / .cuda() / .double().
        if self.freed:
            return
        self.running_mean = fn(self.running_mean)
        self.running_variance = fn(self.running_variance)
        self.saved_mean = fn(self.saved_mean)
        self.saved_inv_variance = fn(self.saved_inv_variance)
        if self.reserve is not None:
            self.reserve = self.reserve.to(self.running_mean.device)
        self.device = self.running_mean.device

    def running_stats(self):
        self._check_alive()
        return RunningMeanVariance(
            self.dim,
            self.forward_count,
            self.running_mean.detach().cpu().clone(),
            self.running_variance.detach().cpu().clone(),
        )

    # ---- operations ----

    def forward(self, x, scale, bias):
        self._check_alive()
        self._check_input(x, "x")
        scale, bias = self._flat_param(scale, "scale"), self._flat_param(bias, "bias")

        if self.config.momentum is None:
            factor = 1.0 / (1 + self.forward_count)
        else:
            factor = self.config.momentum

        begin = now_ns()
        y = self._run_training(x, scale, bias, factor)
        self.forward_count += 1
        if self.config.timing:
            cuda_timing("batch norm forward", begin, self.config.verbose)

        self.trained = True
        return y

    def forward_inference(self, x, scale, bias):
        self._check_alive()
        self._check_input(x, "x")
        scale, bias = self._flat_param(scale, "scale"), self._flat_param(bias, "bias")

        if self.config.inference_uses_batch_stats:
            # factor 0: normalize with batch statistics, running statistics untouched
            return self._run_training(x, scale, bias, 0.0)

        y = BF.batch_norm_forward_inference(
            self._to_primitive(x), scale, bias,
            self.running_mean, self.running_variance, self.config.epsilon,
        )
        return y.view(self.x_dims)

    def backward(self, dy, x, scale, saved=None, inplace=None):
        """
        Gradients of the last training forward.

        saved: optional (saved_mean, saved_inv_variance, reserve) overriding the
        layer's own buffers, for callers that keep them per forward call.
        Returns [dx, d_scale, d_bias]; d_scale / d_bias have the norm shape.
        """
        self._check_alive()
        self._check_input(dy, "dy")
        self._check_input(x, "x")
        scale = self._flat_param(scale, "scale")

        if saved is None:
            if not self.has_saved:
                raise RuntimeError("backward called before a training forward")
            saved = (self.saved_mean, self.saved_inv_variance, self.reserve)
        saved_mean, saved_inv_variance, reserve = saved

        begin = now_ns()
        dx, d_scale, d_bias = BF.batch_norm_backward(
            self._to_primitive(dy), self._to_primitive(x), scale,
            saved_mean, saved_inv_variance, self.config.epsilon, reserve,
        )
        if self.config.timing:
            cuda_timing("batch norm backward", begin, self.config.verbose)

        dx = dx.view(self.x_dims)
        if inplace is None:
            inplace = self.config.inplace_backward
        if inplace:
            dy.copy_(dx)
            dx = dy
        return [dx, d_scale.view(self.norm_dims), d_bias.view(self.norm_dims)]

    # ---- helpers ----

    def _run_training(self, x, scale, bias, factor):
        y, saved_mean, saved_inv_variance, reserve = BF.batch_norm_forward_training(
            self._to_primitive(x), scale, bias,
            self.running_mean, self.running_variance,
            factor, self.config.epsilon,
        )
        self.saved_mean = saved_mean
        self.saved_inv_variance = saved_inv_variance
        self.reserve = reserve
        self.has_saved = True
        return y.view(self.x_dims)

    def _to_primitive(self, t):
        # Per-activation statistics: fold C, H, W into the channel axis.
        if self.config.mode == BatchNormMode.PER_ACTIVATION:
            return t.contiguous().view(self.x_dims[0], self.dim, 1, 1)
        return t

    def _flat_param(self, t, name):
        if t.numel() != self.dim:
            raise ValueError(
                f"{name} must have {self.dim} elements for norm dims {self.norm_dims}, "
                f"got shape {tuple(t.shape)}"
            )
        return t.contiguous().view(self.dim)

    def _check_input(self, t, name):
        if not self.x_dptr.matches(t):
            raise ValueError(
                f"{name} has shape {tuple(t.shape)}, layer expects {self.x_dims}"
            )

    def _check_alive(self):
        if self.freed:
            raise RuntimeError(f"batch norm layer '{self.path}' has been freed")

    def __repr__(self):
        return (
            f"CudnnBatchNorm(path={self.path!r}, x_dims={self.x_dptr._dims}, "
            f"mode={self.config.mode.value}, forward_count={self.forward_count})"
        )
