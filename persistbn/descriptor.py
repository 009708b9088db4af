import torch

from persistbn.config import BatchNormMode


class TensorDescriptor:
    """
    Shape handle for a 4-d NCHW tensor, the counterpart of a cuDNN tensor descriptor.
    The layer keeps one for x/y/dx and one for scale/bias/mean/variance.
    """

    def __init__(self, dims):
        dims = tuple(int(d) for d in dims)
        if len(dims) != 4:
            raise ValueError(f"expected NCHW dims of length 4, got {dims}")
        if any(d <= 0 for d in dims):
            raise ValueError(f"dims must be positive, got {dims}")
        self._dims = dims
        self._freed = False

    @property
    def dims(self):
        self._check_alive()
        return self._dims

    @property
    def numel(self):
        n, c, h, w = self.dims
        return n * c * h * w

    @property
    def freed(self):
        return self._freed

    def norm_descriptor(self, mode=BatchNormMode.SPATIAL):
        # Derived descriptor for scale, bias and the statistics.
        _, c, h, w = self.dims
        if BatchNormMode(mode) == BatchNormMode.SPATIAL:
            return TensorDescriptor((1, c, 1, 1))
        return TensorDescriptor((1, c, h, w))

    def matches(self, tensor: torch.Tensor) -> bool:
        return tuple(tensor.shape) == self.dims

    def free(self):
        self._freed = True

    def _check_alive(self):
        if self._freed:
            raise RuntimeError("descriptor has been freed")

    def __repr__(self):
        state = "freed" if self._freed else "x".join(str(d) for d in self._dims)
        return f"TensorDescriptor({state})"
