# Persisted running mean / variance of a batch-norm layer.
# One file per layer, written with torch.save and restored across process runs.

import os
import pickle

import torch


class RunningMeanVariance:
    def __init__(self, dim, forward_count=0, mean=None, variance=None):
        self.dim = int(dim)
        self.forward_count = int(forward_count)
        self.mean = torch.zeros(self.dim) if mean is None else mean
        self.variance = torch.ones(self.dim) if variance is None else variance

    @staticmethod
    def file_path(name, suffix=".pt"):
        return f"{name}{suffix}"

    def load(self, name, suffix=".pt", verbose=True):
        """
        Restore the statistics saved under `name`.

        Returns the restored record, or `self` when there is nothing usable
        on disk: missing or unreadable file, malformed content, or a record
        saved for a different dimension.
        """
        path = self.file_path(name, suffix)
        if not os.path.exists(path):
            return self
        try:
            state = torch.load(path, map_location="cpu", weights_only=True)
            restored = RunningMeanVariance(
                dim=state["dim"],
                forward_count=state["forward_count"],
                mean=state["mean"].float().reshape(-1),
                variance=state["variance"].float().reshape(-1),
            )
        except (OSError, EOFError, RuntimeError, pickle.UnpicklingError,
                KeyError, TypeError, ValueError, AttributeError):
            return self

        if restored.dim != self.dim:
            return self
        if restored.mean.numel() != self.dim or restored.variance.numel() != self.dim:
            return self
        if verbose:
            print(f"Restored {name}")
        return restored

    def save(self, name, suffix=".pt", verbose=True):
        path = self.file_path(name, suffix)
        parent = os.path.dirname(path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        torch.save(
            {
                "dim": self.dim,
                "forward_count": self.forward_count,
                "mean": self.mean.detach().cpu().clone(),
                "variance": self.variance.detach().cpu().clone(),
            },
            path,
        )
        if verbose:
            print(f"Parameter is serialized in {path}")
        return path

    def to(self, device):
        return RunningMeanVariance(
            self.dim,
            self.forward_count,
            self.mean.to(device=device, dtype=torch.float32).contiguous(),
            self.variance.to(device=device, dtype=torch.float32).contiguous(),
        )

    def __repr__(self):
        return f"RunningMeanVariance(dim={self.dim}, forward_count={self.forward_count})"
