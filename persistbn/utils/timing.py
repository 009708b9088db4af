# Wall-clock timing of accelerated calls, accumulated per label.
import time
from collections import defaultdict

import torch

_totals_ms = defaultdict(float)
_counts = defaultdict(int)


def now_ns():
    return time.perf_counter_ns()


def cuda_timing(label, begin, verbose=True):
    # Kernels run asynchronously; wait for them before reading the clock.
    if torch.cuda.is_available():
        torch.cuda.synchronize()
    elapsed_ms = (time.perf_counter_ns() - begin) / 1e6
    _totals_ms[label] += elapsed_ms
    _counts[label] += 1
    if verbose:
        print(f"{label}: {elapsed_ms:.3f} ms")
    return elapsed_ms


def timing_report():
    # label -> (calls, total_ms, mean_ms)
    return {
        label: (_counts[label], total, total / _counts[label])
        for label, total in _totals_ms.items()
    }


def reset_timing():
    _totals_ms.clear()
    _counts.clear()
