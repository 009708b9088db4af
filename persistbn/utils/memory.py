# persistbn/utils/memory.py
import torch
import gc

def clear_gpu_memory():
    """Force garbage collection and return cached CUDA blocks to the driver"""
    gc.collect()
    if torch.cuda.is_available():
        torch.cuda.empty_cache()

def get_gpu_memory():
    """Return (allocated_gb, reserved_gb); zeros without CUDA"""
    if not torch.cuda.is_available():
        return 0.0, 0.0
    allocated = torch.cuda.memory_allocated() / 1024**3
    reserved = torch.cuda.memory_reserved() / 1024**3
    return allocated, reserved

def print_gpu_memory(label="GPU Memory"):
    allocated, reserved = get_gpu_memory()
    print(f"{label} - Allocated: {allocated:.2f}GB, Reserved: {reserved:.2f}GB")
