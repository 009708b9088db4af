"""
Train a small CNN whose batch-norm layers keep their running statistics on disk.

Running twice with the same --stats-dir resumes the running mean/variance
(and the cumulative forward count) from the previous run.
"""

import argparse
import os
from dataclasses import dataclass, fields

import torch
import torch.nn as nn
import torch.nn.functional as F

from persistbn.config import BatchNormConfig
from persistbn.module import PersistentBatchNorm2d
from persistbn.utils.memory import print_gpu_memory


@dataclass(frozen=True)
class TrainConfig:
    # Data / batching
    batch_size: int = 32
    image_size: int = 16
    in_channels: int = 3
    num_classes: int = 4

    # Training
    max_iters: int = 200
    eval_interval: int = 50
    learning_rate: float = 1e-3
    seed: int = 1337

    # Model
    conv_channels: int = 16

    # Batch norm
    momentum: float = -1.0  # < 0 -> cumulative moving average
    epsilon: float = 1e-5

    # Checkpointing
    stats_dir: str = "checkpoints/bn_stats"
    ckpt_name: str = "cnn_last.pt"

    device: str = ""


class SmallCNN(nn.Module):
    def __init__(self, cfg: TrainConfig, device: str):
        super().__init__()
        bn_cfg = BatchNormConfig(
            epsilon=cfg.epsilon,
            momentum=None if cfg.momentum < 0 else cfg.momentum,
        )
        b, s, c = cfg.batch_size, cfg.image_size, cfg.conv_channels

        self.conv1 = nn.Conv2d(cfg.in_channels, c, kernel_size=3, padding=1)
        self.bn1 = PersistentBatchNorm2d(
            os.path.join(cfg.stats_dir, "bn1"), (b, c, s, s), config=bn_cfg, device=device
        )
        self.conv2 = nn.Conv2d(c, 2 * c, kernel_size=3, padding=1)
        self.bn2 = PersistentBatchNorm2d(
            os.path.join(cfg.stats_dir, "bn2"), (b, 2 * c, s // 2, s // 2), config=bn_cfg, device=device
        )
        self.head = nn.Linear(2 * c, cfg.num_classes)

    def forward(self, x):
        # x: (B, C_in, S, S)
        x = F.max_pool2d(F.relu(self.bn1(self.conv1(x))), 2)   # (B, c, S/2, S/2)
        x = F.relu(self.bn2(self.conv2(x)))                     # (B, 2c, S/2, S/2)
        x = x.mean(dim=(2, 3))                                  # (B, 2c)
        return self.head(x)

    def batch_norms(self):
        return [m for m in self.modules() if isinstance(m, PersistentBatchNorm2d)]

    def free(self):
        for bn in self.batch_norms():
            bn.free()


def make_prototypes(cfg: TrainConfig, generator: torch.Generator):
    # One fixed random pattern per class.
    return torch.randn(
        cfg.num_classes, cfg.in_channels, cfg.image_size, cfg.image_size,
        generator=generator,
    )


def get_batch(prototypes: torch.Tensor, cfg: TrainConfig, generator: torch.Generator):
    # Noisy copies of the class prototypes, shifted and scaled so batch norm has work to do.
    y = torch.randint(0, cfg.num_classes, (cfg.batch_size,), generator=generator)
    noise = torch.randn(prototypes[y].shape, generator=generator)
    x = 3.0 * (prototypes[y] + 0.5 * noise) + 2.0
    return x, y


def maybe_load_checkpoint(ckpt_path: str, model: SmallCNN, optimizer, device: str):
    # Parameters resume from the checkpoint; running statistics resume from their own files.
    start_step = 0
    if os.path.exists(ckpt_path):
        print(f"Loading checkpoint from {ckpt_path}")
        ckpt = torch.load(ckpt_path, map_location=device)
        model.load_state_dict(ckpt["model"])
        optimizer.load_state_dict(ckpt["optimizer"])
        start_step = ckpt["step"] + 1
    return start_step


def save_checkpoint(ckpt_path: str, step: int, model: SmallCNN, optimizer, train_loss: float):
    torch.save(
        {
            "step": step,
            "model": model.state_dict(),
            "optimizer": optimizer.state_dict(),
            "train_loss": train_loss,
        },
        ckpt_path,
    )


def evaluate(model: SmallCNN, prototypes, cfg: TrainConfig, generator, device: str):
    model.eval()
    with torch.no_grad():
        x, y = get_batch(prototypes, cfg, generator)
        logits = model(x.to(device))
        loss = F.cross_entropy(logits, y.to(device))
        acc = (logits.argmax(dim=-1).cpu() == y).float().mean()
    model.train()
    return loss.item(), acc.item()


def train(cfg: TrainConfig):
    torch.manual_seed(cfg.seed)
    device = cfg.device or ("cuda" if torch.cuda.is_available() else "cpu")
    generator = torch.Generator().manual_seed(cfg.seed)
    prototypes = make_prototypes(cfg, generator)

    os.makedirs(cfg.stats_dir, exist_ok=True)
    ckpt_path = os.path.join(cfg.stats_dir, cfg.ckpt_name)

    model = SmallCNN(cfg, device).to(device)
    optimizer = torch.optim.AdamW(model.parameters(), lr=cfg.learning_rate)
    start_step = maybe_load_checkpoint(ckpt_path, model, optimizer, device)

    history = []
    loss = None
    try:
        for step in range(start_step, cfg.max_iters):
            model.train()
            x, y = get_batch(prototypes, cfg, generator)
            x, y = x.to(device), y.to(device)

            logits = model(x)
            loss = F.cross_entropy(logits, y)

            optimizer.zero_grad()
            loss.backward()
            optimizer.step()

            if step % cfg.eval_interval == 0 or step == cfg.max_iters - 1:
                val_loss, val_acc = evaluate(model, prototypes, cfg, generator, device)
                print(
                    f"step {step} | "
                    f"train loss {loss.item():.3f} | "
                    f"val loss {val_loss:.3f} | "
                    f"val acc {val_acc:.3f}"
                )
                history.append((step, loss.item(), val_loss, val_acc))

        if device.startswith("cuda"):
            print_gpu_memory()
        if loss is not None:
            save_checkpoint(ckpt_path, cfg.max_iters - 1, model, optimizer, loss.item())
    finally:
        # Writes running statistics of every trained batch-norm layer.
        model.free()
    return history


def parse_args(argv=None) -> TrainConfig:
    parser = argparse.ArgumentParser(description="Train a small CNN with persisted batch-norm statistics.")
    defaults = TrainConfig()
    for f in fields(TrainConfig):
        flag = "--" + f.name.replace("_", "-")
        parser.add_argument(flag, type=type(getattr(defaults, f.name)), default=getattr(defaults, f.name))
    args = parser.parse_args(argv)
    return TrainConfig(**vars(args))


def main(argv=None):
    cfg = parse_args(argv)
    train(cfg)


if __name__ == "__main__":
    main()
