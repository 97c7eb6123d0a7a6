"""dockopt scoring network: a named-blob layer chain over 3D density grids.

The solver treats the network as a fixed, pretrained oracle. It needs named
tensors ("blobs"), partial forward passes starting at a layer index, a
backward pass, and per-layer type/pooling introspection. ``ScoringNet``
provides exactly that on top of ordinary torch modules.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

import torch
import torch.nn as nn
import torch.nn.functional as F

from dockopt.data import GridSpec, subgrid_offsets, num_subgrids

logger = logging.getLogger(__name__)

POOL_MAX = "MAX"
POOL_AVE = "AVE"

# ============================================================================
# Configuration
# ============================================================================

@dataclass
class GridNetConfig:
    """Default grid scoring model configuration."""
    grid: GridSpec = None
    conv_channels: tuple[int, ...] = (32, 64, 128)
    kernel_size: int = 3
    n_outputs: int = 2           # pose classification logits (bad, good)
    label: int = 1               # target class for the loss
    unroll_subgrid_dim: int = 0  # >0 unrolls the grid into strided sub-cubes
    unroll_stride: int = 0

    def __post_init__(self):
        if self.grid is None:
            self.grid = GridSpec()

    @property
    def input_dim(self) -> int:
        return self.unroll_subgrid_dim if self.unroll_subgrid_dim else self.grid.dim


# ============================================================================
# Layers
# ============================================================================

class NetLayer(nn.Module):
    """One named stage of a ``ScoringNet``; reads the previous top, writes ``top``."""
    layer_type = "Layer"

    def __init__(self, name: str, top: str | None = None, loss_weight: float = 0.0):
        super().__init__()
        self.name = name
        self.top = top or name
        self.loss_weight = loss_weight

    def has_pool_method(self) -> bool:
        """Whether this layer exposes a mutable pooling method."""
        return False


class InputLayer(NetLayer):
    layer_type = "Input"

    def __init__(self, name: str, source: Callable[[], torch.Tensor], top: str = "data"):
        super().__init__(name, top)
        self.source = source

    def forward(self, x: torch.Tensor | None = None) -> torch.Tensor:
        return self.source()


class SubgridUnrollLayer(NetLayer):
    """Unroll a grid into strided sub-cubes stacked on the batch axis.

    (B, C, D, D, D) -> (T * B, C, S, S, S), time-major, where T is the number
    of sub-cubes. Gradients flow back into the overlapping source cells.
    """
    layer_type = "SubgridUnroll"

    def __init__(self, name: str, subgrid_dim: int, stride: int, top: str | None = None):
        super().__init__(name, top)
        self.subgrid_dim = subgrid_dim
        self.stride = stride

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        dim = x.shape[-1]
        s = self.subgrid_dim
        steps = []
        for t in range(num_subgrids(dim, s, self.stride)):
            ox, oy, oz = subgrid_offsets(t, dim, s, self.stride)
            steps.append(x[..., ox:ox + s, oy:oy + s, oz:oz + s])
        return torch.cat(steps, dim=0)


class ConvolutionLayer(NetLayer):
    layer_type = "Convolution"

    def __init__(self, name: str, c_in: int, c_out: int, kernel_size: int = 3, top: str | None = None):
        super().__init__(name, top)
        self.conv = nn.Conv3d(c_in, c_out, kernel_size, padding=kernel_size // 2)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.conv(x)


class ReLULayer(NetLayer):
    layer_type = "ReLU"

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return F.relu(x)


def _pool3d(x: torch.Tensor, method: str, kernel_size: int) -> torch.Tensor:
    if method == POOL_MAX:
        return F.max_pool3d(x, kernel_size)
    return F.avg_pool3d(x, kernel_size)


class _SwitchablePool(torch.autograd.Function):
    """Pooling whose gradient follows the layer's method at backward time."""

    @staticmethod
    def forward(ctx, x, layer):
        ctx.layer = layer
        ctx.save_for_backward(x)
        return _pool3d(x, layer.pool, layer.kernel_size)

    @staticmethod
    def backward(ctx, grad_out):
        (x,) = ctx.saved_tensors
        layer = ctx.layer
        with torch.enable_grad():
            x = x.detach().requires_grad_(True)
            out = _pool3d(x, layer.pool, layer.kernel_size)
            (grad_in,) = torch.autograd.grad(out, x, grad_out)
        return grad_in, None


class PoolingLayer(NetLayer):
    """3D pooling whose method (MAX or AVE) can be switched between passes.

    The method in effect when ``backward`` runs decides how gradients are
    routed, so a MAX forward can be followed by an AVE backward.
    """
    layer_type = "Pooling"

    def __init__(self, name: str, kernel_size: int = 2, pool: str = POOL_MAX, top: str | None = None):
        super().__init__(name, top)
        self.kernel_size = kernel_size
        self.pool = pool

    def has_pool_method(self) -> bool:
        return True

    @property
    def pool(self) -> str:
        return self._pool

    @pool.setter
    def pool(self, method: str):
        if method not in (POOL_MAX, POOL_AVE):
            raise ValueError(f"Unknown pooling method: {method}")
        self._pool = method

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        if torch.is_grad_enabled() and x.requires_grad:
            return _SwitchablePool.apply(x, self)
        return _pool3d(x, self._pool, self.kernel_size)


class InnerProductLayer(NetLayer):
    layer_type = "InnerProduct"

    def __init__(self, name: str, d_in: int, d_out: int, top: str | None = None):
        super().__init__(name, top)
        self.linear = nn.Linear(d_in, d_out)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.linear(x.flatten(start_dim=1))


class LossLayer(NetLayer):
    """Softmax cross-entropy of the pose logits against a fixed label."""
    layer_type = "SoftmaxWithLoss"

    def __init__(self, name: str, label: int = 1, loss_weight: float = 1.0, top: str | None = None):
        super().__init__(name, top, loss_weight=loss_weight)
        self.label = label

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        labels = torch.full((x.shape[0],), self.label, dtype=torch.long, device=x.device)
        return F.cross_entropy(x, labels)


# ============================================================================
# Network
# ============================================================================

class ScoringNet(nn.Module):
    """Linear chain of ``NetLayer``s with named output blobs.

    Layer ``i`` consumes the top of layer ``i - 1``. Input layers fill their
    blob in place once it exists, so references held by callers stay valid.
    """

    def __init__(self, layers: list[NetLayer]):
        super().__init__()
        names = [layer.top for layer in layers]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate blob names: {names}")
        self.layers = nn.ModuleList(layers)
        self.blobs: dict[str, torch.Tensor] = {}
        self.debug_info = False
        self._loss: torch.Tensor | None = None
        with torch.no_grad():
            self.forward_from_to(0, 0)

    @property
    def layer_names(self) -> list[str]:
        return [layer.name for layer in self.layers]

    @property
    def blob_names(self) -> list[str]:
        return [layer.top for layer in self.layers]

    @property
    def output_names(self) -> list[str]:
        return [self.layers[-1].top]

    @property
    def blob_loss_weights(self) -> dict[str, float]:
        return {layer.top: layer.loss_weight for layer in self.layers}

    def output_blobs(self) -> list[torch.Tensor]:
        return [self.blobs[name] for name in self.output_names]

    def set_debug_info(self, value: bool) -> None:
        self.debug_info = value

    def _device(self) -> torch.device:
        for p in self.parameters():
            return p.device
        return torch.device("cpu")

    def forward_from_to(self, start: int, end: int) -> float:
        """Run layers ``start..end`` inclusive; return the weighted loss they produce."""
        if not 0 <= start <= end < len(self.layers):
            raise IndexError(f"Invalid layer range [{start}, {end}] for {len(self.layers)} layers")
        loss = None
        for i in range(start, end + 1):
            layer = self.layers[i]
            bottom = self.blobs[self.layers[i - 1].top] if i > 0 else None
            top = layer(bottom)
            if isinstance(layer, InputLayer):
                existing = self.blobs.get(layer.top)
                if existing is not None and existing.shape == top.shape:
                    with torch.no_grad():
                        existing.copy_(top)
                    top = existing
                else:
                    top = top.to(self._device())
            self.blobs[layer.top] = top
            if layer.loss_weight:
                term = layer.loss_weight * top.sum()
                loss = term if loss is None else loss + term
            if self.debug_info:
                logger.info(f"    [Forward] Layer {layer.name}, top blob {layer.top} data: "
                            f"{top.detach().abs().mean().item():.6g}")
        self._loss = loss
        return loss.item() if loss is not None else 0.0

    def forward_from(self, start: int) -> float:
        return self.forward_from_to(start, len(self.layers) - 1)

    def forward(self) -> float:
        return self.forward_from(0)

    def backward(self) -> None:
        """Backpropagate the loss of the last forward pass into every leaf with requires_grad."""
        if self._loss is None:
            raise RuntimeError("backward() called before a forward pass produced a loss")
        self._loss.backward()
        self._loss = None

    def clear_param_diffs(self) -> None:
        for p in self.parameters():
            if p.grad is not None:
                p.grad.zero_()


def build_grid_net(config: GridNetConfig, source: Callable[[], torch.Tensor]) -> ScoringNet:
    """Default grid scoring model: pool, (conv, relu, pool) x N, inner product, loss."""
    layers: list[NetLayer] = [InputLayer("data", source, top="data")]
    if config.unroll_subgrid_dim:
        layers.append(SubgridUnrollLayer("unroll", config.unroll_subgrid_dim, config.unroll_stride))

    dim = config.input_dim
    layers.append(PoolingLayer("unit1_pool", 2))
    dim //= 2
    c_in = config.grid.n_channels
    for i, c_out in enumerate(config.conv_channels, start=1):
        layers.append(ConvolutionLayer(f"unit{i}_conv", c_in, c_out, config.kernel_size))
        layers.append(ReLULayer(f"unit{i}_relu"))
        if i < len(config.conv_channels):
            layers.append(PoolingLayer(f"unit{i + 1}_pool", 2))
            dim //= 2
        c_in = c_out

    layers.append(InnerProductLayer("pose_output", c_in * dim ** 3, config.n_outputs))
    layers.append(LossLayer("loss", label=config.label))
    return ScoringNet(layers)
