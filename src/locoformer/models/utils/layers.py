"""Weight-less building blocks of the TF-Locoformer.

[`Linear`][locoformer.models.utils.layers.Linear] and [`Conv1d`][locoformer.models.utils.layers.Conv1d]
do not allocate their parameters at construction: every tensor comes from a weight blob through
`load_weights`. Calling them before that raises
[`UninitializedError`][locoformer.errors.UninitializedError], so a model can never silently run on
uninitialized memory.
"""

from __future__ import annotations

import math
from typing import cast

import torch
import torch.nn.functional as F
from torch import Tensor, nn

from ...errors import ConfigError, PositionOverflowError, UninitializedError, WeightLoadError

Shape = tuple[int, ...]


def swish(x: Tensor) -> Tensor:
    return x * torch.sigmoid(x)


def gelu(x: Tensor) -> Tensor:
    """Tanh approximation of GELU."""
    return 0.5 * x * (1 + torch.tanh(math.sqrt(2 / math.pi) * (x + 0.044715 * x.pow(3))))


def _check_shape(name: str, tensor: Tensor, expected: Shape) -> None:
    if tuple(tensor.shape) != expected:
        raise WeightLoadError(f"expected `{name}` of shape {expected}, got {tuple(tensor.shape)}")


def _as_param(tensor: Tensor) -> nn.Parameter:
    return nn.Parameter(tensor.detach().to(torch.float32).clone(), requires_grad=False)


class LoadableModule(nn.Module):
    """A module whose tensors are provided externally via keyword arguments to `load_weights`.

    The keyword names are the keys of [`weight_shapes`][locoformer.models.utils.layers.LoadableModule.weight_shapes],
    which is what allows a parent model to validate and route a flat state dict.
    """

    def weight_shapes(self) -> dict[str, Shape]:
        raise NotImplementedError

    def load_weights(self, **tensors: Tensor) -> None:
        raise NotImplementedError


class Linear(LoadableModule):
    """`y = x @ W^T + b` over the last dimension."""

    def __init__(self, in_features: int, out_features: int, bias: bool = True):
        super().__init__()
        self.in_features = in_features
        self.out_features = out_features
        self.has_bias = bias
        self.register_parameter("weight", None)
        self.register_parameter("bias", None)

    def weight_shapes(self) -> dict[str, Shape]:
        shapes: dict[str, Shape] = {"weight": (self.out_features, self.in_features)}
        if self.has_bias:
            shapes["bias"] = (self.out_features,)
        return shapes

    def load_weights(self, weight: Tensor, bias: Tensor | None = None) -> None:  # type: ignore[override]
        shapes = self.weight_shapes()
        _check_shape("weight", weight, shapes["weight"])
        self.weight = _as_param(weight)
        if self.has_bias:
            if bias is None:
                raise WeightLoadError("expected a bias for linear layer, got None")
            _check_shape("bias", bias, shapes["bias"])
            self.bias = _as_param(bias)

    def forward(self, x: Tensor) -> Tensor:
        if self.weight is None:
            raise UninitializedError("weights not loaded")
        return F.linear(x, self.weight, self.bias)

    def extra_repr(self) -> str:
        return f"{self.in_features}, {self.out_features}, bias={self.has_bias}"


class Conv1d(LoadableModule):
    """1D convolution over `(batch, channels, length)`, optionally grouped."""

    def __init__(
        self,
        in_channels: int,
        out_channels: int,
        kernel_size: int,
        stride: int = 1,
        padding: int = 0,
        dilation: int = 1,
        groups: int = 1,
        bias: bool = True,
    ):
        super().__init__()
        if in_channels % groups != 0 or out_channels % groups != 0:
            raise ConfigError(
                f"channels ({in_channels=}, {out_channels=}) must be divisible by {groups=}"
            )
        self.in_channels = in_channels
        self.out_channels = out_channels
        self.kernel_size = kernel_size
        self.stride = stride
        self.padding = padding
        self.dilation = dilation
        self.groups = groups
        self.has_bias = bias
        self.register_parameter("weight", None)
        self.register_parameter("bias", None)

    def weight_shapes(self) -> dict[str, Shape]:
        shapes: dict[str, Shape] = {
            "weight": (self.out_channels, self.in_channels // self.groups, self.kernel_size)
        }
        if self.has_bias:
            shapes["bias"] = (self.out_channels,)
        return shapes

    def load_weights(self, weight: Tensor, bias: Tensor | None = None) -> None:  # type: ignore[override]
        shapes = self.weight_shapes()
        _check_shape("weight", weight, shapes["weight"])
        self.weight = _as_param(weight)
        if self.has_bias:
            if bias is None:
                raise WeightLoadError("expected a bias for conv layer, got None")
            _check_shape("bias", bias, shapes["bias"])
            self.bias = _as_param(bias)

    def forward(self, x: Tensor) -> Tensor:
        if self.weight is None:
            raise UninitializedError("weights not loaded")
        return F.conv1d(
            x,
            self.weight,
            self.bias,
            stride=self.stride,
            padding=self.padding,
            dilation=self.dilation,
            groups=self.groups,
        )


class RMSGroupNorm(LoadableModule):
    r"""Group-wise RMS normalization.

    For an input of shape `(batch, channels, *spatial)`, channels are split into `num_groups`
    contiguous groups and every (batch item, group) pair is scaled by
    $\text{rms} = \sqrt{\text{mean}(x^2) + \epsilon}$ computed over the group's channels and all
    spatial positions. The mean is not subtracted.
    """

    def __init__(self, num_groups: int, num_channels: int, eps: float = 1e-5, affine: bool = True):
        super().__init__()
        if num_channels % num_groups != 0:
            raise ConfigError(f"{num_channels=} must be divisible by {num_groups=}")
        self.num_groups = num_groups
        self.num_channels = num_channels
        self.eps = eps
        self.affine = affine
        self.gamma = nn.Parameter(torch.ones(num_channels), requires_grad=False)
        self.beta = nn.Parameter(torch.zeros(num_channels), requires_grad=False)

    def weight_shapes(self) -> dict[str, Shape]:
        if not self.affine:
            return {}
        return {"gamma": (self.num_channels,), "beta": (self.num_channels,)}

    def load_weights(self, gamma: Tensor, beta: Tensor) -> None:  # type: ignore[override]
        _check_shape("gamma", gamma, (self.num_channels,))
        _check_shape("beta", beta, (self.num_channels,))
        self.gamma = _as_param(gamma)
        self.beta = _as_param(beta)

    def forward(self, x: Tensor) -> Tensor:
        if x.ndim < 2 or x.shape[1] != self.num_channels:
            raise ValueError(
                f"expected shape (batch, {self.num_channels}, ...), got {tuple(x.shape)}"
            )
        grouped = x.reshape(x.shape[0], self.num_groups, -1)
        rms = grouped.pow(2).mean(dim=-1, keepdim=True).add(self.eps).sqrt()
        normalized = (grouped / rms).reshape(x.shape)
        if not self.affine:
            return normalized
        affine_shape = (1, self.num_channels) + (1,) * (x.ndim - 2)
        return normalized * self.gamma.view(affine_shape) + self.beta.view(affine_shape)


class RotaryEmbedding(nn.Module):
    """Rotary position embedding with precomputed tables.

    Pairs are formed by splitting the head dimension in halves, i.e. `(x[i], x[i + dim/2])` is
    rotated by angle `pos / base^(2i/dim)`. Tables are computed once for `max_seq_len` positions;
    longer sequences are rejected instead of extrapolated.
    """

    def __init__(self, dim: int, max_seq_len: int = 8192, base: float = 10000.0):
        super().__init__()
        if dim % 2 != 0:
            raise ConfigError(f"rotary embedding requires an even head dimension, got {dim=}")
        self.dim = dim
        self.max_seq_len = max_seq_len
        inv_freq = 1.0 / (base ** (torch.arange(0, dim, 2, dtype=torch.float64) / dim))
        positions = torch.arange(max_seq_len, dtype=torch.float64)
        freqs = torch.outer(positions, inv_freq)  # (max_seq_len, dim / 2)
        self.register_buffer("cos_table", freqs.cos().float(), persistent=False)
        self.register_buffer("sin_table", freqs.sin().float(), persistent=False)

    def forward(self, x: Tensor) -> Tensor:
        # x is (batch_eff, heads, seq_len, dim_head)
        seq_len = x.shape[-2]
        if seq_len > self.max_seq_len:
            raise PositionOverflowError(seq_len, self.max_seq_len)
        cos = cast(Tensor, self.cos_table)[:seq_len].to(x.device, x.dtype)
        sin = cast(Tensor, self.sin_table)[:seq_len].to(x.device, x.dtype)
        x1, x2 = x.chunk(2, dim=-1)
        return torch.cat((x1 * cos - x2 * sin, x1 * sin + x2 * cos), dim=-1)


class ConvSwiGLU(nn.Module):
    """Gated convolutional feed-forward along one axis.

    `conv1` widens to `hidden_channels`, two depthwise causal convolutions produce a value path
    (`conv2`) and a gate path (`gate`), and `conv_out` projects `conv2(h) * swish(gate(h))` back.
    """

    def __init__(self, channels: int, hidden_channels: int, kernel_size: int = 3):
        super().__init__()
        self.kernel_size = kernel_size
        self.conv1 = Conv1d(channels, hidden_channels, 1)
        self.conv2 = Conv1d(hidden_channels, hidden_channels, kernel_size, groups=hidden_channels)
        self.gate = Conv1d(hidden_channels, hidden_channels, kernel_size, groups=hidden_channels)
        self.conv_out = Conv1d(hidden_channels, channels, 1)

    def forward(self, x: Tensor) -> Tensor:
        """
        :param x: `(batch, channels, length)`
        :return: `(batch, channels, length)`
        """
        h = self.conv1(x)
        h = F.pad(h, (self.kernel_size - 1, 0))  # causal: output t sees inputs <= t
        return cast(Tensor, self.conv_out(self.conv2(h) * swish(self.gate(h))))


def loadable_children(module: nn.Module) -> dict[str, LoadableModule]:
    """All [loadable][locoformer.models.utils.layers.LoadableModule] submodules by dotted path."""
    return {
        name: child for name, child in module.named_modules() if isinstance(child, LoadableModule)
    }
