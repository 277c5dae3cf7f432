"""TF-Locoformer: a dual-path transformer on complex spectrograms.

Every time-frequency bin is projected from `(real, imag)` to a hidden vector, then a stack of
blocks alternates attention along time (each frequency bin is a sequence), attention along
frequency (each frame is a sequence) and a convolutional SwiGLU feed-forward along time. Each
sub-layer is pre-normalized with a group RMS norm and added back residually. A final per-bin
projection emits `(real, imag)` for every stem.

- TF-Locoformer: https://arxiv.org/abs/2408.03440

Unlike the paper, this is inference only: there is no dropout, no training-time init and every
tensor must come from a weight blob (see [`locoformer.weights`][]).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import cast

import torch
from einops import rearrange
from torch import Tensor
from torch.nn import Module, ModuleList

from .. import types as t
from ..errors import ConfigError, WeightLoadError
from . import ModelParamsLike
from .utils.attend import Attend
from .utils.layers import (
    ConvSwiGLU,
    Linear,
    RMSGroupNorm,
    RotaryEmbedding,
    Shape,
    loadable_children,
)

BASE_STEM_NAMES: tuple[t.StemName, ...] = ("vocals", "instrumental")
PRO_STEM_NAMES: tuple[t.StemName, ...] = ("vocals", "drums", "bass", "instruments", "fx")


@dataclass
class TFLocoformerParams(ModelParamsLike):
    output_stem_names: tuple[t.StemName, ...]
    num_freq_bins: t.Gt0[int] = 1025
    """Must equal `n_fft // 2 + 1` of the transform feeding the model."""
    hidden_dim: t.Gt0[int] = 384
    num_heads: t.Gt0[int] = 8
    num_layers: t.Gt0[int] = 6
    ffn_multiplier: t.Gt0[int] = 4
    norm_groups: t.Gt0[int] = 4
    norm_eps: t.Gt0[float] = 1e-5
    use_rotary_embedding: bool = True
    rotary_max_seq_len: t.Gt0[int] = 8192
    rotary_base: t.Gt0[float] = 10000.0
    attention_mode: t.AttentionMode = "dual"
    conv_kernel_size: t.Gt0[int] = 3
    flash_attn: bool = False
    """Use the fused `scaled_dot_product_attention` kernel instead of the explicit softmax."""

    @property
    def num_stems(self) -> int:
        return len(self.output_stem_names)

    @property
    def head_dim(self) -> int:
        return self.hidden_dim // self.num_heads


def base_model_params() -> TFLocoformerParams:
    return TFLocoformerParams(output_stem_names=BASE_STEM_NAMES)


def pro_model_params() -> TFLocoformerParams:
    return TFLocoformerParams(output_stem_names=PRO_STEM_NAMES)


def check_params(params: TFLocoformerParams) -> None:
    """:raises ConfigError: if the dimensions cannot be built into a model."""
    if not params.output_stem_names:
        raise ConfigError("expected at least one output stem")
    if len(set(params.output_stem_names)) != len(params.output_stem_names):
        raise ConfigError(f"duplicate stem names in {params.output_stem_names}")
    if params.hidden_dim % params.num_heads != 0:
        raise ConfigError(f"{params.hidden_dim=} must be divisible by {params.num_heads=}")
    if params.hidden_dim % params.norm_groups != 0:
        raise ConfigError(f"{params.hidden_dim=} must be divisible by {params.norm_groups=}")
    if params.use_rotary_embedding and params.head_dim % 2 != 0:
        raise ConfigError(f"rotary embedding requires an even head dim, got {params.head_dim}")


class Attention(Module):
    """Multi-head self attention over `(batch, seq, hidden)`.

    The batch axis is typically huge (e.g. `batch * freq_bins` for time attention), so it can be
    processed in slices of `batch_size` to bound the size of the similarity matrix.
    """

    def __init__(
        self,
        dim: int,
        heads: int,
        *,
        rotary_embed: RotaryEmbedding | None = None,
        flash: bool = False,
        batch_size: int | None = None,
    ):
        super().__init__()
        self.heads = heads
        self.batch_size = batch_size
        self.rotary_embed = rotary_embed
        self.attend = Attend(flash=flash, scale=(dim // heads) ** -0.5)

        self.q_proj = Linear(dim, dim, bias=False)
        self.k_proj = Linear(dim, dim, bias=False)
        self.v_proj = Linear(dim, dim, bias=False)
        self.out_proj = Linear(dim, dim, bias=True)

    def _forward(self, x: Tensor) -> Tensor:
        q, k, v = (
            rearrange(proj(x), "b n (h d) -> b h n d", h=self.heads)
            for proj in (self.q_proj, self.k_proj, self.v_proj)
        )

        if self.rotary_embed is not None:
            q = self.rotary_embed(q)
            k = self.rotary_embed(k)

        out = self.attend(q, k, v)
        out = rearrange(out, "b h n d -> b n (h d)")
        return cast(Tensor, self.out_proj(out))

    def forward(self, x: Tensor) -> Tensor:
        if self.batch_size is None or x.shape[0] <= self.batch_size:
            return self._forward(x)
        return torch.cat([self._forward(part) for part in x.split(self.batch_size)], dim=0)


def _channel_norm(norm: RMSGroupNorm, x: t.HiddenTensor) -> Tensor:
    # group norm expects channels on axis 1
    y = norm(rearrange(x, "b t f c -> b c t f"))
    return rearrange(y, "b c t f -> b t f c")


class TFLocoformerBlock(Module):
    def __init__(
        self,
        params: TFLocoformerParams,
        *,
        rotary_embed: RotaryEmbedding | None,
        attention_batch_size: int | None = None,
    ):
        super().__init__()
        dim = params.hidden_dim
        mode = params.attention_mode
        norm = lambda: RMSGroupNorm(params.norm_groups, dim, eps=params.norm_eps)  # noqa: E731
        attention = lambda: Attention(  # noqa: E731
            dim,
            params.num_heads,
            rotary_embed=rotary_embed,
            flash=params.flash_attn,
            batch_size=attention_batch_size,
        )

        self.time_attention: Attention | None = None
        self.freq_attention: Attention | None = None
        if mode == "time" or mode == "dual":
            self.norm1 = norm()
            self.time_attention = attention()
        if mode == "frequency" or mode == "dual":
            self.norm2 = norm()
            self.freq_attention = attention()

        self.norm3 = norm()
        self.ffn = ConvSwiGLU(
            dim, dim * params.ffn_multiplier, kernel_size=params.conv_kernel_size
        )

    def forward(self, x: t.HiddenTensor) -> t.HiddenTensor:
        b = x.shape[0]

        if self.time_attention is not None:
            y = rearrange(_channel_norm(self.norm1, x), "b t f c -> (b f) t c")
            y = self.time_attention(y)
            x = t.HiddenTensor(x + rearrange(y, "(b f) t c -> b t f c", b=b))

        if self.freq_attention is not None:
            y = rearrange(_channel_norm(self.norm2, x), "b t f c -> (b t) f c")
            y = self.freq_attention(y)
            x = t.HiddenTensor(x + rearrange(y, "(b t) f c -> b t f c", b=b))

        y = rearrange(_channel_norm(self.norm3, x), "b t f c -> (b f) c t")
        y = self.ffn(y)
        return t.HiddenTensor(x + rearrange(y, "(b f) c t -> b t f c", b=b))


class TFLocoformer(Module):
    def __init__(self, params: TFLocoformerParams, *, attention_batch_size: int | None = None):
        super().__init__()
        check_params(params)
        self.params = params

        rotary_embed = (
            RotaryEmbedding(
                params.head_dim,
                max_seq_len=params.rotary_max_seq_len,
                base=params.rotary_base,
            )
            if params.use_rotary_embedding
            else None
        )

        self.input_proj = Linear(2, params.hidden_dim)
        self.blocks = ModuleList(
            TFLocoformerBlock(
                params, rotary_embed=rotary_embed, attention_batch_size=attention_batch_size
            )
            for _ in range(params.num_layers)
        )
        self.output_proj = Linear(params.hidden_dim, 2 * params.num_stems)

    def forward(self, spec: t.ModelInputTensor) -> t.ModelOutputTensor:
        """
        :param spec: `(batch, frames, freq_bins, 2)` real and imaginary parts
        :return: `(batch, frames, freq_bins * 2 * stems)`, interleaved as
            `[f0_s0_re, f0_s0_im, f0_s1_re, f0_s1_im, ..., f1_s0_re, ...]`
        """
        if spec.ndim != 4 or spec.shape[-1] != 2 or spec.shape[2] != self.params.num_freq_bins:
            raise ValueError(
                f"expected shape (batch, frames, {self.params.num_freq_bins}, 2), got {tuple(spec.shape)}"
            )

        x = t.HiddenTensor(self.input_proj(spec))
        for block in self.blocks:
            x = block(x)

        out = self.output_proj(x)
        return t.ModelOutputTensor(rearrange(out, "b t f (s c) -> b t (f s c)", c=2))

    def weight_shapes(self) -> dict[str, Shape]:
        """Expected shape of every tensor in a state dict, keyed by module path."""
        return {
            f"{prefix}.{name}": shape
            for prefix, module in loadable_children(self).items()
            for name, shape in module.weight_shapes().items()
        }

    def load_weights(self, state_dict: t.StateDict) -> None:
        """Load every tensor from a flat state dict.

        :raises WeightLoadError: if a key is missing, unexpected, or has the wrong shape.
        """
        expected = self.weight_shapes()
        if missing := sorted(expected.keys() - state_dict.keys()):
            raise WeightLoadError(f"missing {len(missing)} tensors, e.g. {missing[:3]}")
        if unexpected := sorted(state_dict.keys() - expected.keys()):
            raise WeightLoadError(f"unexpected {len(unexpected)} tensors, e.g. {unexpected[:3]}")

        for prefix, module in loadable_children(self).items():
            tensors = {name: state_dict[f"{prefix}.{name}"] for name in module.weight_shapes()}
            module.load_weights(**tensors)

    def get_config(self) -> TFLocoformerParams:
        return self.params


def count_blocks(state_dict: t.StateDict) -> int:
    """Number of distinct `blocks.{i}` indices in a state dict."""
    indices = {key.split(".")[1] for key in state_dict if key.startswith("blocks.")}
    return len(indices)
