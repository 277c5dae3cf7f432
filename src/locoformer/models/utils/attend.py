from __future__ import annotations

import logging
import os
from typing import TYPE_CHECKING

import torch
import torch.nn.functional as F
from torch import Tensor, einsum, nn
from torch.nn.attention import SDPBackend, sdpa_kernel

from . import log_once, parse_version

if TYPE_CHECKING:
    from torch._C import _SDPBackend
logger = logging.getLogger(__name__)


class Attend(nn.Module):
    """Unmasked scaled dot-product attention.

    The reference path computes the softmax explicitly with the row maximum subtracted. With
    `flash=True` the fused [torch.nn.functional.scaled_dot_product_attention][] is used instead,
    which computes the same quantity without materializing the full similarity matrix.
    """

    def __init__(self, flash: bool = False, scale: float | None = None) -> None:
        super().__init__()
        self.scale = scale

        self.flash = flash
        assert not (flash and parse_version(torch.__version__) < (2, 0, 0)), (
            "expected pytorch >= 2.0.0 to use flash attention"
        )

        self.cpu_backends = [
            SDPBackend.FLASH_ATTENTION,
            SDPBackend.EFFICIENT_ATTENTION,
            SDPBackend.MATH,
        ]
        self.cuda_backends: list[_SDPBackend] | None = None

        if not torch.cuda.is_available() or not flash:
            return

        device_properties = torch.cuda.get_device_properties(torch.device("cuda"))
        device_version = parse_version(f"{device_properties.major}.{device_properties.minor}")

        if device_version >= (8, 0):
            if os.name == "nt":
                cuda_backends = [SDPBackend.EFFICIENT_ATTENTION, SDPBackend.MATH]
                log_once(logger, f"windows detected, using {cuda_backends=}")
            else:
                cuda_backends = [SDPBackend.FLASH_ATTENTION, SDPBackend.MATH]
                log_once(logger, f"gpu compute capability >= 8.0, using {cuda_backends=}")
        else:
            cuda_backends = [SDPBackend.EFFICIENT_ATTENTION, SDPBackend.MATH]
            log_once(logger, f"gpu compute capability < 8.0, using {cuda_backends=}")

        self.cuda_backends = cuda_backends

    def flash_attn(self, q: Tensor, k: Tensor, v: Tensor) -> Tensor:
        backends = self.cuda_backends if q.is_cuda else self.cpu_backends
        with sdpa_kernel(backends=backends):  # type: ignore
            return F.scaled_dot_product_attention(q, k, v, scale=self.scale)

    def forward(self, q: Tensor, k: Tensor, v: Tensor) -> Tensor:
        """
        einstein notation

        - b: batch
        - h: heads
        - i, j: sequence length (source, target)
        - d: feature dimension
        """
        if self.flash:
            return self.flash_attn(q, k, v)

        scale = self.scale or q.shape[-1] ** -0.5

        # similarity
        sim = einsum("b h i d, b h j d -> b h i j", q, k) * scale

        # attention
        sim = sim - sim.amax(dim=-1, keepdim=True)
        attn = sim.exp()
        attn = attn / attn.sum(dim=-1, keepdim=True)

        # aggregate values
        return einsum("b h i j, b h j d -> b h i d", attn, v)
