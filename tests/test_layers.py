import math

import pytest
import torch

from locoformer.errors import (
    ConfigError,
    PositionOverflowError,
    UninitializedError,
    WeightLoadError,
)
from locoformer.models.utils import log_once, parse_version
from locoformer.models.utils.attend import Attend
from locoformer.models.utils.layers import (
    Conv1d,
    ConvSwiGLU,
    Linear,
    RMSGroupNorm,
    RotaryEmbedding,
    gelu,
    loadable_children,
    swish,
)

#
# activations
#


def test_swish() -> None:
    x = torch.tensor([-2.0, 0.0, 3.0])
    assert torch.allclose(swish(x), x * torch.sigmoid(x))
    assert swish(torch.tensor(0.0)).item() == 0.0


def test_gelu_tanh_approximation() -> None:
    x = torch.linspace(-4, 4, 101)
    expected = torch.nn.functional.gelu(x, approximate="tanh")
    assert torch.allclose(gelu(x), expected, atol=1e-6)
    assert gelu(torch.tensor(1.0)).item() == pytest.approx(
        0.5 * (1 + math.tanh(math.sqrt(2 / math.pi) * (1 + 0.044715)))
    )


#
# linear / conv
#


def test_linear_uninitialized() -> None:
    layer = Linear(4, 3)
    with pytest.raises(UninitializedError, match="weights not loaded"):
        layer(torch.zeros(2, 4))


def test_linear_load_weights() -> None:
    layer = Linear(2, 3)
    assert layer.weight_shapes() == {"weight": (3, 2), "bias": (3,)}
    weight = torch.tensor([[1.0, 0.0], [0.0, 1.0], [1.0, 1.0]])
    layer.load_weights(weight, torch.tensor([0.0, 0.0, 1.0]))
    out = layer(torch.tensor([[2.0, 3.0]]))
    assert out.tolist() == [[2.0, 3.0, 6.0]]

    with pytest.raises(WeightLoadError):
        layer.load_weights(torch.zeros(2, 3), torch.zeros(3))
    with pytest.raises(WeightLoadError):
        layer.load_weights(weight, None)

    no_bias = Linear(2, 3, bias=False)
    assert no_bias.weight_shapes() == {"weight": (3, 2)}
    no_bias.load_weights(weight)
    assert no_bias(torch.tensor([[2.0, 3.0]])).tolist() == [[2.0, 3.0, 5.0]]


def test_conv1d() -> None:
    conv = Conv1d(2, 2, 3, padding=1, groups=2, bias=False)
    assert conv.weight_shapes() == {"weight": (2, 1, 3)}
    with pytest.raises(UninitializedError):
        conv(torch.zeros(1, 2, 5))
    conv.load_weights(torch.ones(2, 1, 3))
    out = conv(torch.ones(1, 2, 5))
    assert out.shape == (1, 2, 5)
    assert out[0, 0].tolist() == [2.0, 3.0, 3.0, 3.0, 2.0]

    with pytest.raises(ConfigError):
        Conv1d(3, 4, 1, groups=2)


#
# normalization
#


def test_rms_group_norm_shrinks() -> None:
    norm = RMSGroupNorm(2, 4)
    x = torch.arange(1, 9, dtype=torch.float32).reshape(1, 4, 2)
    out = norm(x)
    assert out.shape == x.shape
    assert abs(out[0, 0, 0].item()) < abs(x[0, 0, 0].item())
    # first group is [1, 2, 3, 4]
    assert out[0, 0, 0].item() == pytest.approx(1 / math.sqrt(7.5 + 1e-5), rel=1e-5)
    # every group has unit rms afterwards
    grouped = out.reshape(1, 2, -1)
    assert torch.allclose(grouped.pow(2).mean(dim=-1), torch.ones(1, 2), atol=1e-4)


def test_rms_group_norm_affine() -> None:
    norm = RMSGroupNorm(1, 2)
    norm.load_weights(torch.tensor([2.0, 0.0]), torch.tensor([0.0, 1.0]))
    out = norm(torch.ones(1, 2, 3))
    assert torch.allclose(out[0, 0], torch.full((3,), 2.0), atol=1e-4)
    assert torch.allclose(out[0, 1], torch.ones(3))

    with pytest.raises(WeightLoadError):
        norm.load_weights(torch.ones(3), torch.zeros(3))
    with pytest.raises(ValueError):
        norm(torch.ones(1, 3, 3))


def test_rms_group_norm_invalid_groups() -> None:
    with pytest.raises(ConfigError):
        RMSGroupNorm(3, 4)


#
# rotary embedding
#


def test_rotary_embedding_tables() -> None:
    rope = RotaryEmbedding(8, max_seq_len=16)
    assert rope.cos_table.shape == (16, 4)
    assert rope.sin_table.shape == (16, 4)
    # position 0 is the identity
    x = torch.randn(1, 2, 1, 8)
    assert torch.allclose(rope(x), x)


def test_rotary_embedding_preserves_norm() -> None:
    rope = RotaryEmbedding(8, max_seq_len=32)
    x = torch.randn(3, 2, 20, 8)
    rotated = rope(x)
    assert rotated.shape == x.shape
    assert torch.allclose(rotated.norm(dim=-1), x.norm(dim=-1), atol=1e-5)


def test_rotary_embedding_relative() -> None:
    rope = RotaryEmbedding(4, max_seq_len=32)
    q = torch.randn(4).expand(1, 1, 32, 4)
    k = torch.randn(4).expand(1, 1, 32, 4)
    q_rot, k_rot = rope(q), rope(k)
    # dot products only depend on the distance between positions
    d1 = (q_rot[0, 0, 5] * k_rot[0, 0, 2]).sum()
    d2 = (q_rot[0, 0, 13] * k_rot[0, 0, 10]).sum()
    assert d1.item() == pytest.approx(d2.item(), abs=1e-4)


def test_rotary_embedding_overflow() -> None:
    rope = RotaryEmbedding(4, max_seq_len=8)
    with pytest.raises(PositionOverflowError) as e:
        rope(torch.zeros(1, 1, 9, 4))
    assert e.value.seq_len == 9
    assert e.value.max_seq_len == 8
    assert isinstance(e.value, IndexError)


def test_rotary_embedding_odd_dim() -> None:
    with pytest.raises(ConfigError):
        RotaryEmbedding(5)


#
# attention / feed-forward
#


def test_attend_uniform_values() -> None:
    attend = Attend()
    q = torch.randn(2, 2, 5, 4)
    k = torch.randn(2, 2, 5, 4)
    v = torch.ones(2, 2, 5, 4)
    # attention weights sum to one, so constant values pass through
    assert torch.allclose(attend(q, k, v), v, atol=1e-6)


def test_attend_matches_flash() -> None:
    q, k, v = (torch.randn(2, 2, 7, 4) for _ in range(3))
    reference = Attend(flash=False, scale=0.5)(q, k, v)
    fused = Attend(flash=True, scale=0.5)(q, k, v)
    assert torch.allclose(reference, fused, atol=1e-5)


def test_attend_large_logits_stable() -> None:
    q = torch.full((1, 1, 3, 2), 1e4)
    k = torch.full((1, 1, 3, 2), 1e4)
    v = torch.randn(1, 1, 3, 2)
    assert torch.isfinite(Attend()(q, k, v)).all()


def _load_constant(module: torch.nn.Module, value: float = 0.1) -> None:
    for layer in loadable_children(module).values():
        shapes = layer.weight_shapes()
        layer.load_weights(**{name: torch.full(shape, value) for name, shape in shapes.items()})


def test_conv_swiglu_shape() -> None:
    ffn = ConvSwiGLU(4, 8, kernel_size=3)
    assert set(loadable_children(ffn)) == {"conv1", "conv2", "gate", "conv_out"}
    with pytest.raises(UninitializedError):
        ffn(torch.zeros(1, 4, 6))
    _load_constant(ffn)
    assert ffn(torch.randn(2, 4, 6)).shape == (2, 4, 6)


def test_conv_swiglu_causal() -> None:
    ffn = ConvSwiGLU(2, 4, kernel_size=3)
    _load_constant(ffn)
    x = torch.randn(1, 2, 10)
    y = x.clone()
    y[..., 6:] = torch.randn(1, 2, 4)
    # changing the future does not affect the past
    assert torch.allclose(ffn(x)[..., :6], ffn(y)[..., :6])


#
# utils
#


def test_parse_version() -> None:
    assert parse_version("2.5.1+cu121") == (2, 5, 1)
    assert parse_version("8.0") == (8, 0)
    assert parse_version("2.6.0.dev20241112") == (2, 6, 0)


def test_log_once(caplog: pytest.LogCaptureFixture) -> None:
    import logging

    logger = logging.getLogger("locoformer.test_log_once")
    with caplog.at_level(logging.INFO, logger=logger.name):
        log_once(logger, "only once")
        log_once(logger, "only once")
    assert [r.message for r in caplog.records].count("only once") == 1
