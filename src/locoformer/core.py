"""Reusable, pure algorithmic components for inference."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Mapping, assert_never

import torch
import torch.nn.functional as F
import torchaudio.functional as AF
from einops import rearrange
from torch import Tensor

from . import types as t

if TYPE_CHECKING:
    from .config import PostProcessingConfig, TransformConfig


#
# transform
#


@dataclass
class ComplexSpectrogram:
    """One-sided (or full) complex spectrum of a mono signal.

    Row-major flattening of `real`/`imag` gives the `freq_bin * num_frames + frame` order.
    """

    real: Tensor
    """Shape (freq_bins, num_frames)"""
    imag: Tensor
    """Shape (freq_bins, num_frames)"""

    def __post_init__(self) -> None:
        if self.real.shape != self.imag.shape or self.real.ndim != 2:
            raise ValueError(
                f"expected matching 2D real/imag parts, got {tuple(self.real.shape)} and {tuple(self.imag.shape)}"
            )

    @property
    def freq_bins(self) -> int:
        return int(self.real.shape[0])

    @property
    def num_frames(self) -> int:
        return int(self.real.shape[1])

    def to_complex(self) -> Tensor:
        return torch.complex(self.real, self.imag)

    @classmethod
    def from_complex(cls, spec: Tensor) -> ComplexSpectrogram:
        return cls(real=spec.real.contiguous(), imag=spec.imag.contiguous())


def create_window(
    length: int,
    kind: t.WindowKind = "hann",
    *,
    device: torch.device | None = None,
) -> t.WindowTensor:
    """Symmetric window of `length` samples (the last sample mirrors the first)."""
    if length == 1:
        return t.WindowTensor(torch.ones(1, device=device))
    phase = 2 * math.pi * torch.arange(length, dtype=torch.float64, device=device) / (length - 1)
    match kind:
        case "hann":
            window = 0.5 * (1 - torch.cos(phase))
        case "hamming":
            window = 0.54 - 0.46 * torch.cos(phase)
        case "blackman":
            window = 0.42 - 0.5 * torch.cos(phase) + 0.08 * torch.cos(2 * phase)
        case _:
            assert_never(kind)
    return t.WindowTensor(window.to(torch.float32))


def reflect_pad(signal: Tensor, pad: int) -> Tensor:
    """Pad a 1D signal by `pad` mirrored samples on both sides.

    The left side repeats the edge sample (`signal[pad - 1 - i]`) while the right side excludes it
    (`signal[len - 2 - i]`).
    """
    if pad == 0:
        return signal
    n = signal.shape[-1]
    if n <= pad:
        raise ValueError(f"signal of length {n} is too short to reflect-pad by {pad}")
    left = signal[..., :pad].flip(-1)
    right = signal[..., n - 1 - pad : n - 1].flip(-1)
    return torch.cat((left, signal, right), dim=-1)


def stft(signal: t.MonoAudioTensor, cfg: TransformConfig) -> ComplexSpectrogram:
    """Short-time fourier transform of a 1D signal.

    `win_length` samples at the start of each frame are windowed and the frame is zero-padded
    to `n_fft` before the FFT.
    """
    if signal.ndim != 1:
        raise ValueError(f"expected a 1D signal, got shape {tuple(signal.shape)}")
    x = signal.to(torch.float32)
    if cfg.center:
        x = reflect_pad(x, cfg.n_fft // 2)
    if x.shape[-1] < cfg.n_fft:
        raise ValueError(f"signal of length {x.shape[-1]} is shorter than {cfg.n_fft=}")

    window = create_window(cfg.win_length, cfg.window_kind, device=x.device)
    frames = x.unfold(0, cfg.n_fft, cfg.hop_length)  # (num_frames, n_fft)
    frames = frames[:, : cfg.win_length] * window
    if cfg.onesided:
        spec = torch.fft.rfft(frames, n=cfg.n_fft, dim=-1)
    else:
        spec = torch.fft.fft(frames, n=cfg.n_fft, dim=-1)
    if cfg.normalized:
        spec = spec / math.sqrt(cfg.n_fft)
    return ComplexSpectrogram.from_complex(spec.transpose(0, 1))


def istft(spec: ComplexSpectrogram, target_length: int, cfg: TransformConfig) -> t.MonoAudioTensor:
    """Inverse of [`stft`][locoformer.core.stft] by windowed overlap-add.

    The output is divided by the accumulated squared window wherever it exceeds `1e-8`, the
    centre padding is stripped and the result is truncated or zero-padded to `target_length`.
    The caller must pass the same `cfg` that produced `spec`.
    """
    frames_spec = spec.to_complex().transpose(0, 1)  # (num_frames, freq_bins)
    if cfg.onesided:
        # irfft mirrors the conjugate of bins 1..n_fft/2 into the upper half
        frames = torch.fft.irfft(frames_spec, n=cfg.n_fft, dim=-1)
    else:
        frames = torch.fft.ifft(frames_spec, n=cfg.n_fft, dim=-1).real
    if cfg.normalized:
        frames = frames * math.sqrt(cfg.n_fft)

    window = create_window(cfg.win_length, cfg.window_kind, device=frames.device)
    window_full = F.pad(window, (0, cfg.n_fft - cfg.win_length))
    frames = frames * window_full

    num_frames = frames.shape[0]
    total_length = (num_frames - 1) * cfg.hop_length + cfg.n_fft
    fold = lambda cols: F.fold(  # noqa: E731
        cols.transpose(0, 1).unsqueeze(0),  # (1, n_fft, num_frames)
        output_size=(1, total_length),
        kernel_size=(1, cfg.n_fft),
        stride=(1, cfg.hop_length),
    ).flatten()
    output = fold(frames)
    window_sum = fold(window_full.pow(2).repeat(num_frames, 1))

    nonzero = window_sum > 1e-8
    output = torch.where(nonzero, output / torch.where(nonzero, window_sum, 1.0), output)

    start = cfg.n_fft // 2 if cfg.center else 0
    output = output[start : start + target_length]
    if output.shape[0] < target_length:
        output = F.pad(output, (0, target_length - output.shape[0]))
    return t.MonoAudioTensor(output)


def magnitude(spec: ComplexSpectrogram) -> Tensor:
    return torch.sqrt(spec.real.pow(2) + spec.imag.pow(2))


def phase(spec: ComplexSpectrogram) -> Tensor:
    return torch.atan2(spec.imag, spec.real)


#
# channel handling
#


def deinterleave_channels(samples: Tensor, channels: t.Channels) -> Tensor:
    """`[l0, r0, l1, r1, ...]` -> `(channels, samples)`."""
    if samples.ndim != 1:
        raise ValueError(f"expected interleaved 1D samples, got shape {tuple(samples.shape)}")
    if samples.shape[0] % channels != 0:
        raise ValueError(f"{samples.shape[0]} samples cannot be split into {channels=}")
    return rearrange(samples, "(n c) -> c n", c=channels)


def downmix_to_mono(audio: t.RawAudioTensor, channels: t.Channels = 1) -> t.MonoAudioTensor:
    """Average all channels.

    `audio` is either `(channels, samples)`, or 1D. A 1D input is treated as interleaved when
    `channels > 1` and as already mono otherwise.
    """
    if audio.ndim == 2:
        return t.MonoAudioTensor(audio.to(torch.float32).mean(dim=0))
    if audio.ndim != 1:
        raise ValueError(f"expected (channels, samples) or (samples,), got {tuple(audio.shape)}")
    if channels == 1:
        return t.MonoAudioTensor(audio.to(torch.float32))
    return t.MonoAudioTensor(deinterleave_channels(audio.to(torch.float32), channels).mean(dim=0))


def resample_linear(
    audio: t.MonoAudioTensor, from_rate: t.SampleRate, to_rate: t.SampleRate
) -> t.MonoAudioTensor:
    """Linear-interpolation resampling of a 1D signal to `floor(len * to_rate / from_rate)` samples.

    No anti-aliasing filter is applied; use a proper resampler upstream when quality matters.
    """
    if from_rate == to_rate:
        return audio
    ratio = from_rate / to_rate
    n = audio.shape[0]
    new_length = math.floor(n / ratio)
    src = torch.arange(new_length, dtype=torch.float64, device=audio.device) * ratio
    lo = src.floor().long().clamp_max(n - 1)
    hi = (lo + 1).clamp_max(n - 1)
    frac = (src - lo).to(audio.dtype)
    return t.MonoAudioTensor(audio[lo] * (1 - frac) + audio[hi] * frac)


#
# chunking
#


def chunk_starts(num_samples: t.Samples, chunk_size: t.ChunkSize, hop_size: t.HopSize) -> list[int]:
    """Offsets of every chunk: `0, hop, 2*hop, ...` until a chunk reaches the end of the signal."""
    starts = [0]
    while starts[-1] + chunk_size < num_samples:
        starts.append(starts[-1] + hop_size)
    return starts


def chunk_window(
    chunk_size: t.ChunkSize,
    overlap_size: int,
    *,
    fade_in: bool = True,
    fade_out: bool = True,
    device: torch.device | None = None,
) -> t.WindowTensor:
    r"""Trapezoidal cross-fade window: raised-cosine ramps over `overlap_size` samples, unity
    gain in between.

    The ramps are sampled at half-sample offsets,
    $w_\text{in}[i] = \frac{1}{2}(1 - \cos(\pi (i + 0.5) / \text{overlap}))$, so that the fade-out
    of one chunk and the fade-in of the next sum to exactly one.
    """
    window = torch.ones(chunk_size, device=device)
    if overlap_size <= 0:
        return t.WindowTensor(window)
    overlap = min(overlap_size, chunk_size)
    i = torch.arange(overlap, dtype=torch.float64, device=device)
    ramp = (0.5 * (1 - torch.cos(math.pi * (i + 0.5) / overlap_size))).to(torch.float32)
    if fade_in:
        window[:overlap] *= ramp
    if fade_out:
        window[chunk_size - overlap :] *= ramp.flip(0)
    return t.WindowTensor(window)


def pad_to_length(audio: Tensor, length: int) -> Tensor:
    """Zero-pad (or truncate) the last dimension to exactly `length` samples."""
    n = audio.shape[-1]
    if n >= length:
        return audio[..., :length]
    return F.pad(audio, (0, length - n))


def deinterleave_stems(
    model_output: t.ModelOutputTensor, num_stems: int
) -> list[ComplexSpectrogram]:
    """Split a `(1, frames, bins * 2 * stems)` model output into one spectrogram per stem."""
    if model_output.ndim != 3 or model_output.shape[0] != 1:
        raise ValueError(f"expected a single-item batch, got shape {tuple(model_output.shape)}")
    per_stem = rearrange(model_output[0], "t (f s c) -> s c f t", s=num_stems, c=2)
    return [ComplexSpectrogram(real=stem[0], imag=stem[1]) for stem in per_stem]


def to_model_input(spec: ComplexSpectrogram) -> t.ModelInputTensor:
    """`(freq_bins, frames)` real and imaginary parts -> `(1, frames, freq_bins, 2)`."""
    stacked = torch.stack((spec.real, spec.imag), dim=-1)  # (f, t, 2)
    return t.ModelInputTensor(rearrange(stacked, "f t c -> 1 t f c"))


#
# stem postprocessing
#


def highpass_single_pole(
    audio: Tensor, sample_rate: t.SampleRate, cutoff_hz: float
) -> Tensor:
    r"""First-order RC highpass: $y[n] = a (y[n-1] + x[n] - x[n-1])$ with
    $a = RC / (RC + 1/f_s)$, starting from rest."""
    if audio.shape[-1] == 0:
        return audio
    rc = 1.0 / (2 * math.pi * cutoff_hz)
    dt = 1.0 / sample_rate
    a = rc / (rc + dt)
    x = audio.to(torch.float64)
    b_coeffs = torch.tensor([a, -a], dtype=x.dtype, device=x.device)
    a_coeffs = torch.tensor([1.0, -a], dtype=x.dtype, device=x.device)
    y = AF.lfilter(x, a_coeffs, b_coeffs, clamp=False)
    return y.to(audio.dtype)


def collapse_low_frequencies_to_mono(
    audio: Tensor,
    sample_rate: t.SampleRate,
    cutoff_hz: float,
    cfg: TransformConfig,
) -> Tensor:
    """Replace every channel's content below `cutoff_hz` by the mean of all channels.

    A 1D (mono) input is returned unchanged.
    """
    if audio.ndim == 1 or audio.shape[0] == 1:
        return audio
    num_samples = audio.shape[-1]
    specs = [stft(t.MonoAudioTensor(channel), cfg).to_complex() for channel in audio]
    stacked = torch.stack(specs)  # (channels, freq_bins, frames)
    bin_hz = torch.arange(stacked.shape[1], device=audio.device) * sample_rate / cfg.n_fft
    low = (bin_hz < cutoff_hz).view(1, -1, 1)
    mid = stacked.mean(dim=0, keepdim=True).expand_as(stacked)
    collapsed = torch.where(low, mid, stacked)
    return torch.stack(
        [
            istft(ComplexSpectrogram.from_complex(channel), num_samples, cfg)
            for channel in collapsed
        ]
    ).to(audio.dtype)


def post_condition_stem(
    name: t.StemName,
    audio: t.StemTensor,
    sample_rate: t.SampleRate,
    cfg: PostProcessingConfig,
    transform_cfg: TransformConfig,
) -> t.StemTensor:
    """Stem-specific cleanup applied once over the whole recording."""
    match name:
        case "vocals":
            # rumble below the vocal range is model leakage
            return t.StemTensor(highpass_single_pole(audio, sample_rate, cfg.vocals_highpass_hz))
        case "bass":
            return t.StemTensor(
                collapse_low_frequencies_to_mono(
                    audio, sample_rate, cfg.bass_mono_cutoff_hz, transform_cfg
                )
            )
        case "instrumental" | "drums" | "instruments" | "fx":
            return audio
        case _:
            assert_never(name)


def peak_normalize(audio: Tensor, limit: float = 0.95) -> Tensor:
    """Scale down so that `max(|audio|) == limit`. Quieter signals are returned unchanged."""
    peak = float(audio.abs().max()) if audio.numel() else 0.0
    if peak <= limit:
        return audio
    return audio * (limit / peak)


def soft_limit(audio: Tensor, threshold: float = 0.95) -> Tensor:
    """`threshold * tanh(x / threshold)` for samples above `threshold`, identity otherwise."""
    limited = threshold * torch.tanh(audio / threshold)
    return torch.where(audio.abs() > threshold, limited, audio)


def enhancement_weight(name: t.StemName) -> float:
    """Gain of a stem when re-mixing for enhancement."""
    match name:
        case "vocals" | "instrumental":
            return 1.0
        case "instruments":
            return 0.95
        case "drums":
            return 0.9
        case "bass":
            return 0.85
        case "fx":
            return 0.7
        case _:
            assert_never(name)


def mix_stems(stems: Mapping[t.StemName, t.StemTensor]) -> Tensor:
    """Weighted sum of stems using [`enhancement_weight`][locoformer.core.enhancement_weight]."""
    if not stems:
        raise ValueError("expected at least one stem to mix")
    mixed = torch.zeros_like(next(iter(stems.values())))
    for name, audio in stems.items():
        mixed = mixed + enhancement_weight(name) * audio
    return mixed


#
# misc
#


def str_to_torch_dtype(value: object) -> torch.dtype:
    if not isinstance(value, str):
        raise TypeError(f"expected dtype to be a string, got {value} (type {type(value)})")
    try:
        dtype = getattr(torch, value)
    except AttributeError:
        raise ValueError(f"`{value}` cannot be found under the `torch` namespace")
    if not isinstance(dtype, torch.dtype):
        raise TypeError(f"expected {dtype} to be a dtype but it is a {type(dtype)}")
    return dtype
