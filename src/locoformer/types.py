"""Types for documentation and data validation (for use in pydantic).

They provide semantic meaning *only* and we additionally use `NewType` for strong semantic
distinction to avoid mixing up different kinds of tensors.

Note that **no code implementations shall be placed here**.
"""

from os import PathLike
from typing import Annotated, Literal, NewType, TypeAlias, TypeVar

import annotated_types as at
from torch import Tensor

StrPath: TypeAlias = str | PathLike[str]
BytesPath: TypeAlias = bytes | PathLike[bytes]

_T = TypeVar("_T")
Gt0: TypeAlias = Annotated[_T, at.Gt(0)]
Ge0: TypeAlias = Annotated[_T, at.Ge(0)]

Tier: TypeAlias = Literal["free", "pro"]
"""Service tier of a separation request.

- `free`: 2 stems, always executed on CPU
- `pro`: 5 stems, GPU allowed
"""

ModelVariant: TypeAlias = Literal["medium", "pro"]
"""Weight/config variant. `free` maps to `medium`, `pro` maps to `pro`."""

StemName: TypeAlias = Literal["vocals", "instrumental", "drums", "bass", "instruments", "fx"]
"""Name of a separated stem.

The medium variant emits `vocals` and `instrumental`, the pro variant emits `vocals`, `drums`,
`bass`, `instruments` and `fx`.
"""

AttentionMode: TypeAlias = Literal["time", "frequency", "dual"]
"""Which axes the transformer blocks attend over.

- `time`: attention along frames, every frequency bin is an independent sequence
- `frequency`: attention along bins, every frame is an independent sequence
- `dual`: both, time first
"""

WindowKind: TypeAlias = Literal["hann", "hamming", "blackman"]
"""Symmetric analysis/synthesis window of the short-time fourier transform."""

OutputFormat: TypeAlias = Literal["wav", "flac", "mp3"]

FftSize: TypeAlias = Gt0[int]
"""The number of samples per FFT frame, controlling the frequency resolution.

A one-sided transform of size `n_fft` has `n_fft // 2 + 1` frequency bins."""

HopLength: TypeAlias = Gt0[int]
"""The step size, in samples, between consecutive STFT frames."""

#
# key time domain concepts
#

Samples: TypeAlias = Gt0[int]
"""Number of samples in the audio signal."""

SampleRate: TypeAlias = Gt0[int]
"""The number of samples of audio recorded per second (hertz)."""

Channels: TypeAlias = Gt0[int]
"""Number of audio streams.

- 1: Mono audio
- 2: Stereo (left and right). The model itself always operates on mono.
"""

ChunkDuration: TypeAlias = Gt0[float]
"""The length of an audio segment, in seconds, processed by the model at one time.

A full track does not fit into a single forward pass (attention is quadratic in the number of
frames), instead it is processed in fixed-size chunks."""

OverlapDuration: TypeAlias = Ge0[float]
"""The length, in seconds, shared by two consecutive chunks. The overlapping region is
crossfaded with complementary ramps."""

ChunkSize: TypeAlias = Gt0[int]
"""[Chunk duration][locoformer.types.ChunkDuration] in samples."""

HopSize: TypeAlias = Gt0[int]
"""Distance in samples between the start of consecutive [chunks][locoformer.types.ChunkSize].

`hop_size = chunk_size - overlap_size`."""

RawAudioTensor = NewType("RawAudioTensor", Tensor)
"""Time domain tensor of audio samples.
Shape ([channels][locoformer.types.Channels], [samples][locoformer.types.Samples])
or ([samples][locoformer.types.Samples]) when already mono."""

MonoAudioTensor = NewType("MonoAudioTensor", Tensor)
"""A single channel of audio samples. Shape ([samples][locoformer.types.Samples])"""

StemTensor = NewType("StemTensor", Tensor)
"""One separated source, same length as the mono mixture.
Shape ([samples][locoformer.types.Samples])"""

WindowTensor = NewType("WindowTensor", Tensor)
"""A 1D tensor representing a window function."""

#
# key time-frequency domain concepts
#

ModelInputTensor = NewType("ModelInputTensor", Tensor)
"""Real/imaginary spectrogram arranged for the model.
Shape (batch, frames, [frequency bins][locoformer.types.FftSize], 2)"""

ModelOutputTensor = NewType("ModelOutputTensor", Tensor)
"""Interleaved per-stem spectra produced by the model.
Shape (batch, frames, bins * 2 * stems), ordered as
`[f0_s0_re, f0_s0_im, f0_s1_re, f0_s1_im, ..., f1_s0_re, ...]`."""

HiddenTensor = NewType("HiddenTensor", Tensor)
"""Hidden state of the transformer blocks. Shape (batch, frames, bins, hidden)"""

#
# weights
#

WeightsVersion: TypeAlias = str
"""Version tag embedded in the weight file name, `latest` resolves to the unversioned file."""

WeightDigest: TypeAlias = Annotated[str, at.MinLen(8)]
"""`sha256:<hex>` content digest of a state dict."""

StateDict: TypeAlias = dict[str, Tensor]
