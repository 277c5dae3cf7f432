"""High level orchestrator for model inference"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Sequence

import numpy as np
import torch
from rich.progress import (
    BarColumn,
    Progress,
    ProgressColumn,
    SpinnerColumn,
    TaskProgressColumn,
    TextColumn,
    TimeRemainingColumn,
)

from . import types as t
from .config import (
    Config,
    IntoConfig,
    LimitsConfig,
    config_for_tier,
    into_config,
    variant_for_tier,
)
from .core import (
    chunk_starts,
    chunk_window,
    deinterleave_stems,
    downmix_to_mono,
    istft,
    mix_stems,
    pad_to_length,
    peak_normalize,
    post_condition_stem,
    resample_linear,
    soft_limit,
    stft,
    to_model_input,
)
from .device import (
    DeviceInfo,
    DeviceProbe,
    DeviceType,
    ExecutionMode,
    GPUCapability,
    TorchDeviceProbe,
    check_gpu_capability,
    execution_mode_for_tier,
    select_device,
)
from .errors import (
    AudioLimitError,
    ConfigError,
    DeviceError,
    EngineError,
    SeparationCancelled,
    TierMismatchError,
    UninitializedError,
)
from .models.tf_locoformer import TFLocoformer, TFLocoformerParams
from .weights import WeightStore

if TYPE_CHECKING:
    from .config import ConfigOverrides, SeparationOptions
    from .weights import DegradedReason, ModelWeights

logger = logging.getLogger(__name__)

PcmLike = torch.Tensor | np.ndarray | Sequence[float]


class EngineState(Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    FAILED = "failed"


class CancellationToken:
    """Cooperative cancellation, checked by the engine once per chunk."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise SeparationCancelled("separation was cancelled")


@dataclass(frozen=True)
class EngineMetadata:
    model_variant: t.ModelVariant
    weights_version: t.WeightsVersion
    weight_hash: t.WeightDigest
    chunk_size: t.ChunkSize
    overlap_size: int
    hop_size: t.HopSize
    num_chunks: int
    execution_mode: ExecutionMode


@dataclass
class SeparationResult:
    stems: dict[t.StemName, t.StemTensor]
    """Every stem has the length of the (downmixed, resampled) input."""
    sample_rate: t.SampleRate
    duration: float
    """Seconds of audio processed."""
    processing_time_ms: float
    device: str
    degraded: DegradedReason | None = None
    metadata: EngineMetadata | None = None


@dataclass(frozen=True)
class DeviceReport:
    current: DeviceInfo
    available: list[DeviceInfo] = field(default_factory=list)
    capability: GPUCapability | None = None


@dataclass(frozen=True)
class _ChunkPlan:
    chunk_size: t.ChunkSize
    overlap_size: int
    hop_size: t.HopSize
    starts: list[int]


def plan_chunks(num_samples: int, sample_rate: t.SampleRate, config: Config) -> _ChunkPlan:
    chunk_size = round(config.chunking.chunk_duration_sec * sample_rate)
    overlap_size = round(config.chunking.overlap_duration_sec * sample_rate)
    if (hop_size := chunk_size - overlap_size) <= 0:
        raise ConfigError(f"{chunk_size=} must be larger than {overlap_size=}")
    return _ChunkPlan(
        chunk_size=chunk_size,
        overlap_size=overlap_size,
        hop_size=hop_size,
        starts=chunk_starts(num_samples, chunk_size, hop_size),
    )


def check_audio_limits(
    limits: LimitsConfig,
    *,
    duration_sec: float | None = None,
    num_bytes: int | None = None,
) -> None:
    """Reject inputs that are longer or larger than `limits` allow.

    :raises AudioLimitError: if a limit is exceeded
    """
    if num_bytes is not None and limits.max_input_bytes is not None:
        if num_bytes > limits.max_input_bytes:
            raise AudioLimitError(
                f"input is too large: {num_bytes} bytes, the maximum is {limits.max_input_bytes}"
            )
    if duration_sec is not None and limits.max_duration_sec is not None:
        if duration_sec > limits.max_duration_sec:
            raise AudioLimitError(
                f"audio is too long: {duration_sec:.1f}s, the maximum is "
                f"{limits.max_duration_sec:.0f}s"
            )


def _progress_columns(device: torch.device, chunk_size: int) -> tuple[ProgressColumn, ...]:
    info_text = f"[cyan](chunk=[bold]{chunk_size}[/bold] • {device.type})[/cyan]"
    return (
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        TimeRemainingColumn(),
        TextColumn(info_text),
    )


class Engine:
    """Chunked source separation with a TF-Locoformer.

    The engine moves through `UNINITIALIZED -> INITIALIZING -> READY` (or `FAILED`). Once ready,
    the model, weights and device are immutable and `separate` can be called repeatedly, also
    from multiple threads: every call works on private buffers.

    ```python
    engine = Engine()
    engine.initialize("free")
    result = engine.separate(pcm, SeparationOptions(tier="free"))
    ```
    """

    def __init__(
        self,
        config: IntoConfig | None = None,
        *,
        weight_store: WeightStore | None = None,
        device_probe: DeviceProbe | None = None,
        config_overrides: ConfigOverrides = (),
    ):
        """
        :param config: used instead of the default configuration shipped for the tier. Its
            `variant` must match the tier passed to `initialize`.
        """
        self._config_source = config
        self._config_overrides = config_overrides
        self.weight_store = weight_store if weight_store is not None else WeightStore()
        self.device_probe: DeviceProbe = (
            device_probe if device_probe is not None else TorchDeviceProbe()
        )

        self.state = EngineState.UNINITIALIZED
        self._tier: t.Tier | None = None
        self._config: Config | None = None
        self._model: TFLocoformer | None = None
        self._weights: ModelWeights | None = None
        self._device: torch.device | None = None
        self._device_info: DeviceInfo | None = None
        self._devices: list[DeviceInfo] = []
        self._mode: ExecutionMode | None = None
        self._init_lock = threading.Lock()

    #
    # lifecycle
    #

    def initialize(self, tier: t.Tier) -> None:
        """Load config and weights, build the model and move it to a device.

        The free tier always runs on CPU. For the pro tier, a failing GPU is retried once on CPU.
        Missing or unusable weights do not fail initialization but mark the engine as
        [degraded][locoformer.inference.Engine.is_degraded].

        :raises DeviceError: if no usable device is found
        :raises ConfigError: if the model configuration is inconsistent
        """
        with self._init_lock:
            if self.state is EngineState.READY and self._tier == tier:
                return

            self.state = EngineState.INITIALIZING
            try:
                self._initialize(tier)
            except Exception:
                self.state = EngineState.FAILED
                raise
            self.state = EngineState.READY

    def _initialize(self, tier: t.Tier) -> None:
        config = self._resolve_config(tier)
        params = config.model.to_concrete(TFLocoformerParams)
        model = TFLocoformer(params, attention_batch_size=config.inference.attention_batch_size)

        weights = self.weight_store.load(config.variant, config.weights_version, params)
        model.load_weights(weights.state_dict)
        model.eval()

        mode = execution_mode_for_tier(tier)
        devices = self.device_probe.probe()
        device_info, device = self._place(model, devices, mode)
        if mode is ExecutionMode.CPU_ONLY and device.type != "cpu":
            raise DeviceError(f"{tier} tier must run on cpu, but the model was placed on {device}")

        logger.info(
            f"engine ready: {config.identifier} on {device} "
            f"({mode.value}, weights {weights.digest[:19]})"
        )
        self._tier = tier
        self._config = config
        self._model = model
        self._weights = weights
        self._device = device
        self._device_info = device_info
        self._devices = devices
        self._mode = mode

    def _resolve_config(self, tier: t.Tier) -> Config:
        if self._config_source is None:
            return config_for_tier(tier, overrides=self._config_overrides)
        config = into_config(self._config_source, overrides=self._config_overrides)
        if config.variant != (expected := variant_for_tier(tier)):
            raise ConfigError(
                f"config `{config.identifier}` is for the {config.variant} variant "
                f"but {tier=} requires {expected}"
            )
        return config

    def _place(
        self, model: TFLocoformer, devices: list[DeviceInfo], mode: ExecutionMode
    ) -> tuple[DeviceInfo, torch.device]:
        selected = select_device(devices, mode)
        try:
            return selected, self._move(model, selected)
        except DeviceError as e:
            if mode is not ExecutionMode.GPU_ALLOWED or selected.type is DeviceType.CPU:
                raise
            logger.warning(f"failed to use {selected}, retrying on cpu: {e}")
        cpu = select_device(devices, ExecutionMode.CPU_ONLY)
        return cpu, self._move(model, cpu)

    def _move(self, model: TFLocoformer, info: DeviceInfo) -> torch.device:
        device = self.device_probe.acquire(info)
        try:
            model.to(device)
        except RuntimeError as e:
            raise DeviceError(f"failed to move model to {device}: {e}") from e
        return device

    def _require_ready(self) -> tuple[Config, TFLocoformer, ModelWeights, torch.device]:
        if (
            self.state is not EngineState.READY
            or self._config is None
            or self._model is None
            or self._weights is None
            or self._device is None
        ):
            raise UninitializedError(f"engine is {self.state.value}, call `initialize` first")
        return self._config, self._model, self._weights, self._device

    #
    # queries
    #

    @property
    def tier(self) -> t.Tier | None:
        return self._tier

    @property
    def is_degraded(self) -> bool:
        """Whether placeholder weights are in use."""
        return self._weights is not None and self._weights.degraded is not None

    @property
    def weights(self) -> ModelWeights | None:
        return self._weights

    @property
    def limits(self) -> LimitsConfig:
        config, *_ = self._require_ready()
        return config.limits

    @property
    def supports_realtime(self) -> bool:
        """Whether the active device is expected to separate faster than real time."""
        self._require_ready()
        assert self._device_info is not None
        return check_gpu_capability(self._device_info).supports_realtime

    def get_config(self) -> TFLocoformerParams:
        _, model, _, _ = self._require_ready()
        return model.get_config()

    def device_info(self) -> DeviceReport:
        self._require_ready()
        assert self._device_info is not None
        return DeviceReport(
            current=self._device_info,
            available=list(self._devices),
            capability=check_gpu_capability(self._device_info),
        )

    #
    # separation
    #

    def separate(
        self,
        pcm: PcmLike,
        options: SeparationOptions,
        *,
        cancel: CancellationToken | None = None,
    ) -> SeparationResult:
        """Separate a recording into stems.

        :param pcm: `(channels, samples)`, or a flat buffer that is interleaved when
            `options.channels > 1`.
        :raises TierMismatchError: if `options.tier` differs from the initialized tier
        :raises AudioLimitError: if the recording is longer than the configured maximum
        :raises SeparationCancelled: if `cancel` is set while chunks are processed
        """
        config, model, weights, device = self._require_ready()
        if options.tier != self._tier:
            raise TierMismatchError(
                f"engine was initialized for the {self._tier} tier, got a {options.tier} request"
            )

        start_time = time.perf_counter()
        mono = downmix_to_mono(
            t.RawAudioTensor(torch.as_tensor(pcm, dtype=torch.float32)), options.channels
        )
        if options.input_sample_rate is not None:
            mono = resample_linear(mono, options.input_sample_rate, options.sample_rate)

        num_samples = mono.shape[0]
        check_audio_limits(config.limits, duration_sec=num_samples / options.sample_rate)
        plan = plan_chunks(num_samples, options.sample_rate, config)
        separated = self._separate_mono(mono, plan, config, model, device, cancel=cancel)

        stems: dict[t.StemName, t.StemTensor] = {}
        for name, audio in zip(model.params.output_stem_names, separated):
            stem = post_condition_stem(
                name,
                t.StemTensor(audio),
                options.sample_rate,
                config.post_processing,
                config.stft,
            )
            if options.normalize:
                stem = t.StemTensor(peak_normalize(stem, config.post_processing.peak_limit))
            stems[name] = stem

        processing_time_ms = (time.perf_counter() - start_time) * 1000
        duration = num_samples / options.sample_rate
        logger.info(
            f"separated {duration:.2f}s into {len(stems)} stems in {processing_time_ms:.0f}ms"
        )

        metadata = None
        if options.debug:
            assert self._mode is not None
            metadata = EngineMetadata(
                model_variant=weights.metadata.variant,
                weights_version=weights.metadata.version,
                weight_hash=weights.digest,
                chunk_size=plan.chunk_size,
                overlap_size=plan.overlap_size,
                hop_size=plan.hop_size,
                num_chunks=len(plan.starts),
                execution_mode=self._mode,
            )

        return SeparationResult(
            stems=stems,
            sample_rate=options.sample_rate,
            duration=duration,
            processing_time_ms=processing_time_ms,
            device=str(device),
            degraded=weights.degraded,
            metadata=metadata,
        )

    def _separate_mono(
        self,
        mono: t.MonoAudioTensor,
        plan: _ChunkPlan,
        config: Config,
        model: TFLocoformer,
        device: torch.device,
        *,
        cancel: CancellationToken | None,
    ) -> torch.Tensor:
        """Chunk -> stft -> model -> istft -> windowed overlap-add into per-stem buffers."""
        num_samples = mono.shape[0]
        num_stems = model.params.num_stems
        buffers = torch.zeros(num_stems, num_samples)
        use_autocast_dtype = config.inference.use_autocast_dtype
        last = len(plan.starts) - 1

        with (
            Progress(
                *_progress_columns(device, plan.chunk_size),
                transient=True,
                disable=not config.inference.show_progress,
            ) as progress,
            torch.inference_mode(),
            torch.autocast(
                device_type=device.type,
                enabled=use_autocast_dtype is not None,
                dtype=use_autocast_dtype,
            ),
        ):
            task = progress.add_task("processing chunks...", total=len(plan.starts))
            for i, start in enumerate(plan.starts):
                if cancel is not None:
                    cancel.raise_if_cancelled()

                chunk = pad_to_length(mono[start : start + plan.chunk_size], plan.chunk_size)
                stem_audio = self._process_chunk(chunk.to(device), config, model)

                # the recording edges have no neighbour to cross-fade with
                window = chunk_window(
                    plan.chunk_size, plan.overlap_size, fade_in=i > 0, fade_out=i < last
                )
                end = min(start + plan.chunk_size, num_samples)
                buffers[:, start:end] += (stem_audio * window)[:, : end - start]
                progress.update(task, advance=1)

        return buffers

    def _process_chunk(
        self, chunk: torch.Tensor, config: Config, model: TFLocoformer
    ) -> torch.Tensor:
        spec = stft(t.MonoAudioTensor(chunk), config.stft)
        model_output = model(to_model_input(spec))
        per_stem = deinterleave_stems(
            t.ModelOutputTensor(model_output.to(torch.float32)), model.params.num_stems
        )
        # NOTE: istft is not part of the autocast graph
        audio = [istft(stem_spec, chunk.shape[-1], config.stft) for stem_spec in per_stem]
        return torch.stack(audio).to("cpu", torch.float32)

    def clean(self, pcm: PcmLike, options: SeparationOptions) -> t.StemTensor:
        """The vocals stem, or the instrumental stem for models without vocals."""
        stems = self.separate(pcm, options).stems
        if (vocals := stems.get("vocals")) is not None:
            return vocals
        if (instrumental := stems.get("instrumental")) is not None:
            return instrumental
        raise EngineError(f"model produces neither vocals nor instrumental: {list(stems)}")

    def enhance(self, pcm: PcmLike, options: SeparationOptions) -> torch.Tensor:
        """Re-mix all stems with per-stem gains and soft-limit the sum."""
        config, *_ = self._require_ready()
        stems = self.separate(pcm, options).stems
        return soft_limit(mix_stems(stems), config.post_processing.soft_limit_threshold)
