"""Configuration"""

from __future__ import annotations

import copy
import json
from typing import (
    Annotated,
    Any,
    Hashable,
    Literal,
    Sequence,
    TypeAlias,
    TypeVar,
    assert_never,
)

# NOTE: we are not using typing.TYPE_CHECKING because pydantic relies on that
import torch
from annotated_types import Len
from pydantic import (
    AfterValidator,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    GetCoreSchemaHandler,
    GetPydanticSchema,
    TypeAdapter,
    model_validator,
)
from pydantic_core import CoreSchema, PydanticCustomError, core_schema
from typing_extensions import Self

from . import DIR_CONFIG_DEFAULT
from . import types as t
from .core import str_to_torch_dtype
from .models import ModelParamsLikeT


def _get_torch_dtype_schema(_source_type: Any, _handler: GetCoreSchemaHandler) -> CoreSchema:
    return core_schema.json_or_python_schema(
        json_schema=core_schema.chain_schema(
            [
                core_schema.str_schema(),
                core_schema.no_info_plain_validator_function(str_to_torch_dtype),
            ]
        ),
        python_schema=core_schema.union_schema(
            [
                core_schema.is_instance_schema(torch.dtype),
                core_schema.no_info_plain_validator_function(str_to_torch_dtype),
            ]
        ),
        serialization=core_schema.plain_serializer_function_ser_schema(
            lambda dtype: str(dtype).split(".")[-1]
        ),
    )


TorchDtype: TypeAlias = Annotated[torch.dtype, GetPydanticSchema(_get_torch_dtype_schema)]

_PYDANTIC_STRICT_CONFIG = ConfigDict(strict=True, extra="forbid")

_Item = TypeVar("_Item", bound=Hashable)


def _to_tuple(sequence: Sequence[_Item]) -> tuple[_Item, ...]:
    # this is so json arrays are converted to tuples
    return tuple(sequence)


Tuple = Annotated[tuple[_Item, ...], BeforeValidator(_to_tuple)]


def _validate_unique_sequence(sequence: Sequence[_Item]) -> Sequence[_Item]:
    # e.g. to ensure there are no duplicate stem names
    if len(sequence) != len(set(sequence)):
        raise PydanticCustomError("unique_sequence", "Sequence must contain unique items")
    return sequence


_S = TypeVar("_S")
NonEmptyUnique = Annotated[
    _S,
    Len(min_length=1),
    AfterValidator(_validate_unique_sequence),
    Field(json_schema_extra={"unique_items": True}),
]


class LazyModelConfig(BaseModel):
    """A lazily validated model configuration.

    Only the fields the engine needs before the model exists are validated eagerly. Note that
    it is not guaranteed to be fully valid until `to_concrete` is called.
    """

    output_stem_names: NonEmptyUnique[Tuple[t.StemName]]
    num_freq_bins: t.Gt0[int] = 1025

    def to_concrete(
        self,
        model_params: type[ModelParamsLikeT],
        *,
        pydantic_config: ConfigDict = ConfigDict(extra="forbid"),
    ) -> ModelParamsLikeT:
        """Validate against a real set of model parameters and convert to it.

        :raises pydantic.ValidationError: if extra fields are present in the model parameters
            that doesn't exist in the concrete model parameters.
        """
        ta = TypeAdapter(
            type(
                f"{model_params.__name__}Validator",
                (model_params,),
                {"__pydantic_config__": pydantic_config},
            )  # needed for https://docs.pydantic.dev/latest/errors/usage_errors/#type-adapter-config-unused
        )  # type: ignore
        # types defined within `TYPE_CHECKING` blocks will be forward references, so we need rebuild
        ta.rebuild(_types_namespace={"TorchDtype": TorchDtype, "t": t})
        model_params_concrete: ModelParamsLikeT = ta.validate_python(self.model_dump())
        return model_params_concrete

    model_config = ConfigDict(
        strict=True, extra="allow"
    )  # extra fields are not validated until `to_concrete`


class TransformConfig(BaseModel):
    """Configuration for the short-time fourier transform."""

    n_fft: t.FftSize = 2048
    hop_length: t.HopLength = 512
    win_length: t.FftSize = 2048
    window_kind: t.WindowKind = "hann"
    center: bool = True
    normalized: bool = False
    onesided: bool = True

    @property
    def freq_bins(self) -> int:
        return self.n_fft // 2 + 1 if self.onesided else self.n_fft

    @model_validator(mode="after")
    def check_win_length(self) -> Self:
        if self.win_length > self.n_fft:
            raise PydanticCustomError(
                "win_length_too_large",
                "`win_length` ({win_length}) must not exceed `n_fft` ({n_fft})",
                {"win_length": self.win_length, "n_fft": self.n_fft},
            )
        return self

    model_config = _PYDANTIC_STRICT_CONFIG


class ChunkingConfig(BaseModel):
    chunk_duration_sec: t.ChunkDuration = 18.0
    overlap_duration_sec: t.OverlapDuration = 1.75
    """Cross-fade length between consecutive chunks. Must be shorter than the chunk."""

    @model_validator(mode="after")
    def check_overlap(self) -> Self:
        if self.overlap_duration_sec >= self.chunk_duration_sec:
            raise PydanticCustomError(
                "overlap_too_large",
                "overlap ({overlap}s) must be shorter than the chunk ({chunk}s)",
                {"overlap": self.overlap_duration_sec, "chunk": self.chunk_duration_sec},
            )
        return self

    model_config = _PYDANTIC_STRICT_CONFIG


class PostProcessingConfig(BaseModel):
    vocals_highpass_hz: t.Gt0[float] = 30.0
    bass_mono_cutoff_hz: t.Gt0[float] = 120.0
    peak_limit: Annotated[float, Field(gt=0, le=1)] = 0.95
    """Stems peaking above this are scaled down when normalization is requested."""
    soft_limit_threshold: Annotated[float, Field(gt=0, le=1)] = 0.95

    model_config = _PYDANTIC_STRICT_CONFIG


class InferenceConfig(BaseModel):
    attention_batch_size: t.Gt0[int] | None = None
    """Split the flattened attention batch (e.g. `frames` for frequency attention) into slices
    of this size to bound peak memory. `None` processes everything at once."""
    use_autocast_dtype: TorchDtype | None = None
    show_progress: bool = False

    model_config = _PYDANTIC_STRICT_CONFIG


class LimitsConfig(BaseModel):
    max_duration_sec: t.Gt0[float] | None = None
    """Longest recording accepted by `separate`. `None` disables the check."""
    max_input_bytes: t.Gt0[int] | None = 100 * 1024 * 1024
    """Largest encoded input file accepted by the cli."""

    model_config = _PYDANTIC_STRICT_CONFIG


class SeparationOptions(BaseModel):
    """Per-request options of [`Engine.separate`][locoformer.inference.Engine.separate]."""

    tier: t.Tier
    sample_rate: t.SampleRate = 44100
    """Sample rate of the input and output PCM."""
    normalize: bool = True
    output_format: t.OutputFormat = "wav"
    debug: bool = False
    """Attach [engine metadata][locoformer.inference.EngineMetadata] to the result."""
    channels: t.Channels = 1
    """Number of interleaved channels when the input is a flat buffer."""
    input_sample_rate: t.SampleRate | None = None
    """If set and different from `sample_rate`, the input is linearly resampled first."""

    model_config = _PYDANTIC_STRICT_CONFIG


class ConfigOverrideError(ValueError):
    """Raised when one or more override *strings* are syntactically invalid."""


def parse_override_value(value: str) -> Any:
    """Parse a CLI override value into a Python object.

    Shell-like quoting/escaping semantics beyond what your shell and JSON provide
    are not supported.
    """
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return value


def parse_config_override(override: str) -> tuple[tuple[str, ...], Any]:
    """Parse one override entry of the form `<dot.path>=<value>`. Empty value
    is interpreted as an empty string.

    Missing `=` or empty path segments like `a..b=1` or `.a=1` are considered syntax errors
    """
    key, sep, raw_value = override.partition("=")
    if sep == "":
        raise ConfigOverrideError(
            "invalid override `"
            f"{override}`: expected `<dot.path>=<value>`, e.g. `chunking.chunk_duration_sec=10.0`"
        )

    path = tuple(part.strip() for part in key.split("."))
    if not path or any(part == "" for part in path):
        raise ConfigOverrideError(
            f"invalid override path `{key}` in `{override}`: empty path segment is not allowed"
        )

    return path, parse_override_value(raw_value)


def set_path_value(mut_config_dict: dict[str, Any], path: tuple[str, ...], value: Any) -> None:
    """Set a nested value in-place, creating missing dictionaries as needed."""
    current = mut_config_dict
    for key in path[:-1]:
        next_node = current.get(key)
        if not isinstance(next_node, dict):
            next_node = {}
            current[key] = next_node
        current = next_node

    current[path[-1]] = value


ConfigOverrides: TypeAlias = Sequence[str]
"""`<dot.path>=<value>` form, e.g. `inference.attention_batch_size=64`

- automatic creation of missing nested dictionaries while applying overrides
- validation is performed *after* all overrides are applied

Not supported: list index addressing in paths (e.g. `a.0.b=1` is treated as string keys)
"""


def apply_config_overrides(
    mut_config_dict: dict[str, Any], overrides: ConfigOverrides
) -> dict[str, Any]:
    for override in overrides:
        path, value = parse_config_override(override)
        set_path_value(mut_config_dict, path, value)
    return mut_config_dict


def load_config_dict(path: t.StrPath | t.BytesPath) -> dict[str, Any]:
    with open(path, "rb") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise TypeError(f"expected top-level JSON object in config file, got {type(data).__name__}")
    return data


class Config(BaseModel):
    identifier: str
    """Unique identifier for this configuration"""
    model_type: Literal["tf_locoformer"] = "tf_locoformer"
    variant: t.ModelVariant
    """Selects the weight file `tf-locoformer-{variant}[-{version}].pt`."""
    weights_version: t.WeightsVersion = "latest"
    model: LazyModelConfig
    stft: TransformConfig = Field(default_factory=TransformConfig)
    chunking: ChunkingConfig = Field(default_factory=ChunkingConfig)
    post_processing: PostProcessingConfig = Field(default_factory=PostProcessingConfig)
    inference: InferenceConfig = Field(default_factory=InferenceConfig)
    limits: LimitsConfig = Field(default_factory=LimitsConfig)

    @model_validator(mode="after")
    def check_freq_bins(self) -> Self:
        if self.model.num_freq_bins != self.stft.freq_bins:
            raise PydanticCustomError(
                "freq_bins_mismatch",
                "model expects {num_freq_bins} frequency bins but the transform produces {freq_bins}",
                {"num_freq_bins": self.model.num_freq_bins, "freq_bins": self.stft.freq_bins},
            )
        return self

    @classmethod
    def from_file(
        cls,
        path: t.StrPath | t.BytesPath,
        *,
        overrides: ConfigOverrides = (),
    ) -> Config:
        """Load config JSON from disk, optionally applying CLI-style overrides."""
        config_dict = load_config_dict(path)
        if overrides:
            apply_config_overrides(config_dict, overrides)
        return cls.model_validate(config_dict)

    model_config = ConfigDict(
        arbitrary_types_allowed=True,  # for .model
        strict=True,
        extra="forbid",
    )


IntoConfig: TypeAlias = Config | dict[str, Any] | t.StrPath | t.BytesPath


def into_config(config: IntoConfig, *, overrides: ConfigOverrides = ()) -> Config:
    """Convert various config inputs into a validated [`Config`].

    If `overrides` is non-empty, they are applied before validation.
    Caller-owned objects are not mutated.
    """
    if isinstance(config, Config):
        if not overrides:
            return config
        config_dict = config.model_dump(mode="python")
        apply_config_overrides(config_dict, overrides)
        return Config.model_validate(config_dict)

    if isinstance(config, dict):
        config_dict = copy.deepcopy(config)
        if overrides:
            apply_config_overrides(config_dict, overrides)
        return Config.model_validate(config_dict)

    return Config.from_file(config, overrides=overrides)


def variant_for_tier(tier: t.Tier) -> t.ModelVariant:
    match tier:
        case "free":
            return "medium"
        case "pro":
            return "pro"
        case _:
            assert_never(tier)


def config_for_tier(tier: t.Tier, *, overrides: ConfigOverrides = ()) -> Config:
    """Load the default configuration shipped for a tier."""
    path = DIR_CONFIG_DEFAULT / f"tf_locoformer-{variant_for_tier(tier)}.json"
    return Config.from_file(path, overrides=overrides)
