"""Loading, validating and caching model weights.

A [`WeightStore`][locoformer.weights.WeightStore] resolves `(variant, version)` to a file,
validates it against the model structure and caches the result. When no usable file exists it
falls back to deterministic placeholder weights so the pipeline still runs end to end; such
weights are always marked via [`ModelWeights.degraded`][locoformer.weights.ModelWeights.degraded]
and must never be mistaken for a trained model.
"""

from __future__ import annotations

import dataclasses
import hashlib
import logging
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal, Mapping

import numpy as np
import torch
from pydantic import TypeAdapter, ValidationError

from . import io
from . import types as t
from .errors import CorruptWeightsError, UnreadableWeightsError, WeightLoadError
from .models.tf_locoformer import TFLocoformer, TFLocoformerParams, count_blocks
from .models.utils.layers import Shape

logger = logging.getLogger(__name__)

PLACEHOLDER_VERSION = "placeholder-v1"
PLACEHOLDER_SCALE = 0.02


@dataclass(frozen=True)
class WeightMetadata:
    version: t.WeightsVersion
    variant: t.ModelVariant
    num_layers: t.Gt0[int]
    hidden_dim: t.Gt0[int]
    num_stems: t.Gt0[int]
    created_at: str
    """ISO8601 timestamp"""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> WeightMetadata:
        try:
            return _METADATA_ADAPTER.validate_python(dict(data))
        except ValidationError as e:
            raise WeightLoadError(f"invalid weight metadata: {e}") from e

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


_METADATA_ADAPTER = TypeAdapter(WeightMetadata)

DegradedKind = Literal["missing", "unreadable", "corrupt", "invalid"]


@dataclass(frozen=True)
class DegradedReason:
    """Why placeholder weights are in use.

    - `missing`: no file at the resolved path
    - `corrupt`: the file could not be deserialized
    - `invalid`: the file was read but does not match the model structure
    """

    kind: DegradedKind
    path: Path
    detail: str

    def __str__(self) -> str:
        return f"{self.kind} weights at {self.path}: {self.detail}"


@dataclass(frozen=True)
class ModelWeights:
    metadata: WeightMetadata
    state_dict: t.StateDict
    digest: t.WeightDigest
    degraded: DegradedReason | None = None
    """Set iff these are placeholder weights. Output produced with them is noise."""

    @property
    def is_placeholder(self) -> bool:
        return self.degraded is not None


def weights_digest(state_dict: t.StateDict) -> t.WeightDigest:
    """`sha256:<hex>` over the sorted keys, dtypes, shapes and raw bytes of every tensor."""
    hasher = hashlib.sha256()
    for key in sorted(state_dict):
        tensor = state_dict[key].detach().to("cpu").contiguous()
        hasher.update(key.encode())
        hasher.update(str(tensor.dtype).encode())
        hasher.update(str(tuple(tensor.shape)).encode())
        hasher.update(np.asarray(tensor.reshape(-1).view(torch.uint8)).tobytes())
    return f"sha256:{hasher.hexdigest()}"


def expected_weight_shapes(params: TFLocoformerParams) -> dict[str, Shape]:
    return TFLocoformer(params).weight_shapes()


def validate_weights(
    metadata: WeightMetadata,
    state_dict: t.StateDict,
    params: TFLocoformerParams,
    *,
    expected_shapes: Mapping[str, Shape] | None = None,
) -> None:
    """Check that a state dict can be loaded into a model built from `params`.

    :raises WeightLoadError: on the first structural mismatch.
    """
    if metadata.num_layers != params.num_layers:
        raise WeightLoadError(
            f"weights have {metadata.num_layers} layers but the model expects {params.num_layers}"
        )
    if (num_blocks := count_blocks(state_dict)) != metadata.num_layers:
        raise WeightLoadError(
            f"metadata declares {metadata.num_layers} layers but {num_blocks} blocks are present"
        )
    if metadata.hidden_dim != params.hidden_dim:
        raise WeightLoadError(f"{metadata.hidden_dim=} does not match {params.hidden_dim=}")
    if metadata.num_stems != params.num_stems:
        raise WeightLoadError(f"{metadata.num_stems=} does not match {params.num_stems=}")

    if expected_shapes is None:
        expected_shapes = expected_weight_shapes(params)
    if missing := sorted(expected_shapes.keys() - state_dict.keys()):
        raise WeightLoadError(f"missing {len(missing)} tensors, e.g. {missing[:3]}")
    if unexpected := sorted(state_dict.keys() - expected_shapes.keys()):
        raise WeightLoadError(f"unexpected {len(unexpected)} tensors, e.g. {unexpected[:3]}")
    for key, shape in expected_shapes.items():
        if (actual := tuple(state_dict[key].shape)) != shape:
            raise WeightLoadError(f"expected `{key}` of shape {shape}, got {actual}")
        if not state_dict[key].is_floating_point():
            raise WeightLoadError(f"expected `{key}` to be floating point")


def create_placeholder_weights(
    params: TFLocoformerParams,
    variant: t.ModelVariant,
    *,
    seed: int = 0,
    degraded: DegradedReason | None = None,
) -> ModelWeights:
    """Uniform `[-0.02, 0.02]` projections and convolutions, identity normalization.

    Deterministic for a given `seed`.
    """
    generator = torch.Generator().manual_seed(seed)
    state_dict: t.StateDict = {}
    for key, shape in expected_weight_shapes(params).items():
        if key.endswith(".gamma"):
            state_dict[key] = torch.ones(shape)
        elif key.endswith(".beta"):
            state_dict[key] = torch.zeros(shape)
        else:
            uniform = torch.rand(shape, generator=generator)
            state_dict[key] = (uniform * 2 - 1) * PLACEHOLDER_SCALE

    metadata = WeightMetadata(
        version=PLACEHOLDER_VERSION,
        variant=variant,
        num_layers=params.num_layers,
        hidden_dim=params.hidden_dim,
        num_stems=params.num_stems,
        created_at=datetime.now(timezone.utc).isoformat(),
    )
    return ModelWeights(
        metadata=metadata,
        state_dict=state_dict,
        digest=weights_digest(state_dict),
        degraded=degraded,
    )


class WeightCache:
    """Least-recently-used cache of loaded weights keyed by `{variant}-{version}`."""

    def __init__(self, capacity: int = 3):
        if capacity <= 0:
            raise ValueError(f"expected a positive capacity, got {capacity}")
        self.capacity = capacity
        self._entries: OrderedDict[str, ModelWeights] = OrderedDict()

    @staticmethod
    def key(variant: t.ModelVariant, version: t.WeightsVersion) -> str:
        return f"{variant}-{version}"

    def get(self, key: str) -> ModelWeights | None:
        if (weights := self._entries.get(key)) is None:
            return None
        self._entries.move_to_end(key)
        return weights

    def put(self, key: str, weights: ModelWeights) -> None:
        self._entries[key] = weights
        self._entries.move_to_end(key)
        while len(self._entries) > self.capacity:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug(f"evicted weights `{evicted}` from cache")

    def clear(self) -> None:
        self._entries.clear()

    def keys(self) -> list[str]:
        return list(self._entries)

    def size(self) -> int:
        return len(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries


class WeightStore:
    """Resolves, validates and caches weight blobs from a directory."""

    def __init__(self, weights_dir: Path | None = None, *, cache: WeightCache | None = None):
        self.weights_dir = weights_dir if weights_dir is not None else io.get_weights_dir()
        self.cache = cache if cache is not None else WeightCache()

    def path_for(self, variant: t.ModelVariant, version: t.WeightsVersion = "latest") -> Path:
        suffix = "" if version == "latest" else f"-{version}"
        return self.weights_dir / f"tf-locoformer-{variant}{suffix}.pt"

    def load_strict(
        self,
        variant: t.ModelVariant,
        version: t.WeightsVersion,
        params: TFLocoformerParams,
    ) -> ModelWeights:
        """Like [`load`][locoformer.weights.WeightStore.load] but without the placeholder fallback.

        :raises FileNotFoundError: if the weight file does not exist
        :raises UnreadableWeightsError: if the weight file exists but cannot be read
        :raises CorruptWeightsError: if the weight file cannot be deserialized
        :raises WeightLoadError: if the weights do not match `params`
        """
        key = WeightCache.key(variant, version)
        if (cached := self.cache.get(key)) is not None:
            try:
                validate_weights(cached.metadata, cached.state_dict, params)
            except WeightLoadError as e:
                # another model configuration shares this store
                logger.debug(f"cached weights `{key}` do not fit the model, rereading: {e}")
            else:
                logger.debug(f"weights `{key}` served from cache")
                return cached

        path = self.path_for(variant, version)
        raw_metadata, state_dict = io.read_weight_blob(path)
        metadata = WeightMetadata.from_dict(raw_metadata)
        validate_weights(metadata, state_dict, params)

        weights = ModelWeights(
            metadata=metadata, state_dict=state_dict, digest=weights_digest(state_dict)
        )
        self.cache.put(key, weights)
        logger.info(f"loaded weights `{key}` ({weights.digest[:19]}) from {path}")
        return weights

    def load(
        self,
        variant: t.ModelVariant,
        version: t.WeightsVersion,
        params: TFLocoformerParams,
    ) -> ModelWeights:
        """Load weights, falling back to [placeholders][locoformer.weights.create_placeholder_weights]
        when the file is missing, unreadable, corrupt or invalid. Placeholders are never cached.
        """
        path = self.path_for(variant, version)
        try:
            return self.load_strict(variant, version, params)
        except FileNotFoundError as e:
            reason = DegradedReason("missing", path, str(e))
        except UnreadableWeightsError as e:
            reason = DegradedReason("unreadable", path, str(e))
        except CorruptWeightsError as e:
            reason = DegradedReason("corrupt", path, str(e))
        except WeightLoadError as e:
            reason = DegradedReason("invalid", path, str(e))

        logger.warning(
            "\n"
            "!!! using PLACEHOLDER weights, separated stems will be noise !!!\n"
            f"    reason: {reason}\n"
            f"    help: place a trained `{path.name}` in {self.weights_dir}"
        )
        return create_placeholder_weights(params, variant, degraded=reason)

    def save(self, weights: ModelWeights, path: Path | None = None) -> Path:
        """Write weights so that [`load`][locoformer.weights.WeightStore.load] can read them back."""
        if path is None:
            path = self.path_for(weights.metadata.variant, weights.metadata.version)
        io.write_weight_blob(path, weights.metadata.to_dict(), weights.state_dict)
        return path
