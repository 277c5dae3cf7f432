"""Operations for reading and writing to disk.

All side effects should go here."""

from __future__ import annotations

import io
import logging
import os
import pickle
from pathlib import Path
from typing import Any, NoReturn

import torch

from . import types as t
from .errors import CorruptWeightsError, UnreadableWeightsError

logger = logging.getLogger(__name__)


def _raise_missing_feature(*, extra: str, feature: str) -> NoReturn:
    raise ImportError(
        f"error: the '{feature}' feature requires the '{extra}' extra.\n"
        f"help: install with: 'locoformer[{extra}]'\n"
    )


#
# audio
#


def read_audio(
    file: str | Path | io.RawIOBase | io.BufferedReader | bytes,
    target_sr: t.SampleRate,
    target_channels: int | None = None,
) -> tuple[t.RawAudioTensor, t.SampleRate]:
    """Loads, resamples and converts channels. Returns `(channels, samples)` and the sample rate."""
    try:
        from torchcodec.decoders import AudioDecoder
    except ImportError:
        _raise_missing_feature(extra="cli", feature="audio decoding")

    decoder = AudioDecoder(source=file, sample_rate=target_sr, num_channels=target_channels)
    samples = decoder.get_all_samples()
    return t.RawAudioTensor(samples.data), samples.sample_rate


def write_audio(
    path: Path, audio: torch.Tensor, sample_rate: t.SampleRate, *, bit_rate: int | None = None
) -> None:
    try:
        from torchcodec.encoders import AudioEncoder
    except ImportError:
        _raise_missing_feature(extra="cli", feature="audio encoding")

    if audio.ndim == 1:
        audio = audio.unsqueeze(0)
    path.parent.mkdir(parents=True, exist_ok=True)
    encoder = AudioEncoder(samples=audio.detach().cpu().to(torch.float32), sample_rate=sample_rate)
    encoder.to_file(str(path), bit_rate=bit_rate)


#
# weights
#


def get_weights_dir() -> Path:
    """Default directory holding `tf-locoformer-*.pt` blobs.

    Overridden by the `LOCOFORMER_WEIGHTS_DIR` environment variable.
    """
    if (env := os.environ.get("LOCOFORMER_WEIGHTS_DIR")) is not None:
        return Path(env)
    from platformdirs import user_data_dir

    return Path(user_data_dir("locoformer", appauthor=False)) / "weights"


def read_weight_blob(path: Path) -> tuple[dict[str, Any], t.StateDict]:
    """Read a `{"metadata": {...}, "state_dict": {...}}` blob.

    :raises FileNotFoundError: if the file does not exist
    :raises UnreadableWeightsError: if reading the file fails, e.g. for lack of permissions
    :raises CorruptWeightsError: if the file cannot be deserialized or has the wrong structure
    """
    if not path.is_file():
        raise FileNotFoundError(f"weight file not found: {path}")
    try:
        loaded_obj: object = torch.load(path, map_location="cpu", weights_only=True)
    except (pickle.UnpicklingError, RuntimeError, EOFError, ValueError) as e:
        raise CorruptWeightsError(f"failed to deserialize {path}: {e}") from e
    except FileNotFoundError:
        raise
    except OSError as e:
        raise UnreadableWeightsError(f"failed to read {path}: {e}") from e

    if not isinstance(loaded_obj, dict):
        raise CorruptWeightsError(f"expected a dict in {path}, got {type(loaded_obj).__name__}")
    metadata = loaded_obj.get("metadata")
    state_dict = loaded_obj.get("state_dict")
    if not isinstance(metadata, dict) or not isinstance(state_dict, dict):
        raise CorruptWeightsError(f"expected `metadata` and `state_dict` entries in {path}")

    tensors: t.StateDict = {}
    for key, value in state_dict.items():
        if not isinstance(value, torch.Tensor):
            raise CorruptWeightsError(f"entry `{key}` in {path} is not a tensor")
        # COMPAT: checkpoints exported from a lightning module carry a `model.` prefix
        tensors[key.removeprefix("model.")] = value
    return metadata, tensors


def write_weight_blob(path: Path, metadata: dict[str, Any], state_dict: t.StateDict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path_tmp = path.with_suffix(".tmp")
    torch.save(
        {"metadata": metadata, "state_dict": {k: v.contiguous() for k, v in state_dict.items()}},
        path_tmp,
    )
    path_tmp.replace(path)  # atomic to ensure we dont have corrupted files if interrupted
    logger.info(f"wrote {len(state_dict)} tensors to {path}")
