"""Exceptions raised by the engine.

Everything derives from [`EngineError`][locoformer.errors.EngineError] so callers can catch one
type. Where a builtin category fits, it is mixed in as well (e.g. `ConfigError` is a `ValueError`).
"""

from __future__ import annotations


class EngineError(Exception):
    """Base class for all engine failures."""


class ConfigError(EngineError, ValueError):
    """Invalid dimensions or an inconsistent model configuration. Fatal at construction."""


class UninitializedError(EngineError, RuntimeError):
    """A layer was used before its weights were loaded, or the engine before `initialize`."""


class DeviceError(EngineError, RuntimeError):
    """The requested device is unavailable or unusable."""


class WeightLoadError(EngineError):
    """A weight blob is missing, unreadable or structurally invalid."""


class PositionOverflowError(EngineError, IndexError):
    """A sequence is longer than the precomputed rotary tables."""

    def __init__(self, seq_len: int, max_seq_len: int):
        super().__init__(
            f"sequence length {seq_len} exceeds the rotary embedding table ({max_seq_len})"
        )
        self.seq_len = seq_len
        self.max_seq_len = max_seq_len


class TierMismatchError(EngineError, ValueError):
    """`separate` was called with a tier other than the one the engine was initialized for."""


class SeparationCancelled(EngineError):
    """The caller cancelled a running separation."""


class CorruptWeightsError(WeightLoadError):
    """A weight file exists but cannot be deserialized into the expected blob structure."""


class UnreadableWeightsError(WeightLoadError):
    """A weight file exists but the operating system refused to read it."""


class AudioLimitError(EngineError, ValueError):
    """The input exceeds the configured duration or size limits."""
