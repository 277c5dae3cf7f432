"""Source separation models."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, TypeVar, runtime_checkable

if TYPE_CHECKING:
    from .. import types as t


@runtime_checkable
class ModelParamsLike(Protocol):
    """A trait that must be implemented to be considered a model parameter."""

    output_stem_names: tuple[t.StemName, ...]
    num_freq_bins: t.Gt0[int]

    @property
    def num_stems(self) -> int: ...


ModelParamsLikeT = TypeVar("ModelParamsLikeT", bound=ModelParamsLike)
