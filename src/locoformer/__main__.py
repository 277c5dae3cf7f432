"""Command line interface for `locoformer`."""

import logging
import time
from pathlib import Path
from typing import Annotated, Callable, Optional, ParamSpec, TypeVar

import typer
from rich.logging import RichHandler

logging.basicConfig(level="INFO", format="%(message)s", datefmt="[%X]", handlers=[RichHandler()])
logger = logging.getLogger(__name__)

app = typer.Typer(
    pretty_exceptions_show_locals=False,
    help="A CLI for TF-Locoformer source separation.",
    no_args_is_help=True,
)

P = ParamSpec("P")
T = TypeVar("T")


def timed(func_name: str | None = None) -> Callable[[Callable[P, T]], Callable[P, T]]:
    def decorator(func: Callable[P, T]) -> Callable[P, T]:
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            start_time = time.perf_counter()
            result = func(*args, **kwargs)
            elapsed_time = time.perf_counter() - start_time
            logger.info(f"{func_name or func.__qualname__} took {elapsed_time:.4f} seconds")
            return result

        return wrapper

    return decorator


@app.command()
def separate(
    mixture_path: Annotated[
        Path,
        typer.Argument(
            ...,
            exists=True,
            file_okay=True,
            dir_okay=True,
            readable=True,
            help="Path to the audio file (or a directory of audio files) to be separated.",
        ),
    ],
    tier: Annotated[
        str,
        typer.Option("--tier", help="`free` (2 stems, cpu) or `pro` (5 stems, gpu allowed)."),
    ] = "free",
    config_path: Annotated[
        Optional[Path],
        typer.Option(
            "--config",
            exists=True,
            file_okay=True,
            dir_okay=False,
            readable=True,
            help="Path to a JSON configuration replacing the default one of the tier.",
        ),
    ] = None,
    weights_dir: Annotated[
        Optional[Path],
        typer.Option(
            "--weights-dir",
            file_okay=False,
            dir_okay=True,
            help="Directory containing `tf-locoformer-*.pt`. Defaults to the user data directory.",
        ),
    ] = None,
    output_dir: Annotated[
        Optional[Path],
        typer.Option(
            "--output",
            file_okay=False,
            dir_okay=True,
            writable=True,
            help="Directory to save the separated audio stems.",
        ),
    ] = None,
    no_normalize: Annotated[
        bool, typer.Option("--no-normalize", help="Do not scale down stems peaking above 0.95.")
    ] = False,
    output_format: Annotated[
        str, typer.Option("--format", help="Output file format: wav, flac or mp3.")
    ] = "wav",
    overrides: Annotated[
        Optional[list[str]],
        typer.Option(
            "--override",
            "-o",
            help="Override config values, e.g. `-o chunking.chunk_duration_sec=10.0`.",
        ),
    ] = None,
) -> None:
    """Separates an audio file into its constituent stems."""
    from pydantic import TypeAdapter

    from . import types as t
    from .config import SeparationOptions
    from .inference import Engine, check_audio_limits
    from .io import read_audio, write_audio
    from .weights import WeightStore

    tier_ = TypeAdapter(t.Tier).validate_python(tier)
    format_ = TypeAdapter(t.OutputFormat).validate_python(output_format)

    engine = Engine(
        config_path,
        weight_store=WeightStore(weights_dir),
        config_overrides=tuple(overrides or ()),
    )
    timed("initialization")(engine.initialize)(tier_)
    if engine.is_degraded:
        logger.warning("engine is degraded, stems are NOT a real separation")

    mixture_paths = sorted(mixture_path.glob("*")) if mixture_path.is_dir() else [mixture_path]
    for mixture_path in mixture_paths:
        logger.info(f"processing audio file: {mixture_path=}")
        check_audio_limits(engine.limits, num_bytes=mixture_path.stat().st_size)
        audio, sample_rate = read_audio(mixture_path, 44100)
        options = SeparationOptions(
            tier=tier_,
            sample_rate=sample_rate,
            normalize=not no_normalize,
            output_format=format_,
        )
        result = timed("separation")(engine.separate)(audio, options)

        curr_output_dir = output_dir or Path("./data/audio/output") / mixture_path.stem
        for name, stem in result.stems.items():
            output_file = (curr_output_dir / name).with_suffix(f".{format_}")
            write_audio(output_file, stem, result.sample_rate)
            logger.info(f"wrote stem `{name}` to {output_file}")


@app.command()
def devices() -> None:
    """Lists the devices torch can see and their estimated capability."""
    from rich.console import Console
    from rich.table import Table

    from .device import TorchDeviceProbe, check_gpu_capability

    table = Table(show_lines=False, pad_edge=False, box=None)
    table.add_column("device", no_wrap=True)
    table.add_column("name", no_wrap=True)
    table.add_column("memory", no_wrap=True)
    table.add_column("performance", no_wrap=True)
    table.add_column("realtime", no_wrap=True)

    for info in TorchDeviceProbe().probe():
        capability = check_gpu_capability(info)
        memory = f"{info.memory_gb:.1f}GB" if info.memory_gb is not None else "-"
        table.add_row(
            str(info),
            info.name,
            memory,
            capability.estimated_performance,
            "yes" if capability.supports_realtime else "no",
        )

    Console().print(table)


@app.command("placeholder-weights")
def placeholder_weights(
    variant: Annotated[str, typer.Option("--variant", help="`medium` or `pro`.")] = "medium",
    output_path: Annotated[
        Optional[Path],
        typer.Option(
            "--output",
            dir_okay=False,
            writable=True,
            help="Where to write the blob. Defaults to the path the weight store resolves.",
        ),
    ] = None,
    seed: Annotated[int, typer.Option("--seed")] = 0,
) -> None:
    """Writes a deterministic placeholder weight blob, useful for smoke tests."""
    from pydantic import TypeAdapter

    from . import types as t
    from .config import config_for_tier
    from .models.tf_locoformer import TFLocoformerParams
    from .weights import WeightStore, create_placeholder_weights

    variant_ = TypeAdapter(t.ModelVariant).validate_python(variant)
    tier: t.Tier = "free" if variant_ == "medium" else "pro"
    params = config_for_tier(tier).model.to_concrete(TFLocoformerParams)
    weights = create_placeholder_weights(params, variant_, seed=seed)
    path = WeightStore().save(weights, output_path)
    logger.info(f"wrote placeholder weights ({weights.digest}) to {path}")


@app.command()
def debug() -> None:
    """Prints detailed information about the environment, dependencies, and hardware
    for debugging purposes."""
    import sys

    logger.info(f"{sys.version=}")
    logger.info(f"{sys.executable=}")
    logger.info(f"{sys.platform=}")
    import platform

    logger.info(f"{platform.system()=} ({platform.release()})")
    logger.info(f"{platform.machine()=}")
    import torch

    logger.info(f"{torch.__version__=}")
    logger.info(f"{torch.cuda.is_available()=}")
    if torch.cuda.is_available():
        logger.info(f"{torch.cuda.device_count()=}")
        device = torch.cuda.current_device()
        logger.info(f"{torch.cuda.get_device_name(device)=}")
        logger.info(f"{torch.cuda.get_device_properties(device)=}")
    logger.info(f"{torch.backends.mps.is_available()=}")
    import torchaudio

    logger.info(f"{torchaudio.__version__=}")

    from .io import get_weights_dir

    logger.info(f"{get_weights_dir()=}")


if __name__ == "__main__":
    app()
