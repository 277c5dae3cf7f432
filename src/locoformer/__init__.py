"""Inference engine for TF-Locoformer time-frequency source separation."""

from pathlib import Path

DIR_MODULE = Path(__file__).parent
DIR_DATA = DIR_MODULE / "data"
DIR_CONFIG_DEFAULT = DIR_DATA / "config"

# NOTE: not re-exporting anything, the cli extra pulls in optional dependencies
# that should not be imported implicitly.
