# ruff: noqa: E402
PATH_MIXTURE = "data/audio/input/mixture.flac"

from locoformer.config import SeparationOptions
from locoformer.inference import Engine
from locoformer.io import read_audio

engine = Engine()
engine.initialize("free")
if engine.is_degraded:
    print(f"no trained weights found: {engine.weights.degraded}")  # type: ignore

audio, sample_rate = read_audio(PATH_MIXTURE, 44100)
result = engine.separate(audio, SeparationOptions(tier="free", sample_rate=sample_rate))
print({name: stem.shape for name, stem in result.stems.items()}, result.processing_time_ms)

#
# separation runs chunk by chunk, so it can be cancelled from another thread
#

import threading

from locoformer.errors import SeparationCancelled
from locoformer.inference import CancellationToken

token = CancellationToken()
threading.Timer(0.5, token.cancel).start()
try:
    engine.separate(audio, SeparationOptions(tier="free", sample_rate=sample_rate), cancel=token)
except SeparationCancelled:
    print("cancelled")

#
# or, to get a single cleaned-up vocals track
#

vocals = engine.clean(audio, SeparationOptions(tier="free", sample_rate=sample_rate))
