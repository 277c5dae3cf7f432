import math
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any

import numpy as np
import pytest
import torch

from locoformer.config import LimitsConfig, SeparationOptions, into_config
from locoformer.device import CPU_DEVICE, DeviceInfo, DeviceType, ExecutionMode
from locoformer.errors import (
    AudioLimitError,
    ConfigError,
    DeviceError,
    SeparationCancelled,
    TierMismatchError,
    UninitializedError,
)
from locoformer.inference import (
    CancellationToken,
    Engine,
    EngineState,
    check_audio_limits,
    plan_chunks,
)
from locoformer.models.tf_locoformer import TFLocoformerParams
from locoformer.weights import PLACEHOLDER_VERSION, WeightStore, create_placeholder_weights

SAMPLE_RATE = 8000
NUM_SAMPLES = 1000


def tiny_config(variant: str, stems: list[str]) -> dict[str, Any]:
    return {
        "identifier": f"tiny-{variant}",
        "variant": variant,
        "model": {
            "output_stem_names": stems,
            "num_freq_bins": 17,
            "hidden_dim": 8,
            "num_heads": 2,
            "num_layers": 1,
            "ffn_multiplier": 2,
            "norm_groups": 2,
            "rotary_max_seq_len": 128,
        },
        "stft": {"n_fft": 32, "hop_length": 8, "win_length": 32},
        # 400 samples per chunk, 80 overlap, 320 hop at 8kHz
        "chunking": {"chunk_duration_sec": 0.05, "overlap_duration_sec": 0.01},
    }


TINY_FREE = tiny_config("medium", ["vocals", "instrumental"])
TINY_PRO = tiny_config("pro", ["vocals", "drums", "bass", "instruments", "fx"])


class FakeProbe:
    """Reports a fixed set of devices, `failing` types raise on acquisition."""

    def __init__(self, devices: list[DeviceInfo], failing: tuple[DeviceType, ...] = ()):
        self.devices = devices
        self.failing = failing
        self.acquired: list[DeviceInfo] = []

    def probe(self) -> list[DeviceInfo]:
        return list(self.devices)

    def acquire(self, info: DeviceInfo) -> torch.device:
        self.acquired.append(info)
        if info.type in self.failing:
            raise DeviceError(f"{info} is broken")
        return torch.device("cpu")


FAKE_GPU = DeviceInfo(type=DeviceType.CUDA, name="fake", index=0, memory_gb=12.0)


def _engine(tmp_path: Path, config: dict[str, Any] = TINY_FREE, **kwargs: Any) -> Engine:
    return Engine(config, weight_store=WeightStore(tmp_path), **kwargs)


def _pcm(num_samples: int = NUM_SAMPLES) -> torch.Tensor:
    t = torch.arange(num_samples) / SAMPLE_RATE
    return 0.5 * torch.sin(2 * math.pi * 440 * t) + 0.3 * torch.sin(2 * math.pi * 97 * t)


def _options(tier: str = "free", **kwargs: Any) -> SeparationOptions:
    return SeparationOptions.model_validate({"tier": tier, "sample_rate": SAMPLE_RATE, **kwargs})


#
# lifecycle
#


def test_initialize_free(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    assert engine.state is EngineState.UNINITIALIZED
    engine.initialize("free")
    assert engine.state is EngineState.READY
    assert engine.tier == "free"

    report = engine.device_info()
    assert report.current.type is DeviceType.CPU
    assert report.capability is not None
    assert report.capability.estimated_performance == "low"

    params = engine.get_config()
    assert isinstance(params, TFLocoformerParams)
    assert params.output_stem_names == ("vocals", "instrumental")


def test_initialize_is_idempotent(tmp_path: Path) -> None:
    probe = FakeProbe([CPU_DEVICE])
    engine = _engine(tmp_path, device_probe=probe)
    engine.initialize("free")
    engine.initialize("free")
    assert len(probe.acquired) == 1


def test_free_tier_never_uses_gpu(tmp_path: Path) -> None:
    probe = FakeProbe([FAKE_GPU, CPU_DEVICE])
    engine = _engine(tmp_path, device_probe=probe)
    engine.initialize("free")
    assert [d.type for d in probe.acquired] == [DeviceType.CPU]
    assert engine.device_info().current is CPU_DEVICE


def test_free_tier_without_cpu_fails(tmp_path: Path) -> None:
    engine = _engine(tmp_path, device_probe=FakeProbe([FAKE_GPU]))
    with pytest.raises(DeviceError):
        engine.initialize("free")
    assert engine.state is EngineState.FAILED


def test_free_tier_must_end_on_cpu(tmp_path: Path) -> None:
    class MisbehavingProbe(FakeProbe):
        def acquire(self, info: DeviceInfo) -> torch.device:
            return torch.device("meta")

    engine = _engine(tmp_path, device_probe=MisbehavingProbe([CPU_DEVICE]))
    with pytest.raises(DeviceError):
        engine.initialize("free")
    assert engine.state is EngineState.FAILED


def test_pro_tier_uses_gpu(tmp_path: Path) -> None:
    probe = FakeProbe([CPU_DEVICE, FAKE_GPU])
    engine = _engine(tmp_path, TINY_PRO, device_probe=probe)
    engine.initialize("pro")
    assert engine.device_info().current is FAKE_GPU
    assert [d.type for d in probe.acquired] == [DeviceType.CUDA]


def test_pro_tier_falls_back_to_cpu(tmp_path: Path) -> None:
    probe = FakeProbe([CPU_DEVICE, FAKE_GPU], failing=(DeviceType.CUDA,))
    engine = _engine(tmp_path, TINY_PRO, device_probe=probe)
    engine.initialize("pro")
    assert engine.state is EngineState.READY
    assert engine.device_info().current is CPU_DEVICE
    assert [d.type for d in probe.acquired] == [DeviceType.CUDA, DeviceType.CPU]


def test_pro_tier_fallback_fails_once(tmp_path: Path) -> None:
    probe = FakeProbe([CPU_DEVICE, FAKE_GPU], failing=(DeviceType.CUDA, DeviceType.CPU))
    engine = _engine(tmp_path, TINY_PRO, device_probe=probe)
    with pytest.raises(DeviceError):
        engine.initialize("pro")
    assert engine.state is EngineState.FAILED
    assert len(probe.acquired) == 2


def test_concurrent_initialize(tmp_path: Path) -> None:
    probe = FakeProbe([CPU_DEVICE])
    engine = _engine(tmp_path, device_probe=probe)
    with ThreadPoolExecutor(max_workers=4) as pool:
        list(pool.map(lambda _: engine.initialize("free"), range(4)))
    assert engine.state is EngineState.READY
    assert len(probe.acquired) == 1


def test_supports_realtime(tmp_path: Path) -> None:
    free = _engine(tmp_path)
    free.initialize("free")
    assert not free.supports_realtime

    pro = _engine(tmp_path, TINY_PRO, device_probe=FakeProbe([CPU_DEVICE, FAKE_GPU]))
    pro.initialize("pro")
    assert pro.supports_realtime


def test_config_variant_must_match_tier(tmp_path: Path) -> None:
    engine = _engine(tmp_path, TINY_FREE)
    with pytest.raises(ConfigError):
        engine.initialize("pro")
    assert engine.state is EngineState.FAILED


def test_uninitialized(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    with pytest.raises(UninitializedError):
        engine.separate(_pcm(), _options())
    with pytest.raises(UninitializedError):
        engine.get_config()
    with pytest.raises(UninitializedError):
        engine.device_info()
    assert not engine.is_degraded


#
# weights
#


def test_missing_weights_degrade(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    engine.initialize("free")
    assert engine.is_degraded
    result = engine.separate(_pcm(), _options())
    assert result.degraded is not None
    assert result.degraded.kind == "missing"


def test_stored_weights_are_used(tmp_path: Path) -> None:
    params = into_config(TINY_FREE).model.to_concrete(TFLocoformerParams)
    weights = create_placeholder_weights(params, "medium", seed=7)
    store = WeightStore(tmp_path)
    store.save(weights, store.path_for("medium", "latest"))

    engine = _engine(tmp_path)
    engine.initialize("free")
    assert not engine.is_degraded
    assert engine.weights is not None
    assert engine.weights.digest == weights.digest
    assert engine.separate(_pcm(), _options()).degraded is None


def test_engines_with_different_models_share_store(tmp_path: Path) -> None:
    params = into_config(TINY_FREE).model.to_concrete(TFLocoformerParams)
    store = WeightStore(tmp_path)
    store.save(create_placeholder_weights(params, "medium", seed=7), store.path_for("medium"))

    narrow = Engine(TINY_FREE, weight_store=store)
    narrow.initialize("free")
    assert not narrow.is_degraded

    wide_config = {**TINY_FREE, "model": {**TINY_FREE["model"], "hidden_dim": 16}}
    wide = Engine(wide_config, weight_store=store)
    wide.initialize("free")
    assert wide.state is EngineState.READY
    assert wide.weights is not None
    assert wide.weights.degraded is not None
    assert wide.weights.degraded.kind == "invalid"
    assert wide.separate(_pcm(), _options()).stems


#
# separation
#


def test_separate_free(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    engine.initialize("free")
    result = engine.separate(_pcm(), _options())

    assert list(result.stems) == ["vocals", "instrumental"]
    for stem in result.stems.values():
        assert stem.shape == (NUM_SAMPLES,)
        assert torch.isfinite(stem).all()
        assert stem.abs().max() <= 0.95 + 1e-6
    assert result.sample_rate == SAMPLE_RATE
    assert result.duration == pytest.approx(NUM_SAMPLES / SAMPLE_RATE)
    assert result.processing_time_ms > 0
    assert result.device == "cpu"
    assert result.metadata is None


def test_separate_pro(tmp_path: Path) -> None:
    engine = _engine(tmp_path, TINY_PRO, device_probe=FakeProbe([CPU_DEVICE]))
    engine.initialize("pro")
    result = engine.separate(_pcm(), _options("pro"))
    assert list(result.stems) == ["vocals", "drums", "bass", "instruments", "fx"]
    assert all(stem.shape == (NUM_SAMPLES,) for stem in result.stems.values())


@pytest.mark.parametrize("num_samples", [0, 10, 400, 401, 2345])
def test_separate_lengths(tmp_path: Path, num_samples: int) -> None:
    engine = _engine(tmp_path)
    engine.initialize("free")
    result = engine.separate(_pcm(num_samples), _options())
    assert all(stem.shape == (num_samples,) for stem in result.stems.values())


def test_separate_stereo(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    engine.initialize("free")
    stereo = torch.stack([_pcm(), -_pcm()])
    result = engine.separate(stereo, _options())
    assert all(stem.shape == (NUM_SAMPLES,) for stem in result.stems.values())

    interleaved = torch.stack([_pcm(), _pcm()], dim=-1).flatten()
    result = engine.separate(interleaved, _options(channels=2))
    assert all(stem.shape == (NUM_SAMPLES,) for stem in result.stems.values())


def test_separate_accepts_numpy(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    engine.initialize("free")
    pcm = _pcm().numpy().astype(np.float64)
    from_numpy = engine.separate(pcm, _options())
    from_torch = engine.separate(_pcm(), _options())
    for name in from_torch.stems:
        assert torch.allclose(from_numpy.stems[name], from_torch.stems[name], atol=1e-6)


def test_separate_resamples_input(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    engine.initialize("free")
    result = engine.separate(_pcm(2000), _options(input_sample_rate=16000))
    assert all(stem.shape == (1000,) for stem in result.stems.values())


def test_separate_without_normalization(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    engine.initialize("free")
    loud = 100 * _pcm()
    normalized = engine.separate(loud, _options())
    raw = engine.separate(loud, _options(normalize=False))
    for name, stem in normalized.stems.items():
        peak = raw.stems[name].abs().max()
        if peak > 0.95:
            assert stem.abs().max().item() == pytest.approx(0.95, abs=1e-5)


def test_separate_debug_metadata(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    engine.initialize("free")
    result = engine.separate(_pcm(), _options(debug=True))
    metadata = result.metadata
    assert metadata is not None
    assert metadata.model_variant == "medium"
    assert metadata.weights_version == PLACEHOLDER_VERSION
    assert metadata.weight_hash.startswith("sha256:")
    assert (metadata.chunk_size, metadata.overlap_size, metadata.hop_size) == (400, 80, 320)
    assert metadata.num_chunks == 3
    assert metadata.execution_mode is ExecutionMode.CPU_ONLY


def test_tier_mismatch(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    engine.initialize("free")
    with pytest.raises(TierMismatchError):
        engine.separate(_pcm(), _options("pro"))


def test_cancellation(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    engine.initialize("free")
    token = CancellationToken()
    token.cancel()
    assert token.cancelled
    with pytest.raises(SeparationCancelled):
        engine.separate(_pcm(), _options(), cancel=token)
    # the engine stays usable
    assert engine.state is EngineState.READY
    assert engine.separate(_pcm(), _options(), cancel=CancellationToken()).stems


def test_concurrent_separation(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    engine.initialize("free")
    pcm = _pcm()
    with ThreadPoolExecutor(max_workers=2) as pool:
        results = list(pool.map(lambda _: engine.separate(pcm, _options()), range(2)))
    for name in results[0].stems:
        assert torch.allclose(results[0].stems[name], results[1].stems[name])


def test_separate_deterministic(tmp_path: Path) -> None:
    a = _engine(tmp_path)
    b = _engine(tmp_path)
    a.initialize("free")
    b.initialize("free")
    result_a = a.separate(_pcm(), _options())
    result_b = b.separate(_pcm(), _options())
    for name in result_a.stems:
        assert torch.allclose(result_a.stems[name], result_b.stems[name])


def test_plan_chunks() -> None:
    config = into_config(TINY_FREE)
    plan = plan_chunks(NUM_SAMPLES, SAMPLE_RATE, config)
    assert plan.starts == [0, 320, 640]
    assert plan.chunk_size == 400

    overlapping = into_config(TINY_FREE, overrides=["chunking.overlap_duration_sec=0.0499999"])
    with pytest.raises(ConfigError):
        plan_chunks(NUM_SAMPLES, SAMPLE_RATE, overlapping)


#
# clean / enhance
#


def test_clean_returns_vocals(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    engine.initialize("free")
    vocals = engine.clean(_pcm(), _options())
    assert vocals.shape == (NUM_SAMPLES,)
    expected = engine.separate(_pcm(), _options()).stems["vocals"]
    assert torch.allclose(vocals, expected)


def test_enhance_soft_limits(tmp_path: Path) -> None:
    engine = _engine(tmp_path, TINY_PRO, device_probe=FakeProbe([CPU_DEVICE]))
    engine.initialize("pro")
    enhanced = engine.enhance(100 * _pcm(), _options("pro"))
    assert enhanced.shape == (NUM_SAMPLES,)
    assert enhanced.abs().max() <= 0.95


#
# limits
#


def test_separate_rejects_long_audio(tmp_path: Path) -> None:
    # 1000 samples at 8kHz are 0.125s
    config = {**TINY_FREE, "limits": {"max_duration_sec": 0.1}}
    engine = _engine(tmp_path, config)
    engine.initialize("free")
    assert engine.limits.max_duration_sec == 0.1
    with pytest.raises(AudioLimitError, match="too long"):
        engine.separate(_pcm(), _options())
    assert engine.separate(_pcm(800), _options()).stems


def test_separate_without_duration_limit(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    engine.initialize("free")
    assert engine.limits.max_duration_sec is None
    assert engine.separate(_pcm(), _options()).stems


def test_check_audio_limits() -> None:
    limits = LimitsConfig(max_duration_sec=180.0, max_input_bytes=1000)
    check_audio_limits(limits, duration_sec=180.0, num_bytes=1000)
    check_audio_limits(limits)
    with pytest.raises(AudioLimitError, match="too long"):
        check_audio_limits(limits, duration_sec=180.5)
    with pytest.raises(AudioLimitError, match="too large"):
        check_audio_limits(limits, num_bytes=1001)
    check_audio_limits(LimitsConfig(max_input_bytes=None), num_bytes=10**12)
