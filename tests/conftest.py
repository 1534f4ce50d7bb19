import json
import threading

import numpy as np
import pytest

from mlx_harness.bench.engine import EngineError
from mlx_harness.bench.metrics import ProbeError
from mlx_harness.bench.models import ModelLoadError, ThermalLevel


EOG_ID = 0

# id -> raw bytes; 6/7 split a two-byte character ("é" = c3 a9)
VOCAB = [
    b"",
    b" The",
    b" quick",
    b" brown",
    b" fox",
    b" jumps",
    b"\xc3",
    b"\xa9",
    b" over",
    b" dog",
    b"!",
    b" a",
]


def token_id(piece: bytes) -> int:
    return VOCAB.index(piece)


class _FakeHandle:
    def __init__(self, path):
        self.path = path
        self.decodes = 0
        self.released = False


class FakeEngine:
    """Deterministic stand-in for an inference engine.

    With a `script` the logits put all mass on script[k] after the k-th decode
    pass, so the sampled sequence is fixed whatever the seed. Without one the
    logits depend only on the cursor position and sampling follows the seed.
    Step decodes from `gate_after` onward block until `gate` is set.
    """

    def __init__(self, script=None, fail_at=None, fail_load=False,
                 gate_after=None, describe=("Q4_G64", 2048)):
        self.script = list(script) if script is not None else None
        self.fail_at = fail_at
        self.fail_load = fail_load
        self.gate_after = gate_after
        self.gate = threading.Event()
        self._describe = describe
        self.loaded = 0
        self.released = 0
        self.step_decodes = 0
        self.configs = []

    @property
    def live_handles(self) -> int:
        return self.loaded - self.released

    def load(self, path, config):
        self.configs.append(config)
        if self.fail_load:
            raise ModelLoadError(f"Could not load model at {path}: bad header")
        self.loaded += 1
        self.step_decodes = 0
        return _FakeHandle(path)

    def tokenize(self, handle, text):
        return [token_id(b" a")] * max(1, len(text.split()))

    def _logits(self, handle) -> np.ndarray:
        k = handle.decodes - 1
        if self.script is not None:
            logits = np.full(len(VOCAB), -100.0)
            logits[self.script[k] if k < len(self.script) else EOG_ID] = 100.0
            return logits
        logits = np.random.default_rng(k).normal(size=len(VOCAB))
        logits[EOG_ID] = -1e9
        # keep the split pair out of unscripted runs
        logits[token_id(b"\xc3")] = -1e9
        logits[token_id(b"\xa9")] = -1e9
        return logits

    def decode(self, handle, tokens):
        if handle.decodes > 0:
            if self.fail_at is not None and self.step_decodes == self.fail_at:
                raise EngineError("kernel dispatch failed")
            if self.gate_after is not None and self.step_decodes >= self.gate_after:
                self.gate.wait()
            self.step_decodes += 1
        handle.decodes += 1
        return self._logits(handle)

    def token_to_bytes(self, handle, token_id):
        return VOCAB[token_id]

    def is_end_of_generation(self, handle, token_id):
        return token_id == EOG_ID

    def describe(self, handle):
        return self._describe

    def release(self, handle):
        assert not handle.released, "handle released twice"
        handle.released = True
        self.released += 1


class FakeProbe:
    """Replays thermal levels / memory readings; None entries raise ProbeError."""

    def __init__(self, thermal=None, memory=None):
        self.thermal = list(thermal or [])
        self.memory = list(memory or [])

    def thermal_level(self):
        if not self.thermal:
            return ThermalLevel.NOMINAL
        level = self.thermal.pop(0)
        if level is None:
            raise ProbeError("sensor unavailable")
        return level

    def resident_memory_mb(self):
        if not self.memory:
            return 100
        value = self.memory.pop(0)
        if value is None:
            raise ProbeError("task_info failed")
        return value


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def model_dir(tmp_path):
    """A directory that passes the model path check, with an mlx-style config."""
    d = tmp_path / "tiny-model-4bit"
    d.mkdir()
    (d / "config.json").write_text(json.dumps({
        "model_type": "llama",
        "max_position_embeddings": 2048,
        "quantization": {"group_size": 64, "bits": 4},
    }))
    (d / "model.safetensors").write_bytes(b"\0" * 1000)
    return d
