# Copyright © 2023-2025 Apple Inc.

from dataclasses import dataclass
from pathlib import Path

import numpy as np

from .engine import EngineError, InferenceEngine, resolve_backend
from .models import (
    Backend,
    DEFAULT_CONTEXT_WINDOW,
    DEFAULT_SEED,
    DEFAULT_TEMPERATURE,
    DecodeError,
    InvalidPathError,
)


@dataclass(frozen=True)
class ContextOverflowWarning:
    """Prompt plus target tokens need more KV cache than the context window holds."""

    required: int
    context_window: int

    @property
    def message(self) -> str:
        return (f"Required KV cache ({self.required}) > context size "
                f"({self.context_window})")


class TokenSampler:
    """Temperature-scaled categorical sampler with its own seeded generator."""

    def __init__(self, temperature: float = DEFAULT_TEMPERATURE, seed: int = DEFAULT_SEED):
        self.temperature = temperature
        self.seed = seed
        self._rng = np.random.default_rng(seed)

    def reset(self) -> None:
        self._rng = np.random.default_rng(self.seed)

    def __call__(self, logits: np.ndarray) -> int:
        logits = np.asarray(logits, dtype=np.float64).reshape(-1)
        if self.temperature <= 0:
            return int(np.argmax(logits))
        scaled = logits / self.temperature
        scaled -= scaled.max()
        probs = np.exp(scaled)
        probs /= probs.sum()
        return int(self._rng.choice(probs.shape[0], p=probs))


class ContextManager:
    """Owns one engine handle for the lifetime of a single run.

    The handle, its KV cache and the position cursor are private to this
    object; nothing else touches them. Call release() exactly once after a
    successful initialize() (extra calls are no-ops).
    """

    def __init__(self, engine: InferenceEngine, target_tokens: int,
                 context_window: int = DEFAULT_CONTEXT_WINDOW,
                 temperature: float = DEFAULT_TEMPERATURE,
                 seed: int = DEFAULT_SEED):
        self._engine = engine
        self._handle = None
        self._logits = None
        self.target_tokens = target_tokens
        self.context_window = context_window
        self.sampler = TokenSampler(temperature, seed)
        self.position = 0
        self.prompt_tokens = 0
        self.advisories: list[ContextOverflowWarning] = []

    @property
    def is_loaded(self) -> bool:
        return self._handle is not None

    def initialize(self, model_path: str, backend: Backend):
        if not Path(model_path).exists():
            raise InvalidPathError(model_path)
        config = resolve_backend(backend, self.context_window)
        # ModelLoadError / ContextInitError propagate from the engine
        self._handle = self._engine.load(str(model_path), config)
        self.position = 0
        self.prompt_tokens = 0
        self._logits = None
        self.sampler.reset()
        self.advisories.clear()
        return self._handle

    def submit_prompt(self, text: str) -> int:
        self._require_handle()
        try:
            tokens = self._engine.tokenize(self._handle, text)
        except EngineError as e:
            raise DecodeError(f"Failed to tokenize prompt: {e}") from e
        if not tokens:
            raise DecodeError("Prompt produced no tokens")

        required = len(tokens) + self.target_tokens
        if required > self.context_window:
            warning = ContextOverflowWarning(required, self.context_window)
            self.advisories.append(warning)
            print(f"  [context] WARNING: {warning.message}")

        try:
            self._logits = self._engine.decode(self._handle, tokens)
        except EngineError as e:
            raise DecodeError(f"Failed to decode prompt: {e}") from e
        self.prompt_tokens = len(tokens)
        self.position = len(tokens)
        return len(tokens)

    def sample_next(self) -> tuple[int, bool]:
        self._require_handle()
        if self._logits is None:
            raise DecodeError("sample_next called before a decode pass")
        token_id = self.sampler(self._logits)
        return token_id, self._engine.is_end_of_generation(self._handle, token_id)

    def token_bytes(self, token_id: int) -> bytes:
        self._require_handle()
        return self._engine.token_to_bytes(self._handle, token_id)

    def decode_step(self, token_id: int) -> None:
        self._require_handle()
        try:
            self._logits = self._engine.decode(self._handle, [token_id])
        except EngineError as e:
            raise DecodeError(f"Failed to decode token at position {self.position}: {e}") from e
        self.position += 1

    def model_info(self) -> tuple[str | None, int | None]:
        self._require_handle()
        return self._engine.describe(self._handle)

    def release(self) -> None:
        if self._handle is None:
            return
        handle, self._handle = self._handle, None
        self._logits = None
        self._engine.release(handle)

    def _require_handle(self) -> None:
        if self._handle is None:
            raise DecodeError("No model loaded")
