# Copyright © 2023-2025 Apple Inc.

import json
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

import numpy as np

from .models import (
    Backend,
    ContextInitError,
    DEFAULT_CONTEXT_WINDOW,
    ModelLoadError,
)

ALL_GPU_LAYERS = 99

_BYTE_PIECE_RE = re.compile(r"^<0x([0-9A-Fa-f]{2})>$")
_SPM_SPACE = "▁"


class EngineError(Exception):
    """Raised by an engine when a tokenize/decode call fails."""


@dataclass(frozen=True)
class EngineConfig:
    device: str
    gpu_layers: int
    tensor_api: bool
    n_threads: int
    context_window: int = DEFAULT_CONTEXT_WINDOW


def _default_threads() -> int:
    return max(1, min(8, (os.cpu_count() or 1) - 2))


def resolve_backend(backend: Backend, context_window: int = DEFAULT_CONTEXT_WINDOW) -> EngineConfig:
    """The one place a backend variant turns into fixed engine parameters."""
    backend = Backend.parse(backend)
    n_threads = _default_threads()
    if backend is Backend.TENSOR:
        return EngineConfig("gpu", ALL_GPU_LAYERS, True, n_threads, context_window)
    if backend is Backend.LEGACY:
        return EngineConfig("gpu", ALL_GPU_LAYERS, False, n_threads, context_window)
    return EngineConfig("cpu", 0, False, n_threads, context_window)


class InferenceEngine(Protocol):
    def load(self, path: str, config: EngineConfig) -> Any: ...

    def tokenize(self, handle: Any, text: str) -> list[int]: ...

    def decode(self, handle: Any, tokens: list[int]) -> np.ndarray: ...

    def token_to_bytes(self, handle: Any, token_id: int) -> bytes: ...

    def is_end_of_generation(self, handle: Any, token_id: int) -> bool: ...

    def describe(self, handle: Any) -> tuple[str | None, int | None]: ...

    def release(self, handle: Any) -> None: ...


def _bpe_byte_decoder(tokenizer) -> dict[str, int] | None:
    """mlx-lm's character-to-byte table if it streams this tokenizer as byte-level BPE."""
    from mlx_lm.tokenizer_utils import BPEStreamingDetokenizer

    if not isinstance(tokenizer.detokenizer, BPEStreamingDetokenizer):
        return None
    BPEStreamingDetokenizer.make_byte_decoder()
    return BPEStreamingDetokenizer._byte_decoder


def piece_to_bytes(piece: str, byte_decoder: dict[str, int] | None) -> bytes:
    """Raw bytes behind one vocabulary piece.

    `byte_decoder` maps characters to bytes for byte-level BPE vocabularies;
    None means SentencePiece-style pieces.
    """
    m = _BYTE_PIECE_RE.match(piece)
    if m:
        return bytes([int(m.group(1), 16)])
    if byte_decoder is not None:
        if all(c in byte_decoder for c in piece):
            return bytes(byte_decoder[c] for c in piece)
        return piece.encode("utf-8")
    return piece.replace(_SPM_SPACE, " ").encode("utf-8")


def quantization_label(config: dict) -> str | None:
    quant = config.get("quantization") or config.get("quantization_config")
    if not isinstance(quant, dict) or "bits" not in quant:
        return None
    label = f"Q{quant['bits']}"
    if quant.get("group_size"):
        label += f"_G{quant['group_size']}"
    return label


class _MlxHandle:
    __slots__ = ("model", "tokenizer", "cache", "config", "model_path",
                 "device", "byte_decoder", "special_ids")

    def __init__(self, model, tokenizer, cache, config: EngineConfig, model_path: Path, device):
        self.model = model
        self.tokenizer = tokenizer
        self.cache = cache
        self.config = config
        self.model_path = model_path
        self.device = device
        self.byte_decoder = _bpe_byte_decoder(tokenizer)
        self.special_ids = set(getattr(tokenizer, "all_special_ids", []) or [])


class MlxEngine:
    """Inference engine backed by mlx / mlx-lm on Apple silicon."""

    def load(self, path: str, config: EngineConfig) -> _MlxHandle:
        import mlx.core as mx
        import mlx_lm as _mlx_lm
        from mlx_lm.models import cache as cache_module

        # Scoped per handle; the process default device is never changed.
        device = mx.gpu if config.device == "gpu" else mx.cpu
        if config.device == "cpu":
            print(f"  [engine] CPU backend, {config.n_threads} threads")
        elif config.tensor_api:
            print("  [engine] Metal-4 Tensor backend (all layers on GPU)")
        else:
            print("  [engine] Legacy Metal backend (all layers on GPU)")

        with mx.stream(device):
            try:
                model, tokenizer = _mlx_lm.load(str(path))
            except Exception as e:
                raise ModelLoadError(f"Could not load model at {path}: {e}") from e

            try:
                cache = cache_module.make_prompt_cache(model)
            except Exception as e:
                raise ContextInitError(f"Could not allocate context for {path}: {e}") from e

        return _MlxHandle(model, tokenizer, cache, config, Path(path), device)

    def tokenize(self, handle: _MlxHandle, text: str) -> list[int]:
        tokenizer = handle.tokenizer
        add_special = tokenizer.bos_token is None or not text.startswith(tokenizer.bos_token)
        try:
            return list(tokenizer.encode(text, add_special_tokens=add_special))
        except Exception as e:
            raise EngineError(f"tokenize failed: {e}") from e

    def decode(self, handle: _MlxHandle, tokens: list[int]) -> np.ndarray:
        import mlx.core as mx

        try:
            with mx.stream(handle.device):
                logits = handle.model(mx.array(tokens)[None], cache=handle.cache)
                last = logits[0, -1, :].astype(mx.float32)
                mx.eval(last)
        except Exception as e:
            raise EngineError(f"decode of {len(tokens)} tokens failed: {e}") from e
        return np.array(last)

    def token_to_bytes(self, handle: _MlxHandle, token_id: int) -> bytes:
        if token_id in handle.special_ids:
            return b""
        piece = handle.tokenizer.convert_ids_to_tokens(int(token_id))
        if piece is None:
            return b""
        return piece_to_bytes(piece, handle.byte_decoder)

    def is_end_of_generation(self, handle: _MlxHandle, token_id: int) -> bool:
        return int(token_id) in handle.tokenizer.eos_token_ids

    def describe(self, handle: _MlxHandle) -> tuple[str | None, int | None]:
        config_path = handle.model_path / "config.json"
        if not config_path.is_file():
            return None, None
        with open(config_path) as f:
            config = json.load(f)
        ctx_len = config.get("max_position_embeddings")
        return quantization_label(config), int(ctx_len) if ctx_len else None

    def release(self, handle: _MlxHandle) -> None:
        import mlx.core as mx

        handle.cache = None
        handle.model = None
        mx.clear_cache()
