# Copyright © 2023-2025 Apple Inc.

from pathlib import Path

from .context import ContextManager
from .engine import InferenceEngine
from .models import Backend, InvalidPathError, ModelInfo


def read_model_info(path: str | Path, engine: InferenceEngine) -> ModelInfo:
    """One-shot metadata read: load on the CPU backend, describe, release."""
    path = Path(path)
    print(f"  [catalog] Reading model info from: {path}")
    if not path.exists():
        raise InvalidPathError(path)

    context = ContextManager(engine, target_tokens=1)
    context.initialize(str(path), Backend.CPU)
    try:
        quant, ctx_len = context.model_info()
    finally:
        context.release()

    print(f"  [catalog] quantization={quant or 'unknown'} context_length={ctx_len or 0}")
    return ModelInfo.from_path(path, quant, ctx_len)
