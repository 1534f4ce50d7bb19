# Copyright © 2023-2025 Apple Inc.

import json
import platform
from dataclasses import dataclass
from importlib import metadata as _metadata
from pathlib import Path

from .metrics import MetricsSnapshot
from .models import Backend, BenchmarkResult, ModelInfo, RunConfig

APP_VERSION = "0.1.0"
RECORD_VERSION = 1


def assemble_result(config: RunConfig, model_info: ModelInfo,
                    snapshot: MetricsSnapshot, text_chunks) -> BenchmarkResult:
    """Fold the sampler's final numbers and the emitted text into one record."""
    return BenchmarkResult(
        backend=config.backend,
        model_info=model_info,
        run_type=config.run_type,
        ttft_ms=snapshot.ttft_ms,
        tokens_per_second=snapshot.tokens_per_second,
        total_tokens=snapshot.total_tokens,
        duration_ms=snapshot.duration_ms,
        peak_memory_mb=snapshot.peak_memory_mb,
        thermal_states=tuple(snapshot.thermal_states),
        throttling_events=snapshot.throttling_events,
        prompt_id=config.prompt_id,
        seed=config.seed,
        target_tokens=config.target_tokens,
        text_chunks=tuple(text_chunks),
    )


def _engine_version() -> str:
    try:
        return _metadata.version("mlx-lm")
    except _metadata.PackageNotFoundError:
        return "unknown"


def _os_version() -> str:
    mac = platform.mac_ver()[0]
    if mac:
        return f"macOS {mac}"
    return f"{platform.system()} {platform.release()}"


@dataclass(frozen=True)
class RunMetadata:
    device: str
    os_version: str
    engine_version: str
    backend: Backend
    app_version: str = APP_VERSION

    @classmethod
    def collect(cls, backend: Backend) -> "RunMetadata":
        return cls(
            device=platform.machine() or "unknown",
            os_version=_os_version(),
            engine_version=_engine_version(),
            backend=Backend.parse(backend),
        )


def build_run_record(result: BenchmarkResult, meta: RunMetadata) -> dict:
    model = result.model_info
    parity = result.comparison.to_dict() if result.comparison is not None else None
    return {
        "version": RECORD_VERSION,
        "meta": {
            "device": meta.device,
            "os_version": meta.os_version,
            "engine_version": meta.engine_version,
            "backend": meta.backend.value,
            "app_version": meta.app_version,
        },
        "model": {
            "path": model.path,
            "size_bytes": model.size_bytes,
            "quant": model.quantization or "unknown",
            "ctx_len": model.context_length or 0,
        },
        "run": {
            "prompt_id": result.prompt_id,
            "seed": result.seed,
            "tokens_target": result.target_tokens,
        },
        "metrics": {
            "ttft_ms": result.ttft_ms,
            "tokens_per_second": result.tokens_per_second,
            "total_tokens": result.total_tokens,
            "duration_ms": result.duration_ms,
            "peak_mem_mb": result.peak_memory_mb,
            "thermal_states": [t.value for t in result.thermal_states],
            "throttled_events": result.throttling_events,
        },
        "parity": parity,
    }


def save_run_record(path: str | Path, record: dict) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(record, f, indent=2)
    return path


def load_run_record(path: str | Path) -> dict:
    with open(path, encoding="utf-8") as f:
        record = json.load(f)
    if record.get("version") != RECORD_VERSION:
        raise ValueError(f"Unsupported run record version: {record.get('version')}")
    return record


def _fmt(v: float | None, digits: int = 1) -> str:
    if v is None:
        return "n/a"
    return f"{v:.{digits}f}"


def render_markdown(results: list[BenchmarkResult]) -> str:
    lines = [
        "| Backend | Model | Run | TTFT ms | tok/s | Tokens | Duration s | Peak MB | Throttles | Parity |",
        "|---|---|---|---:|---:|---:|---:|---:|---:|---|",
    ]
    for r in results:
        parity = "-"
        if r.comparison is not None:
            parity = (f"{r.comparison.match_percentage:.1f}% vs "
                      f"{r.comparison.baseline_backend.display_name} "
                      f"(edit {r.comparison.edit_distance})")
        lines.append(
            f"| {r.backend.display_name} | {r.model_info.filename} | {r.run_type.value} "
            f"| {_fmt(r.ttft_ms, 0)} | {_fmt(r.tokens_per_second)} | {r.total_tokens} "
            f"| {_fmt(r.duration_ms / 1000)} | {r.peak_memory_mb} | {r.throttling_events} "
            f"| {parity} |"
        )
    return "\n".join(lines) + "\n"


def result_to_dict(result: BenchmarkResult) -> dict:
    return {
        "id": result.result_id,
        "timestamp": result.timestamp,
        "backend": result.backend.value,
        "model": {
            "filename": result.model_info.filename,
            "path": result.model_info.path,
            "size_bytes": result.model_info.size_bytes,
            "quantization": result.model_info.quantization,
            "context_length": result.model_info.context_length,
        },
        "run_type": result.run_type.value,
        "prompt_id": result.prompt_id,
        "seed": result.seed,
        "target_tokens": result.target_tokens,
        "ttft_ms": result.ttft_ms,
        "tokens_per_second": result.tokens_per_second,
        "total_tokens": result.total_tokens,
        "duration_ms": result.duration_ms,
        "peak_memory_mb": result.peak_memory_mb,
        "thermal_states": [t.value for t in result.thermal_states],
        "throttling_events": result.throttling_events,
        "text": result.text,
        "comparison": result.comparison.to_dict() if result.comparison else None,
    }
