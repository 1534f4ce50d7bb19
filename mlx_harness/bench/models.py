# Copyright © 2023-2025 Apple Inc.

import datetime
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path

DEFAULT_SEED = 1234
DEFAULT_TEMPERATURE = 0.8
DEFAULT_CONTEXT_WINDOW = 4096
PARITY_THRESHOLD = 0.99


class HarnessError(Exception):
    """Base class for every error raised by the benchmark core."""


class InvalidPathError(HarnessError):
    def __init__(self, path):
        super().__init__(f"Model file not found: {path}")
        self.path = str(path)


class ModelLoadError(HarnessError):
    pass


class ContextInitError(HarnessError):
    pass


class DecodeError(HarnessError):
    pass


class SessionBusyError(HarnessError):
    pass


class RunFailedError(HarnessError):
    def __init__(self, reason: str, total_tokens: int = 0):
        super().__init__(reason)
        self.reason = reason
        self.total_tokens = total_tokens


class Backend(str, Enum):
    TENSOR = "metal-tensor"
    LEGACY = "metal-legacy"
    CPU = "cpu"

    @property
    def display_name(self) -> str:
        return {
            Backend.TENSOR: "Metal-4 Tensor",
            Backend.LEGACY: "Legacy Metal",
            Backend.CPU: "CPU",
        }[self]

    @classmethod
    def parse(cls, value: "str | Backend") -> "Backend":
        if isinstance(value, Backend):
            return value
        aliases = {"tensor": cls.TENSOR, "legacy": cls.LEGACY}
        key = str(value).strip().lower()
        if key in aliases:
            return aliases[key]
        return cls(key)


class RunType(str, Enum):
    SANITY = "sanity"
    FULL = "full"

    @property
    def display_name(self) -> str:
        if self is RunType.SANITY:
            return "Sanity Run (30-60s)"
        return "Full Run (6-10 min)"

    @property
    def target_tokens(self) -> int:
        return 128 if self is RunType.SANITY else 512


class ThermalLevel(str, Enum):
    NOMINAL = "nominal"
    FAIR = "fair"
    SERIOUS = "serious"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _THERMAL_ORDER.index(self)

    def worse_than(self, other: "ThermalLevel") -> bool:
        return self.rank > other.rank


_THERMAL_ORDER = (
    ThermalLevel.NOMINAL, ThermalLevel.FAIR,
    ThermalLevel.SERIOUS, ThermalLevel.CRITICAL,
)


class SessionState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    WARMUP = "warmup"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def accepts_start(self) -> bool:
        return self in (SessionState.IDLE, SessionState.COMPLETED, SessionState.FAILED)


@dataclass(frozen=True)
class SessionStatus:
    state: SessionState = SessionState.IDLE
    progress: float = 0.0
    reason: str | None = None

    def to_dict(self) -> dict:
        return {"state": self.state.value, "progress": self.progress, "reason": self.reason}


@dataclass(frozen=True)
class RunConfig:
    """Everything one benchmark run needs. Immutable once built."""

    backend: Backend
    model_path: str
    prompt_text: str
    seed: int = DEFAULT_SEED
    target_tokens: int = RunType.SANITY.target_tokens
    context_window: int = DEFAULT_CONTEXT_WINDOW
    prompt_id: str = "custom"
    run_type: RunType = RunType.SANITY
    temperature: float = DEFAULT_TEMPERATURE

    def __post_init__(self) -> None:
        object.__setattr__(self, "backend", Backend.parse(self.backend))
        object.__setattr__(self, "run_type", RunType(self.run_type))
        object.__setattr__(self, "model_path", str(self.model_path))
        if self.target_tokens <= 0:
            raise ValueError(f"target_tokens must be positive, got {self.target_tokens}")
        if self.context_window <= 0:
            raise ValueError(f"context_window must be positive, got {self.context_window}")
        if not self.prompt_text:
            raise ValueError("prompt_text must not be empty")
        if self.temperature < 0:
            raise ValueError(f"temperature must be >= 0, got {self.temperature}")


@dataclass(frozen=True)
class MetricSample:
    timestamp: float
    thermal: ThermalLevel
    resident_memory_mb: int


@dataclass(frozen=True)
class ModelInfo:
    filename: str
    path: str
    size_bytes: int
    quantization: str | None = None
    context_length: int | None = None

    @property
    def size_gb(self) -> float:
        return self.size_bytes / 1e9

    @property
    def estimated_ram_mb(self) -> int:
        # weights plus ~30% for KV cache and runtime overhead
        return int(self.size_bytes * 1.3 / 1e6)

    @classmethod
    def from_path(cls, path, quantization=None, context_length=None) -> "ModelInfo":
        path = Path(path)
        if path.is_dir():
            size = sum(p.stat().st_size for p in path.rglob("*") if p.is_file())
        elif path.exists():
            size = path.stat().st_size
        else:
            size = 0
        return cls(
            filename=path.name, path=str(path), size_bytes=size,
            quantization=quantization, context_length=context_length,
        )


@dataclass(frozen=True)
class ComparisonResult:
    baseline_backend: Backend
    token_match_ratio: float
    edit_distance: int
    notes: str | None = None

    @property
    def match_percentage(self) -> float:
        return self.token_match_ratio * 100

    def to_dict(self) -> dict:
        return {
            "baseline_backend": self.baseline_backend.value,
            "token_match_ratio": self.token_match_ratio,
            "edit_distance": self.edit_distance,
            "notes": self.notes,
        }


@dataclass(frozen=True)
class BenchmarkResult:
    backend: Backend
    model_info: ModelInfo
    run_type: RunType
    ttft_ms: float
    tokens_per_second: float
    total_tokens: int
    duration_ms: float
    peak_memory_mb: int
    thermal_states: tuple[ThermalLevel, ...]
    throttling_events: int
    prompt_id: str = "custom"
    seed: int = DEFAULT_SEED
    target_tokens: int = 0
    text_chunks: tuple[str, ...] = ()
    comparison: ComparisonResult | None = None
    result_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: str = field(
        default_factory=lambda: datetime.datetime.now(datetime.timezone.utc).isoformat()
    )

    @property
    def text(self) -> str:
        return "".join(self.text_chunks)

    def with_comparison(self, comparison: ComparisonResult) -> "BenchmarkResult":
        return replace(self, comparison=comparison)
